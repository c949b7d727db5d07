from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from leadflow.crm.models import CRMLead, utcnow
from leadflow.crm.repositories import LeadRepository


logger = logging.getLogger("leadflow.crm.expiration")


class StateTransitionApplier:
    def __init__(self, repository: LeadRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self._clock = clock

    def apply_batch(self, leads: Sequence[CRMLead]) -> list[CRMLead]:
        if not leads:
            return []

        now = self._clock()
        eligible = [lead for lead in leads if lead.is_expirable(now)]
        if len(eligible) < len(leads):
            logger.info(
                "lead_expiration_revalidation_excluded",
                extra={"lead_count": len(leads) - len(eligible)},
            )
        if not eligible:
            return []

        eligible_ids = [lead.id for lead in eligible]
        transitioned_ids = self.repository.mark_expired(eligible, now)
        if len(transitioned_ids) < len(eligible):
            logger.warning(
                "lead_expiration_concurrent_update_skipped",
                extra={"lead_count": len(eligible) - len(transitioned_ids)},
            )
        logger.debug("lead_expiration_batch_saved", extra={"lead_count": len(transitioned_ids)})
        return [lead for lead, lead_id in zip(eligible, eligible_ids) if lead_id in transitioned_ids]
