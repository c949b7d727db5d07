from __future__ import annotations

import math
import uuid
from collections.abc import Callable
from datetime import datetime

from leadflow.crm.models import CRMLead, utcnow
from leadflow.crm.repositories import LeadRepository


class CandidateScanner:
    """Pages through active leads whose deadline has passed and are not yet terminal.

    Pages are ordered oldest deadline first. ``now`` is re-evaluated on every call.
    """

    def __init__(self, repository: LeadRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self._clock = clock

    def count_candidates(self) -> int:
        return self.repository.count_eligible(self._clock())

    def get_batch(self, batch_index: int, batch_size: int, *, carried_over: int = 0) -> list[CRMLead]:
        # Rows that left the filter in earlier batches, whether expired here or changed
        # elsewhere, shift the page window back by that many rows.
        offset = max(0, batch_index * batch_size - carried_over)
        return self.repository.read_page(self._clock(), offset, batch_size)

    def count_pending_notifications(self) -> int:
        return self.repository.count_pending_notification()

    def count_still_eligible(self, lead_ids: list[uuid.UUID]) -> int:
        return self.repository.count_eligible_among(lead_ids, self._clock())

    def get_pending_notifications(self, limit: int, per_owner_limit: int | None = None) -> list[CRMLead]:
        return self.repository.read_pending_notification(limit, per_owner_limit)

    @staticmethod
    def total_batches(count: int, batch_size: int) -> int:
        if count <= 0:
            return 0
        return math.ceil(count / batch_size)
