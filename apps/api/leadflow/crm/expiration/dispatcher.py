from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from leadflow.crm.delivery import NotificationConnectionRegistry
from leadflow.crm.expiration.cancellation import CancellationToken
from leadflow.crm.expiration.config import SweepConfig
from leadflow.crm.models import (
    LEAD_EXPIRED_NOTIFICATION_TYPES,
    CRMLead,
    CRMNotification,
    NotificationPriority,
    NotificationType,
    ensure_utc,
    utcnow,
)
from leadflow.crm.repositories import LeadRepository, NotificationRepository
from leadflow.metrics import (
    observe_notification_created,
    observe_notifications_deferred,
    observe_owner_dispatch_failure,
    observe_push_failure,
)


logger = logging.getLogger("leadflow.crm.expiration")

DEFERRED_RATE_LIMITED = "rate_limited"
DEFERRED_OWNER_CAP = "owner_cap"

_LEAD_ENTITY_TYPE = "Lead"


@dataclass(frozen=True)
class DeferredLead:
    lead_id: uuid.UUID
    owner_user_id: uuid.UUID
    reason: str


@dataclass
class DispatchResult:
    processed: int = 0
    notifications: list[CRMNotification] = field(default_factory=list)
    failed_owners: list[uuid.UUID] = field(default_factory=list)
    deferred_leads: list[DeferredLead] = field(default_factory=list)
    system_notification: CRMNotification | None = None

    @property
    def deferred(self) -> int:
        return len(self.deferred_leads)

    def deferred_reasons(self) -> dict[str, int]:
        reasons: dict[str, int] = {}
        for item in self.deferred_leads:
            reasons[item.reason] = reasons.get(item.reason, 0) + 1
        return reasons


def serialize_notification(notification: CRMNotification) -> dict[str, Any]:
    """Payload shape shared by the push channel and the notification stream."""
    return {
        "id": str(notification.id),
        "user_id": str(notification.user_id) if notification.user_id is not None else None,
        "type": notification.type,
        "priority": notification.priority,
        "title": notification.title,
        "message": notification.message,
        "data": notification.data,
        "is_read": notification.is_read,
        "related_entity_id": str(notification.related_entity_id) if notification.related_entity_id else None,
        "related_entity_type": notification.related_entity_type,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "expires_at": notification.expires_at.isoformat() if notification.expires_at else None,
    }


class NotificationDispatcher:
    """Turns freshly expired leads into owner notifications.

    Leads are grouped per owner. An owner who was notified within the cooldown window is
    skipped entirely, and an owner with more than ``max_notifications_per_owner`` leads
    gets one grouped notification covering the oldest ones. Everything skipped stays
    pending on the lead row and is picked up again by a later sweep.
    """

    def __init__(
        self,
        leads: LeadRepository,
        notifications: NotificationRepository,
        delivery: NotificationConnectionRegistry | None,
        config: SweepConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.leads = leads
        self.notifications = notifications
        self.delivery = delivery
        self.config = config
        self._clock = clock

    def dispatch(self, leads: Sequence[CRMLead], token: CancellationToken | None = None) -> DispatchResult:
        result = DispatchResult()
        groups = self._group_by_owner(leads)
        if not groups:
            return result

        for owner_user_id, group in groups.items():
            if token is not None:
                token.raise_if_cancelled()
            try:
                notification, deferred = self._dispatch_owner(owner_user_id, group)
            except Exception:
                self.notifications.rollback()
                logger.exception(
                    "lead_expiration_owner_dispatch_failed",
                    extra={"owner_user_id": str(owner_user_id), "lead_count": len(group)},
                )
                observe_owner_dispatch_failure()
                result.failed_owners.append(owner_user_id)
                continue

            result.deferred_leads.extend(deferred)
            if notification is not None:
                result.notifications.append(notification)
                result.processed += len(group) - len(deferred)
                self._push(notification)

        if result.deferred_leads:
            reasons = result.deferred_reasons()
            for reason, count in reasons.items():
                observe_notifications_deferred(reason, count)
            result.system_notification = self._create_system_notification(result.deferred_leads, reasons)
            if result.system_notification is not None:
                self._push(result.system_notification)

        return result

    def _group_by_owner(self, leads: Sequence[CRMLead]) -> dict[uuid.UUID, list[CRMLead]]:
        ordered = sorted(
            (lead for lead in leads if lead.owner_user_id is not None),
            key=lambda lead: (ensure_utc(lead.expiration_at), ensure_utc(lead.created_at)),
        )
        groups: dict[uuid.UUID, list[CRMLead]] = {}
        for lead in ordered:
            groups.setdefault(lead.owner_user_id, []).append(lead)
        return groups

    def _dispatch_owner(
        self,
        owner_user_id: uuid.UUID,
        group: list[CRMLead],
    ) -> tuple[CRMNotification | None, list[DeferredLead]]:
        now = self._clock()
        since = now - self.config.notification_cooldown
        if self.notifications.exists_recent_for_user(owner_user_id, LEAD_EXPIRED_NOTIFICATION_TYPES, since):
            logger.info(
                "lead_expiration_owner_rate_limited",
                extra={"owner_user_id": str(owner_user_id), "deferred": len(group)},
            )
            return None, [DeferredLead(lead.id, owner_user_id, DEFERRED_RATE_LIMITED) for lead in group]

        cap = self.config.max_notifications_per_owner
        covered = group[:cap]
        deferred = [DeferredLead(lead.id, owner_user_id, DEFERRED_OWNER_CAP) for lead in group[cap:]]

        notification = self._build_owner_notification(owner_user_id, covered, len(deferred), now)
        self.notifications.insert(notification)
        self.leads.mark_notified([lead.id for lead in covered], now)
        self.notifications.commit()

        observe_notification_created(notification.type)
        logger.info(
            "lead_expiration_owner_notified",
            extra={
                "owner_user_id": str(owner_user_id),
                "notification_id": str(notification.id),
                "notification_type": notification.type,
                "lead_count": len(covered),
                "deferred": len(deferred),
            },
        )
        return notification, deferred

    def _build_owner_notification(
        self,
        owner_user_id: uuid.UUID,
        covered: list[CRMLead],
        deferred_count: int,
        now: datetime,
    ) -> CRMNotification:
        if len(covered) == 1:
            lead = covered[0]
            return self._new_notification(
                user_id=owner_user_id,
                notification_type=NotificationType.LEAD_EXPIRED,
                priority=NotificationPriority.NORMAL,
                title="Lead expired",
                message=f"Lead {lead.display_name} expired before it was completed.",
                data={
                    "lead_id": str(lead.id),
                    "expiration_at": ensure_utc(lead.expiration_at).isoformat(),
                },
                related_entity_id=lead.id,
                now=now,
            )

        message = f"{len(covered)} of your leads expired before they were completed."
        if deferred_count:
            message += f" {deferred_count} more will be reported later."
        return self._new_notification(
            user_id=owner_user_id,
            notification_type=NotificationType.LEADS_EXPIRED_BATCH,
            priority=NotificationPriority.HIGH if deferred_count else NotificationPriority.NORMAL,
            title=f"{len(covered)} leads expired",
            message=message,
            data={
                "lead_ids": [str(lead.id) for lead in covered],
                "count": len(covered),
                "deferred_count": deferred_count,
            },
            related_entity_id=None,
            now=now,
        )

    def _create_system_notification(
        self,
        deferred_leads: list[DeferredLead],
        reasons: dict[str, int],
    ) -> CRMNotification | None:
        now = self._clock()
        notification = self._new_notification(
            user_id=None,
            notification_type=NotificationType.SYSTEM_DEFERRED_WORK,
            priority=NotificationPriority.LOW,
            title="Lead expiration notifications deferred",
            message=f"{len(deferred_leads)} expired lead notifications were deferred to a later run.",
            data={
                "deferred_lead_ids": [str(item.lead_id) for item in deferred_leads],
                "owner_user_ids": sorted({str(item.owner_user_id) for item in deferred_leads}),
                "reasons": reasons,
            },
            related_entity_id=None,
            now=now,
        )
        try:
            self.notifications.insert(notification)
            self.notifications.commit()
        except Exception:
            self.notifications.rollback()
            logger.exception("lead_expiration_system_notification_failed", extra={"deferred": len(deferred_leads)})
            return None

        observe_notification_created(notification.type)
        logger.info(
            "lead_expiration_notifications_deferred",
            extra={"notification_id": str(notification.id), "deferred": len(deferred_leads), "reason": reasons},
        )
        return notification

    def _new_notification(
        self,
        *,
        user_id: uuid.UUID | None,
        notification_type: NotificationType,
        priority: NotificationPriority,
        title: str,
        message: str,
        data: dict[str, Any],
        related_entity_id: uuid.UUID | None,
        now: datetime,
    ) -> CRMNotification:
        return CRMNotification(
            id=uuid.uuid4(),
            user_id=user_id,
            type=notification_type.value,
            priority=priority.value,
            title=title[:200],
            message=message[:1000],
            data=data,
            is_read=False,
            sent_at=now,
            expires_at=now + self.config.notification_retention,
            related_entity_id=related_entity_id,
            related_entity_type=_LEAD_ENTITY_TYPE,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    def _push(self, notification: CRMNotification) -> None:
        if self.delivery is None:
            return
        payload = serialize_notification(notification)
        try:
            if notification.user_id is None:
                self.delivery.push_system(payload)
            else:
                self.delivery.push_to_user(notification.user_id, payload)
        except Exception as exc:
            observe_push_failure()
            logger.warning(
                "notification_push_failed",
                extra={"notification_id": str(notification.id), "error": str(exc)},
            )
