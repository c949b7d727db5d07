from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.sql.elements import ColumnElement

from leadflow.crm.models import (
    TERMINAL_LEAD_STATUSES,
    CRMLead,
    CRMNotification,
    LeadStatus,
    ensure_utc,
)


def _expirable_filter(now: datetime) -> ColumnElement[bool]:
    return and_(
        CRMLead.is_active.is_(True),
        CRMLead.expiration_at < now,
        CRMLead.status.not_in(TERMINAL_LEAD_STATUSES),
    )


def _pending_notification_filter() -> ColumnElement[bool]:
    return and_(
        CRMLead.is_active.is_(True),
        CRMLead.status == LeadStatus.EXPIRED.value,
        CRMLead.expiration_notified_at.is_(None),
        CRMLead.owner_user_id.is_not(None),
    )


class LeadRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def count_eligible(self, now: datetime) -> int:
        return int(self.session.scalar(select(func.count()).select_from(CRMLead).where(_expirable_filter(now))) or 0)

    def read_page(self, now: datetime, offset: int, limit: int) -> list[CRMLead]:
        query = (
            select(CRMLead)
            .where(_expirable_filter(now))
            .order_by(CRMLead.expiration_at.asc(), CRMLead.created_at.asc(), CRMLead.id.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(query))

    def mark_expired(self, leads: Sequence[CRMLead], now: datetime) -> set[uuid.UUID]:
        """Flip leads to Expired in one transaction.

        Each row is guarded by its row_version and the eligibility predicate, so a lead
        that was completed, canceled or otherwise edited after it was read is left alone.
        Returns the ids that were actually updated.
        """
        pending = [(lead, lead.id, lead.row_version) for lead in leads]
        transitioned: set[uuid.UUID] = set()
        try:
            for _, lead_id, row_version in pending:
                result = self.session.execute(
                    update(CRMLead)
                    .where(
                        and_(
                            CRMLead.id == lead_id,
                            CRMLead.row_version == row_version,
                            CRMLead.status.not_in(TERMINAL_LEAD_STATUSES),
                            CRMLead.expiration_at < now,
                        )
                    )
                    .values(
                        status=LeadStatus.EXPIRED.value,
                        updated_at=now,
                        row_version=CRMLead.row_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    transitioned.add(lead_id)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        for lead, lead_id, _ in pending:
            if lead_id in transitioned:
                set_committed_value(lead, "status", LeadStatus.EXPIRED.value)
                set_committed_value(lead, "updated_at", now)
        return transitioned

    def count_pending_notification(self) -> int:
        return int(
            self.session.scalar(select(func.count()).select_from(CRMLead).where(_pending_notification_filter())) or 0
        )

    def count_eligible_among(self, lead_ids: Iterable[uuid.UUID], now: datetime) -> int:
        ids = list(lead_ids)
        if not ids:
            return 0
        return int(
            self.session.scalar(
                select(func.count()).select_from(CRMLead).where(and_(CRMLead.id.in_(ids), _expirable_filter(now)))
            )
            or 0
        )

    def read_pending_notification(self, limit: int, per_owner_limit: int | None = None) -> list[CRMLead]:
        """Oldest pending leads first.

        With ``per_owner_limit`` each owner contributes at most that many leads, so one
        owner's large backlog cannot crowd everyone else out of the window.
        """
        order = (CRMLead.expiration_at.asc(), CRMLead.created_at.asc(), CRMLead.id.asc())
        if per_owner_limit is None:
            query = select(CRMLead).where(_pending_notification_filter()).order_by(*order).limit(limit)
            return list(self.session.scalars(query))

        ranked = (
            select(
                CRMLead.id.label("lead_id"),
                func.row_number().over(partition_by=CRMLead.owner_user_id, order_by=order).label("owner_rank"),
            )
            .where(_pending_notification_filter())
            .subquery()
        )
        query = (
            select(CRMLead)
            .join(ranked, ranked.c.lead_id == CRMLead.id)
            .where(ranked.c.owner_rank <= per_owner_limit)
            .order_by(*order)
            .limit(limit)
        )
        return list(self.session.scalars(query))

    def mark_notified(self, lead_ids: Iterable[uuid.UUID], now: datetime) -> None:
        ids = list(lead_ids)
        if not ids:
            return
        self.session.execute(
            update(CRMLead)
            .where(CRMLead.id.in_(ids))
            .values(expiration_notified_at=now)
            .execution_options(synchronize_session=False)
        )

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


class NotificationRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def insert(self, notification: CRMNotification) -> CRMNotification:
        self.session.add(notification)
        self.session.flush()
        return notification

    def exists_recent_for_user(self, user_id: uuid.UUID, types: Iterable[str], since: datetime) -> bool:
        query = (
            select(CRMNotification.id)
            .where(
                and_(
                    CRMNotification.user_id == user_id,
                    CRMNotification.type.in_(list(types)),
                    CRMNotification.is_active.is_(True),
                    CRMNotification.created_at >= since,
                )
            )
            .limit(1)
        )
        return self.session.scalar(query) is not None

    def list_for_user(
        self,
        user_id: uuid.UUID,
        *,
        page: int = 1,
        page_size: int = 20,
        is_read: bool | None = None,
        notification_type: str | None = None,
    ) -> tuple[list[CRMNotification], int]:
        conditions: list[ColumnElement[bool]] = [
            CRMNotification.user_id == user_id,
            CRMNotification.is_active.is_(True),
        ]
        if is_read is not None:
            conditions.append(CRMNotification.is_read.is_(is_read))
        if notification_type is not None:
            conditions.append(CRMNotification.type == notification_type)

        total = int(self.session.scalar(select(func.count()).select_from(CRMNotification).where(and_(*conditions))) or 0)
        items = list(
            self.session.scalars(
                select(CRMNotification)
                .where(and_(*conditions))
                .order_by(CRMNotification.created_at.desc(), CRMNotification.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        )
        return items, total

    def get_for_user(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> CRMNotification | None:
        return self.session.scalar(
            select(CRMNotification).where(
                and_(
                    CRMNotification.id == notification_id,
                    CRMNotification.user_id == user_id,
                    CRMNotification.is_active.is_(True),
                )
            )
        )

    def stats_for_user(self, user_id: uuid.UUID, now: datetime) -> dict[str, Any]:
        rows = self.session.execute(
            select(CRMNotification.is_read, CRMNotification.expires_at).where(
                and_(CRMNotification.user_id == user_id, CRMNotification.is_active.is_(True))
            )
        ).all()
        total = len(rows)
        unread = sum(1 for is_read, _ in rows if not is_read)
        expired = sum(1 for _, expires_at in rows if expires_at is not None and ensure_utc(expires_at) < now)
        return {"total": total, "unread": unread, "read": total - unread, "expired": expired}

    def mark_all_read(self, user_id: uuid.UUID, now: datetime) -> int:
        notifications = list(
            self.session.scalars(
                select(CRMNotification).where(
                    and_(
                        CRMNotification.user_id == user_id,
                        CRMNotification.is_active.is_(True),
                        CRMNotification.is_read.is_(False),
                    )
                )
            )
        )
        for notification in notifications:
            notification.mark_as_read(now)
        return len(notifications)

    def mark_many_read(self, notification_ids: Iterable[uuid.UUID], user_id: uuid.UUID, now: datetime) -> int:
        ids = list(notification_ids)
        if not ids:
            return 0
        notifications = list(
            self.session.scalars(
                select(CRMNotification).where(
                    and_(
                        CRMNotification.id.in_(ids),
                        CRMNotification.user_id == user_id,
                        CRMNotification.is_active.is_(True),
                    )
                )
            )
        )
        for notification in notifications:
            if not notification.is_read:
                notification.mark_as_read(now)
        return len(notifications)

    def deactivate_expired(self, now: datetime) -> int:
        """Soft-deletes notifications whose expires_at has passed."""
        result = self.session.execute(
            update(CRMNotification)
            .where(
                and_(
                    CRMNotification.is_active.is_(True),
                    CRMNotification.expires_at.is_not(None),
                    CRMNotification.expires_at < now,
                )
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def purge_created_before(self, cutoff: datetime) -> int:
        result = self.session.execute(
            delete(CRMNotification)
            .where(CRMNotification.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
