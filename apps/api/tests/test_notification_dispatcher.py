from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.crm.expiration.config import SweepConfig
from leadflow.crm.expiration.dispatcher import (
    DEFERRED_OWNER_CAP,
    DEFERRED_RATE_LIMITED,
    NotificationDispatcher,
)
from leadflow.crm.models import (
    CRMLead,
    CRMNotification,
    LeadStatus,
    NotificationPriority,
    NotificationType,
    ensure_utc,
)
from leadflow.crm.repositories import LeadRepository, NotificationRepository


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class RecordingDelivery:
    def __init__(self) -> None:
        self.user_pushes: list[tuple[uuid.UUID, dict[str, Any]]] = []
        self.system_pushes: list[dict[str, Any]] = []

    def push_to_user(self, user_id: uuid.UUID, payload: dict[str, Any]) -> int:
        self.user_pushes.append((user_id, payload))
        return 1

    def push_system(self, payload: dict[str, Any]) -> int:
        self.system_pushes.append(payload)
        return 1


class BrokenDelivery:
    def push_to_user(self, user_id: uuid.UUID, payload: dict[str, Any]) -> int:
        raise ConnectionError("stream closed")

    def push_system(self, payload: dict[str, Any]) -> int:
        raise ConnectionError("stream closed")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


def _dispatcher(session: Session, delivery: Any, **overrides: Any) -> NotificationDispatcher:
    config = SweepConfig(**overrides)
    return NotificationDispatcher(
        LeadRepository(session),
        NotificationRepository(session),
        delivery,
        config,
        clock=lambda: NOW,
    )


def _expired_leads(session: Session, owner_user_id: uuid.UUID | None, count: int) -> list[CRMLead]:
    leads = [
        CRMLead(
            id=uuid.uuid4(),
            status=LeadStatus.EXPIRED.value,
            owner_user_id=owner_user_id,
            company_name=f"Lead {index}",
            expiration_at=NOW - timedelta(hours=count - index),
        )
        for index in range(count)
    ]
    session.add_all(leads)
    session.commit()
    return leads


def _notifications(session: Session, notification_type: NotificationType | None = None) -> list[CRMNotification]:
    query = select(CRMNotification)
    if notification_type is not None:
        query = query.where(CRMNotification.type == notification_type.value)
    return list(session.scalars(query))


def _pending_ids(session: Session) -> set[uuid.UUID]:
    return set(
        session.scalars(
            select(CRMLead.id).where(CRMLead.expiration_notified_at.is_(None), CRMLead.owner_user_id.is_not(None))
        )
    )


def test_three_leads_for_one_owner_produce_one_grouped_notification(
    db_session: Session, delivery: RecordingDelivery
) -> None:
    owner = uuid.uuid4()
    leads = _expired_leads(db_session, owner, 3)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    assert result.processed == 3
    assert result.deferred == 0
    assert result.system_notification is None
    assert len(result.notifications) == 1

    notification = result.notifications[0]
    assert notification.user_id == owner
    assert notification.type == NotificationType.LEADS_EXPIRED_BATCH.value
    assert notification.priority == NotificationPriority.NORMAL.value
    assert notification.data["count"] == 3
    assert _pending_ids(db_session) == set()
    assert [user_id for user_id, _ in delivery.user_pushes] == [owner]
    assert delivery.system_pushes == []


def test_single_lead_produces_lead_expired_notification(db_session: Session, delivery: RecordingDelivery) -> None:
    owner = uuid.uuid4()
    leads = _expired_leads(db_session, owner, 1)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    notification = result.notifications[0]
    assert notification.type == NotificationType.LEAD_EXPIRED.value
    assert notification.related_entity_id == leads[0].id
    assert notification.related_entity_type == "Lead"
    assert ensure_utc(notification.sent_at) == NOW
    assert ensure_utc(notification.expires_at) == NOW + timedelta(days=30)
    assert delivery.user_pushes[0][1]["type"] == NotificationType.LEAD_EXPIRED.value


def test_owner_cap_defers_excess_leads(db_session: Session, delivery: RecordingDelivery) -> None:
    owner = uuid.uuid4()
    leads = _expired_leads(db_session, owner, 15)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    assert result.processed == 10
    assert result.deferred == 5
    assert result.deferred_reasons() == {DEFERRED_OWNER_CAP: 5}

    owner_notifications = _notifications(db_session, NotificationType.LEADS_EXPIRED_BATCH)
    assert len(owner_notifications) == 1
    assert owner_notifications[0].priority == NotificationPriority.HIGH.value
    assert owner_notifications[0].data["deferred_count"] == 5
    # The oldest ten are the ones covered.
    assert owner_notifications[0].data["lead_ids"] == [str(lead.id) for lead in leads[:10]]

    system = _notifications(db_session, NotificationType.SYSTEM_DEFERRED_WORK)
    assert len(system) == 1
    assert system[0].user_id is None
    assert system[0].priority == NotificationPriority.LOW.value
    assert system[0].data["deferred_lead_ids"] == [str(lead.id) for lead in leads[10:]]
    assert system[0].data["reasons"] == {DEFERRED_OWNER_CAP: 5}
    assert _pending_ids(db_session) == {lead.id for lead in leads[10:]}
    assert len(delivery.system_pushes) == 1


def test_owner_within_cooldown_is_deferred(db_session: Session, delivery: RecordingDelivery) -> None:
    owner = uuid.uuid4()
    db_session.add(
        CRMNotification(
            id=uuid.uuid4(),
            user_id=owner,
            type=NotificationType.LEAD_EXPIRED.value,
            priority=NotificationPriority.NORMAL.value,
            title="Lead expired",
            message="earlier",
            created_at=NOW - timedelta(minutes=10),
        )
    )
    db_session.commit()
    leads = _expired_leads(db_session, owner, 2)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    assert result.notifications == []
    assert result.deferred_reasons() == {DEFERRED_RATE_LIMITED: 2}
    assert len(_notifications(db_session, NotificationType.LEAD_EXPIRED)) == 1
    assert len(_notifications(db_session, NotificationType.SYSTEM_DEFERRED_WORK)) == 1
    assert _pending_ids(db_session) == {lead.id for lead in leads}
    assert delivery.user_pushes == []


def test_cooldown_ignores_old_and_dismissed_notifications(db_session: Session, delivery: RecordingDelivery) -> None:
    owner = uuid.uuid4()
    db_session.add_all(
        [
            CRMNotification(
                id=uuid.uuid4(),
                user_id=owner,
                type=NotificationType.LEAD_EXPIRED.value,
                title="old",
                message="old",
                created_at=NOW - timedelta(minutes=61),
            ),
            CRMNotification(
                id=uuid.uuid4(),
                user_id=owner,
                type=NotificationType.LEADS_EXPIRED_BATCH.value,
                title="dismissed",
                message="dismissed",
                is_active=False,
                created_at=NOW - timedelta(minutes=5),
            ),
        ]
    )
    db_session.commit()
    leads = _expired_leads(db_session, owner, 1)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    assert result.processed == 1
    assert result.deferred == 0


def test_each_owner_gets_at_most_one_notification(db_session: Session, delivery: RecordingDelivery) -> None:
    first_owner, second_owner = uuid.uuid4(), uuid.uuid4()
    leads = _expired_leads(db_session, first_owner, 2) + _expired_leads(db_session, second_owner, 4)
    leads += _expired_leads(db_session, None, 2)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    assert sorted(str(n.user_id) for n in result.notifications) == sorted([str(first_owner), str(second_owner)])
    assert result.processed == 6


def test_failing_owner_is_isolated(
    db_session: Session,
    delivery: RecordingDelivery,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    good_owner, bad_owner = uuid.uuid4(), uuid.uuid4()
    bad_leads = _expired_leads(db_session, bad_owner, 2)
    good_leads = _expired_leads(db_session, good_owner, 1)

    original_insert = NotificationRepository.insert

    def flaky_insert(self: NotificationRepository, notification: CRMNotification) -> CRMNotification:
        if notification.user_id == bad_owner:
            raise RuntimeError("insert rejected")
        return original_insert(self, notification)

    monkeypatch.setattr(NotificationRepository, "insert", flaky_insert)

    result = _dispatcher(db_session, delivery).dispatch(bad_leads + good_leads)

    assert result.failed_owners == [bad_owner]
    assert [n.user_id for n in result.notifications] == [good_owner]
    assert _pending_ids(db_session) == {lead.id for lead in bad_leads}


def test_push_failure_does_not_undo_persistence(db_session: Session) -> None:
    owner = uuid.uuid4()
    leads = _expired_leads(db_session, owner, 12)

    result = _dispatcher(db_session, BrokenDelivery()).dispatch(leads)

    assert len(result.notifications) == 1
    assert result.system_notification is not None
    assert len(_notifications(db_session)) == 2


def test_dispatch_without_delivery_channel(db_session: Session) -> None:
    leads = _expired_leads(db_session, uuid.uuid4(), 1)

    result = _dispatcher(db_session, None).dispatch(leads)

    assert result.processed == 1


def test_dispatch_with_no_owned_leads_is_a_no_op(db_session: Session, delivery: RecordingDelivery) -> None:
    leads = _expired_leads(db_session, None, 3)

    result = _dispatcher(db_session, delivery).dispatch(leads)

    assert result.processed == 0
    assert _notifications(db_session) == []
