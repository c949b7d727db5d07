from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.crm.expiration.scanner import CandidateScanner
from leadflow.crm.expiration.transition import StateTransitionApplier
from leadflow.crm.models import CRMLead, LeadStatus
from leadflow.crm.repositories import LeadRepository


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


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


def _clock() -> datetime:
    return NOW


def _add_lead(
    session: Session,
    *,
    expires_in: timedelta,
    status: LeadStatus = LeadStatus.REGISTERED,
    is_active: bool = True,
    owner_user_id: uuid.UUID | None = None,
) -> CRMLead:
    lead = CRMLead(
        id=uuid.uuid4(),
        status=status.value,
        owner_user_id=owner_user_id,
        company_name="Acme",
        expiration_at=NOW + expires_in,
        is_active=is_active,
    )
    session.add(lead)
    session.commit()
    return lead


def test_candidates_exclude_terminal_inactive_and_future_leads(db_session: Session) -> None:
    overdue = _add_lead(db_session, expires_in=timedelta(hours=-1))
    _add_lead(db_session, expires_in=timedelta(hours=1))
    _add_lead(db_session, expires_in=timedelta(hours=-1), status=LeadStatus.COMPLETED)
    _add_lead(db_session, expires_in=timedelta(hours=-1), status=LeadStatus.CANCELED)
    _add_lead(db_session, expires_in=timedelta(hours=-1), status=LeadStatus.EXPIRED)
    _add_lead(db_session, expires_in=timedelta(hours=-1), is_active=False)

    scanner = CandidateScanner(LeadRepository(db_session), clock=_clock)

    assert scanner.count_candidates() == 1
    assert [lead.id for lead in scanner.get_batch(0, 10)] == [overdue.id]


def test_batches_are_ordered_oldest_deadline_first(db_session: Session) -> None:
    newest = _add_lead(db_session, expires_in=timedelta(minutes=-5))
    oldest = _add_lead(db_session, expires_in=timedelta(days=-3))
    middle = _add_lead(db_session, expires_in=timedelta(hours=-2))

    scanner = CandidateScanner(LeadRepository(db_session), clock=_clock)

    assert [lead.id for lead in scanner.get_batch(0, 10)] == [oldest.id, middle.id, newest.id]


def test_offset_shifts_back_by_transitioned_leads(db_session: Session) -> None:
    for minutes in range(1, 6):
        _add_lead(db_session, expires_in=timedelta(minutes=-10 * minutes))

    repository = LeadRepository(db_session)
    scanner = CandidateScanner(repository, clock=_clock)
    applier = StateTransitionApplier(repository, clock=_clock)

    first = scanner.get_batch(0, 2)
    transitioned = applier.apply_batch(first)
    assert len(transitioned) == 2

    second = scanner.get_batch(1, 2, carried_over=len(transitioned))
    assert len(second) == 2
    assert not {lead.id for lead in second} & {lead.id for lead in first}

    # Without the carried-over shift the window would skip two still-eligible leads.
    assert len(scanner.get_batch(1, 2)) == 1


def test_total_batches() -> None:
    assert CandidateScanner.total_batches(0, 100) == 0
    assert CandidateScanner.total_batches(1, 100) == 1
    assert CandidateScanner.total_batches(100, 100) == 1
    assert CandidateScanner.total_batches(250, 100) == 3


def test_apply_batch_is_idempotent(db_session: Session) -> None:
    _add_lead(db_session, expires_in=timedelta(hours=-1))
    _add_lead(db_session, expires_in=timedelta(hours=-2))

    repository = LeadRepository(db_session)
    scanner = CandidateScanner(repository, clock=_clock)
    applier = StateTransitionApplier(repository, clock=_clock)
    leads = scanner.get_batch(0, 10)

    assert len(applier.apply_batch(leads)) == 2
    assert applier.apply_batch(leads) == []
    assert scanner.count_candidates() == 0

    statuses = db_session.scalars(select(CRMLead.status)).all()
    assert statuses == [LeadStatus.EXPIRED.value, LeadStatus.EXPIRED.value]
    assert db_session.scalars(select(CRMLead.row_version)).all() == [2, 2]


def test_apply_batch_skips_lead_changed_after_read(db_session: Session) -> None:
    untouched = _add_lead(db_session, expires_in=timedelta(hours=-1))
    completed = _add_lead(db_session, expires_in=timedelta(hours=-2))

    repository = LeadRepository(db_session)
    leads = CandidateScanner(repository, clock=_clock).get_batch(0, 10)

    # A concurrent writer completes one lead; the loaded objects still look eligible.
    db_session.execute(
        update(CRMLead)
        .where(CRMLead.id == completed.id)
        .values(status=LeadStatus.COMPLETED.value, row_version=CRMLead.row_version + 1)
        .execution_options(synchronize_session=False)
    )

    transitioned = StateTransitionApplier(repository, clock=_clock).apply_batch(leads)

    assert [lead.id for lead in transitioned] == [untouched.id]
    assert db_session.scalar(select(CRMLead.status).where(CRMLead.id == completed.id)) == LeadStatus.COMPLETED.value


def test_apply_batch_revalidates_against_current_time(db_session: Session) -> None:
    lead = _add_lead(db_session, expires_in=timedelta(hours=-1))
    repository = LeadRepository(db_session)
    leads = CandidateScanner(repository, clock=_clock).get_batch(0, 10)

    earlier = NOW - timedelta(hours=2)
    transitioned = StateTransitionApplier(repository, clock=lambda: earlier).apply_batch(leads)

    assert transitioned == []
    assert db_session.scalar(select(CRMLead.status).where(CRMLead.id == lead.id)) == LeadStatus.REGISTERED.value


def test_pending_notifications_require_owner_and_no_prior_notice(db_session: Session) -> None:
    owner = uuid.uuid4()
    pending = _add_lead(db_session, expires_in=timedelta(hours=-1), status=LeadStatus.EXPIRED, owner_user_id=owner)
    _add_lead(db_session, expires_in=timedelta(hours=-1), status=LeadStatus.EXPIRED)
    notified = _add_lead(db_session, expires_in=timedelta(hours=-1), status=LeadStatus.EXPIRED, owner_user_id=owner)
    notified.expiration_notified_at = NOW
    db_session.commit()

    scanner = CandidateScanner(LeadRepository(db_session), clock=_clock)

    assert scanner.count_pending_notifications() == 1
    assert [lead.id for lead in scanner.get_pending_notifications(10)] == [pending.id]
