from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from collections.abc import Callable
from contextvars import Token
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.context import reset_correlation_id, set_correlation_id
from leadflow.crm.delivery import NotificationConnectionRegistry
from leadflow.crm.expiration.cancellation import CancellationToken, InterruptReason, SweepInterrupted
from leadflow.crm.expiration.config import SweepConfig
from leadflow.crm.expiration.dispatcher import DispatchResult, NotificationDispatcher
from leadflow.crm.expiration.scanner import CandidateScanner
from leadflow.crm.expiration.transition import StateTransitionApplier
from leadflow.crm.models import CRMLead, utcnow
from leadflow.crm.repositories import LeadRepository, NotificationRepository
from leadflow.metrics import observe_leads_expired, observe_sweep
from leadflow.otel import record_sweep_attributes, sweep_span


logger = logging.getLogger("leadflow.crm.expiration")


class SweepOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    STORE_ERROR = "store_error"
    FAILED = "failed"


@dataclass
class SweepResult:
    outcome: SweepOutcome
    sweep_id: str
    started_at: datetime
    finished_at: datetime | None = None
    candidates: int = 0
    batches: int = 0
    expired: int = 0
    notified: int = 0
    deferred: int = 0
    notification_ids: list[str] = field(default_factory=list)
    failed_owners: list[str] = field(default_factory=list)
    deferred_reasons: dict[str, int] = field(default_factory=dict)
    notifications_deactivated: int = 0
    notifications_purged: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == SweepOutcome.SUCCEEDED

    @property
    def counts_as_failure(self) -> bool:
        return self.outcome in (SweepOutcome.TIMED_OUT, SweepOutcome.STORE_ERROR, SweepOutcome.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sweep_id": self.sweep_id,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "candidates": self.candidates,
            "batches": self.batches,
            "expired": self.expired,
            "notified": self.notified,
            "deferred": self.deferred,
            "deferred_reasons": dict(self.deferred_reasons),
            "failed_owners": list(self.failed_owners),
            "notifications_deactivated": self.notifications_deactivated,
            "notifications_purged": self.notifications_purged,
            "error": self.error,
        }


class SweepExecutor:
    """Runs one expiration sweep end to end.

    At most one sweep runs at a time per executor; a caller that cannot take the lock
    within ``lock_timeout_seconds`` gets a ``SKIPPED`` result instead of waiting.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        delivery: NotificationConnectionRegistry | None,
        config: SweepConfig,
        clock: Callable[[], datetime] = utcnow,
        lock: threading.Lock | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.delivery = delivery
        self.config = config
        self._clock = clock
        self._lock = lock or threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def run_once(self, stop_event: threading.Event | None = None) -> SweepResult:
        sweep_id = f"sweep-{uuid.uuid4().hex}"
        started_at = self._clock()
        started = time.perf_counter()

        if not self._lock.acquire(timeout=self.config.lock_timeout_seconds):
            result = SweepResult(SweepOutcome.SKIPPED, sweep_id, started_at, finished_at=self._clock())
            logger.warning("lead_expiration_sweep_skipped", extra={"sweep_id": sweep_id, "reason": "lock_timeout"})
            observe_sweep(result.outcome.value, time.perf_counter() - started)
            return result

        correlation_token: Token[str | None] | None = None
        session: Session | None = None
        try:
            correlation_token = set_correlation_id(sweep_id)
            result = SweepResult(SweepOutcome.SUCCEEDED, sweep_id, started_at)
            with sweep_span(sweep_id) as span:
                logger.info("lead_expiration_sweep_started", extra={"sweep_id": sweep_id})
                try:
                    token = CancellationToken(
                        timeout_seconds=self.config.execution_timeout_seconds,
                        stop_event=stop_event,
                    )
                    session = self.session_factory()
                    self._run_pipeline(session, token, result)
                except SweepInterrupted as exc:
                    _rollback(session)
                    result.outcome = (
                        SweepOutcome.CANCELLED if exc.reason == InterruptReason.SHUTDOWN else SweepOutcome.TIMED_OUT
                    )
                except SQLAlchemyError as exc:
                    _rollback(session)
                    result.outcome = SweepOutcome.STORE_ERROR
                    result.error = str(exc)
                    logger.exception("lead_expiration_sweep_store_error", extra={"sweep_id": sweep_id})
                except Exception as exc:
                    _rollback(session)
                    result.outcome = SweepOutcome.FAILED
                    result.error = f"{type(exc).__name__}: {exc}"
                    logger.exception("lead_expiration_sweep_failed", extra={"sweep_id": sweep_id})

                record_sweep_attributes(
                    span,
                    outcome=result.outcome.value,
                    candidates=result.candidates,
                    expired=result.expired,
                    deferred=result.deferred,
                    notifications_created=len(result.notification_ids),
                    failed=result.counts_as_failure,
                )

            result.finished_at = self._clock()
            duration = time.perf_counter() - started
            observe_sweep(result.outcome.value, duration)
            log = logger.info if result.success else logger.warning
            log(
                "lead_expiration_sweep_completed",
                extra={
                    "sweep_id": sweep_id,
                    "outcome": result.outcome.value,
                    "candidates": result.candidates,
                    "expired": result.expired,
                    "notified": result.notified,
                    "deferred": result.deferred,
                    "duration_ms": round(duration * 1000, 2),
                },
            )
            return result
        finally:
            if session is not None:
                session.close()
            if correlation_token is not None:
                reset_correlation_id(correlation_token)
            self._lock.release()

    def _run_pipeline(self, session: Session, token: CancellationToken, result: SweepResult) -> None:
        leads = LeadRepository(session)
        notifications = NotificationRepository(session)
        scanner = CandidateScanner(leads, clock=self._clock)
        applier = StateTransitionApplier(leads, clock=self._clock)
        dispatcher = NotificationDispatcher(leads, notifications, self.delivery, self.config, clock=self._clock)

        token.raise_if_cancelled()
        result.candidates = scanner.count_candidates()
        token.raise_if_cancelled()
        pending = scanner.count_pending_notifications()
        if result.candidates == 0 and pending == 0:
            logger.info("lead_expiration_nothing_to_do", extra={"sweep_id": result.sweep_id})
        else:
            fresh = self._expire_candidates(scanner, applier, token, result)
            token.raise_if_cancelled()
            dispatch = dispatcher.dispatch(self._dispatch_set(scanner, fresh), token=token)
            self._record_dispatch(result, dispatch)

        token.raise_if_cancelled()
        self._clean_notifications(notifications, result)

    def _expire_candidates(
        self,
        scanner: CandidateScanner,
        applier: StateTransitionApplier,
        token: CancellationToken,
        result: SweepResult,
    ) -> list[CRMLead]:
        fresh: list[CRMLead] = []
        left_filter = 0
        total_batches = scanner.total_batches(result.candidates, self.config.batch_size)
        for batch_index in range(total_batches):
            if batch_index > 0:
                token.sleep(self.config.batch_pause_seconds)
            token.raise_if_cancelled()
            batch = scanner.get_batch(batch_index, self.config.batch_size, carried_over=left_filter)
            if not batch:
                break
            batch_ids = [lead.id for lead in batch]
            token.raise_if_cancelled()
            transitioned = applier.apply_batch(batch)
            left_filter += len(batch_ids) - scanner.count_still_eligible(batch_ids)
            fresh.extend(transitioned)
            result.batches += 1
            result.expired += len(transitioned)
            observe_leads_expired(len(transitioned))
            logger.info(
                "lead_expiration_batch_processed",
                extra={
                    "sweep_id": result.sweep_id,
                    "batch": batch_index + 1,
                    "total_batches": total_batches,
                    "expired": len(transitioned),
                },
            )
        return fresh

    def _dispatch_set(self, scanner: CandidateScanner, fresh: list[CRMLead]) -> list[CRMLead]:
        # Leads expired by this sweep are always dispatched; the older backlog fills in
        # up to the limit with a per-owner share so no owner is starved.
        selected = {lead.id: lead for lead in fresh}
        backlog = scanner.get_pending_notifications(
            self.config.notification_backlog_limit,
            per_owner_limit=self.config.max_notifications_per_owner,
        )
        for lead in backlog:
            selected.setdefault(lead.id, lead)
        return list(selected.values())

    def _clean_notifications(self, notifications: NotificationRepository, result: SweepResult) -> None:
        now = self._clock()
        result.notifications_deactivated = notifications.deactivate_expired(now)
        result.notifications_purged = notifications.purge_created_before(now - self.config.notification_purge_after)
        notifications.commit()
        if result.notifications_deactivated or result.notifications_purged:
            logger.info(
                "notification_cleanup_completed",
                extra={
                    "sweep_id": result.sweep_id,
                    "deactivated": result.notifications_deactivated,
                    "purged": result.notifications_purged,
                },
            )

    @staticmethod
    def _record_dispatch(result: SweepResult, dispatch: DispatchResult) -> None:
        result.notified = dispatch.processed
        result.deferred = dispatch.deferred
        result.deferred_reasons = dispatch.deferred_reasons()
        result.notification_ids = [str(notification.id) for notification in dispatch.notifications]
        if dispatch.system_notification is not None:
            result.notification_ids.append(str(dispatch.system_notification.id))
        result.failed_owners = [str(owner_user_id) for owner_user_id in dispatch.failed_owners]


def _rollback(session: Session | None) -> None:
    if session is not None:
        session.rollback()
