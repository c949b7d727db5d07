from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from croniter import croniter  # type: ignore[import-untyped]
from sqlalchemy.orm import Session

from leadflow.core.config import Settings
from leadflow.crm.delivery import NotificationConnectionRegistry
from leadflow.crm.expiration.backoff import BackoffController
from leadflow.crm.expiration.config import SweepConfig
from leadflow.crm.expiration.executor import SweepExecutor, SweepOutcome, SweepResult
from leadflow.crm.models import utcnow


logger = logging.getLogger("leadflow.crm.expiration")

SERVICE_NAME = "lead-expiration"


class SchedulerState(str, enum.Enum):
    IDLE = "Idle"
    WAITING = "Waiting"
    RUNNING = "Running"
    BACKOFF = "Backoff"
    STOPPED = "Stopped"


def _cron_for(expression: str, base: datetime) -> croniter:
    fields = expression.split()
    if len(fields) == 6:
        return croniter(expression, base, second_at_beginning=True)
    if len(fields) == 5:
        return croniter(expression, base)
    raise ValueError(f"cron expression must have 5 or 6 fields: {expression!r}")


class LeadExpirationScheduler:
    """Drives sweeps on a cron schedule from a single background thread.

    The thread waits for the next trigger, waits out any backoff window, runs one sweep
    and feeds the outcome back into the backoff controller. Every wait is on the stop
    event so ``stop()`` takes effect immediately.
    """

    def __init__(
        self,
        executor: SweepExecutor,
        backoff: BackoffController,
        config: SweepConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.executor = executor
        self.backoff = backoff
        self.config = config
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.state = SchedulerState.IDLE
        self.next_run_at: datetime | None = None
        self.last_result: SweepResult | None = None
        self.fatal_error: str | None = None
        # Fails fast on a malformed expression.
        self.next_trigger(clock())

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: Callable[[], Session],
        delivery: NotificationConnectionRegistry | None,
        clock: Callable[[], datetime] = utcnow,
    ) -> LeadExpirationScheduler:
        config = SweepConfig.from_settings(settings)
        backoff = BackoffController(
            max_consecutive_errors=config.max_consecutive_errors,
            initial_delay=config.initial_backoff,
            max_delay=config.max_backoff,
            clock=clock,
        )
        executor = SweepExecutor(session_factory, delivery, config, clock=clock)
        return cls(executor, backoff, config, clock=clock)

    def next_trigger(self, now: datetime) -> datetime:
        return _cron_for(self.config.cron_schedule, now).get_next(datetime)

    @property
    def is_healthy(self) -> bool:
        return self.fatal_error is None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if not self.config.enabled:
            logger.info("lead_expiration_scheduler_disabled")
            return False
        if self.is_alive:
            return True
        self._thread = threading.Thread(target=self.run_forever, name="lead-expiration-scheduler", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: float | None = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("lead_expiration_scheduler_stop_timeout", extra={"state": self.state.value})
        self.state = SchedulerState.STOPPED

    def run_forever(self) -> None:
        if not self.config.enabled:
            return

        logger.info("lead_expiration_scheduler_started", extra={"state": self.state.value})
        try:
            while not self._stop_event.is_set():
                if not self._run_cycle():
                    break
        except Exception as exc:
            self.fatal_error = f"{type(exc).__name__}: {exc}"
            logger.exception("lead_expiration_scheduler_crashed")
        finally:
            self.state = SchedulerState.STOPPED
            self.next_run_at = None
            logger.info("lead_expiration_scheduler_stopped", extra={"state": self.state.value})

    def _run_cycle(self) -> bool:
        """One wait-then-sweep iteration. Returns False when the loop has to end."""
        now = self._clock()
        self.next_run_at = self.next_trigger(now)
        wait_seconds = max(0.0, (self.next_run_at - now).total_seconds())
        if self.state != SchedulerState.BACKOFF:
            self.state = SchedulerState.WAITING
        logger.info(
            "lead_expiration_next_run_scheduled",
            extra={"next_run_at": self.next_run_at.isoformat(), "delay_seconds": round(wait_seconds, 3)},
        )
        if self._stop_event.wait(wait_seconds):
            return False

        delay = self.backoff.should_delay()
        if delay > timedelta(0):
            self.state = SchedulerState.BACKOFF
            logger.warning(
                "lead_expiration_backoff_wait",
                extra={
                    "consecutive_failures": self.backoff.consecutive_failures,
                    "delay_seconds": delay.total_seconds(),
                },
            )
            if self._stop_event.wait(delay.total_seconds()):
                return False

        self.state = SchedulerState.RUNNING
        result = self.executor.run_once(stop_event=self._stop_event)
        self.last_result = result

        if result.outcome == SweepOutcome.CANCELLED:
            return False
        if result.outcome == SweepOutcome.FAILED and self.config.stop_on_unexpected_error:
            self.fatal_error = result.error or "unexpected sweep failure"
            logger.error(
                "lead_expiration_scheduler_fail_stop",
                extra={"sweep_id": result.sweep_id, "error": self.fatal_error},
            )
            return False
        if result.outcome != SweepOutcome.SKIPPED:
            self.backoff.record_result(result.success)

        self.state = SchedulerState.BACKOFF if self.backoff.in_backoff else SchedulerState.WAITING
        return True

    def trigger_now(self) -> SweepResult:
        """Runs a sweep on the caller's thread, sharing the scheduler's lock."""
        result = self.executor.run_once(stop_event=self._stop_event)
        if result.outcome not in (SweepOutcome.SKIPPED, SweepOutcome.CANCELLED):
            self.backoff.record_result(result.success)
        self.last_result = result
        return result

    def health(self) -> dict[str, Any]:
        if not self.config.enabled:
            status = "disabled"
        elif self.fatal_error is not None or self.state == SchedulerState.STOPPED:
            status = "stopped"
        elif self.is_alive:
            status = "running"
        else:
            status = "registered"

        return {
            "service_name": SERVICE_NAME,
            "status": status,
            "state": self.state.value,
            "healthy": self.is_healthy,
            "check_time": self._clock().isoformat(),
            "description": "Expires overdue leads on a cron schedule and notifies their owners",
            "cron_schedule": self.config.cron_schedule,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "consecutive_failures": self.backoff.consecutive_failures,
            "backoff_remaining_seconds": self.backoff.should_delay().total_seconds(),
            "last_run": self.last_result.to_dict() if self.last_result else None,
            "fatal_error": self.fatal_error,
        }
