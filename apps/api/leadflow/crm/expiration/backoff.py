from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from leadflow.crm.models import utcnow


class BackoffController:
    """Tracks consecutive sweep failures and the delay owed before the next attempt.

    Below ``max_consecutive_errors`` failures no extra delay is imposed; from there on
    the delay doubles per failure, starting at ``initial_delay`` and capped at
    ``max_delay``. The delay is measured from the most recent failure.
    """

    def __init__(
        self,
        *,
        max_consecutive_errors: int = 3,
        initial_delay: timedelta = timedelta(minutes=30),
        max_delay: timedelta = timedelta(minutes=1440),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.max_consecutive_errors = max_consecutive_errors
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._clock = clock
        self.consecutive_failures = 0
        self.last_failure_at: datetime | None = None
        self.current_delay = initial_delay

    @property
    def in_backoff(self) -> bool:
        return self.consecutive_failures >= self.max_consecutive_errors and self.last_failure_at is not None

    def record_result(self, success: bool) -> None:
        if success:
            self.consecutive_failures = 0
            self.last_failure_at = None
            self.current_delay = self.initial_delay
            return

        self.consecutive_failures += 1
        self.last_failure_at = self._clock()
        if self.consecutive_failures >= self.max_consecutive_errors:
            exponent = min(self.consecutive_failures - self.max_consecutive_errors, 62)
            seconds = min(self.initial_delay.total_seconds() * (2**exponent), self.max_delay.total_seconds())
            self.current_delay = timedelta(seconds=seconds)

    def should_delay(self, now: datetime | None = None) -> timedelta:
        if not self.in_backoff or self.last_failure_at is None:
            return timedelta(0)
        elapsed = (now or self._clock()) - self.last_failure_at
        remaining = self.current_delay - elapsed
        return remaining if remaining > timedelta(0) else timedelta(0)
