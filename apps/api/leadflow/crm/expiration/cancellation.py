from __future__ import annotations

import enum
import threading
import time


class InterruptReason(str, enum.Enum):
    DEADLINE = "deadline"
    SHUTDOWN = "shutdown"


class SweepInterrupted(Exception):
    def __init__(self, reason: InterruptReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


class CancellationToken:
    """Combines the per-sweep deadline with the host's stop signal.

    The pipeline calls ``raise_if_cancelled`` between store calls and uses ``sleep``
    for pauses, so both a shutdown and an expired deadline are observed promptly.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        self._stop_event = stop_event
        self.reason: InterruptReason | None = None

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> InterruptReason | None:
        if self.reason is not None:
            return self.reason
        if self._stop_event is not None and self._stop_event.is_set():
            self.reason = InterruptReason.SHUTDOWN
        elif self._deadline is not None and time.monotonic() >= self._deadline:
            self.reason = InterruptReason.DEADLINE
        return self.reason

    def raise_if_cancelled(self) -> None:
        reason = self.check()
        if reason is not None:
            raise SweepInterrupted(reason)

    def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        if seconds > 0:
            remaining = self.remaining()
            wait_for = seconds if remaining is None else min(seconds, remaining)
            if self._stop_event is not None:
                self._stop_event.wait(wait_for)
            else:
                time.sleep(wait_for)
        self.raise_if_cancelled()
