from __future__ import annotations

from datetime import datetime, timedelta, timezone

from leadflow.crm.expiration.backoff import BackoffController


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _controller(clock: FakeClock, **kwargs) -> BackoffController:  # type: ignore[no-untyped-def]
    return BackoffController(
        max_consecutive_errors=kwargs.get("max_consecutive_errors", 3),
        initial_delay=kwargs.get("initial_delay", timedelta(minutes=30)),
        max_delay=kwargs.get("max_delay", timedelta(minutes=1440)),
        clock=clock,
    )


def test_delay_sequence_doubles_after_threshold() -> None:
    clock = FakeClock(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc))
    backoff = _controller(clock)

    delays = []
    for _ in range(5):
        backoff.record_result(False)
        delays.append(backoff.current_delay)

    assert delays == [timedelta(minutes=m) for m in (30, 30, 30, 60, 120)]
    assert backoff.consecutive_failures == 5


def test_no_delay_below_threshold() -> None:
    clock = FakeClock(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc))
    backoff = _controller(clock)

    backoff.record_result(False)
    backoff.record_result(False)

    assert not backoff.in_backoff
    assert backoff.should_delay() == timedelta(0)


def test_delay_counts_down_from_last_failure() -> None:
    clock = FakeClock(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc))
    backoff = _controller(clock)
    for _ in range(3):
        backoff.record_result(False)

    assert backoff.in_backoff
    assert backoff.should_delay() == timedelta(minutes=30)

    clock.now += timedelta(minutes=20)
    assert backoff.should_delay() == timedelta(minutes=10)

    clock.now += timedelta(minutes=15)
    assert backoff.should_delay() == timedelta(0)


def test_delay_is_capped_at_max() -> None:
    clock = FakeClock(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc))
    backoff = _controller(clock)

    for _ in range(200):
        backoff.record_result(False)

    assert backoff.current_delay == timedelta(minutes=1440)
    assert backoff.should_delay() == timedelta(minutes=1440)


def test_success_resets_state() -> None:
    clock = FakeClock(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc))
    backoff = _controller(clock)
    for _ in range(4):
        backoff.record_result(False)

    backoff.record_result(True)

    assert backoff.consecutive_failures == 0
    assert backoff.last_failure_at is None
    assert backoff.current_delay == timedelta(minutes=30)
    assert backoff.should_delay() == timedelta(0)
