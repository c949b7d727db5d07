from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from leadflow.core.config import Settings


@dataclass(frozen=True)
class SweepConfig:
    enabled: bool = True
    cron_schedule: str = "0 */8 * * *"
    max_consecutive_errors: int = 3
    initial_backoff: timedelta = timedelta(minutes=30)
    max_backoff: timedelta = timedelta(minutes=1440)
    batch_size: int = 100
    batch_pause_seconds: float = 0.1
    execution_timeout_seconds: float = 300.0
    lock_timeout_seconds: float = 10.0
    max_notifications_per_owner: int = 10
    notification_cooldown: timedelta = timedelta(minutes=60)
    notification_backlog_limit: int = 1000
    notification_retention: timedelta = timedelta(days=30)
    notification_purge_after: timedelta = timedelta(days=90)
    stop_on_unexpected_error: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> SweepConfig:
        return cls(
            enabled=settings.lead_expiration_enabled,
            cron_schedule=settings.lead_expiration_cron_schedule,
            max_consecutive_errors=max(1, settings.lead_expiration_max_consecutive_errors),
            initial_backoff=timedelta(minutes=settings.lead_expiration_initial_backoff_minutes),
            max_backoff=timedelta(minutes=settings.lead_expiration_max_backoff_minutes),
            batch_size=max(1, settings.lead_expiration_batch_size),
            batch_pause_seconds=max(0, settings.lead_expiration_batch_pause_ms) / 1000,
            execution_timeout_seconds=float(settings.lead_expiration_execution_timeout_seconds),
            lock_timeout_seconds=float(settings.lead_expiration_lock_timeout_seconds),
            max_notifications_per_owner=max(1, settings.lead_expiration_max_notifications_per_owner),
            notification_cooldown=timedelta(minutes=settings.lead_expiration_notification_cooldown_minutes),
            notification_backlog_limit=max(1, settings.lead_expiration_notification_backlog_limit),
            notification_retention=timedelta(days=settings.notification_retention_days),
            notification_purge_after=timedelta(days=max(1, settings.notification_purge_after_days)),
            stop_on_unexpected_error=settings.lead_expiration_stop_on_unexpected_error,
        )
