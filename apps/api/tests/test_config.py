from __future__ import annotations

from datetime import timedelta

import pytest

from leadflow.core.config import Settings
from leadflow.crm.expiration.config import SweepConfig


def test_settings_only_carry_fields_the_service_reads() -> None:
    fields = set(Settings.model_fields)

    assert "app_debug" not in fields
    assert "api_port" not in fields
    assert {"database_url", "jwt_secret", "lead_expiration_cron_schedule", "notification_purge_after_days"} <= fields


def test_sweep_config_reads_lead_expiration_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEAD_EXPIRATION_BATCH_SIZE", "25")
    monkeypatch.setenv("LEAD_EXPIRATION_BATCH_PAUSE_MS", "250")
    monkeypatch.setenv("LEAD_EXPIRATION_MAX_NOTIFICATIONS_PER_OWNER", "0")
    monkeypatch.setenv("NOTIFICATION_PURGE_AFTER_DAYS", "45")

    config = SweepConfig.from_settings(Settings())

    assert config.batch_size == 25
    assert config.batch_pause_seconds == 0.25
    assert config.max_notifications_per_owner == 1
    assert config.notification_purge_after == timedelta(days=45)
    assert config.notification_retention == timedelta(days=30)
