"""Tests for configuration settings."""
from pathlib import Path

from config.settings import Settings


def test_defaults():
    """Settings should have usable defaults without any environment."""
    settings = Settings(_env_file=None)

    assert settings.sync_time_budget_seconds == 300
    assert settings.crm_poll_interval_seconds == 900
    assert settings.enqueue_max_attempts == 3
    assert settings.unified_api_enabled is False


def test_env_aliases(monkeypatch):
    """IDENTITY_ and UNIFIED_API_ variables override defaults."""
    monkeypatch.setenv("IDENTITY_DB_PATH", "/tmp/other.db")
    monkeypatch.setenv("IDENTITY_SYNC_TIME_BUDGET", "60")
    monkeypatch.setenv("UNIFIED_API_KEY", "secret")

    settings = Settings(_env_file=None)

    assert settings.db_path == Path("/tmp/other.db")
    assert settings.sync_time_budget_seconds == 60
    assert settings.unified_api_enabled is True
