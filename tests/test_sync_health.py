"""
Tests for sync health monitoring.

Ensures every integration's runs are recorded and failures are visible.
"""
import pytest
from datetime import datetime, timezone, timedelta

from api.services.sync_health import (
    SYNC_STALE_HOURS,
    SyncStatus,
    get_failed_syncs,
    get_recent_errors,
    get_sync_health,
    get_sync_health_db,
    get_sync_summary,
    record_sync_complete,
    record_sync_error,
    record_sync_start,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary sync health database."""
    path = str(tmp_path / "identity.db")
    get_sync_health_db(path).close()
    return path


class TestSyncHealthRecording:
    """Tests for recording sync operations."""

    def test_record_sync_start(self, db_path):
        run_id = record_sync_start("cfg-1", provider="GONG", db_path=db_path)

        assert run_id > 0
        conn = get_sync_health_db(db_path)
        row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
        conn.close()
        assert row["status"] == "running"
        assert row["provider"] == "GONG"
        assert row["trigger_source"] == "scheduled"

    def test_record_sync_complete(self, db_path):
        run_id = record_sync_start("cfg-1", db_path=db_path)

        record_sync_complete(run_id, SyncStatus.SUCCESS, calls_synced=12, accounts_synced=3, db_path=db_path)

        conn = get_sync_health_db(db_path)
        row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
        conn.close()
        assert row["status"] == "success"
        assert row["calls_synced"] == 12
        assert row["accounts_synced"] == 3
        assert row["duration_seconds"] >= 0

    def test_record_sync_error(self, db_path):
        record_sync_error("cfg-1", "401 Unauthorized", error_type="HTTPError", db_path=db_path)

        errors = get_recent_errors("cfg-1", db_path=db_path)
        assert len(errors) == 1
        assert errors[0]["error_type"] == "HTTPError"
        assert get_recent_errors("cfg-2", db_path=db_path) == []


class TestSyncHealthStatus:
    """Tests for health queries."""

    def test_never_synced_is_stale(self, db_path):
        health = get_sync_health("cfg-1", db_path=db_path)
        assert health.is_stale
        assert health.last_status is None

    def test_recent_success_is_healthy(self, db_path):
        run_id = record_sync_start("cfg-1", provider="ZOOM", db_path=db_path)
        record_sync_complete(run_id, SyncStatus.SUCCESS, db_path=db_path)

        health = get_sync_health("cfg-1", db_path=db_path)

        assert not health.is_stale
        assert health.last_status == SyncStatus.SUCCESS
        assert health.provider == "ZOOM"

    def test_old_sync_is_stale(self, db_path):
        old = (datetime.now(timezone.utc) - timedelta(hours=SYNC_STALE_HOURS + 1)).isoformat()
        conn = get_sync_health_db(db_path)
        conn.execute(
            "INSERT INTO sync_runs (source, status, started_at, completed_at) VALUES (?, ?, ?, ?)",
            ("cfg-1", "success", old, old),
        )
        conn.commit()
        conn.close()

        assert get_sync_health("cfg-1", db_path=db_path).is_stale

    def test_failed_syncs_and_summary(self, db_path):
        ok = record_sync_start("cfg-ok", db_path=db_path)
        record_sync_complete(ok, SyncStatus.SUCCESS, db_path=db_path)
        bad = record_sync_start("cfg-bad", db_path=db_path)
        record_sync_complete(bad, SyncStatus.FAILED, error_message="boom", db_path=db_path)
        partial = record_sync_start("cfg-partial", db_path=db_path)
        record_sync_complete(partial, SyncStatus.PARTIAL, db_path=db_path)

        failed = get_failed_syncs(db_path=db_path)
        summary = get_sync_summary(db_path=db_path)

        assert [f["source"] for f in failed] == ["cfg-bad"]
        assert summary["total_sources"] == 3
        assert summary["healthy"] == 1
        assert summary["failed_sources"] == ["cfg-bad"]
        assert summary["partial"] == 1
        assert summary["all_healthy"] is False
