"""
Sync Health Monitoring Service.

Records one row per integration sync run (start, finish, record counts,
error) so operators can see which integrations are failing or stuck, and
keeps a separate log of errors with their stack traces.
"""
import sqlite3
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Optional

from api.utils.db_paths import get_identity_db_path

logger = logging.getLogger(__name__)

# Maximum age before an integration is considered stale
SYNC_STALE_HOURS = 24


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RUNNING = "running"
    SKIPPED = "skipped"
    PARTIAL = "partial"  # stopped by the time budget, cursor kept


@dataclass
class SyncHealth:
    """Health status for one integration."""
    source: str
    provider: Optional[str]
    last_sync: Optional[datetime]
    last_status: Optional[SyncStatus]
    last_error: Optional[str]
    is_stale: bool
    hours_since_sync: Optional[float]


def get_sync_health_db(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Get connection to the sync health tables (inside the identity database)."""
    conn = sqlite3.connect(db_path or get_identity_db_path(), timeout=30.0)
    conn.row_factory = sqlite3.Row
    _init_schema(conn)
    return conn


def _init_schema(conn: sqlite3.Connection):
    """Initialize sync health schema."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source TEXT NOT NULL,
            provider TEXT,
            status TEXT NOT NULL,
            trigger_source TEXT DEFAULT 'scheduled',
            started_at TEXT NOT NULL,
            completed_at TEXT,
            calls_synced INTEGER DEFAULT 0,
            accounts_synced INTEGER DEFAULT 0,
            contacts_synced INTEGER DEFAULT 0,
            opportunities_synced INTEGER DEFAULT 0,
            error_message TEXT,
            duration_seconds REAL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_runs_source ON sync_runs(source);
        CREATE INDEX IF NOT EXISTS idx_sync_runs_started ON sync_runs(started_at DESC);

        CREATE TABLE IF NOT EXISTS sync_errors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            error_type TEXT,
            error_message TEXT NOT NULL,
            stack_trace TEXT,
            context TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sync_errors_source ON sync_errors(source);
    """)
    conn.commit()


def record_sync_start(
    source: str,
    provider: Optional[str] = None,
    trigger_source: str = "scheduled",
    db_path: Optional[str] = None,
) -> int:
    """
    Record the start of a sync run for one integration.

    Returns:
        Run ID for updating completion status
    """
    conn = get_sync_health_db(db_path)
    cursor = conn.execute(
        """
        INSERT INTO sync_runs (source, provider, status, trigger_source, started_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (source, provider, SyncStatus.RUNNING.value, trigger_source, datetime.now(timezone.utc).isoformat())
    )
    conn.commit()
    run_id = cursor.lastrowid
    conn.close()
    logger.info(f"Started sync for {provider or source} (run_id={run_id})")
    return run_id


def record_sync_complete(
    run_id: int,
    status: SyncStatus,
    calls_synced: int = 0,
    accounts_synced: int = 0,
    contacts_synced: int = 0,
    opportunities_synced: int = 0,
    error_message: Optional[str] = None,
    db_path: Optional[str] = None,
):
    """Record completion of a sync run."""
    conn = get_sync_health_db(db_path)

    row = conn.execute(
        "SELECT started_at FROM sync_runs WHERE id = ?", (run_id,)
    ).fetchone()

    duration = None
    if row:
        started = datetime.fromisoformat(row["started_at"])
        duration = (datetime.now(timezone.utc) - started).total_seconds()

    conn.execute(
        """
        UPDATE sync_runs SET
            status = ?,
            completed_at = ?,
            calls_synced = ?,
            accounts_synced = ?,
            contacts_synced = ?,
            opportunities_synced = ?,
            error_message = ?,
            duration_seconds = ?
        WHERE id = ?
        """,
        (
            status.value,
            datetime.now(timezone.utc).isoformat(),
            calls_synced,
            accounts_synced,
            contacts_synced,
            opportunities_synced,
            error_message,
            duration,
            run_id,
        )
    )
    conn.commit()
    conn.close()

    if status == SyncStatus.FAILED:
        logger.error(f"Sync failed for run_id={run_id}: {error_message}")
    else:
        logger.info(f"Sync completed for run_id={run_id}: {status.value}")


def record_sync_error(
    source: str,
    error_message: str,
    error_type: Optional[str] = None,
    stack_trace: Optional[str] = None,
    context: Optional[str] = None,
    db_path: Optional[str] = None,
):
    """Record a sync error for later analysis."""
    conn = get_sync_health_db(db_path)
    conn.execute(
        """
        INSERT INTO sync_errors (source, timestamp, error_type, error_message, stack_trace, context)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            source,
            datetime.now(timezone.utc).isoformat(),
            error_type,
            error_message,
            stack_trace,
            context,
        )
    )
    conn.commit()
    conn.close()
    logger.error(f"Recorded sync error for {source}: {error_message}")


def get_sync_health(source: str, db_path: Optional[str] = None) -> SyncHealth:
    """Get health status for one integration from its latest finished run."""
    conn = get_sync_health_db(db_path)
    row = conn.execute(
        """
        SELECT source, provider, status, completed_at, error_message
        FROM sync_runs
        WHERE source = ? AND status != 'running'
        ORDER BY completed_at DESC
        LIMIT 1
        """,
        (source,)
    ).fetchone()
    conn.close()

    if not row:
        return SyncHealth(
            source=source,
            provider=None,
            last_sync=None,
            last_status=None,
            last_error=None,
            is_stale=True,
            hours_since_sync=None,
        )

    last_sync = datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
    hours_since = None
    is_stale = True
    if last_sync:
        hours_since = (datetime.now(timezone.utc) - last_sync).total_seconds() / 3600
        is_stale = hours_since > SYNC_STALE_HOURS

    return SyncHealth(
        source=source,
        provider=row["provider"],
        last_sync=last_sync,
        last_status=SyncStatus(row["status"]),
        last_error=row["error_message"],
        is_stale=is_stale,
        hours_since_sync=hours_since,
    )


def get_failed_syncs(hours: int = 24, db_path: Optional[str] = None) -> list[dict]:
    """Get failed sync runs in the last N hours."""
    conn = get_sync_health_db(db_path)
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()

    rows = conn.execute(
        """
        SELECT source, provider, status, started_at, completed_at, error_message
        FROM sync_runs
        WHERE status = 'failed' AND started_at > ?
        ORDER BY started_at DESC
        """,
        (cutoff,)
    ).fetchall()
    conn.close()

    return [dict(row) for row in rows]


def get_recent_errors(source: Optional[str] = None, limit: int = 50, db_path: Optional[str] = None) -> list[dict]:
    """Get recent sync errors."""
    conn = get_sync_health_db(db_path)

    if source:
        rows = conn.execute(
            "SELECT * FROM sync_errors WHERE source = ? ORDER BY timestamp DESC LIMIT ?",
            (source, limit)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM sync_errors ORDER BY timestamp DESC LIMIT ?",
            (limit,)
        ).fetchall()
    conn.close()

    return [dict(row) for row in rows]


def get_sync_summary(db_path: Optional[str] = None) -> dict:
    """Summary of sync health across every integration that has run."""
    conn = get_sync_health_db(db_path)
    sources = [r["source"] for r in conn.execute("SELECT DISTINCT source FROM sync_runs").fetchall()]
    conn.close()

    all_health = [get_sync_health(source, db_path) for source in sources]
    healthy = [h for h in all_health if not h.is_stale and h.last_status == SyncStatus.SUCCESS]
    stale = [h for h in all_health if h.is_stale]
    failed = [h for h in all_health if h.last_status == SyncStatus.FAILED]
    partial = [h for h in all_health if h.last_status == SyncStatus.PARTIAL]

    return {
        "total_sources": len(all_health),
        "healthy": len(healthy),
        "stale": len(stale),
        "failed": len(failed),
        "partial": len(partial),
        "stale_sources": [h.source for h in stale],
        "failed_sources": [h.source for h in failed],
        "all_healthy": len(stale) == 0 and len(failed) == 0,
    }
