#!/usr/bin/env python3
"""
Run one sync pass over every integration with health monitoring.

Meant for cron when the API's in-process scheduler is disabled. It:
1. Syncs every enabled ACTIVE or ERROR integration config
2. Polls unified-API CRM linked accounts when the unified API is configured
3. Records each run in the sync_runs table
4. Exits with non-zero status if any integration failed

Usage:
    python scripts/run_all_syncs.py [--dry-run] [--status] [--trigger TYPE]

Options:
    --dry-run         List the integrations that would sync, without syncing
    --status          Just show the sync health summary
    --trigger TYPE    How sync was triggered: scheduled (default), manual, startup
"""
# Load environment variables from .env FIRST, before any other imports
# This is critical for cron which doesn't have access to shell environment
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.sync_engine import SyncEngine, get_sync_engine
from api.services.sync_health import SyncStatus, get_sync_summary
from config.settings import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def run_all_syncs(
    trigger: str = "scheduled",
    dry_run: bool = False,
    engine: Optional[SyncEngine] = None,
    include_unified: Optional[bool] = None,
) -> dict:
    """
    Run every integration sync once and summarize the outcome.

    Returns:
        Dict with per-integration outcomes and success/failure counts
    """
    engine = engine or get_sync_engine()
    start_time = datetime.now(timezone.utc)

    if dry_run:
        configs = engine.store.list_syncable_configs()
        for config in configs:
            logger.info(f"[DRY RUN] Would sync {config.provider} integration {config.id} (org {config.organization_id})")
        return {
            "integrations_run": 0,
            "would_run": len(configs),
            "succeeded": 0,
            "failed": 0,
            "failed_integrations": [],
            "outcomes": [],
            "unified_linked_accounts_synced": 0,
            "trigger": trigger,
            "dry_run": True,
        }

    outcomes = engine.sync_all(trigger_source=trigger)
    failed = [o for o in outcomes if o.status == SyncStatus.FAILED]

    unified_synced = 0
    if include_unified is None:
        include_unified = settings.unified_api_enabled
    if include_unified:
        from api.services.unified_ingest import UnifiedSyncService
        service = UnifiedSyncService(store=engine.store, resolver=engine.resolver, queue=engine.queue)
        try:
            unified_synced = service.poll_all_linked_accounts()
        finally:
            service.client.close()

    duration_seconds = (datetime.now(timezone.utc) - start_time).total_seconds()

    logger.info("=" * 60)
    logger.info("SYNC RUN COMPLETE")
    logger.info(f"Integrations: {len(outcomes)}")
    logger.info(f"Succeeded: {len(outcomes) - len(failed)}")
    logger.info(f"Failed: {len(failed)}")
    if failed:
        logger.error(f"Failed integrations: {', '.join(o.config_id for o in failed)}")
    if include_unified:
        logger.info(f"Unified-API linked accounts synced: {unified_synced}")
    logger.info(f"Duration: {duration_seconds:.1f}s")
    logger.info("=" * 60)

    return {
        "integrations_run": len(outcomes),
        "succeeded": len(outcomes) - len(failed),
        "failed": len(failed),
        "failed_integrations": [o.config_id for o in failed],
        "outcomes": [o.to_dict() for o in outcomes],
        "unified_linked_accounts_synced": unified_synced,
        "duration_seconds": duration_seconds,
        "trigger": trigger,
        "dry_run": False,
    }


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run integration syncs")
    parser.add_argument("--dry-run", action="store_true", help="Don't actually sync")
    parser.add_argument("--status", action="store_true", help="Just show sync status")
    parser.add_argument("--trigger", choices=["scheduled", "manual", "startup"], default="scheduled",
                        help="How sync was triggered (default: scheduled)")
    args = parser.parse_args(argv)

    if args.status:
        summary = get_sync_summary()
        print(f"\nSync Health Summary:")
        print(f"  Total integrations: {summary['total_sources']}")
        print(f"  Healthy: {summary['healthy']}")
        print(f"  Stale: {summary['stale']} {summary['stale_sources']}")
        print(f"  Failed: {summary['failed']} {summary['failed_sources']}")
        print(f"  Partial: {summary['partial']}")
        print(f"  All healthy: {summary['all_healthy']}")
        return 0 if summary["all_healthy"] else 1

    result = run_all_syncs(trigger=args.trigger, dry_run=args.dry_run)

    # Exit with error if any sync failed
    if result["failed"] > 0:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
