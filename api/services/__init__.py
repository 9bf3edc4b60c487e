"""
Identity Services Package.

This package contains the entity resolution, sync and merge services.
Use this module to import commonly-used services.

Example:
    from api.services import (
        get_identity_store,
        get_entity_resolver,
        get_resolution_queue,
    )

Key service modules:
- normalizer: company name and email domain normalization
- identity_store: account graph repository (sqlite)
- entity_resolver: tiered call -> account matching
- sync_engine: provider polling and persistence
- resolution_queue: manual review of low-confidence calls
- account_merge: duplicate detection, merge and undo
"""

# ============================================================================
# Storage & Resolution
# ============================================================================

from api.services.identity_store import (
    Account,
    Call,
    Contact,
    MatchMethod,
    get_identity_store,
)

from api.services.entity_resolver import (
    ResolutionResult,
    get_entity_resolver,
)

# ============================================================================
# Sync
# ============================================================================

from api.services.sync_engine import (
    SyncOutcome,
    get_sync_engine,
)

# ============================================================================
# Review & Merge
# ============================================================================

from api.services.resolution_queue import get_resolution_queue
from api.services.account_merge import get_account_merge_engine
from api.services.merge_approval import get_merge_approval_service


__all__ = [
    # Storage & resolution
    "Account",
    "Call",
    "Contact",
    "MatchMethod",
    "get_identity_store",
    "ResolutionResult",
    "get_entity_resolver",
    # Sync
    "SyncOutcome",
    "get_sync_engine",
    # Review & merge
    "get_resolution_queue",
    "get_account_merge_engine",
    "get_merge_approval_service",
]
