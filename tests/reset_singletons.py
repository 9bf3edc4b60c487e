"""
Centralized singleton reset utilities for testing.

Service singletons hold a store bound to whatever database was configured
when they were first built, so they must not leak between tests.

Usage in conftest.py:
    @pytest.fixture(autouse=True)
    def reset_singletons_after_test():
        yield
        reset_identity_singletons()
"""


def reset_identity_singletons() -> None:
    """Drop every cached service instance."""
    import api.services.account_merge as account_merge
    import api.services.entity_resolver as entity_resolver
    import api.services.identity_store as identity_store
    import api.services.job_queue as job_queue
    import api.services.merge_approval as merge_approval
    import api.services.provider_registry as provider_registry
    import api.services.resolution_queue as resolution_queue
    import api.services.sync_engine as sync_engine

    identity_store._identity_store = None
    entity_resolver._entity_resolver = None
    job_queue._job_queue = None
    provider_registry._provider_registry = None
    sync_engine._sync_engine = None
    resolution_queue._resolution_queue = None
    account_merge._merge_engine = None
    merge_approval._approval_service = None
