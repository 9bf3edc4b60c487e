"""
Pytest configuration and shared fixtures for identity service tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- slow: Tests that spin up the FastAPI app (TestClient)
- integration: Tests requiring running server or external APIs

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not slow"        # Skip slow tests
- pytest                      # All tests
"""
import pytest

from tests.reset_singletons import reset_identity_singletons


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Slow tests (FastAPI TestClient)")
    config.addinivalue_line("markers", "integration: Integration tests (server required)")


@pytest.fixture(autouse=True)
def reset_singletons_after_test():
    yield
    reset_identity_singletons()


@pytest.fixture
def store(tmp_path):
    """IdentityStore over a throwaway database."""
    from api.services.identity_store import IdentityStore
    return IdentityStore(tmp_path / "identity.db")


@pytest.fixture
def org_id():
    return "org-1"


@pytest.fixture
def queue():
    from api.services.job_queue import InMemoryJobQueue
    return InMemoryJobQueue()


@pytest.fixture
def make_call(store, org_id):
    """
    Factory creating a call with participants.

    participants: list of (email, name) tuples
    """
    counter = {"n": 0}

    def _make(title="Weekly sync", participants=(), provider="ZOOM", occurred_at=None, org=None):
        counter["n"] += 1
        call = store.create_call(
            org or org_id,
            provider,
            title=title,
            external_id=f"ext-{counter['n']}",
            occurred_at=occurred_at or f"2026-01-{counter['n']:02d}T10:00:00+00:00",
        )
        for email, name in participants:
            store.add_participant(call.id, email=email, name=name)
        return call

    return _make


def pytest_collection_modifyitems(config, items):
    """Auto-mark integration tests by name."""
    for item in items:
        if "integration" in item.name or "real_" in item.name:
            item.add_marker(pytest.mark.integration)
