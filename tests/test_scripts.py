"""
Tests for the command-line scripts (sync runner and account merge CLI).
"""
import pytest

from api.services.account_merge import AccountMergeEngine
from api.services.integration_types import CallRecordingProvider, NormalizedCall, ProviderPage
from api.services.provider_registry import ProviderRegistry
from api.services.sync_engine import SyncEngine
from scripts import merge_accounts, run_all_syncs

pytestmark = pytest.mark.unit


class StaticCallProvider(CallRecordingProvider):
    def __init__(self, calls=(), error=None):
        self.calls = list(calls)
        self.error = error

    def fetch_calls(self, credentials, cursor, since):
        if self.error:
            raise self.error
        return ProviderPage(data=self.calls)


@pytest.fixture
def sync_engine(store, queue):
    registry = ProviderRegistry()
    registry.register_call_provider("ZOOM", StaticCallProvider([NormalizedCall(external_id="z1", title="Hi")]))
    registry.register_call_provider("GONG", StaticCallProvider(error=RuntimeError("token revoked")))
    return SyncEngine(store, registry=registry, queue=queue, time_budget_seconds=60)


class TestRunAllSyncs:
    def test_dry_run_syncs_nothing(self, store, sync_engine, org_id):
        store.create_integration_config(org_id, "ZOOM")

        result = run_all_syncs.run_all_syncs(dry_run=True, engine=sync_engine, include_unified=False)

        assert result["would_run"] == 1
        assert result["integrations_run"] == 0
        assert store.count_calls(org_id) == 0

    def test_reports_failures(self, store, sync_engine, org_id):
        store.create_integration_config(org_id, "ZOOM")
        bad = store.create_integration_config(org_id, "GONG")

        result = run_all_syncs.run_all_syncs(trigger="manual", engine=sync_engine, include_unified=False)

        assert result["integrations_run"] == 2
        assert result["succeeded"] == 1
        assert result["failed_integrations"] == [bad.id]
        assert result["trigger"] == "manual"
        assert store.count_calls(org_id) == 1

    def test_main_exit_code(self, monkeypatch):
        monkeypatch.setattr(run_all_syncs, "run_all_syncs", lambda trigger, dry_run: {"failed": 1})
        assert run_all_syncs.main(["--trigger", "manual"]) == 1
        monkeypatch.setattr(run_all_syncs, "run_all_syncs", lambda trigger, dry_run: {"failed": 0})
        assert run_all_syncs.main([]) == 0


class TestMergeAccountsCli:
    @pytest.fixture
    def engine(self, store):
        return AccountMergeEngine(store)

    @pytest.fixture
    def pair(self, store, org_id):
        return store.create_account(org_id, "Acme", domain="acme.com"), store.create_account(org_id, "Acme Inc")

    def test_preview_without_execute(self, store, engine, org_id, pair, capsys):
        primary, secondary = pair

        code = merge_accounts.main(["--org", org_id, "--primary", primary.id, "--secondary", secondary.id], engine)

        assert code == 0
        assert "Secondary (merged): Acme Inc" in capsys.readouterr().out
        assert store.get_account(secondary.id) is not None

    def test_execute_and_undo(self, store, engine, org_id, pair):
        primary, secondary = pair

        code = merge_accounts.main(
            ["--org", org_id, "--primary", primary.id, "--secondary", secondary.id, "--execute"], engine
        )
        assert code == 0
        assert store.get_account(secondary.id) is None

        [run] = engine.list_merge_runs(org_id)
        assert run.requested_by == "cli"
        assert merge_accounts.main(["--org", org_id, "--undo", run.id], engine) == 0
        assert store.get_account(secondary.id) is not None
        assert merge_accounts.main(["--org", org_id, "--undo", run.id], engine) == 1

    def test_list_duplicates(self, engine, org_id, pair, capsys):
        assert merge_accounts.main(["--org", org_id, "--list-duplicates"], engine) == 0
        assert "Found 1 potential duplicate pairs" in capsys.readouterr().out

    def test_missing_account_fails(self, engine, org_id, pair):
        primary, _ = pair
        assert merge_accounts.main(["--org", org_id, "--primary", primary.id, "--secondary", "nope"], engine) == 1

    def test_usage_without_ids(self, engine, org_id):
        assert merge_accounts.main(["--org", org_id], engine) == 2
