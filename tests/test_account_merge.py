"""
Tests for AccountMergeEngine: duplicate detection, preview, merge and undo.
"""
import pytest

from api.services.account_merge import AccountMergeEngine
from api.services.identity_store import CrmEventType, MatchMethod, MergeRunStatus
from api.services.resilience import ConflictError, NotFoundError, ValidationError

pytestmark = pytest.mark.unit


@pytest.fixture
def engine(store):
    return AccountMergeEngine(store)


@pytest.fixture
def graph(store, org_id, make_call):
    """
    Two accounts for the same company with overlapping contacts.

    source: "Acme Inc" acme.io (+ alias acme-eu.com), salesforce id, industry
    target: "Acme" acme.com
    """
    source = store.create_account(org_id, "Acme Inc", domain="acme.io", salesforce_id="001", industry="Retail")
    target = store.create_account(org_id, "Acme", domain="acme.com")
    store.add_domain_alias(org_id, source.id, "acme-eu.com")

    call = make_call(participants=[("jane@acme.io", "Jane"), ("shared@acme.io", "Shared")])
    store.set_call_resolution(call.id, source.id, MatchMethod.EMAIL_DOMAIN, 0.95)
    jane = store.upsert_contact(source.id, "jane@acme.io", name="Jane")
    dup = store.upsert_contact(source.id, "shared@acme.io", name="Shared (source)")
    kept = store.upsert_contact(target.id, "shared@acme.io", name="Shared (target)")
    store.link_participants_to_contact(call.id, "jane@acme.io", jane.id)
    store.link_participants_to_contact(call.id, "shared@acme.io", dup.id)

    story_id = store.create_story(org_id, source.id, "Win story")
    event_id = store.add_crm_event(source.id, CrmEventType.CLOSED_WON, opportunity_id="006", stage_name="Won")
    access_id = store.grant_account_access(org_id, "user-1", source.id)

    return {
        "source": source,
        "target": target,
        "call": call,
        "jane": jane,
        "dup": dup,
        "kept": kept,
        "story_id": story_id,
        "event_id": event_id,
        "access_id": access_id,
    }


def _table_snapshot(store):
    """Every row of every identity table, for exact before/after comparison."""
    tables = ["accounts", "account_domains", "contacts", "calls", "call_participants",
              "stories", "crm_events", "user_account_access"]
    with store.transaction() as conn:
        snapshot = {}
        for table in tables:
            rows = conn.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
            snapshot[table] = [dict(r) for r in rows]
    return snapshot


def _without_updated_at(snapshot):
    return {
        table: [{k: v for k, v in row.items() if k != "updated_at"} for row in rows]
        for table, rows in snapshot.items()
    }


class TestFindDuplicates:
    """Tests for duplicate detection."""

    def test_name_duplicates(self, store, engine, org_id):
        a = store.create_account(org_id, "Acme, Inc.")
        b = store.create_account(org_id, "ACME Corp")
        store.create_account(org_id, "Globex")

        pairs = engine.find_duplicates(org_id)

        assert len(pairs) == 1
        assert {pairs[0].account_a["id"], pairs[0].account_b["id"]} == {a.id, b.id}
        assert pairs[0].similarity == 1.0
        assert pairs[0].match_reason == "normalized_name"

    def test_shared_contact_domain(self, store, engine, org_id):
        """Contacts on the same company domain flag two differently named accounts."""
        a = store.create_account(org_id, "Initech", domain="initech.com")
        b = store.create_account(org_id, "Penguin Labs")
        store.upsert_contact(b.id, "bill@initech.com")

        [pair] = engine.find_duplicates(org_id)

        assert pair.match_reason == "shared_domain"
        assert pair.similarity == 0.95
        assert {pair.account_a["id"], pair.account_b["id"]} == {a.id, b.id}

    def test_free_mail_not_shared_domain(self, store, engine, org_id):
        a = store.create_account(org_id, "Initech")
        b = store.create_account(org_id, "Penguin Labs")
        store.upsert_contact(a.id, "x@gmail.com")
        store.upsert_contact(b.id, "y@gmail.com")

        assert engine.find_duplicates(org_id) == []

    def test_each_pair_once_and_limit(self, store, engine, org_id):
        for name in ("Acme", "Acme Inc", "Acme LLC"):
            store.create_account(org_id, name)

        pairs = engine.find_duplicates(org_id)

        assert len(pairs) == 3
        assert len(engine.find_duplicates(org_id, limit=2)) == 2

    def test_single_account(self, store, engine, org_id):
        store.create_account(org_id, "Solo")
        assert engine.find_duplicates(org_id) == []


class TestPreview:
    def test_preview(self, engine, org_id, graph):
        preview = engine.preview_merge(org_id, graph["target"].id, graph["source"].id)

        assert preview.duplicate_contact_emails == ["shared@acme.io"]
        assert preview.aliases_to_add == ["acme.io", "acme-eu.com"]
        assert preview.secondary.call_count == 1
        assert preview.secondary.contact_count == 2
        assert preview.secondary.domain_aliases == ["acme-eu.com"]
        assert preview.primary.contact_count == 1

    def test_preview_changes_nothing(self, store, engine, org_id, graph):
        before = _table_snapshot(store)
        engine.preview_merge(org_id, graph["target"].id, graph["source"].id)
        assert _table_snapshot(store) == before

    def test_preview_rejects_self_and_missing(self, engine, org_id, graph):
        with pytest.raises(ValidationError):
            engine.preview_merge(org_id, graph["target"].id, graph["target"].id)
        with pytest.raises(NotFoundError):
            engine.preview_merge(org_id, graph["target"].id, "missing")
        with pytest.raises(NotFoundError):
            engine.preview_merge("org-2", graph["target"].id, graph["source"].id)


class TestMerge:
    """Tests for merge_accounts."""

    def test_merge_moves_everything(self, store, engine, org_id, graph):
        source, target = graph["source"], graph["target"]

        run = engine.merge_accounts(source.id, target.id, org_id, notes="dup", requested_by="ops")

        assert store.get_account(source.id) is None
        assert store.get_call(graph["call"].id).account_id == target.id
        assert store.count_account_records(target.id)["stories"] == 1
        assert store.count_account_records(target.id)["crm_events"] == 1
        assert store.count_account_records(target.id)["access_grants"] == 1

        emails = sorted(c.email for c in store.list_contacts(target.id))
        assert emails == ["jane@acme.io", "shared@acme.io"]
        assert store.get_contact(graph["dup"].id) is None
        links = {p.email: p.contact_id for p in store.list_participants(graph["call"].id)}
        assert links["shared@acme.io"] == graph["kept"].id
        assert links["jane@acme.io"] == graph["jane"].id

        assert sorted(a.domain for a in store.list_domain_aliases(target.id)) == ["acme-eu.com", "acme.io"]
        merged = store.get_account(target.id)
        assert merged.domain == "acme.com"
        assert merged.salesforce_id == "001"
        assert merged.industry == "Retail"

        assert run.primary_account_id == target.id
        assert run.secondary_account_id == source.id
        assert run.status == MergeRunStatus.COMPLETED
        assert run.notes == "dup"
        assert run.moved_counts["call_ids"] == 1
        assert run.moved_counts["deleted_contacts"] == 1
        assert run.snapshot["source"]["domain"] == "acme.io"

    def test_merged_domains_resolve_to_target(self, store, engine, org_id, graph):
        from api.services.entity_resolver import EntityResolver

        engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)

        result = EntityResolver(store).resolve(org_id, [{"email": "new@acme.io"}])
        assert result.account_id == graph["target"].id

    def test_existing_target_fields_kept(self, store, engine, org_id):
        source = store.create_account(org_id, "A", industry="Retail", employee_count=10)
        target = store.create_account(org_id, "B", industry="Software")

        run = engine.merge_accounts(source.id, target.id, org_id)

        merged = store.get_account(target.id)
        assert merged.industry == "Software"
        assert merged.employee_count == 10
        assert run.moved["filled_fields"] == {"employee_count": 10}

    def test_rejects_self_missing_and_cross_org(self, store, engine, org_id, graph):
        foreign = store.create_account("org-2", "Foreign")
        with pytest.raises(ValidationError):
            engine.merge_accounts(graph["source"].id, graph["source"].id, org_id)
        with pytest.raises(NotFoundError):
            engine.merge_accounts("missing", graph["target"].id, org_id)
        with pytest.raises(NotFoundError):
            engine.merge_accounts(foreign.id, graph["target"].id, org_id)

    def test_failed_merge_changes_nothing(self, store, engine, org_id, graph, monkeypatch):
        """A failure midway rolls the whole merge back."""
        before = _table_snapshot(store)

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "insert_merge_run", boom)
        with pytest.raises(RuntimeError):
            engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)

        assert _table_snapshot(store) == before


class TestUndo:
    """Tests for undo_merge."""

    def test_undo_restores_graph_exactly(self, store, engine, org_id, graph):
        before = _table_snapshot(store)

        run = engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)
        result = engine.undo_merge(org_id, run.id)

        assert _without_updated_at(_table_snapshot(store)) == _without_updated_at(before)
        assert result["restored_account_id"] == graph["source"].id
        assert result["restored"]["call_ids"] == 1
        assert result["restored"]["contact_ids"] == 1
        assert result["restored"]["deleted_contacts"] == 1
        assert store.get_merge_run(run.id, org_id).status == MergeRunStatus.UNDONE

    def test_undo_twice_conflicts(self, engine, org_id, graph):
        run = engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)
        engine.undo_merge(org_id, run.id)
        with pytest.raises(ConflictError):
            engine.undo_merge(org_id, run.id)

    def test_undo_unknown_or_other_org(self, engine, org_id, graph):
        run = engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)
        with pytest.raises(NotFoundError):
            engine.undo_merge(org_id, "missing")
        with pytest.raises(NotFoundError):
            engine.undo_merge("org-2", run.id)

    def test_undo_after_target_merged_away_conflicts(self, store, engine, org_id, graph):
        third = store.create_account(org_id, "Third")
        run = engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)
        engine.merge_accounts(graph["target"].id, third.id, org_id)

        with pytest.raises(ConflictError):
            engine.undo_merge(org_id, run.id)

    def test_undo_leaves_later_changes(self, store, engine, org_id, graph, make_call):
        """Records that moved off the target after the merge stay where they are."""
        other = store.create_account(org_id, "Other")
        run = engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)
        store.set_call_resolution(graph["call"].id, other.id, MatchMethod.MANUAL, 1.0)

        result = engine.undo_merge(org_id, run.id)

        assert result["restored"]["call_ids"] == 0
        assert store.get_call(graph["call"].id).account_id == other.id

    def test_list_merge_runs(self, store, engine, org_id, graph):
        run = engine.merge_accounts(graph["source"].id, graph["target"].id, org_id)
        runs = engine.list_merge_runs(org_id, limit=10_000)
        assert [r.id for r in runs] == [run.id]
        assert engine.list_merge_runs("org-2") == []
