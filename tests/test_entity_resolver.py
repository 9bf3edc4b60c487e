"""
Tests for EntityResolver tiered matching.
"""
import pytest
from unittest.mock import MagicMock

from api.services.entity_resolver import (
    EntityResolver,
    ParticipantInput,
    build_name_candidates,
    fuzzy_confidence,
)
from api.services.identity_store import MatchMethod

pytestmark = pytest.mark.unit


@pytest.fixture
def resolver(store):
    return EntityResolver(store)


class TestDomainTiers:
    """Tests for the email-domain tiers."""

    def test_primary_domain_match(self, store, resolver, org_id):
        """A participant on the account's primary domain resolves at 0.95."""
        account = store.create_account(org_id, "BigTech Inc.", domain="bigtech.com")

        result = resolver.resolve(org_id, [{"email": "john@bigtech.com"}], "Q3 review")

        assert result.account_id == account.id
        assert result.match_method == "email_domain"
        assert result.confidence == 0.95

    def test_alias_domain_match(self, store, resolver, org_id):
        account = store.create_account(org_id, "BigTech Inc.", domain="bigtech.com")
        store.add_domain_alias(org_id, account.id, "bigtech.io")

        result = resolver.resolve(org_id, [{"email": "ann@bigtech.io"}])

        assert result.account_id == account.id
        assert result.confidence == 0.90

    def test_contact_domain_match(self, store, resolver, org_id):
        """A known contact's email domain resolves at 0.85."""
        account = store.create_account(org_id, "Globex")
        store.upsert_contact(account.id, "hank@globex-mail.com", name="Hank")

        result = resolver.resolve(org_id, [{"email": "someone@globex-mail.com"}])

        assert result.account_id == account.id
        assert result.confidence == 0.85
        assert result.match_method == "email_domain"

    def test_primary_beats_alias(self, store, resolver, org_id):
        """With domains hitting two tiers, the higher tier wins."""
        primary = store.create_account(org_id, "Alpha", domain="alpha.com")
        other = store.create_account(org_id, "Beta", domain="beta.com")
        store.add_domain_alias(org_id, other.id, "beta-alias.com")

        result = resolver.resolve(org_id, [
            {"email": "x@beta-alias.com"},
            {"email": "y@alpha.com"},
        ])

        assert result.account_id == primary.id
        assert result.confidence == 0.95

    def test_domain_match_beats_fuzzy(self, store, resolver, org_id):
        """A domain hit wins even when the title names another account."""
        domain_account = store.create_account(org_id, "Initech", domain="initech.com")
        store.create_account(org_id, "Globex")

        result = resolver.resolve(org_id, [{"email": "peter@initech.com"}], "Globex")

        assert result.account_id == domain_account.id
        assert result.confidence == 0.95
        assert result.match_method == "email_domain"

    def test_domain_match_never_runs_fuzzy_search(self, store, org_id, monkeypatch):
        """Once a domain tier hits, the account list for fuzzy search is never loaded."""
        store.create_account(org_id, "Initech", domain="initech.com")
        store.create_account(org_id, "Globex")
        list_accounts = MagicMock(wraps=store.list_accounts)
        monkeypatch.setattr(store, "list_accounts", list_accounts)
        resolver = EntityResolver(store)

        result = resolver.resolve(org_id, [{"email": "peter@initech.com", "name": "Globex"}], "Globex")

        assert result.confidence == 0.95
        assert result.match_method == "email_domain"
        list_accounts.assert_not_called()

    def test_fuzzy_search_runs_without_domain_hit(self, store, org_id, monkeypatch):
        globex = store.create_account(org_id, "Globex")
        list_accounts = MagicMock(wraps=store.list_accounts)
        monkeypatch.setattr(store, "list_accounts", list_accounts)

        result = EntityResolver(store).resolve(org_id, [{"email": "peter@unknown.dev"}], "Globex")

        assert result.account_id == globex.id
        list_accounts.assert_called_once_with(org_id)

    def test_free_mail_never_domain_matches(self, store, resolver, org_id):
        store.create_account(org_id, "Gmail Fans", domain="gmail.com")

        result = resolver.resolve(org_id, [{"email": "someone@gmail.com"}])

        assert result.match_method != "email_domain"

    def test_other_org_not_matched(self, store, resolver, org_id):
        """Resolution never crosses organizations."""
        store.create_account("org-2", "BigTech", domain="bigtech.com")

        result = resolver.resolve(org_id, [{"email": "john@bigtech.com"}])

        assert not result.is_match
        assert result.account_id == ""


class TestFuzzyTier:
    """Tests for fuzzy name matching."""

    def test_title_matches_account_name(self, store, resolver, org_id):
        """A call titled with the account's name matches, capped at 0.75."""
        account = store.create_account(org_id, "Acme Corporation")

        result = resolver.resolve(org_id, [], "Acme")

        assert result.account_id == account.id
        assert result.match_method == "fuzzy_name"
        assert result.confidence <= 0.75

    def test_short_name_inside_title_word_not_matched(self, store, resolver, org_id):
        """A short name such as Meta is not found inside the word Metadata."""
        store.create_account(org_id, "Meta")

        result = resolver.resolve(org_id, [], "Metadata review")

        assert not result.is_match

    def test_no_accounts_is_no_match(self, resolver, org_id):
        result = resolver.resolve(org_id, [{"name": "Jane"}], "Intro")
        assert result.to_dict() == {
            "account_id": "",
            "account_name": "",
            "confidence": 0.0,
            "match_method": "none",
        }

    def test_no_candidates_skips_account_load(self, org_id):
        """With no usable candidates the account list is never fetched."""
        store = MagicMock()
        resolver = EntityResolver(store)

        result = resolver.resolve(org_id, [ParticipantInput(email="a@gmail.com")], None)

        assert not result.is_match
        store.list_accounts.assert_not_called()

    def test_fuzzy_confidence_cap(self):
        assert fuzzy_confidence(0.0) == 0.75
        assert fuzzy_confidence(0.3) == 0.7

    def test_build_name_candidates(self):
        """Title first, then names; short and duplicate strings dropped."""
        candidates = build_name_candidates(
            [ParticipantInput(name="Acme Inc."), ParticipantInput(name="X"), ParticipantInput(name=None)],
            "Acme",
        )
        assert candidates == ["acme"]


class TestResolveAndLinkContacts:
    """Tests for persisting a resolution."""

    def test_match_links_contacts_and_updates_call(self, store, resolver, org_id, make_call):
        account = store.create_account(org_id, "BigTech", domain="bigtech.com")
        call = make_call(participants=[("john@bigtech.com", "John"), ("me@gmail.com", "Me")])

        result = resolver.resolve_and_link_contacts(
            org_id, call.id, [{"email": "john@bigtech.com", "name": "John"}, {"email": "me@gmail.com"}]
        )

        assert result.is_match
        stored = store.get_call(call.id)
        assert stored.account_id == account.id
        assert stored.match_method == MatchMethod.EMAIL_DOMAIN
        assert stored.match_confidence == 0.95

        contacts = store.list_contacts(account.id)
        assert [c.email for c in contacts] == ["john@bigtech.com"]
        linked = [p for p in store.list_participants(call.id) if p.contact_id]
        assert [p.email for p in linked] == ["john@bigtech.com"]

    def test_no_match_leaves_call_untouched(self, store, resolver, org_id, make_call):
        call = make_call(title="zzqx", participants=[("a@unknown.dev", None)])

        result = resolver.resolve_and_link_contacts(org_id, call.id, [{"email": "a@unknown.dev"}], "zzqx")

        assert not result.is_match
        stored = store.get_call(call.id)
        assert stored.account_id is None
        assert stored.match_method == MatchMethod.NONE

    def test_repeat_resolution_is_idempotent(self, store, resolver, org_id, make_call):
        account = store.create_account(org_id, "BigTech", domain="bigtech.com")
        call = make_call(participants=[("john@bigtech.com", "John")])
        people = [{"email": "john@bigtech.com", "name": "John"}]

        resolver.resolve_and_link_contacts(org_id, call.id, people)
        resolver.resolve_and_link_contacts(org_id, call.id, people)

        assert len(store.list_contacts(account.id)) == 1
