"""
Resolution Queue for calls the resolver could not place confidently.

A call is queued while it has no match or a match below 0.7 confidence,
and it has not been dismissed. For each queued call the queue ranks up to
three suggested accounts, more leniently than the resolver itself:
- participant email domains against every primary and alias domain (0.85)
- call title / participant names fuzzy-matched against account names
  (capped at 0.75)

Manual resolution teaches the resolver: new participant domains become
alias domains of the chosen account, so the next call from that domain
resolves on its own through the alias tier.
"""
import logging
import sqlite3
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional

from api.services.entity_resolver import (
    ParticipantInput,
    build_name_candidates,
    fuzzy_confidence,
)
from api.services.identity_store import (
    Account,
    Call,
    CallParticipant,
    IdentityStore,
    MatchMethod,
    get_identity_store,
)
from api.services.normalizer import extract_email_domain
from api.services.resilience import NotFoundError, ValidationError
from api.services.similarity_index import SimilarityIndex, build_index
from config.resolution_config import (
    ACCOUNT_SEARCH_LIMIT,
    MAX_SUGGESTIONS,
    QUEUE_CONFIDENCE_THRESHOLD,
    QUEUE_DEFAULT_PAGE_SIZE,
    QUEUE_MAX_PAGE_SIZE,
    SUGGESTION_DOMAIN_CONFIDENCE,
    SUGGESTION_FUZZY_LIMIT,
    SUGGESTION_FUZZY_THRESHOLD,
)

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "occurred_at": "occurred_at",
    "occurredAt": "occurred_at",
    "match_confidence": "match_confidence",
    "matchConfidence": "match_confidence",
}


@dataclass
class Suggestion:
    """A candidate account for a queued call."""
    account_id: str
    account_name: str
    confidence: float
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueueItem:
    call_id: str
    title: Optional[str]
    provider: str
    occurred_at: Optional[str]
    match_method: str
    match_confidence: float
    account_id: Optional[str]
    participants: list[dict] = field(default_factory=list)
    suggestions: list[Suggestion] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["suggestions"] = [s.to_dict() for s in self.suggestions]
        return data


@dataclass
class QueuePage:
    items: list[QueueItem]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class _SuggestionContext:
    """Per-organization lookups shared by every call on one queue page."""

    def __init__(self, store: IdentityStore, organization_id: str):
        accounts = store.list_accounts(organization_id)
        self.accounts_by_id: dict[str, Account] = {a.id: a for a in accounts}
        self.domain_index: dict[str, str] = store.get_domain_index(organization_id)
        self.name_index: SimilarityIndex = build_index(
            accounts, key=lambda a: a.normalized_name, threshold=SUGGESTION_FUZZY_THRESHOLD
        )


class ResolutionQueue:
    """
    Review queue over low-confidence and unmatched calls.

    Usage:
        queue = ResolutionQueue(store)
        page = queue.list_queue(org_id, page=1, page_size=25)
        queue.resolve_call(org_id, call_id, account_id)
    """

    def __init__(self, store: Optional[IdentityStore] = None):
        self.store = store or get_identity_store()

    # ------------------------------------------------------------------
    # Listing and suggestions
    # ------------------------------------------------------------------

    def list_queue(
        self,
        organization_id: str,
        page: int = 1,
        page_size: int = QUEUE_DEFAULT_PAGE_SIZE,
        sort_by: str = "occurred_at",
        sort_order: str = "desc",
        search: Optional[str] = None,
    ) -> QueuePage:
        """Page through queued calls, each with its ranked suggestions."""
        page = max(1, int(page or 1))
        page_size = max(1, min(int(page_size or QUEUE_DEFAULT_PAGE_SIZE), QUEUE_MAX_PAGE_SIZE))
        column = SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValidationError(f"Unsupported sort field: {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Unsupported sort order: {sort_order}")

        calls, total = self.store.query_unresolved_calls(
            organization_id,
            QUEUE_CONFIDENCE_THRESHOLD,
            search=search,
            order_by=column,
            descending=sort_order == "desc",
            limit=page_size,
            offset=(page - 1) * page_size,
        )

        items = []
        if calls:
            context = _SuggestionContext(self.store, organization_id)
            for call in calls:
                participants = self.store.list_participants(call.id)
                items.append(QueueItem(
                    call_id=call.id,
                    title=call.title,
                    provider=call.provider,
                    occurred_at=call.occurred_at,
                    match_method=call.match_method.value,
                    match_confidence=call.match_confidence,
                    account_id=call.account_id,
                    participants=[p.to_dict() for p in participants],
                    suggestions=self._suggest(call, participants, context),
                ))

        return QueuePage(items=items, total=total, page=page, page_size=page_size)

    def get_suggestions(self, organization_id: str, call_id: str) -> list[Suggestion]:
        call = self.store.get_call(call_id, organization_id)
        if call is None:
            raise NotFoundError("Call", call_id)
        participants = self.store.list_participants(call.id)
        return self._suggest(call, participants, _SuggestionContext(self.store, organization_id))

    def _suggest(
        self,
        call: Call,
        participants: list[CallParticipant],
        context: _SuggestionContext,
    ) -> list[Suggestion]:
        suggestions: list[Suggestion] = []
        seen: set[str] = set()

        def add(account_id: str, confidence: float, reason: str):
            account = context.accounts_by_id.get(account_id)
            if account is None or account_id in seen:
                return
            seen.add(account_id)
            suggestions.append(Suggestion(
                account_id=account_id,
                account_name=account.name,
                confidence=confidence,
                reason=reason,
            ))

        for p in participants:
            domain = extract_email_domain(p.email)
            if domain and domain in context.domain_index:
                add(context.domain_index[domain], SUGGESTION_DOMAIN_CONFIDENCE, f"Email domain match: {domain}")

        people = [ParticipantInput(email=p.email, name=p.name) for p in participants]
        for candidate in build_name_candidates(people, call.title):
            for match in context.name_index.search(candidate, limit=SUGGESTION_FUZZY_LIMIT):
                add(match.item.id, fuzzy_confidence(match.distance), f'Fuzzy name match: "{candidate}"')

        suggestions.sort(key=lambda s: -s.confidence)
        return suggestions[:MAX_SUGGESTIONS]

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def resolve_call(self, organization_id: str, call_id: str, account_id: str) -> dict:
        """
        Assign a call to an account by hand.

        Sets MANUAL / 1.0, turns participant domains nobody in the org has
        claimed into alias domains of the account, and upserts the
        participants as contacts. Safe to repeat.
        """
        aliases_created: list[str] = []

        with self.store.transaction() as conn:
            call = self.store.get_call(call_id, organization_id, conn=conn)
            if call is None:
                raise NotFoundError("Call", call_id)
            account = self.store.get_account(account_id, organization_id, conn=conn)
            if account is None:
                raise NotFoundError("Account", account_id)

            self.store.set_call_resolution(call_id, account_id, MatchMethod.MANUAL, 1.0, conn=conn)

            participants = self.store.list_participants(call_id, conn=conn)
            for p in participants:
                domain = extract_email_domain(p.email)
                if not domain or domain == account.domain or domain in aliases_created:
                    continue
                if self.store.domain_claimed(organization_id, domain, conn=conn):
                    continue
                try:
                    self.store.add_domain_alias(organization_id, account_id, domain, conn=conn)
                except sqlite3.IntegrityError:
                    logger.info(f"Domain {domain} was claimed concurrently, not aliasing to {account_id[:8]}")
                    continue
                aliases_created.append(domain)

            for p in participants:
                if not p.email or not extract_email_domain(p.email):
                    continue
                contact = self.store.upsert_contact(account_id, p.email, name=p.name, conn=conn)
                self.store.link_participants_to_contact(call_id, p.email, contact.id, conn=conn)

        logger.info(
            f"Manually resolved call {call_id[:8]} -> {account.name} "
            f"(new aliases: {', '.join(aliases_created) or 'none'})"
        )
        return {"call_id": call_id, "account_id": account_id, "aliases_created": aliases_created}

    def bulk_resolve(self, organization_id: str, call_ids: list[str], account_id: str) -> dict:
        """Resolve many calls to one account; per-call failures are logged and skipped."""
        resolved = 0
        for call_id in call_ids:
            try:
                self.resolve_call(organization_id, call_id, account_id)
                resolved += 1
            except Exception as e:
                logger.warning(f"Bulk resolve skipped call {call_id}: {e}")
        logger.info(f"Bulk resolved {resolved}/{len(call_ids)} calls to account {account_id[:8]}")
        return {"resolved": resolved}

    def dismiss_calls(self, organization_id: str, call_ids: list[str]) -> dict:
        """Hide calls from the queue without resolving them."""
        dismissed = self.store.dismiss_calls(organization_id, call_ids)
        logger.info(f"Dismissed {dismissed} calls in org {organization_id}")
        return {"dismissed": dismissed}

    def create_account_from_call(
        self,
        organization_id: str,
        call_id: str,
        name: str,
        domain: Optional[str] = None,
    ) -> dict:
        """
        Create an account for a call nobody recognized, then resolve the call to it.

        The domain is the explicit one if given, else the first company email
        domain among the participants.
        """
        call = self.store.get_call(call_id, organization_id)
        if call is None:
            raise NotFoundError("Call", call_id)
        if not name or not name.strip():
            raise ValidationError("Account name is required")

        if domain and domain.strip():
            account_domain = domain.strip().lower()
        else:
            account_domain = None
            for p in self.store.list_participants(call_id):
                account_domain = extract_email_domain(p.email)
                if account_domain:
                    break

        if account_domain and self.store.domain_claimed(organization_id, account_domain):
            raise ValidationError(f"Domain {account_domain} is already claimed by another account")

        try:
            account = self.store.create_account(organization_id, name.strip(), domain=account_domain)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Could not create account: {e}") from e

        result = self.resolve_call(organization_id, call_id, account.id)
        return {"account": account.to_dict(), **result}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def search_accounts(self, organization_id: str, query: str, limit: int = ACCOUNT_SEARCH_LIMIT) -> list[Account]:
        return self.store.search_accounts(organization_id, query, limit=limit)

    def get_queue_stats(self, organization_id: str) -> dict:
        """Counts for the queue header."""
        threshold = QUEUE_CONFIDENCE_THRESHOLD
        midnight = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0).isoformat()

        return {
            "total_unresolved": self.store.count_calls(
                organization_id,
                "dismissed_at IS NULL AND (match_method = 'NONE' OR match_confidence < ?)",
                (threshold,),
            ),
            "no_match": self.store.count_calls(
                organization_id,
                "dismissed_at IS NULL AND match_method = 'NONE'",
            ),
            "low_confidence": self.store.count_calls(
                organization_id,
                "dismissed_at IS NULL AND match_method != 'NONE' AND match_confidence < ?",
                (threshold,),
            ),
            "resolved_today": self.store.count_calls(
                organization_id,
                "match_method = 'MANUAL' AND updated_at >= ?",
                (midnight,),
            ),
        }


# Singleton instance
_resolution_queue: Optional[ResolutionQueue] = None


def get_resolution_queue() -> ResolutionQueue:
    """Get singleton ResolutionQueue instance."""
    global _resolution_queue
    if _resolution_queue is None:
        _resolution_queue = ResolutionQueue()
    return _resolution_queue
