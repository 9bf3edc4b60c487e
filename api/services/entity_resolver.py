"""
Entity Resolver for the account identity graph.

Decides which Account a call belongs to, from its participants and title.
Tiered and short-circuiting, each tier tried only when the previous found
nothing:
1. Primary-domain match - participant email domain is an account's domain
2. Alias-domain match - participant email domain is an account alias
3. Contact-domain match - a known contact shares the email domain
4. Fuzzy name match - call title / participant names against account names

Domain tiers always win over fuzzy matching, and fuzzy confidence is capped
below the weakest domain tier.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from api.services.identity_store import (
    Account,
    IdentityStore,
    MatchMethod,
    get_identity_store,
)
from api.services.normalizer import extract_email_domain, normalize_company_name
from api.services.similarity_index import build_index
from config.resolution_config import (
    PRIMARY_DOMAIN_CONFIDENCE,
    ALIAS_DOMAIN_CONFIDENCE,
    CONTACT_DOMAIN_CONFIDENCE,
    FUZZY_CONFIDENCE_CAP,
    RESOLVER_FUZZY_THRESHOLD,
    MIN_CANDIDATE_LENGTH,
)

logger = logging.getLogger(__name__)

# Wire values reported to collaborators
METHOD_EMAIL_DOMAIN = "email_domain"
METHOD_FUZZY_NAME = "fuzzy_name"
METHOD_NONE = "none"

_STORED_METHODS = {
    METHOD_EMAIL_DOMAIN: MatchMethod.EMAIL_DOMAIN,
    METHOD_FUZZY_NAME: MatchMethod.FUZZY_NAME,
    METHOD_NONE: MatchMethod.NONE,
}


@dataclass
class ParticipantInput:
    """What the resolver needs to know about one attendee."""
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class ResolutionCandidate:
    """A fuzzy hit: which account, matched through which candidate string."""
    account: Account
    candidate: str
    distance: float

    @property
    def confidence(self) -> float:
        return fuzzy_confidence(self.distance)


@dataclass
class ResolutionResult:
    """Result of entity resolution."""
    account_id: str
    account_name: str
    confidence: float
    match_method: str  # "email_domain", "fuzzy_name" or "none"

    @property
    def is_match(self) -> bool:
        return self.match_method != METHOD_NONE

    @property
    def stored_method(self) -> MatchMethod:
        return _STORED_METHODS[self.match_method]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def no_match(cls) -> "ResolutionResult":
        return cls(account_id="", account_name="", confidence=0.0, match_method=METHOD_NONE)


def fuzzy_confidence(distance: float) -> float:
    """Confidence for a fuzzy hit, capped below every domain tier."""
    return round(min(1.0 - distance, FUZZY_CONFIDENCE_CAP), 2)


def collect_email_domains(participants: list[ParticipantInput]) -> list[str]:
    """Deduplicated non-free email domains, in first-seen order."""
    domains: list[str] = []
    for p in participants:
        domain = extract_email_domain(p.email)
        if domain and domain not in domains:
            domains.append(domain)
    return domains


def build_name_candidates(participants: list[ParticipantInput], call_title: Optional[str] = None) -> list[str]:
    """
    Normalized strings to fuzzy-match against account names.

    The call title comes first, then participant names. Strings shorter than
    two characters after normalization are dropped.
    """
    raw = [call_title] + [p.name for p in participants]
    candidates: list[str] = []
    for value in raw:
        normalized = normalize_company_name(value)
        if len(normalized) >= MIN_CANDIDATE_LENGTH and normalized not in candidates:
            candidates.append(normalized)
    return candidates


def as_participants(items) -> list[ParticipantInput]:
    """Accept ParticipantInput objects, dicts or anything with email/name attributes."""
    participants = []
    for item in items or []:
        if isinstance(item, ParticipantInput):
            participants.append(item)
        elif isinstance(item, dict):
            participants.append(ParticipantInput(email=item.get("email"), name=item.get("name")))
        else:
            participants.append(ParticipantInput(
                email=getattr(item, "email", None),
                name=getattr(item, "name", None),
            ))
    return participants


class EntityResolver:
    """
    Resolves calls to accounts.

    Usage:
        resolver = EntityResolver(store)
        result = resolver.resolve(org_id, [{"email": "john@bigtech.com"}], "Q3 review")
    """

    def __init__(self, store: Optional[IdentityStore] = None):
        self.store = store or get_identity_store()

    def resolve(
        self,
        organization_id: str,
        participants,
        call_title: Optional[str] = None,
    ) -> ResolutionResult:
        """
        Find the best account for a call.

        Args:
            organization_id: Tenant scope
            participants: Attendees (email and/or name)
            call_title: Optional free-text title

        Returns:
            ResolutionResult; account_id is "" when nothing matched
        """
        people = as_participants(participants)
        domains = collect_email_domains(people)

        if domains:
            account = self.store.find_account_by_primary_domain(organization_id, domains)
            if account:
                return self._result(account, PRIMARY_DOMAIN_CONFIDENCE, METHOD_EMAIL_DOMAIN)

            account = self.store.find_account_by_alias_domain(organization_id, domains)
            if account:
                return self._result(account, ALIAS_DOMAIN_CONFIDENCE, METHOD_EMAIL_DOMAIN)

            account = self.store.find_account_by_contact_domain(organization_id, domains)
            if account:
                return self._result(account, CONTACT_DOMAIN_CONFIDENCE, METHOD_EMAIL_DOMAIN)

        best = self.fuzzy_match(organization_id, build_name_candidates(people, call_title))
        if best:
            logger.debug(
                f"Fuzzy matched '{best.candidate}' -> {best.account.name} (distance={best.distance:.3f})"
            )
            return self._result(best.account, best.confidence, METHOD_FUZZY_NAME)

        return ResolutionResult.no_match()

    def fuzzy_match(self, organization_id: str, candidates: list[str]) -> Optional[ResolutionCandidate]:
        """Best (account, candidate) pair across all candidates, or None."""
        if not candidates:
            return None

        accounts = self.store.list_accounts(organization_id)
        if not accounts:
            return None

        index = build_index(accounts, key=lambda a: a.normalized_name, threshold=RESOLVER_FUZZY_THRESHOLD)

        best: Optional[ResolutionCandidate] = None
        for candidate in candidates:
            match = index.best(candidate)
            if match and (best is None or match.distance < best.distance):
                best = ResolutionCandidate(account=match.item, candidate=candidate, distance=match.distance)
        return best

    def resolve_and_link_contacts(
        self,
        organization_id: str,
        call_id: str,
        participants,
        call_title: Optional[str] = None,
    ) -> ResolutionResult:
        """
        Resolve a call and persist the outcome.

        On a match, upserts a Contact for every participant with a company
        email (keyed by account + email, name refreshed), links the call's
        participant rows to those contacts, and stores the account, method
        and confidence on the call. A non-match leaves the call untouched.
        """
        people = as_participants(participants)
        result = self.resolve(organization_id, people, call_title)

        if not result.is_match:
            logger.debug(f"No account match for call {call_id[:8]}")
            return result

        with self.store.transaction() as conn:
            for p in people:
                if not p.email or not extract_email_domain(p.email):
                    continue
                contact = self.store.upsert_contact(
                    result.account_id,
                    p.email,
                    name=p.name or None,
                    conn=conn,
                )
                self.store.link_participants_to_contact(call_id, p.email, contact.id, conn=conn)

            self.store.set_call_resolution(
                call_id,
                result.account_id,
                result.stored_method,
                result.confidence,
                conn=conn,
            )

        logger.info(
            f"Resolved call {call_id[:8]} -> {result.account_name} "
            f"({result.match_method}, {result.confidence:.2f})"
        )
        return result

    @staticmethod
    def _result(account: Account, confidence: float, method: str) -> ResolutionResult:
        return ResolutionResult(
            account_id=account.id,
            account_name=account.name,
            confidence=confidence,
            match_method=method,
        )


# Singleton instance
_entity_resolver: Optional[EntityResolver] = None


def get_entity_resolver() -> EntityResolver:
    """Get singleton EntityResolver instance."""
    global _entity_resolver
    if _entity_resolver is None:
        _entity_resolver = EntityResolver()
    return _entity_resolver
