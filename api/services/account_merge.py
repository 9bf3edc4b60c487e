"""
Account merge engine: duplicate detection, preview, merge and exact undo.

A merge folds a source account into a target account. Everything that hangs
off the source (calls, contacts, stories, CRM events, access grants, alias
domains) is re-pointed at the target, the source's primary domain becomes an
alias of the target, empty enrichment fields on the target are filled from
the source, and the source row is deleted. The whole sequence runs in one
sqlite transaction.

Each merge writes a MergeRun holding the source row, its alias rows and the
ids of every record touched, so undo_merge can put the graph back exactly.
"""
import logging
import sqlite3
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional

from api.services.identity_store import (
    Account,
    AccountDomain,
    IdentityStore,
    MergeRun,
    MergeRunStatus,
    get_identity_store,
)
from api.services.normalizer import is_free_email_domain
from api.services.resilience import ConflictError, NotFoundError, ValidationError
from api.services.similarity_index import build_index
from config.resolution_config import (
    DUPLICATE_FUZZY_THRESHOLD,
    MERGE_RUNS_MAX_LIMIT,
    SHARED_DOMAIN_SIMILARITY,
)

logger = logging.getLogger(__name__)

# Dependent tables moved wholesale from source to target, keyed by the
# MergeRun.moved entry that records their ids
MOVED_TABLES = {
    "call_ids": "calls",
    "story_ids": "stories",
    "crm_event_ids": "crm_events",
    "access_ids": "user_account_access",
}

# Target columns filled from the source when the target has no value
FILLABLE_FIELDS = (
    "salesforce_id",
    "hubspot_id",
    "merge_account_id",
    "industry",
    "employee_count",
    "annual_revenue",
)


@dataclass
class DuplicatePair:
    """Two accounts that look like the same company."""
    account_a: dict
    account_b: dict
    similarity: float
    match_reason: str  # "normalized_name" or "shared_domain"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AccountSummary:
    id: str
    name: str
    domain: Optional[str]
    industry: Optional[str]
    employee_count: Optional[int]
    annual_revenue: Optional[float]
    domain_aliases: list[str] = field(default_factory=list)
    contact_count: int = 0
    call_count: int = 0
    story_count: int = 0
    crm_event_count: int = 0
    access_grant_count: int = 0


@dataclass
class MergePreview:
    """Side-by-side view of a merge before it runs."""
    primary: AccountSummary
    secondary: AccountSummary
    duplicate_contact_emails: list[str] = field(default_factory=list)
    aliases_to_add: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _account_ref(account: Account) -> dict:
    return {"id": account.id, "name": account.name, "domain": account.domain}


def _ids(conn: sqlite3.Connection, table: str, account_id: str) -> list[str]:
    rows = conn.execute(f"SELECT id FROM {table} WHERE account_id = ? ORDER BY rowid", (account_id,)).fetchall()
    return [r["id"] for r in rows]


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


class AccountMergeEngine:
    """
    Merges duplicate accounts and undoes merges.

    Usage:
        engine = AccountMergeEngine(store)
        run = engine.merge_accounts(source_id, target_id, org_id)
        engine.undo_merge(org_id, run.id)
    """

    def __init__(self, store: Optional[IdentityStore] = None):
        self.store = store or get_identity_store()

    # ------------------------------------------------------------------
    # Detection and preview
    # ------------------------------------------------------------------

    def find_duplicates(self, organization_id: str, limit: int = 50) -> list[DuplicatePair]:
        """
        Candidate duplicate pairs in an organization.

        Two strategies:
        1. Fuzzy match on normalized name (similarity = 1 - distance)
        2. A domain shared between accounts, counting primary domains,
           aliases and the company email domains of their contacts
        """
        accounts = self.store.list_accounts(organization_id)
        if len(accounts) < 2:
            return []

        by_id = {a.id: a for a in accounts}
        pairs: list[DuplicatePair] = []
        seen: set[frozenset] = set()

        index = build_index(accounts, key=lambda a: a.normalized_name, threshold=DUPLICATE_FUZZY_THRESHOLD)
        for account in accounts:
            if not account.normalized_name:
                continue
            for match in index.search(account.normalized_name):
                other = match.item
                if other.id == account.id:
                    continue
                key = frozenset((account.id, other.id))
                if key in seen:
                    continue
                seen.add(key)
                pairs.append(DuplicatePair(
                    account_a=_account_ref(account),
                    account_b=_account_ref(other),
                    similarity=round(match.similarity, 2),
                    match_reason="normalized_name",
                ))

        for domain, account_ids in self._domain_owners(organization_id).items():
            for i, first in enumerate(account_ids):
                for second in account_ids[i + 1:]:
                    key = frozenset((first, second))
                    if key in seen:
                        continue
                    seen.add(key)
                    pairs.append(DuplicatePair(
                        account_a=_account_ref(by_id[first]),
                        account_b=_account_ref(by_id[second]),
                        similarity=SHARED_DOMAIN_SIMILARITY,
                        match_reason="shared_domain",
                    ))

        pairs.sort(key=lambda p: -p.similarity)
        logger.info(f"Found {len(pairs)} duplicate candidates in org {organization_id}")
        return pairs[:limit]

    def _domain_owners(self, organization_id: str) -> dict[str, list[str]]:
        """Map each domain to the ordered list of distinct accounts that use it."""
        owners: dict[str, list[str]] = {}
        with self.store.transaction() as conn:
            rows = conn.execute(
                """
                SELECT domain, id AS account_id FROM accounts
                WHERE organization_id = ? AND domain IS NOT NULL
                UNION ALL
                SELECT domain, account_id FROM account_domains WHERE organization_id = ?
                UNION ALL
                SELECT ct.email_domain, ct.account_id FROM contacts ct
                JOIN accounts a ON a.id = ct.account_id
                WHERE a.organization_id = ? AND ct.email_domain IS NOT NULL
                """,
                (organization_id, organization_id, organization_id),
            ).fetchall()

        for row in rows:
            domain = row["domain"]
            if is_free_email_domain(domain):
                continue
            ids = owners.setdefault(domain, [])
            if row["account_id"] not in ids:
                ids.append(row["account_id"])
        return owners

    def preview_merge(self, organization_id: str, primary_id: str, secondary_id: str) -> MergePreview:
        """What merging ``secondary_id`` into ``primary_id`` would do."""
        if primary_id == secondary_id:
            raise ValidationError("Cannot merge an account with itself")

        with self.store.transaction() as conn:
            primary = self._require_account(organization_id, primary_id, conn)
            secondary = self._require_account(organization_id, secondary_id, conn)

            primary_emails = {c.email for c in self.store.list_contacts(primary.id, conn=conn)}
            duplicates = sorted(
                c.email for c in self.store.list_contacts(secondary.id, conn=conn)
                if c.email in primary_emails
            )

            aliases_to_add = []
            if secondary.domain and secondary.domain != primary.domain:
                aliases_to_add.append(secondary.domain)
            aliases_to_add.extend(a.domain for a in self.store.list_domain_aliases(secondary.id, conn=conn))

            return MergePreview(
                primary=self._summarize(primary, conn),
                secondary=self._summarize(secondary, conn),
                duplicate_contact_emails=duplicates,
                aliases_to_add=aliases_to_add,
            )

    def _summarize(self, account: Account, conn: sqlite3.Connection) -> AccountSummary:
        counts = self.store.count_account_records(account.id, conn=conn)
        return AccountSummary(
            id=account.id,
            name=account.name,
            domain=account.domain,
            industry=account.industry,
            employee_count=account.employee_count,
            annual_revenue=account.annual_revenue,
            domain_aliases=[a.domain for a in self.store.list_domain_aliases(account.id, conn=conn)],
            contact_count=counts["contacts"],
            call_count=counts["calls"],
            story_count=counts["stories"],
            crm_event_count=counts["crm_events"],
            access_grant_count=counts["access_grants"],
        )

    def _require_account(self, organization_id: str, account_id: str, conn: sqlite3.Connection) -> Account:
        account = self.store.get_account(account_id, organization_id, conn=conn)
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge_accounts(
        self,
        source_id: str,
        target_id: str,
        organization_id: str,
        notes: Optional[str] = None,
        requested_by: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> MergeRun:
        """
        Fold the source account into the target and delete the source.

        With ``conn`` the merge joins the caller's transaction and commits
        or rolls back with it.

        Raises:
            ValidationError: source and target are the same account
            NotFoundError: either account is missing from the organization
        """
        if source_id == target_id:
            raise ValidationError("Cannot merge an account with itself")

        with self.store.transaction(conn) as conn:
            source = self._require_account(organization_id, source_id, conn)
            target = self._require_account(organization_id, target_id, conn)
            source_aliases = self.store.list_domain_aliases(source.id, conn=conn)

            moved: dict = {}

            # 1. Calls, stories, CRM events, access grants
            for key, table in MOVED_TABLES.items():
                ids = _ids(conn, table, source.id)
                if ids:
                    conn.execute(
                        f"UPDATE {table} SET account_id = ? WHERE account_id = ?",
                        (target.id, source.id),
                    )
                moved[key] = ids

            # 2. Contacts: duplicates by email collapse into the target's contact
            target_contacts = {c.email: c for c in self.store.list_contacts(target.id, conn=conn)}
            moved["contact_ids"] = []
            moved["deleted_contacts"] = []
            for contact in self.store.list_contacts(source.id, conn=conn):
                existing = target_contacts.get(contact.email)
                if existing is None:
                    conn.execute("UPDATE contacts SET account_id = ? WHERE id = ?", (target.id, contact.id))
                    moved["contact_ids"].append(contact.id)
                    continue

                participant_ids = [
                    r["id"] for r in conn.execute(
                        "SELECT id FROM call_participants WHERE contact_id = ?", (contact.id,)
                    ).fetchall()
                ]
                if participant_ids:
                    conn.execute(
                        f"UPDATE call_participants SET contact_id = ? WHERE id IN ({_placeholders(participant_ids)})",
                        (existing.id, *participant_ids),
                    )
                conn.execute("DELETE FROM contacts WHERE id = ?", (contact.id,))
                moved["deleted_contacts"].append({
                    "contact": contact.to_dict(),
                    "replaced_by": existing.id,
                    "participant_ids": participant_ids,
                })

            # 3. Release the source's unique keys before the target takes them
            conn.execute(
                """
                UPDATE accounts SET domain = NULL, salesforce_id = NULL, hubspot_id = NULL, merge_account_id = NULL
                WHERE id = ?
                """,
                (source.id,),
            )

            # 4. Domains: source primary becomes an alias, source aliases re-pointed
            moved["created_alias"] = None
            if source.domain and source.domain != target.domain:
                alias = AccountDomain(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    account_id=target.id,
                    domain=source.domain,
                    created_at=datetime.now(timezone.utc).isoformat(),
                )
                self.store.insert_alias_row(alias, conn=conn)
                moved["created_alias"] = alias.to_dict()
            conn.execute("UPDATE account_domains SET account_id = ? WHERE account_id = ?", (target.id, source.id))

            # 5. Enrichment the target lacks
            filled = {
                name: getattr(source, name)
                for name in FILLABLE_FIELDS
                if getattr(target, name) is None and getattr(source, name) is not None
            }
            if filled:
                self.store.update_account(target.id, filled, conn=conn)
            moved["filled_fields"] = filled

            # 6. Nothing references the source any more
            conn.execute("DELETE FROM accounts WHERE id = ?", (source.id,))

            run = MergeRun(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                primary_account_id=target.id,
                secondary_account_id=source.id,
                status=MergeRunStatus.COMPLETED,
                snapshot={
                    "source": source.to_dict(),
                    "aliases": [a.to_dict() for a in source_aliases],
                },
                moved=moved,
                notes=notes,
                requested_by=requested_by,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self.store.insert_merge_run(run, conn=conn)

        counts = run.moved_counts
        logger.info(
            f"Merged account '{source.name}' ({source.id[:8]}) into '{target.name}' ({target.id[:8]}): "
            f"{counts['call_ids']} calls, {counts['contact_ids']} contacts moved, "
            f"{counts['deleted_contacts']} duplicate contacts removed"
        )
        return run

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo_merge(self, organization_id: str, run_id: str) -> dict:
        """
        Reverse a completed merge using the ids recorded in its MergeRun.

        Only records still on the target are moved back; anything changed
        since the merge stays where it is.

        Raises:
            NotFoundError: run missing from the organization
            ConflictError: run already undone, or the graph changed in a way
                that blocks restoring the source account
        """
        with self.store.transaction() as conn:
            run = self.store.get_merge_run(run_id, organization_id, conn=conn)
            if run is None:
                raise NotFoundError("Merge run", run_id)
            if run.status == MergeRunStatus.UNDONE:
                raise ConflictError(f"Merge run {run_id} has already been undone")

            source = Account(**run.snapshot["source"])
            target_id = run.primary_account_id
            moved = run.moved

            if self.store.get_account(source.id, conn=conn) is not None:
                raise ConflictError(f"Account {source.id} already exists")
            if self.store.get_account(target_id, organization_id, conn=conn) is None:
                raise ConflictError(f"Merge target {target_id} no longer exists")

            created_alias = moved.get("created_alias")
            if created_alias:
                conn.execute("DELETE FROM account_domains WHERE id = ?", (created_alias["id"],))
            if source.domain and self.store.domain_claimed(organization_id, source.domain, conn=conn):
                raise ConflictError(f"Domain {source.domain} has been claimed since the merge")

            filled = moved.get("filled_fields") or {}
            if filled:
                self.store.update_account(target_id, {name: None for name in filled}, conn=conn)

            try:
                self.store.insert_account_row(source, conn=conn)
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Cannot restore account {source.id}: {e}") from e

            for alias_data in run.snapshot.get("aliases", []):
                cursor = conn.execute(
                    "UPDATE account_domains SET account_id = ? WHERE id = ? AND account_id = ?",
                    (source.id, alias_data["id"], target_id),
                )
                if cursor.rowcount == 0 and not self.store.domain_claimed(
                    organization_id, alias_data["domain"], conn=conn
                ):
                    self.store.insert_alias_row(AccountDomain(**alias_data), conn=conn)

            restored: dict[str, int] = {}
            for key, table in {**MOVED_TABLES, "contact_ids": "contacts"}.items():
                ids = moved.get(key) or []
                if not ids:
                    restored[key] = 0
                    continue
                cursor = conn.execute(
                    f"UPDATE {table} SET account_id = ? WHERE account_id = ? AND id IN ({_placeholders(ids)})",
                    (source.id, target_id, *ids),
                )
                restored[key] = cursor.rowcount

            restored["deleted_contacts"] = 0
            for entry in moved.get("deleted_contacts") or []:
                contact = entry["contact"]
                columns = ", ".join(contact.keys())
                conn.execute(
                    f"INSERT INTO contacts ({columns}) VALUES ({_placeholders(list(contact))})",
                    tuple(contact.values()),
                )
                participant_ids = entry.get("participant_ids") or []
                if participant_ids:
                    conn.execute(
                        f"""
                        UPDATE call_participants SET contact_id = ?
                        WHERE contact_id = ? AND id IN ({_placeholders(participant_ids)})
                        """,
                        (contact["id"], entry["replaced_by"], *participant_ids),
                    )
                restored["deleted_contacts"] += 1

            undone_at = self.store.mark_merge_run_undone(run.id, conn=conn)

        logger.info(f"Undid merge run {run_id[:8]}: restored account {source.id[:8]} ({source.name})")
        return {
            "merge_run_id": run.id,
            "restored_account_id": source.id,
            "restored": restored,
            "undone_at": undone_at,
        }

    def list_merge_runs(self, organization_id: str, limit: int = 50) -> list[MergeRun]:
        limit = max(1, min(limit, MERGE_RUNS_MAX_LIMIT))
        return self.store.list_merge_runs(organization_id, limit=limit)


# Singleton instance
_merge_engine: Optional[AccountMergeEngine] = None


def get_account_merge_engine() -> AccountMergeEngine:
    """Get singleton AccountMergeEngine instance."""
    global _merge_engine
    if _merge_engine is None:
        _merge_engine = AccountMergeEngine()
    return _merge_engine
