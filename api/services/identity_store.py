"""
SQLite storage for the account identity graph.

Holds accounts, alias domains, contacts, calls (with participants and
transcripts), the records that hang off an account (stories, CRM events,
user access grants), integration sync state, and the merge audit tables.

Natural-key uniqueness is enforced by the schema itself:
- one account per (organization, primary domain) and per (organization, CRM id)
- one alias row per (organization, domain)
- a domain is never both a primary domain and an alias in one organization
  (triggers below)
- one contact per (account, email)
- one call per (organization, provider, external id)

Methods accept an optional ``conn`` so several calls can share one
transaction (see ``transaction()``); without it each call commits on its own.
"""
import json
import sqlite3
import uuid
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from api.services.normalizer import normalize_company_name, normalize_email
from api.utils.db_paths import get_identity_db_path

logger = logging.getLogger(__name__)


class MatchMethod(str, Enum):
    """How a call was attached to its account (stored form)."""
    NONE = "NONE"
    EMAIL_DOMAIN = "EMAIL_DOMAIN"
    FUZZY_NAME = "FUZZY_NAME"
    MANUAL = "MANUAL"


class IntegrationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    DISABLED = "DISABLED"


class CrmEventType(str, Enum):
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"
    OPPORTUNITY_STAGE_CHANGE = "OPPORTUNITY_STAGE_CHANGE"


class MergeRunStatus(str, Enum):
    COMPLETED = "COMPLETED"
    UNDONE = "UNDONE"


class MergeRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Columns callers may change through update_account()
ACCOUNT_MUTABLE_FIELDS = (
    "name",
    "domain",
    "industry",
    "employee_count",
    "annual_revenue",
    "salesforce_id",
    "hubspot_id",
    "merge_account_id",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Account:
    """Canonical customer identity within an organization."""
    id: str
    organization_id: str
    name: str
    normalized_name: str = ""
    domain: Optional[str] = None
    industry: Optional[str] = None
    employee_count: Optional[int] = None
    annual_revenue: Optional[float] = None
    salesforce_id: Optional[str] = None
    hubspot_id: Optional[str] = None
    merge_account_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Account":
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class AccountDomain:
    """Alias domain pointing at an account."""
    id: str
    organization_id: str
    account_id: str
    domain: str
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AccountDomain":
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class Contact:
    """A person at an account, keyed by (account, lowercased email)."""
    id: str
    account_id: str
    email: str
    email_domain: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None
    salesforce_id: Optional[str] = None
    hubspot_id: Optional[str] = None
    merge_contact_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Contact":
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class CallParticipant:
    id: str
    call_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_host: bool = False
    contact_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CallParticipant":
        data = {k: row[k] for k in row.keys()}
        data["is_host"] = bool(data.get("is_host"))
        return cls(**data)


@dataclass
class Call:
    """One recording/meeting plus its resolution metadata."""
    id: str
    organization_id: str
    provider: str
    title: Optional[str] = None
    account_id: Optional[str] = None
    external_id: Optional[str] = None
    merge_recording_id: Optional[str] = None
    recording_url: Optional[str] = None
    duration: Optional[int] = None
    occurred_at: Optional[str] = None
    match_method: MatchMethod = MatchMethod.NONE
    match_confidence: float = 0.0
    dismissed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["match_method"] = self.match_method.value
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Call":
        data = {k: row[k] for k in row.keys()}
        data["match_method"] = MatchMethod(data.get("match_method") or "NONE")
        data["match_confidence"] = data.get("match_confidence") or 0.0
        return cls(**data)


@dataclass
class Transcript:
    id: str
    call_id: str
    full_text: str
    word_count: int
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Transcript":
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class IntegrationConfig:
    """Per-organization provider integration with its sync state."""
    id: str
    organization_id: str
    provider: str
    credentials: dict = field(default_factory=dict)
    enabled: bool = True
    status: IntegrationStatus = IntegrationStatus.ACTIVE
    sync_cursor: Optional[str] = None
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "IntegrationConfig":
        data = {k: row[k] for k in row.keys()}
        data["credentials"] = json.loads(data.get("credentials") or "{}")
        data["enabled"] = bool(data.get("enabled"))
        data["status"] = IntegrationStatus(data["status"])
        return cls(**data)


@dataclass
class LinkedAccount:
    """A connection made through the unified API (recording or CRM category)."""
    id: str
    organization_id: str
    category: str  # "RECORDING" or "CRM"
    integration_slug: str
    account_token: str
    status: str = "ACTIVE"
    initial_sync_done: bool = False
    last_synced_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LinkedAccount":
        data = {k: row[k] for k in row.keys()}
        data["initial_sync_done"] = bool(data.get("initial_sync_done"))
        return cls(**data)


@dataclass
class MergeRun:
    """
    Audit and undo record for one executed merge.

    ``snapshot`` holds the source account row and its alias rows as they were
    before the merge; ``moved`` holds the ids of every record the merge moved,
    deleted or filled in, so undo can put each one back.
    """
    id: str
    organization_id: str
    primary_account_id: str
    secondary_account_id: str
    status: MergeRunStatus = MergeRunStatus.COMPLETED
    snapshot: dict = field(default_factory=dict)
    moved: dict = field(default_factory=dict)
    notes: Optional[str] = None
    requested_by: Optional[str] = None
    created_at: Optional[str] = None
    undone_at: Optional[str] = None

    @property
    def moved_counts(self) -> dict[str, int]:
        return {
            key: len(self.moved.get(key) or [])
            for key in ("call_ids", "contact_ids", "story_ids", "crm_event_ids", "access_ids", "deleted_contacts")
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["moved_counts"] = self.moved_counts
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MergeRun":
        data = {k: row[k] for k in row.keys()}
        data["status"] = MergeRunStatus(data["status"])
        data["snapshot"] = json.loads(data.get("snapshot") or "{}")
        data["moved"] = json.loads(data.get("moved") or "{}")
        return cls(**data)


@dataclass
class MergeRequest:
    """A merge waiting for (or past) an approval decision."""
    id: str
    organization_id: str
    primary_account_id: str
    secondary_account_id: str
    requested_by: Optional[str] = None
    status: MergeRequestStatus = MergeRequestStatus.PENDING
    payload: dict = field(default_factory=dict)
    reviewer: Optional[str] = None
    review_notes: Optional[str] = None
    merge_run_id: Optional[str] = None
    created_at: Optional[str] = None
    reviewed_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MergeRequest":
        data = {k: row[k] for k in row.keys()}
        data["status"] = MergeRequestStatus(data["status"])
        data["payload"] = json.loads(data.get("payload") or "{}")
        return cls(**data)


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    name TEXT NOT NULL,
    normalized_name TEXT NOT NULL DEFAULT '',
    domain TEXT,
    industry TEXT,
    employee_count INTEGER,
    annual_revenue REAL,
    salesforce_id TEXT,
    hubspot_id TEXT,
    merge_account_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_org_domain ON accounts(organization_id, domain);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_org_salesforce ON accounts(organization_id, salesforce_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_org_hubspot ON accounts(organization_id, hubspot_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_org_merge ON accounts(organization_id, merge_account_id);
CREATE INDEX IF NOT EXISTS idx_accounts_org_name ON accounts(organization_id, normalized_name);

CREATE TABLE IF NOT EXISTS account_domains (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    domain TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, domain)
);
CREATE INDEX IF NOT EXISTS idx_account_domains_account ON account_domains(account_id);

CREATE TRIGGER IF NOT EXISTS trg_alias_insert_not_primary
BEFORE INSERT ON account_domains
WHEN EXISTS (SELECT 1 FROM accounts WHERE organization_id = NEW.organization_id AND domain = NEW.domain)
BEGIN
    SELECT RAISE(ABORT, 'domain already claimed as a primary domain');
END;

CREATE TRIGGER IF NOT EXISTS trg_alias_update_not_primary
BEFORE UPDATE OF domain, organization_id ON account_domains
WHEN EXISTS (SELECT 1 FROM accounts WHERE organization_id = NEW.organization_id AND domain = NEW.domain)
BEGIN
    SELECT RAISE(ABORT, 'domain already claimed as a primary domain');
END;

CREATE TRIGGER IF NOT EXISTS trg_primary_insert_not_alias
BEFORE INSERT ON accounts
WHEN NEW.domain IS NOT NULL AND EXISTS (
    SELECT 1 FROM account_domains WHERE organization_id = NEW.organization_id AND domain = NEW.domain
)
BEGIN
    SELECT RAISE(ABORT, 'domain already claimed as an alias domain');
END;

CREATE TRIGGER IF NOT EXISTS trg_primary_update_not_alias
BEFORE UPDATE OF domain, organization_id ON accounts
WHEN NEW.domain IS NOT NULL AND EXISTS (
    SELECT 1 FROM account_domains WHERE organization_id = NEW.organization_id AND domain = NEW.domain
)
BEGIN
    SELECT RAISE(ABORT, 'domain already claimed as an alias domain');
END;

CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    email TEXT NOT NULL,
    email_domain TEXT,
    name TEXT,
    title TEXT,
    phone TEXT,
    salesforce_id TEXT,
    hubspot_id TEXT,
    merge_contact_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, email)
);
CREATE INDEX IF NOT EXISTS idx_contacts_email_domain ON contacts(email_domain);

CREATE TABLE IF NOT EXISTS calls (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    account_id TEXT REFERENCES accounts(id),
    title TEXT,
    provider TEXT NOT NULL,
    external_id TEXT,
    merge_recording_id TEXT,
    recording_url TEXT,
    duration INTEGER,
    occurred_at TEXT,
    match_method TEXT NOT NULL DEFAULT 'NONE',
    match_confidence REAL NOT NULL DEFAULT 0,
    dismissed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_calls_org_provider_external
    ON calls(organization_id, provider, external_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_calls_org_recording ON calls(organization_id, merge_recording_id);
CREATE INDEX IF NOT EXISTS idx_calls_account ON calls(account_id);
CREATE INDEX IF NOT EXISTS idx_calls_queue ON calls(organization_id, match_method, match_confidence);

CREATE TABLE IF NOT EXISTS call_participants (
    id TEXT PRIMARY KEY,
    call_id TEXT NOT NULL REFERENCES calls(id),
    email TEXT,
    name TEXT,
    is_host INTEGER NOT NULL DEFAULT 0,
    contact_id TEXT REFERENCES contacts(id)
);
CREATE INDEX IF NOT EXISTS idx_participants_call ON call_participants(call_id);
CREATE INDEX IF NOT EXISTS idx_participants_contact ON call_participants(contact_id);

CREATE TABLE IF NOT EXISTS transcripts (
    id TEXT PRIMARY KEY,
    call_id TEXT NOT NULL UNIQUE REFERENCES calls(id),
    full_text TEXT NOT NULL,
    word_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stories (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    title TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_stories_account ON stories(account_id);

CREATE TABLE IF NOT EXISTS crm_events (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    event_type TEXT NOT NULL,
    stage_name TEXT,
    opportunity_id TEXT,
    amount REAL,
    close_date TEXT,
    description TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_crm_events_opportunity ON crm_events(account_id, opportunity_id, stage_name);

CREATE TABLE IF NOT EXISTS user_account_access (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_access_account ON user_account_access(account_id);

CREATE TABLE IF NOT EXISTS integration_configs (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    credentials TEXT NOT NULL DEFAULT '{}',
    enabled INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    sync_cursor TEXT,
    last_sync_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS linked_accounts (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    category TEXT NOT NULL,
    integration_slug TEXT NOT NULL,
    account_token TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    initial_sync_done INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS merge_runs (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    primary_account_id TEXT NOT NULL,
    secondary_account_id TEXT NOT NULL,
    status TEXT NOT NULL,
    snapshot TEXT NOT NULL,
    moved TEXT NOT NULL,
    notes TEXT,
    requested_by TEXT,
    created_at TEXT NOT NULL,
    undone_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_merge_runs_org ON merge_runs(organization_id, created_at DESC);

CREATE TABLE IF NOT EXISTS merge_requests (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    primary_account_id TEXT NOT NULL,
    secondary_account_id TEXT NOT NULL,
    requested_by TEXT,
    status TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    reviewer TEXT,
    review_notes TEXT,
    merge_run_id TEXT,
    created_at TEXT NOT NULL,
    reviewed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_merge_requests_org ON merge_requests(organization_id, status);
"""


class IdentityStore:
    """Repository for the account identity graph."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = str(db_path) if db_path else get_identity_db_path()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self):
        """Create tables, indexes and triggers if missing."""
        conn = self._get_conn()
        conn.executescript(SCHEMA)
        conn.commit()
        conn.close()

    @contextmanager
    def transaction(self, outer: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """
        One connection, one transaction: commit on success, roll back on error.

        Pass the yielded connection as ``conn=`` to store methods to include
        them in the transaction. Given an ``outer`` connection, yields it
        unchanged and leaves commit or rollback to its owner.
        """
        if outer is not None:
            yield outer
            return
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        organization_id: str,
        name: str,
        domain: Optional[str] = None,
        industry: Optional[str] = None,
        employee_count: Optional[int] = None,
        annual_revenue: Optional[float] = None,
        salesforce_id: Optional[str] = None,
        hubspot_id: Optional[str] = None,
        merge_account_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Account:
        """Insert an account. Raises sqlite3.IntegrityError if a natural key is taken."""
        now = _now()
        account = Account(
            id=_new_id(),
            organization_id=organization_id,
            name=name,
            normalized_name=normalize_company_name(name),
            domain=domain.strip().lower() if domain else None,
            industry=industry,
            employee_count=employee_count,
            annual_revenue=annual_revenue,
            salesforce_id=salesforce_id,
            hubspot_id=hubspot_id,
            merge_account_id=merge_account_id,
            created_at=now,
            updated_at=now,
        )
        with self._use(conn) as c:
            self.insert_account_row(account, conn=c)
        logger.info(f"Created account '{name}' ({account.id[:8]}) in org {organization_id}")
        return account

    def insert_account_row(self, account: Account, conn: Optional[sqlite3.Connection] = None):
        """Insert an account exactly as given (id and timestamps included)."""
        data = account.to_dict()
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)
        with self._use(conn) as c:
            c.execute(f"INSERT INTO accounts ({columns}) VALUES ({placeholders})", tuple(data.values()))

    def get_account(
        self,
        account_id: str,
        organization_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Account]:
        """Get an account by id, optionally scoped to an organization."""
        with self._use(conn) as c:
            if organization_id:
                row = c.execute(
                    "SELECT * FROM accounts WHERE id = ? AND organization_id = ?",
                    (account_id, organization_id),
                ).fetchone()
            else:
                row = c.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return Account.from_row(row) if row else None

    def list_accounts(self, organization_id: str, conn: Optional[sqlite3.Connection] = None) -> list[Account]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM accounts WHERE organization_id = ? ORDER BY created_at, id",
                (organization_id,),
            ).fetchall()
        return [Account.from_row(r) for r in rows]

    def update_account(
        self,
        account_id: str,
        fields: dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Account]:
        """Update whitelisted account columns; the normalized name follows the name."""
        updates = {k: v for k, v in fields.items() if k in ACCOUNT_MUTABLE_FIELDS}
        if "name" in updates:
            updates["normalized_name"] = normalize_company_name(updates["name"])
        if "domain" in updates and updates["domain"]:
            updates["domain"] = updates["domain"].strip().lower()

        with self._use(conn) as c:
            if updates:
                updates["updated_at"] = _now()
                assignments = ", ".join(f"{k} = ?" for k in updates)
                c.execute(
                    f"UPDATE accounts SET {assignments} WHERE id = ?",
                    (*updates.values(), account_id),
                )
            return self.get_account(account_id, conn=c)

    def find_account_by_crm_id(
        self,
        organization_id: str,
        column: str,
        value: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Account]:
        """Find an account by one of its CRM-native id columns."""
        if column not in ("salesforce_id", "hubspot_id", "merge_account_id"):
            raise ValueError(f"Unknown CRM id column: {column}")
        with self._use(conn) as c:
            row = c.execute(
                f"SELECT * FROM accounts WHERE organization_id = ? AND {column} = ?",
                (organization_id, value),
            ).fetchone()
        return Account.from_row(row) if row else None

    def find_account_by_primary_domain(
        self,
        organization_id: str,
        domains: list[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Account]:
        """First account (oldest) whose primary domain is in ``domains``."""
        if not domains:
            return None
        placeholders = ", ".join("?" for _ in domains)
        with self._use(conn) as c:
            row = c.execute(
                f"""
                SELECT * FROM accounts
                WHERE organization_id = ? AND domain IN ({placeholders})
                ORDER BY created_at, id
                LIMIT 1
                """,
                (organization_id, *domains),
            ).fetchone()
        return Account.from_row(row) if row else None

    def find_account_by_alias_domain(
        self,
        organization_id: str,
        domains: list[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Account]:
        """Account owning the oldest alias row whose domain is in ``domains``."""
        if not domains:
            return None
        placeholders = ", ".join("?" for _ in domains)
        with self._use(conn) as c:
            row = c.execute(
                f"""
                SELECT a.* FROM account_domains d
                JOIN accounts a ON a.id = d.account_id
                WHERE d.organization_id = ? AND d.domain IN ({placeholders})
                ORDER BY d.created_at, d.id
                LIMIT 1
                """,
                (organization_id, *domains),
            ).fetchone()
        return Account.from_row(row) if row else None

    def find_account_by_contact_domain(
        self,
        organization_id: str,
        domains: list[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Account]:
        """Account of the oldest contact whose stored email domain is in ``domains``."""
        if not domains:
            return None
        placeholders = ", ".join("?" for _ in domains)
        with self._use(conn) as c:
            row = c.execute(
                f"""
                SELECT a.* FROM contacts ct
                JOIN accounts a ON a.id = ct.account_id
                WHERE a.organization_id = ? AND ct.email_domain IN ({placeholders})
                ORDER BY ct.created_at, ct.id
                LIMIT 1
                """,
                (organization_id, *domains),
            ).fetchone()
        return Account.from_row(row) if row else None

    def search_accounts(
        self,
        organization_id: str,
        query: str,
        limit: int = 20,
        conn: Optional[sqlite3.Connection] = None,
    ) -> list[Account]:
        """Case-insensitive contains search over name, domain and normalized name."""
        pattern = f"%{(query or '').strip().lower()}%"
        with self._use(conn) as c:
            rows = c.execute(
                """
                SELECT * FROM accounts
                WHERE organization_id = ?
                  AND (LOWER(name) LIKE ? OR LOWER(COALESCE(domain, '')) LIKE ? OR normalized_name LIKE ?)
                ORDER BY name COLLATE NOCASE
                LIMIT ?
                """,
                (organization_id, pattern, pattern, pattern, limit),
            ).fetchall()
        return [Account.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def domain_claimed(
        self,
        organization_id: str,
        domain: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """True if the domain is any account's primary domain or alias in the org."""
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT 1 FROM accounts WHERE organization_id = ? AND domain = ?
                UNION ALL
                SELECT 1 FROM account_domains WHERE organization_id = ? AND domain = ?
                LIMIT 1
                """,
                (organization_id, domain, organization_id, domain),
            ).fetchone()
        return row is not None

    def add_domain_alias(
        self,
        organization_id: str,
        account_id: str,
        domain: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> AccountDomain:
        """
        Attach an alias domain to an account.

        Raises sqlite3.IntegrityError if the domain is already claimed in the
        organization, as a primary domain or as an alias.
        """
        alias = AccountDomain(
            id=_new_id(),
            organization_id=organization_id,
            account_id=account_id,
            domain=domain.strip().lower(),
            created_at=_now(),
        )
        with self._use(conn) as c:
            self.insert_alias_row(alias, conn=c)
        logger.info(f"Added alias domain {alias.domain} to account {account_id[:8]}")
        return alias

    def insert_alias_row(self, alias: AccountDomain, conn: Optional[sqlite3.Connection] = None):
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO account_domains (id, organization_id, account_id, domain, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (alias.id, alias.organization_id, alias.account_id, alias.domain, alias.created_at),
            )

    def list_domain_aliases(self, account_id: str, conn: Optional[sqlite3.Connection] = None) -> list[AccountDomain]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM account_domains WHERE account_id = ? ORDER BY created_at, id",
                (account_id,),
            ).fetchall()
        return [AccountDomain.from_row(r) for r in rows]

    def get_domain_index(self, organization_id: str, conn: Optional[sqlite3.Connection] = None) -> dict[str, str]:
        """Map every claimed domain (primary and alias) in the org to its account id."""
        with self._use(conn) as c:
            primaries = c.execute(
                "SELECT domain, id FROM accounts WHERE organization_id = ? AND domain IS NOT NULL",
                (organization_id,),
            ).fetchall()
            aliases = c.execute(
                "SELECT domain, account_id FROM account_domains WHERE organization_id = ?",
                (organization_id,),
            ).fetchall()

        index: dict[str, str] = {}
        for domain, account_id in list(primaries) + list(aliases):
            index.setdefault(domain, account_id)
        return index

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def upsert_contact(
        self,
        account_id: str,
        email: str,
        name: Optional[str] = None,
        title: Optional[str] = None,
        phone: Optional[str] = None,
        salesforce_id: Optional[str] = None,
        hubspot_id: Optional[str] = None,
        merge_contact_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Contact:
        """
        Insert or update the contact keyed by (account, lowercased email).

        On conflict only non-null incoming values overwrite stored ones.
        """
        email_lower = normalize_email(email)
        if not email_lower:
            raise ValueError("Contact email is required")
        domain = email_lower.split("@")[-1] if "@" in email_lower else None
        now = _now()

        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO contacts
                (id, account_id, email, email_domain, name, title, phone,
                 salesforce_id, hubspot_id, merge_contact_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, email) DO UPDATE SET
                    name = COALESCE(excluded.name, contacts.name),
                    title = COALESCE(excluded.title, contacts.title),
                    phone = COALESCE(excluded.phone, contacts.phone),
                    salesforce_id = COALESCE(excluded.salesforce_id, contacts.salesforce_id),
                    hubspot_id = COALESCE(excluded.hubspot_id, contacts.hubspot_id),
                    merge_contact_id = COALESCE(excluded.merge_contact_id, contacts.merge_contact_id),
                    updated_at = excluded.updated_at
                """,
                (
                    _new_id(), account_id, email_lower, domain, name, title, phone,
                    salesforce_id, hubspot_id, merge_contact_id, now, now,
                ),
            )
            row = c.execute(
                "SELECT * FROM contacts WHERE account_id = ? AND email = ?",
                (account_id, email_lower),
            ).fetchone()
        return Contact.from_row(row)

    def get_contact(self, contact_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Contact]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        return Contact.from_row(row) if row else None

    def find_contact(
        self,
        account_id: str,
        email: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Contact]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM contacts WHERE account_id = ? AND email = ?",
                (account_id, normalize_email(email)),
            ).fetchone()
        return Contact.from_row(row) if row else None

    def list_contacts(self, account_id: str, conn: Optional[sqlite3.Connection] = None) -> list[Contact]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM contacts WHERE account_id = ? ORDER BY created_at, id",
                (account_id,),
            ).fetchall()
        return [Contact.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def create_call(
        self,
        organization_id: str,
        provider: str,
        title: Optional[str] = None,
        external_id: Optional[str] = None,
        merge_recording_id: Optional[str] = None,
        recording_url: Optional[str] = None,
        duration: Optional[int] = None,
        occurred_at: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Call:
        now = _now()
        call = Call(
            id=_new_id(),
            organization_id=organization_id,
            provider=provider,
            title=title,
            external_id=external_id,
            merge_recording_id=merge_recording_id,
            recording_url=recording_url,
            duration=duration,
            occurred_at=occurred_at or now,
            created_at=now,
            updated_at=now,
        )
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO calls
                (id, organization_id, provider, title, external_id, merge_recording_id,
                 recording_url, duration, occurred_at, match_method, match_confidence,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    call.id, organization_id, provider, title, external_id, merge_recording_id,
                    recording_url, duration, call.occurred_at, MatchMethod.NONE.value, 0.0,
                    now, now,
                ),
            )
        return call

    def get_call(
        self,
        call_id: str,
        organization_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Call]:
        with self._use(conn) as c:
            if organization_id:
                row = c.execute(
                    "SELECT * FROM calls WHERE id = ? AND organization_id = ?",
                    (call_id, organization_id),
                ).fetchone()
            else:
                row = c.execute("SELECT * FROM calls WHERE id = ?", (call_id,)).fetchone()
        return Call.from_row(row) if row else None

    def find_call_by_external_id(
        self,
        organization_id: str,
        provider: str,
        external_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Call]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM calls WHERE organization_id = ? AND provider = ? AND external_id = ?",
                (organization_id, provider, external_id),
            ).fetchone()
        return Call.from_row(row) if row else None

    def find_call_by_recording_id(
        self,
        organization_id: str,
        merge_recording_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Call]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM calls WHERE organization_id = ? AND merge_recording_id = ?",
                (organization_id, merge_recording_id),
            ).fetchone()
        return Call.from_row(row) if row else None

    def update_call_details(
        self,
        call_id: str,
        title: Optional[str] = None,
        recording_url: Optional[str] = None,
        duration: Optional[int] = None,
        occurred_at: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ):
        """Refresh provider-owned call fields; None leaves the stored value."""
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE calls SET
                    title = COALESCE(?, title),
                    recording_url = COALESCE(?, recording_url),
                    duration = COALESCE(?, duration),
                    occurred_at = COALESCE(?, occurred_at),
                    updated_at = ?
                WHERE id = ?
                """,
                (title, recording_url, duration, occurred_at, _now(), call_id),
            )

    def set_call_resolution(
        self,
        call_id: str,
        account_id: Optional[str],
        match_method: MatchMethod,
        confidence: float,
        conn: Optional[sqlite3.Connection] = None,
    ):
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE calls SET account_id = ?, match_method = ?, match_confidence = ?, updated_at = ?
                WHERE id = ?
                """,
                (account_id, match_method.value, confidence, _now(), call_id),
            )

    def dismiss_calls(
        self,
        organization_id: str,
        call_ids: list[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Stamp dismissed_at on the org's calls; returns how many rows changed."""
        if not call_ids:
            return 0
        placeholders = ", ".join("?" for _ in call_ids)
        now = _now()
        with self._use(conn) as c:
            cursor = c.execute(
                f"""
                UPDATE calls SET dismissed_at = ?, updated_at = ?
                WHERE organization_id = ? AND id IN ({placeholders})
                """,
                (now, now, organization_id, *call_ids),
            )
            return cursor.rowcount

    def list_calls_for_account(self, account_id: str, conn: Optional[sqlite3.Connection] = None) -> list[Call]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM calls WHERE account_id = ? ORDER BY occurred_at DESC, id",
                (account_id,),
            ).fetchall()
        return [Call.from_row(r) for r in rows]

    def query_unresolved_calls(
        self,
        organization_id: str,
        confidence_threshold: float,
        search: Optional[str] = None,
        order_by: str = "occurred_at",
        descending: bool = True,
        limit: int = 25,
        offset: int = 0,
    ) -> tuple[list[Call], int]:
        """
        Calls that need review: no match, or a match below the threshold,
        and not dismissed. Returns (page, total).
        """
        if order_by not in ("occurred_at", "match_confidence"):
            raise ValueError(f"Unsupported sort column: {order_by}")

        where = (
            "organization_id = ? AND dismissed_at IS NULL "
            "AND (match_method = 'NONE' OR match_confidence < ?)"
        )
        params: list[Any] = [organization_id, confidence_threshold]
        if search:
            where += " AND LOWER(COALESCE(title, '')) LIKE ?"
            params.append(f"%{search.strip().lower()}%")

        direction = "DESC" if descending else "ASC"
        with self._use() as c:
            total = c.execute(f"SELECT COUNT(*) FROM calls WHERE {where}", params).fetchone()[0]
            rows = c.execute(
                f"SELECT * FROM calls WHERE {where} ORDER BY {order_by} {direction}, id LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [Call.from_row(r) for r in rows], total

    def count_calls(self, organization_id: str, where: str = "1 = 1", params: tuple = ()) -> int:
        """Count the org's calls matching an extra SQL predicate."""
        with self._use() as c:
            return c.execute(
                f"SELECT COUNT(*) FROM calls WHERE organization_id = ? AND ({where})",
                (organization_id, *params),
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Participants and transcripts
    # ------------------------------------------------------------------

    def add_participant(
        self,
        call_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        is_host: bool = False,
        conn: Optional[sqlite3.Connection] = None,
    ) -> CallParticipant:
        participant = CallParticipant(
            id=_new_id(),
            call_id=call_id,
            email=normalize_email(email),
            name=name,
            is_host=is_host,
        )
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO call_participants (id, call_id, email, name, is_host)
                VALUES (?, ?, ?, ?, ?)
                """,
                (participant.id, call_id, participant.email, name, 1 if is_host else 0),
            )
        return participant

    def list_participants(self, call_id: str, conn: Optional[sqlite3.Connection] = None) -> list[CallParticipant]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM call_participants WHERE call_id = ? ORDER BY rowid",
                (call_id,),
            ).fetchall()
        return [CallParticipant.from_row(r) for r in rows]

    def link_participants_to_contact(
        self,
        call_id: str,
        email: str,
        contact_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ):
        """Point every participant of the call with this email at the contact."""
        with self._use(conn) as c:
            c.execute(
                "UPDATE call_participants SET contact_id = ? WHERE call_id = ? AND email = ?",
                (contact_id, call_id, normalize_email(email)),
            )

    def upsert_transcript(
        self,
        call_id: str,
        full_text: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Transcript:
        word_count = len(full_text.split())
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO transcripts (id, call_id, full_text, word_count, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(call_id) DO UPDATE SET
                    full_text = excluded.full_text,
                    word_count = excluded.word_count
                """,
                (_new_id(), call_id, full_text, word_count, _now()),
            )
            row = c.execute("SELECT * FROM transcripts WHERE call_id = ?", (call_id,)).fetchone()
        return Transcript.from_row(row)

    def get_transcript(self, call_id: str) -> Optional[Transcript]:
        with self._use() as c:
            row = c.execute("SELECT * FROM transcripts WHERE call_id = ?", (call_id,)).fetchone()
        return Transcript.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Stories, CRM events, access grants
    # ------------------------------------------------------------------

    def create_story(self, organization_id: str, account_id: str, title: str) -> str:
        story_id = _new_id()
        with self._use() as c:
            c.execute(
                "INSERT INTO stories (id, organization_id, account_id, title, created_at) VALUES (?, ?, ?, ?, ?)",
                (story_id, organization_id, account_id, title, _now()),
            )
        return story_id

    def crm_event_exists(
        self,
        account_id: str,
        opportunity_id: Optional[str],
        stage_name: Optional[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Existence check on the (account, opportunity, stage) triple, NULL-safe."""
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT 1 FROM crm_events
                WHERE account_id = ? AND opportunity_id IS ? AND stage_name IS ?
                LIMIT 1
                """,
                (account_id, opportunity_id, stage_name),
            ).fetchone()
        return row is not None

    def add_crm_event(
        self,
        account_id: str,
        event_type: CrmEventType,
        opportunity_id: Optional[str] = None,
        stage_name: Optional[str] = None,
        amount: Optional[float] = None,
        close_date: Optional[str] = None,
        description: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> str:
        event_id = _new_id()
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO crm_events
                (id, account_id, event_type, stage_name, opportunity_id, amount, close_date, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id, account_id, event_type.value, stage_name, opportunity_id,
                    amount, close_date, description, _now(),
                ),
            )
        return event_id

    def list_crm_events(self, account_id: str) -> list[dict]:
        with self._use() as c:
            rows = c.execute(
                "SELECT * FROM crm_events WHERE account_id = ? ORDER BY created_at, id",
                (account_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def grant_account_access(self, organization_id: str, user_id: str, account_id: str) -> str:
        grant_id = _new_id()
        with self._use() as c:
            c.execute(
                """
                INSERT INTO user_account_access (id, organization_id, user_id, account_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (grant_id, organization_id, user_id, account_id, _now()),
            )
        return grant_id

    def count_account_records(self, account_id: str, conn: Optional[sqlite3.Connection] = None) -> dict[str, int]:
        """Number of dependent records per type for one account."""
        tables = {
            "contacts": "contacts",
            "calls": "calls",
            "stories": "stories",
            "crm_events": "crm_events",
            "access_grants": "user_account_access",
            "domain_aliases": "account_domains",
        }
        counts = {}
        with self._use(conn) as c:
            for key, table in tables.items():
                counts[key] = c.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE account_id = ?", (account_id,)
                ).fetchone()[0]
        return counts

    # ------------------------------------------------------------------
    # Integration configs
    # ------------------------------------------------------------------

    def create_integration_config(
        self,
        organization_id: str,
        provider: str,
        credentials: Optional[dict] = None,
        enabled: bool = True,
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
    ) -> IntegrationConfig:
        now = _now()
        config = IntegrationConfig(
            id=_new_id(),
            organization_id=organization_id,
            provider=provider,
            credentials=credentials or {},
            enabled=enabled,
            status=status,
            created_at=now,
            updated_at=now,
        )
        with self._use() as c:
            c.execute(
                """
                INSERT INTO integration_configs
                (id, organization_id, provider, credentials, enabled, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    config.id, organization_id, provider, json.dumps(config.credentials),
                    1 if enabled else 0, status.value, now, now,
                ),
            )
        return config

    def get_integration_config(self, config_id: str) -> Optional[IntegrationConfig]:
        with self._use() as c:
            row = c.execute("SELECT * FROM integration_configs WHERE id = ?", (config_id,)).fetchone()
        return IntegrationConfig.from_row(row) if row else None

    def list_syncable_configs(self) -> list[IntegrationConfig]:
        """Enabled configs that are ACTIVE or in ERROR (errored ones are retried)."""
        with self._use() as c:
            rows = c.execute(
                """
                SELECT * FROM integration_configs
                WHERE enabled = 1 AND status IN (?, ?)
                ORDER BY created_at, id
                """,
                (IntegrationStatus.ACTIVE.value, IntegrationStatus.ERROR.value),
            ).fetchall()
        return [IntegrationConfig.from_row(r) for r in rows]

    def save_sync_cursor(self, config_id: str, cursor: Optional[str]):
        with self._use() as c:
            c.execute(
                "UPDATE integration_configs SET sync_cursor = ?, updated_at = ? WHERE id = ?",
                (cursor, _now(), config_id),
            )

    def mark_sync_success(self, config_id: str, synced_at: Optional[str] = None):
        """Full sync done: stamp last_sync_at, reset the cursor, clear the error state."""
        now = _now()
        with self._use() as c:
            c.execute(
                """
                UPDATE integration_configs SET
                    last_sync_at = ?, sync_cursor = NULL, status = ?, last_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (synced_at or now, IntegrationStatus.ACTIVE.value, now, config_id),
            )

    def mark_sync_error(self, config_id: str, error: str):
        with self._use() as c:
            c.execute(
                "UPDATE integration_configs SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (IntegrationStatus.ERROR.value, error, _now(), config_id),
            )

    # ------------------------------------------------------------------
    # Unified-API linked accounts
    # ------------------------------------------------------------------

    def create_linked_account(
        self,
        organization_id: str,
        category: str,
        integration_slug: str,
        account_token: str,
        status: str = "ACTIVE",
    ) -> LinkedAccount:
        linked = LinkedAccount(
            id=_new_id(),
            organization_id=organization_id,
            category=category,
            integration_slug=integration_slug,
            account_token=account_token,
            status=status,
            created_at=_now(),
        )
        with self._use() as c:
            c.execute(
                """
                INSERT INTO linked_accounts
                (id, organization_id, category, integration_slug, account_token, status, initial_sync_done, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    linked.id, organization_id, category, integration_slug,
                    account_token, status, linked.created_at,
                ),
            )
        return linked

    def get_linked_account(self, linked_id: str) -> Optional[LinkedAccount]:
        with self._use() as c:
            row = c.execute("SELECT * FROM linked_accounts WHERE id = ?", (linked_id,)).fetchone()
        return LinkedAccount.from_row(row) if row else None

    def list_linked_accounts(self, status: Optional[str] = None, category: Optional[str] = None) -> list[LinkedAccount]:
        query = "SELECT * FROM linked_accounts WHERE 1 = 1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY created_at, id"
        with self._use() as c:
            rows = c.execute(query, params).fetchall()
        return [LinkedAccount.from_row(r) for r in rows]

    def update_linked_account(
        self,
        linked_id: str,
        status: Optional[str] = None,
        initial_sync_done: Optional[bool] = None,
        last_synced_at: Optional[str] = None,
    ):
        updates: dict[str, Any] = {}
        if status is not None:
            updates["status"] = status
        if initial_sync_done is not None:
            updates["initial_sync_done"] = 1 if initial_sync_done else 0
        if last_synced_at is not None:
            updates["last_synced_at"] = last_synced_at
        if not updates:
            return
        assignments = ", ".join(f"{k} = ?" for k in updates)
        with self._use() as c:
            c.execute(f"UPDATE linked_accounts SET {assignments} WHERE id = ?", (*updates.values(), linked_id))

    # ------------------------------------------------------------------
    # Merge runs and requests
    # ------------------------------------------------------------------

    def insert_merge_run(self, run: MergeRun, conn: Optional[sqlite3.Connection] = None):
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO merge_runs
                (id, organization_id, primary_account_id, secondary_account_id, status,
                 snapshot, moved, notes, requested_by, created_at, undone_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id, run.organization_id, run.primary_account_id, run.secondary_account_id,
                    run.status.value, json.dumps(run.snapshot), json.dumps(run.moved),
                    run.notes, run.requested_by, run.created_at, run.undone_at,
                ),
            )

    def get_merge_run(
        self,
        run_id: str,
        organization_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[MergeRun]:
        with self._use(conn) as c:
            if organization_id:
                row = c.execute(
                    "SELECT * FROM merge_runs WHERE id = ? AND organization_id = ?",
                    (run_id, organization_id),
                ).fetchone()
            else:
                row = c.execute("SELECT * FROM merge_runs WHERE id = ?", (run_id,)).fetchone()
        return MergeRun.from_row(row) if row else None

    def list_merge_runs(self, organization_id: str, limit: int = 50) -> list[MergeRun]:
        with self._use() as c:
            rows = c.execute(
                "SELECT * FROM merge_runs WHERE organization_id = ? ORDER BY created_at DESC LIMIT ?",
                (organization_id, limit),
            ).fetchall()
        return [MergeRun.from_row(r) for r in rows]

    def mark_merge_run_undone(self, run_id: str, conn: Optional[sqlite3.Connection] = None) -> str:
        undone_at = _now()
        with self._use(conn) as c:
            c.execute(
                "UPDATE merge_runs SET status = ?, undone_at = ? WHERE id = ?",
                (MergeRunStatus.UNDONE.value, undone_at, run_id),
            )
        return undone_at

    def insert_merge_request(self, request: MergeRequest):
        with self._use() as c:
            c.execute(
                """
                INSERT INTO merge_requests
                (id, organization_id, primary_account_id, secondary_account_id, requested_by,
                 status, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id, request.organization_id, request.primary_account_id,
                    request.secondary_account_id, request.requested_by, request.status.value,
                    json.dumps(request.payload), request.created_at,
                ),
            )

    def get_merge_request(self, request_id: str, organization_id: str) -> Optional[MergeRequest]:
        with self._use() as c:
            row = c.execute(
                "SELECT * FROM merge_requests WHERE id = ? AND organization_id = ?",
                (request_id, organization_id),
            ).fetchone()
        return MergeRequest.from_row(row) if row else None

    def list_merge_requests(self, organization_id: str, status: Optional[str] = None) -> list[MergeRequest]:
        query = "SELECT * FROM merge_requests WHERE organization_id = ?"
        params: list[Any] = [organization_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        with self._use() as c:
            rows = c.execute(query, params).fetchall()
        return [MergeRequest.from_row(r) for r in rows]

    def finalize_merge_request(
        self,
        request_id: str,
        status: MergeRequestStatus,
        reviewer: Optional[str],
        review_notes: Optional[str],
        merge_run_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Move a PENDING request to its final status.

        Returns False when the request was no longer PENDING (another reviewer
        got there first).
        """
        with self._use(conn) as c:
            cursor = c.execute(
                """
                UPDATE merge_requests SET
                    status = ?, reviewer = ?, review_notes = ?, merge_run_id = ?, reviewed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value, reviewer, review_notes, merge_run_id, _now(),
                    request_id, MergeRequestStatus.PENDING.value,
                ),
            )
            return cursor.rowcount > 0


# Singleton instance
_identity_store: Optional[IdentityStore] = None


def get_identity_store() -> IdentityStore:
    """Get singleton IdentityStore instance."""
    global _identity_store
    if _identity_store is None:
        _identity_store = IdentityStore()
    return _identity_store
