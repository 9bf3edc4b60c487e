"""
Sync Engine for provider integrations.

Periodically reconciles every enabled integration config:
- Call-recording providers: cursor-paginated call fetch, call upsert,
  participant creation, entity resolution, transcript storage, and a
  downstream processing job for each freshly stored transcript.
- CRM providers: accounts, then contacts, then opportunities (contacts and
  opportunities reference the accounts created in the first pass).

One failing integration never blocks the others: its config is marked
ERROR with the message and the next config runs. ERROR configs are polled
again on the next cycle.
"""
import logging
import sqlite3
import threading
import time
import traceback
from dataclasses import dataclass, asdict
from typing import Any, Callable, Optional

from api.services.entity_resolver import EntityResolver, ParticipantInput
from api.services.identity_store import (
    Call,
    CrmEventType,
    IdentityStore,
    IntegrationConfig,
    MatchMethod,
    get_identity_store,
)
from api.services.integration_types import (
    CallRecordingProvider,
    CrmProvider,
    NormalizedAccount,
    NormalizedCall,
    NormalizedContact,
    NormalizedOpportunity,
    OpportunityStatus,
    ProviderPage,
)
from api.services.job_queue import JobQueue, ProcessCallJob, enqueue_process_call_job, get_job_queue
from api.services.normalizer import extract_domain_from_url, extract_email_domain, normalize_email
from api.services.provider_registry import ProviderRegistry, get_provider_registry
from api.services.resilience import EnqueueError
from api.services.sync_health import (
    SyncStatus,
    record_sync_start,
    record_sync_complete,
    record_sync_error,
)
from config.resolution_config import CRM_ID_COLUMNS
from config.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_CRM_ID_COLUMN = "salesforce_id"


@dataclass
class SyncOutcome:
    """What one integration's sync run did."""
    config_id: str
    provider: str
    status: SyncStatus
    calls_synced: int = 0
    accounts_synced: int = 0
    contacts_synced: int = 0
    opportunities_synced: int = 0
    jobs_enqueued: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class SyncBudgetExceeded(Exception):
    """Internal signal: the per-config time budget ran out between pages."""


def crm_id_column(provider: str) -> str:
    """Account/contact column that stores this CRM's native id."""
    return CRM_ID_COLUMNS.get(provider.lower(), DEFAULT_CRM_ID_COLUMN)


def parse_crm_cursor(saved: Optional[str], phases: list[str]) -> tuple[str, Optional[str]]:
    """
    Split a saved CRM cursor into (phase, provider cursor).

    Anything unrecognized, including a cursor saved before phases were
    recorded, restarts from the first phase.
    """
    if saved:
        phase, sep, cursor = saved.partition(":")
        if sep and phase in phases:
            return phase, cursor or None
        logger.warning(f"Ignoring unrecognized CRM sync cursor {saved!r}, starting from {phases[0]}")
    return phases[0], None


def opportunity_event_type(opportunity: NormalizedOpportunity) -> CrmEventType:
    if opportunity.status == OpportunityStatus.WON:
        return CrmEventType.CLOSED_WON
    if opportunity.status == OpportunityStatus.LOST:
        return CrmEventType.CLOSED_LOST
    return CrmEventType.OPPORTUNITY_STAGE_CHANGE


class SyncEngine:
    """
    Orchestrates sync across all enabled integrations.

    Usage:
        engine = SyncEngine(store, registry=registry, queue=queue)
        outcomes = engine.sync_all()
    """

    def __init__(
        self,
        store: Optional[IdentityStore] = None,
        resolver: Optional[EntityResolver] = None,
        registry: Optional[ProviderRegistry] = None,
        queue: Optional[JobQueue] = None,
        time_budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store or get_identity_store()
        self.resolver = resolver or EntityResolver(self.store)
        self.registry = registry or get_provider_registry()
        self.queue = queue or get_job_queue()
        self.time_budget_seconds = (
            time_budget_seconds if time_budget_seconds is not None else settings.sync_time_budget_seconds
        )
        self.clock = clock
        self._running: set[str] = set()
        self._running_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def sync_all(self, trigger_source: str = "scheduled") -> list[SyncOutcome]:
        """Sync every enabled ACTIVE or ERROR config, isolating failures per config."""
        configs = self.store.list_syncable_configs()
        logger.info(f"Starting sync cycle over {len(configs)} integrations")

        outcomes = []
        for config in configs:
            try:
                outcomes.append(self.sync_integration(config, trigger_source=trigger_source))
            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error(f"Sync failed for integration {config.id} ({config.provider}): {message}")
                self.store.mark_sync_error(config.id, message)
                record_sync_error(
                    config.id,
                    message,
                    error_type=type(e).__name__,
                    stack_trace=traceback.format_exc(),
                    context=f"provider={config.provider} org={config.organization_id}",
                    db_path=self.store.db_path,
                )
                outcomes.append(SyncOutcome(
                    config_id=config.id,
                    provider=config.provider,
                    status=SyncStatus.FAILED,
                    error=message,
                ))

        failed = sum(1 for o in outcomes if o.status == SyncStatus.FAILED)
        logger.info(f"Sync cycle finished: {len(outcomes)} integrations, {failed} failed")
        return outcomes

    def sync_integration(self, config: IntegrationConfig, trigger_source: str = "manual") -> SyncOutcome:
        """
        Sync one integration. Raises on provider failure (sync_all records it).
        """
        outcome = SyncOutcome(config_id=config.id, provider=config.provider, status=SyncStatus.RUNNING)

        call_provider = self.registry.get_call_provider(config.provider)
        crm_provider = self.registry.get_crm_provider(config.provider)
        if call_provider is None and crm_provider is None:
            logger.warning(f"No provider registered for {config.provider}, skipping integration {config.id}")
            outcome.status = SyncStatus.SKIPPED
            return outcome

        with self._running_lock:
            if config.id in self._running:
                logger.warning(f"Integration {config.id} is already syncing, skipping overlapping run")
                outcome.status = SyncStatus.SKIPPED
                return outcome
            self._running.add(config.id)

        run_id = record_sync_start(
            config.id, provider=config.provider, trigger_source=trigger_source, db_path=self.store.db_path
        )
        deadline = self.clock() + self.time_budget_seconds

        try:
            if call_provider is not None:
                completed = self._sync_calls(config, call_provider, outcome, deadline)
            else:
                completed = self._sync_crm(config, crm_provider, outcome, deadline)
        except Exception as e:
            record_sync_complete(
                run_id,
                SyncStatus.FAILED,
                calls_synced=outcome.calls_synced,
                accounts_synced=outcome.accounts_synced,
                contacts_synced=outcome.contacts_synced,
                opportunities_synced=outcome.opportunities_synced,
                error_message=str(e) or type(e).__name__,
                db_path=self.store.db_path,
            )
            raise
        finally:
            with self._running_lock:
                self._running.discard(config.id)

        if completed:
            self.store.mark_sync_success(config.id)
            outcome.status = SyncStatus.SUCCESS
        else:
            logger.warning(
                f"Time budget of {self.time_budget_seconds}s exhausted for integration {config.id}; "
                f"resuming from saved cursor next cycle"
            )
            outcome.status = SyncStatus.PARTIAL

        record_sync_complete(
            run_id,
            outcome.status,
            calls_synced=outcome.calls_synced,
            accounts_synced=outcome.accounts_synced,
            contacts_synced=outcome.contacts_synced,
            opportunities_synced=outcome.opportunities_synced,
            db_path=self.store.db_path,
        )
        return outcome

    # ------------------------------------------------------------------
    # Call recordings
    # ------------------------------------------------------------------

    def _sync_calls(
        self,
        config: IntegrationConfig,
        provider: CallRecordingProvider,
        outcome: SyncOutcome,
        deadline: float,
    ) -> bool:
        """Page through calls from the saved cursor. Returns False if the budget ran out."""
        cursor = config.sync_cursor

        while True:
            page: ProviderPage[NormalizedCall] = provider.fetch_calls(
                config.credentials, cursor, config.last_sync_at
            )
            for normalized in page.data:
                _call, enqueued = self.persist_call(config.organization_id, config.provider, normalized)
                outcome.calls_synced += 1
                outcome.jobs_enqueued += 1 if enqueued else 0

            cursor = page.next_cursor
            has_more = page.has_more and bool(cursor)

            # Progress is defined by the cursor, saved after every page
            self.store.save_sync_cursor(config.id, cursor)

            if not has_more:
                return True
            if self.clock() >= deadline:
                return False

    def persist_call(self, organization_id: str, provider: str, normalized: NormalizedCall) -> tuple[Call, bool]:
        """
        Upsert one call and run resolution.

        Participants and transcript are written only when the call is new,
        so re-syncing a page never duplicates them. Returns (call, enqueued).
        """
        call, created = self._upsert_call(organization_id, provider, normalized)

        if created:
            for p in normalized.participants:
                self.store.add_participant(call.id, email=p.email, name=p.name, is_host=p.is_host)

        # An operator's decision outranks any automatic match
        if not created and call.match_method == MatchMethod.MANUAL:
            logger.debug(f"Call {call.id[:8]} was resolved manually, keeping its account")
            return call, False

        participants = [ParticipantInput(email=p.email, name=p.name) for p in normalized.participants]
        resolution = self.resolver.resolve_and_link_contacts(
            organization_id, call.id, participants, call_title=normalized.title
        )

        if not (created and normalized.transcript):
            return call, False

        self.store.upsert_transcript(call.id, normalized.transcript)

        job = ProcessCallJob(
            call_id=call.id,
            organization_id=organization_id,
            account_id=resolution.account_id or None,
            has_transcript=True,
        )
        try:
            enqueue_process_call_job(self.queue, job, source="sync-engine")
        except EnqueueError as e:
            logger.error(f"Call {call.id} stored but not queued for processing: {e}")
            return call, False
        return call, True

    def _upsert_call(self, organization_id: str, provider: str, normalized: NormalizedCall) -> tuple[Call, bool]:
        existing = self.store.find_call_by_external_id(organization_id, provider, normalized.external_id)
        if existing:
            self.store.update_call_details(
                existing.id,
                title=normalized.title,
                recording_url=normalized.recording_url,
                duration=normalized.duration,
                occurred_at=normalized.occurred_at,
            )
            return existing, False

        try:
            call = self.store.create_call(
                organization_id,
                provider,
                title=normalized.title,
                external_id=normalized.external_id,
                recording_url=normalized.recording_url,
                duration=normalized.duration,
                occurred_at=normalized.occurred_at,
            )
            return call, True
        except sqlite3.IntegrityError:
            # Another run inserted it between our lookup and insert
            existing = self.store.find_call_by_external_id(organization_id, provider, normalized.external_id)
            if existing is None:
                raise
            return existing, False

    # ------------------------------------------------------------------
    # CRM
    # ------------------------------------------------------------------

    def _sync_crm(
        self,
        config: IntegrationConfig,
        provider: CrmProvider,
        outcome: SyncOutcome,
        deadline: float,
    ) -> bool:
        """
        Accounts, then contacts, then opportunities. Returns False if the budget ran out.

        The saved cursor is "<phase>:<provider cursor>", so a run stopped by
        the budget resumes inside the phase it reached.
        """
        org = config.organization_id
        phases = (
            ("accounts", provider.fetch_accounts, lambda item: self.persist_account(org, config.provider, item)),
            ("contacts", provider.fetch_contacts, lambda item: self.persist_contact(org, config.provider, item)),
            (
                "opportunities",
                provider.fetch_opportunities,
                lambda item: self.persist_opportunity(org, config.provider, item),
            ),
        )

        labels = [label for label, _fetch, _handler in phases]
        start_label, start_cursor = parse_crm_cursor(config.sync_cursor, labels)

        for position, (label, fetch, handler) in enumerate(phases):
            if position < labels.index(start_label):
                continue
            if label != start_label and self.clock() >= deadline:
                return False
            cursor = start_cursor if label == start_label else None
            next_label = labels[position + 1] if position + 1 < len(labels) else None
            try:
                count = self._drain(config, label, next_label, fetch, handler, deadline, cursor)
            except SyncBudgetExceeded as partial:
                setattr(outcome, f"{label}_synced", getattr(outcome, f"{label}_synced") + partial.args[0])
                return False
            setattr(outcome, f"{label}_synced", getattr(outcome, f"{label}_synced") + count)
            logger.info(f"Synced {count} {label} for integration {config.id}")

        return True

    def _drain(
        self,
        config: IntegrationConfig,
        label: str,
        next_label: Optional[str],
        fetch: Callable[..., ProviderPage],
        handler: Callable[[Any], bool],
        deadline: float,
        cursor: Optional[str] = None,
    ) -> int:
        """Page through one CRM object type from `cursor`; returns how many were persisted."""
        persisted = 0
        while True:
            page = fetch(config.credentials, cursor, config.last_sync_at)
            for item in page.data:
                if handler(item):
                    persisted += 1

            cursor = page.next_cursor
            has_more = page.has_more and bool(cursor)

            # Same rule as calls: the cursor, saved after every page, is the progress marker
            if has_more:
                self.store.save_sync_cursor(config.id, f"{label}:{cursor}")
            elif next_label:
                self.store.save_sync_cursor(config.id, f"{next_label}:")

            if not has_more:
                return persisted
            if self.clock() >= deadline:
                raise SyncBudgetExceeded(persisted)

    def persist_account(self, organization_id: str, provider: str, account: NormalizedAccount) -> bool:
        """Upsert an account by (org, CRM id); only non-null incoming fields overwrite."""
        column = crm_id_column(provider)
        domain = extract_domain_from_url(account.domain)
        existing = self.store.find_account_by_crm_id(organization_id, column, account.external_id)

        if existing is None and domain:
            # Same company already known by domain: adopt it instead of duplicating
            by_domain = self.store.find_account_by_primary_domain(organization_id, [domain])
            if by_domain and not getattr(by_domain, column):
                existing = by_domain

        fields: dict[str, Any] = {
            "name": account.name,
            column: account.external_id,
            "industry": account.industry,
            "employee_count": account.employee_count,
            "annual_revenue": account.annual_revenue,
        }
        fields = {k: v for k, v in fields.items() if v is not None}

        if existing:
            if domain and domain != existing.domain:
                if self.store.domain_claimed(organization_id, domain):
                    logger.warning(
                        f"CRM account {account.external_id} domain {domain} is claimed by another account; "
                        f"keeping {existing.domain}"
                    )
                else:
                    fields["domain"] = domain
            self.store.update_account(existing.id, fields)
            return True

        if domain and self.store.domain_claimed(organization_id, domain):
            logger.warning(f"CRM account {account.external_id} domain {domain} already claimed; creating without it")
            domain = None

        self.store.create_account(
            organization_id,
            account.name,
            domain=domain,
            industry=account.industry,
            employee_count=account.employee_count,
            annual_revenue=account.annual_revenue,
            **{column: account.external_id},
        )
        return True

    def persist_contact(self, organization_id: str, provider: str, contact: NormalizedContact) -> bool:
        """
        Upsert a contact under its account.

        Needs a company email and a local account (by CRM reference, then by
        domain). Unmatched contacts are skipped; a later account sync may
        create the match.
        """
        email = normalize_email(contact.email)
        if not email:
            return False
        domain = extract_email_domain(email)
        if not domain:
            return False

        column = crm_id_column(provider)
        account = None
        if contact.account_external_id:
            account = self.store.find_account_by_crm_id(organization_id, column, contact.account_external_id)
        if account is None:
            account = self.store.find_account_by_primary_domain(organization_id, [domain])
        if account is None:
            logger.debug(f"No account for CRM contact {contact.external_id} ({domain}), skipping")
            return False

        self.store.upsert_contact(
            account.id,
            email,
            name=contact.name,
            title=contact.title,
            phone=contact.phone,
            **{column: contact.external_id},
        )
        return True

    def persist_opportunity(self, organization_id: str, provider: str, opportunity: NormalizedOpportunity) -> bool:
        """Append an opportunity ledger entry unless (account, opportunity, stage) is already there."""
        account = self.store.find_account_by_crm_id(
            organization_id, crm_id_column(provider), opportunity.account_external_id
        )
        if account is None:
            return False

        if self.store.crm_event_exists(account.id, opportunity.external_id, opportunity.stage):
            return False

        self.store.add_crm_event(
            account.id,
            opportunity_event_type(opportunity),
            opportunity_id=opportunity.external_id,
            stage_name=opportunity.stage,
            amount=opportunity.amount,
            close_date=opportunity.close_date,
            description=opportunity.name,
        )
        return True


# Singleton instance
_sync_engine: Optional[SyncEngine] = None


def get_sync_engine() -> SyncEngine:
    """Get singleton SyncEngine instance."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = SyncEngine()
    return _sync_engine
