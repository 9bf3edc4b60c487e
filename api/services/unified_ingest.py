"""
Unified-API ingestion (recording and CRM aggregator).

Linked accounts connected through the aggregator deliver recordings and
CRM objects in one shared shape. Recordings are keyed by the aggregator's
recording id; CRM accounts by the aggregator account id, then by domain.

- run_initial_sync() backfills a newly linked account once
- poll_all_linked_accounts() is the periodic CRM fallback for missed
  webhooks; one linked account failing never stops the others
"""
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import httpx

from api.services.entity_resolver import EntityResolver, ParticipantInput
from api.services.identity_store import (
    Call,
    IdentityStore,
    LinkedAccount,
    MatchMethod,
    get_identity_store,
)
from api.services.job_queue import JobQueue, ProcessCallJob, enqueue_process_call_job, get_job_queue
from api.services.normalizer import (
    extract_domain_from_url,
    extract_email_domain,
    normalize_email,
)
from api.services.resilience import (
    EnqueueError,
    RetryConfig,
    ServiceUnavailableError,
    is_retryable_status,
    retry_sync,
)
from api.services.sync_engine import opportunity_event_type
from api.services.integration_types import NormalizedOpportunity, OpportunityStatus
from config.resolution_config import (
    CRM_ID_COLUMNS,
    DEFAULT_CALL_PROVIDER,
    INTEGRATION_SLUG_PROVIDERS,
)
from config.settings import settings

logger = logging.getLogger(__name__)

CATEGORY_RECORDING = "RECORDING"
CATEGORY_CRM = "CRM"

RECORDINGS_PATH = "/filestorage/v1/recordings"
CRM_ACCOUNTS_PATH = "/crm/v1/accounts"
CRM_CONTACTS_PATH = "/crm/v1/contacts"
CRM_OPPORTUNITIES_PATH = "/crm/v1/opportunities"


class TransientApiError(ServiceUnavailableError):
    """429/5xx from the unified API; safe to retry."""


API_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=(TransientApiError, httpx.TransportError),
)


def integration_slug_to_provider(slug: str) -> str:
    """Map an aggregator integration slug to our call provider id."""
    return INTEGRATION_SLUG_PROVIDERS.get((slug or "").lower(), DEFAULT_CALL_PROVIDER)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class UnifiedApiClient:
    """HTTP client for the unified API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.unified_api_key
        self.base_url = (base_url or settings.unified_api_base_url).rstrip("/")
        self.page_size = page_size or settings.unified_api_page_size
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=settings.unified_api_timeout)
        return self._http_client

    def close(self):
        """Close HTTP client."""
        if self._http_client:
            self._http_client.close()
            self._http_client = None

    def _headers(self, account_token: Optional[str]) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if account_token:
            headers["X-Account-Token"] = account_token
        return headers

    @retry_sync(config=API_RETRY_CONFIG)
    def get(self, path: str, params: Optional[dict[str, Any]] = None, account_token: Optional[str] = None) -> dict:
        """
        Authenticated GET.

        Raises:
            TransientApiError: 429/5xx after retries
            ServiceUnavailableError: any other non-2xx response
        """
        response = self.http_client.get(
            f"{self.base_url}{path}",
            params=params or {},
            headers=self._headers(account_token),
        )
        if response.status_code >= 400:
            error_cls = TransientApiError if is_retryable_status(response.status_code) else ServiceUnavailableError
            raise error_cls(
                "unified-api",
                f"GET {path} failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return response.json()

    def paginate(
        self,
        path: str,
        account_token: str,
        modified_after: Optional[str] = None,
    ) -> Iterator[dict]:
        """Yield every result of a list endpoint, following ``next`` cursors."""
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {"page_size": self.page_size}
            if cursor:
                params["cursor"] = cursor
            if modified_after:
                params["modified_after"] = modified_after

            page = self.get(path, params, account_token)
            for item in page.get("results") or []:
                yield item

            cursor = page.get("next")
            if not cursor:
                return


class UnifiedSyncService:
    """Ingests recordings and CRM objects for unified-API linked accounts."""

    def __init__(
        self,
        store: Optional[IdentityStore] = None,
        client: Optional[UnifiedApiClient] = None,
        resolver: Optional[EntityResolver] = None,
        queue: Optional[JobQueue] = None,
    ):
        self.store = store or get_identity_store()
        self.client = client or UnifiedApiClient()
        self.resolver = resolver or EntityResolver(self.store)
        self.queue = queue or get_job_queue()

    # ------------------------------------------------------------------
    # Initial connection
    # ------------------------------------------------------------------

    def run_initial_sync(self, linked: LinkedAccount):
        """
        Backfill a newly linked account once.

        On failure the linked account is marked ERROR and the error re-raised.
        """
        if linked.initial_sync_done:
            return

        try:
            if linked.category == CATEGORY_RECORDING:
                count = self.fetch_historical_recordings(linked)
                logger.info(f"Backfilled {count} recordings for linked account {linked.id}")
            elif linked.category == CATEGORY_CRM:
                self.sync_crm(linked, modified_after=None)
            else:
                logger.warning(f"Unknown linked account category {linked.category} for {linked.id}")

            self.store.update_linked_account(linked.id, initial_sync_done=True, last_synced_at=_now())
        except Exception as e:
            logger.error(f"Initial sync failed for linked account {linked.id} ({linked.integration_slug}): {e}")
            self.store.update_linked_account(linked.id, status="ERROR")
            raise

    def fetch_historical_recordings(self, linked: LinkedAccount) -> int:
        provider = integration_slug_to_provider(linked.integration_slug)
        count = 0
        for recording in self.client.paginate(RECORDINGS_PATH, linked.account_token):
            self.ingest_recording(linked.organization_id, recording, provider)
            count += 1
        return count

    def ingest_recording(self, organization_id: str, recording: dict, provider: str) -> Call:
        """
        Upsert one recording as a Call, resolve it, store its transcript and
        queue it for processing.
        """
        recording_id = recording["id"]
        participants = recording.get("participants") or []

        call = self.store.find_call_by_recording_id(organization_id, recording_id)
        created = False
        if call:
            self.store.update_call_details(
                call.id,
                title=recording.get("name"),
                recording_url=recording.get("recording_url"),
                duration=recording.get("duration"),
            )
        else:
            try:
                call = self.store.create_call(
                    organization_id,
                    provider,
                    title=recording.get("name"),
                    external_id=recording.get("remote_id"),
                    merge_recording_id=recording_id,
                    recording_url=recording.get("recording_url"),
                    duration=recording.get("duration"),
                    occurred_at=recording.get("start_time"),
                )
                created = True
            except sqlite3.IntegrityError:
                call = self.store.find_call_by_recording_id(organization_id, recording_id)
                if call is None:
                    raise

        if created:
            for p in participants:
                self.store.add_participant(
                    call.id,
                    email=p.get("email"),
                    name=p.get("name"),
                    is_host=bool(p.get("is_organizer")),
                )

        if not created and call.match_method == MatchMethod.MANUAL:
            account_id = call.account_id
        else:
            resolution = self.resolver.resolve_and_link_contacts(
                organization_id,
                call.id,
                [ParticipantInput(email=p.get("email"), name=p.get("name")) for p in participants],
                call_title=recording.get("name"),
            )
            account_id = resolution.account_id

        transcript = recording.get("transcript")
        if transcript:
            self.store.upsert_transcript(call.id, transcript)

        job = ProcessCallJob(
            call_id=call.id,
            organization_id=organization_id,
            account_id=account_id or None,
            has_transcript=bool(transcript),
        )
        try:
            enqueue_process_call_job(self.queue, job, source="unified-ingest")
        except EnqueueError as e:
            logger.error(f"Recording {recording_id} stored as call {call.id} but not queued: {e}")
        return call

    # ------------------------------------------------------------------
    # CRM polling
    # ------------------------------------------------------------------

    def poll_all_linked_accounts(self) -> int:
        """
        One polling cycle over every ACTIVE CRM linked account.

        Failures are logged per linked account and do not mark it ERROR;
        only the initial sync does that. Returns how many synced cleanly.
        """
        linked_accounts = self.store.list_linked_accounts(status="ACTIVE", category=CATEGORY_CRM)
        synced = 0
        for linked in linked_accounts:
            try:
                self.sync_crm(linked, modified_after=linked.last_synced_at)
                self.store.update_linked_account(linked.id, last_synced_at=_now())
                synced += 1
            except Exception as e:
                logger.error(f"CRM sync failed for linked account {linked.id} ({linked.integration_slug}): {e}")

        logger.info(f"CRM polling cycle: {synced}/{len(linked_accounts)} linked accounts synced")
        return synced

    def sync_crm(self, linked: LinkedAccount, modified_after: Optional[str]) -> dict[str, int]:
        counts = {
            "accounts": self.sync_crm_accounts(linked, modified_after),
            "contacts": self.sync_crm_contacts(linked, modified_after),
            "opportunities": self.sync_crm_opportunities(linked, modified_after),
        }
        logger.info(f"CRM sync for linked account {linked.id}: {counts}")
        return counts

    def sync_crm_accounts(self, linked: LinkedAccount, modified_after: Optional[str] = None) -> int:
        org = linked.organization_id
        count = 0
        for remote in self.client.paginate(CRM_ACCOUNTS_PATH, linked.account_token, modified_after):
            name = remote.get("name")
            if not name:
                continue

            domain = extract_domain_from_url(remote.get("domain") or remote.get("website"))
            existing = self.store.find_account_by_crm_id(org, "merge_account_id", remote["id"])
            if existing is None and domain:
                existing = self.store.find_account_by_primary_domain(org, [domain])

            if existing:
                fields: dict[str, Any] = {"name": name, "merge_account_id": remote["id"]}
                if remote.get("industry"):
                    fields["industry"] = remote["industry"]
                if remote.get("number_of_employees") is not None:
                    fields["employee_count"] = remote["number_of_employees"]
                if domain and domain != existing.domain and not self.store.domain_claimed(org, domain):
                    fields["domain"] = domain
                self.store.update_account(existing.id, fields)
            else:
                if domain and self.store.domain_claimed(org, domain):
                    domain = None
                self.store.create_account(
                    org,
                    name,
                    domain=domain,
                    industry=remote.get("industry"),
                    employee_count=remote.get("number_of_employees"),
                    merge_account_id=remote["id"],
                )
            count += 1
        return count

    def sync_crm_contacts(self, linked: LinkedAccount, modified_after: Optional[str] = None) -> int:
        org = linked.organization_id
        crm_column = CRM_ID_COLUMNS.get(linked.integration_slug.lower())
        count = 0
        for remote in self.client.paginate(CRM_CONTACTS_PATH, linked.account_token, modified_after):
            emails = remote.get("email_addresses") or []
            email = normalize_email(emails[0].get("email_address")) if emails else None
            if not email:
                continue
            domain = extract_email_domain(email)
            if not domain:
                continue

            account = None
            if remote.get("account"):
                account = self.store.find_account_by_crm_id(org, "merge_account_id", remote["account"])
            if account is None:
                account = self.store.find_account_by_primary_domain(org, [domain])
            if account is None:
                continue

            name = " ".join(p for p in (remote.get("first_name"), remote.get("last_name")) if p) or None
            phones = remote.get("phone_numbers") or []
            crm_ids = {crm_column: remote.get("remote_id")} if crm_column and remote.get("remote_id") else {}

            self.store.upsert_contact(
                account.id,
                email,
                name=name,
                title=remote.get("title") or title_from_remote_data(remote),
                phone=phones[0].get("phone_number") if phones else None,
                merge_contact_id=remote.get("id"),
                **crm_ids,
            )
            count += 1
        return count

    def sync_crm_opportunities(self, linked: LinkedAccount, modified_after: Optional[str] = None) -> int:
        org = linked.organization_id
        count = 0
        for remote in self.client.paginate(CRM_OPPORTUNITIES_PATH, linked.account_token, modified_after):
            if not remote.get("account"):
                continue
            account = self.store.find_account_by_crm_id(org, "merge_account_id", remote["account"])
            if account is None:
                continue

            opportunity = opportunity_from_remote(remote)
            if self.store.crm_event_exists(account.id, opportunity.external_id, opportunity.stage):
                continue

            self.store.add_crm_event(
                account.id,
                opportunity_event_type(opportunity),
                opportunity_id=opportunity.external_id,
                stage_name=opportunity.stage,
                amount=opportunity.amount,
                close_date=opportunity.close_date,
                description=opportunity.name,
            )
            count += 1
        return count


def opportunity_from_remote(remote: dict) -> NormalizedOpportunity:
    """Translate an aggregator opportunity; a "closed won/lost" stage also sets the status."""
    stage = remote.get("stage")
    stage_lower = (stage or "").lower()
    status = (remote.get("status") or "").upper()

    if status == "WON" or "closed won" in stage_lower:
        normalized_status = OpportunityStatus.WON
    elif status == "LOST" or "closed lost" in stage_lower:
        normalized_status = OpportunityStatus.LOST
    else:
        normalized_status = OpportunityStatus.OPEN

    return NormalizedOpportunity(
        external_id=remote.get("remote_id") or remote.get("id"),
        account_external_id=remote.get("account"),
        name=remote.get("name"),
        amount=remote.get("amount"),
        stage=stage,
        status=normalized_status,
        close_date=remote.get("close_date"),
    )


def title_from_remote_data(remote: dict) -> Optional[str]:
    """Job title from the raw CRM payload (Salesforce "Title", HubSpot "jobtitle")."""
    for entry in remote.get("remote_data") or []:
        data = entry.get("data") or {}
        if isinstance(data.get("Title"), str) and data["Title"]:
            return data["Title"]
        if isinstance(data.get("jobtitle"), str) and data["jobtitle"]:
            return data["jobtitle"]
        props = data.get("properties")
        if isinstance(props, dict) and isinstance(props.get("jobtitle"), str) and props["jobtitle"]:
            return props["jobtitle"]
    return None
