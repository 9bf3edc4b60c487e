"""
Tests for unified-API ingestion with a mocked HTTP transport.
"""
import httpx
import pytest

from api.services.identity_store import MatchMethod
from api.services.resilience import ServiceUnavailableError
from api.services.unified_ingest import (
    CATEGORY_CRM,
    CATEGORY_RECORDING,
    TransientApiError,
    UnifiedApiClient,
    UnifiedSyncService,
    integration_slug_to_provider,
    opportunity_from_remote,
    title_from_remote_data,
)

pytestmark = pytest.mark.unit


def _client(routes: dict, requests: list = None) -> UnifiedApiClient:
    """Client whose transport serves ``routes[path]`` (a list of pages, or a status code)."""
    served: dict[str, int] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        route = routes.get(request.url.path)
        if route is None:
            return httpx.Response(200, json={"results": [], "next": None})
        if isinstance(route, int):
            return httpx.Response(route, text="nope")
        index = served.get(request.url.path, 0)
        served[request.url.path] = index + 1
        return httpx.Response(200, json=route[index])

    transport = httpx.MockTransport(handler)
    return UnifiedApiClient(
        api_key="key",
        base_url="https://unified.test/api",
        page_size=2,
        http_client=httpx.Client(transport=transport),
    )


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr("api.services.resilience.time.sleep", lambda s: None)


class TestUnifiedApiClient:
    def test_paginate_follows_cursor_and_sends_headers(self):
        requests = []
        client = _client({
            "/api/crm/v1/accounts": [
                {"results": [{"id": "a1"}, {"id": "a2"}], "next": "c2"},
                {"results": [{"id": "a3"}], "next": None},
            ],
        }, requests)

        items = list(client.paginate("/crm/v1/accounts", "tok", modified_after="2026-01-01"))

        assert [i["id"] for i in items] == ["a1", "a2", "a3"]
        assert requests[0].headers["Authorization"] == "Bearer key"
        assert requests[0].headers["X-Account-Token"] == "tok"
        assert "cursor" not in requests[0].url.params
        assert requests[1].url.params["cursor"] == "c2"
        assert requests[1].url.params["modified_after"] == "2026-01-01"

    def test_transient_status_retried_then_raised(self):
        requests = []
        client = _client({"/api/crm/v1/accounts": 503}, requests)

        with pytest.raises(TransientApiError):
            client.get("/crm/v1/accounts")

        assert len(requests) == 3

    def test_client_error_not_retried(self):
        requests = []
        client = _client({"/api/crm/v1/accounts": 401}, requests)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            client.get("/crm/v1/accounts")

        assert exc_info.value.status_code == 401
        assert len(requests) == 1


class TestRecordingIngest:
    def test_initial_recording_sync(self, store, queue, org_id):
        account = store.create_account(org_id, "BigTech", domain="bigtech.com")
        client = _client({
            "/api/filestorage/v1/recordings": [{
                "results": [{
                    "id": "rec-1",
                    "remote_id": "gong-1",
                    "name": "Discovery",
                    "start_time": "2026-03-01T09:00:00+00:00",
                    "participants": [{"email": "cto@bigtech.com", "name": "CTO", "is_organizer": True}],
                    "transcript": "we should talk",
                }],
                "next": None,
            }],
        })
        service = UnifiedSyncService(store, client=client, queue=queue)
        linked = store.create_linked_account(org_id, CATEGORY_RECORDING, "gong", "tok")

        service.run_initial_sync(linked)

        call = store.find_call_by_recording_id(org_id, "rec-1")
        assert call.provider == "GONG"
        assert call.account_id == account.id
        assert call.match_method == MatchMethod.EMAIL_DOMAIN
        assert store.list_participants(call.id)[0].is_host
        assert queue.drain()[0].payload["has_transcript"] is True
        assert store.get_linked_account(linked.id).initial_sync_done

    def test_reingest_updates_without_duplicating(self, store, queue, org_id):
        service = UnifiedSyncService(store, client=_client({}), queue=queue)
        recording = {"id": "rec-1", "name": "Old", "participants": [{"email": "a@x.com"}]}

        service.ingest_recording(org_id, recording, "ZOOM")
        service.ingest_recording(org_id, {**recording, "name": "New"}, "ZOOM")

        call = store.find_call_by_recording_id(org_id, "rec-1")
        assert call.title == "New"
        assert len(store.list_participants(call.id)) == 1

    def test_reingest_keeps_manual_resolution(self, store, queue, org_id):
        store.create_account(org_id, "X Corp", domain="x.com")
        real = store.create_account(org_id, "Real Customer")
        service = UnifiedSyncService(store, client=_client({}), queue=queue)
        recording = {"id": "rec-1", "name": "Sync", "participants": [{"email": "a@x.com"}]}
        call = service.ingest_recording(org_id, recording, "ZOOM")
        store.set_call_resolution(call.id, real.id, MatchMethod.MANUAL, 1.0)
        queue.drain()

        service.ingest_recording(org_id, recording, "ZOOM")

        stored = store.get_call(call.id)
        assert stored.account_id == real.id
        assert stored.match_method == MatchMethod.MANUAL
        assert queue.drain()[0].payload["account_id"] == real.id

    def test_initial_sync_failure_marks_error(self, store, queue, org_id):
        client = _client({"/api/filestorage/v1/recordings": 401})
        service = UnifiedSyncService(store, client=client, queue=queue)
        linked = store.create_linked_account(org_id, CATEGORY_RECORDING, "zoom", "tok")

        with pytest.raises(ServiceUnavailableError):
            service.run_initial_sync(linked)

        assert store.get_linked_account(linked.id).status == "ERROR"


class TestCrmPolling:
    def _crm_routes(self):
        return {
            "/api/crm/v1/accounts": [{
                "results": [
                    {"id": "m-acc-1", "name": "Acme", "website": "https://acme.com", "industry": "Retail"},
                    {"id": "m-acc-2", "name": None},
                ],
                "next": None,
            }],
            "/api/crm/v1/contacts": [{
                "results": [{
                    "id": "m-c-1",
                    "remote_id": "003XYZ",
                    "first_name": "Jane",
                    "last_name": "Doe",
                    "account": "m-acc-1",
                    "email_addresses": [{"email_address": "Jane@acme.com"}],
                    "remote_data": [{"data": {"Title": "VP Sales"}}],
                }],
                "next": None,
            }],
            "/api/crm/v1/opportunities": [{
                "results": [{"id": "m-o-1", "remote_id": "006", "account": "m-acc-1", "stage": "Closed Won"}],
                "next": None,
            }],
        }

    def test_poll_syncs_crm_objects(self, store, queue, org_id):
        service = UnifiedSyncService(store, client=_client(self._crm_routes()), queue=queue)
        linked = store.create_linked_account(org_id, CATEGORY_CRM, "salesforce", "tok")

        assert service.poll_all_linked_accounts() == 1

        account = store.find_account_by_crm_id(org_id, "merge_account_id", "m-acc-1")
        assert account.domain == "acme.com"
        contact = store.find_contact(account.id, "jane@acme.com")
        assert contact.name == "Jane Doe"
        assert contact.title == "VP Sales"
        assert contact.salesforce_id == "003XYZ"
        assert [e["event_type"] for e in store.list_crm_events(account.id)] == ["CLOSED_WON"]
        assert store.get_linked_account(linked.id).last_synced_at is not None

    def test_one_failing_linked_account_does_not_stop_others(self, store, queue, org_id):
        service = UnifiedSyncService(store, client=_client(self._crm_routes()), queue=queue)
        store.create_linked_account(org_id, CATEGORY_CRM, "hubspot", "tok")
        store.create_linked_account(org_id, CATEGORY_CRM, "salesforce", "tok-2")
        original = service.sync_crm
        calls = []

        def flaky(linked, modified_after):
            calls.append(linked.integration_slug)
            if linked.integration_slug == "hubspot":
                raise RuntimeError("expired token")
            return original(linked, modified_after)

        service.sync_crm = flaky

        assert service.poll_all_linked_accounts() == 1
        assert calls == ["hubspot", "salesforce"]
        assert all(la.status == "ACTIVE" for la in store.list_linked_accounts())


class TestHelpers:
    def test_slug_mapping(self):
        assert integration_slug_to_provider("Gong") == "GONG"
        assert integration_slug_to_provider("microsoft-teams") == "TEAMS"
        assert integration_slug_to_provider("unknown") == "OTHER"

    def test_opportunity_status_from_stage(self):
        assert opportunity_from_remote({"id": "1", "stage": "Closed Lost"}).status.value == "LOST"
        assert opportunity_from_remote({"id": "1", "status": "WON"}).status.value == "WON"
        assert opportunity_from_remote({"id": "1", "stage": "Demo"}).status.value == "OPEN"

    def test_title_from_hubspot_properties(self):
        remote = {"remote_data": [{"data": {"properties": {"jobtitle": "CFO"}}}]}
        assert title_from_remote_data(remote) == "CFO"
        assert title_from_remote_data({}) is None
