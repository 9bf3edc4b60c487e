"""
Identity API routes.

Resolution queue, account merge (direct and approval-gated) and sync
controls. Every endpoint is scoped to an organization via the ``org_id``
query parameter.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from api.services.account_merge import get_account_merge_engine
from api.services.identity_store import get_identity_store
from api.services.merge_approval import ReviewDecision, get_merge_approval_service
from api.services.resilience import ConflictError, NotFoundError, ValidationError, error_payload
from api.services.resolution_queue import get_resolution_queue
from api.services.sync_engine import get_sync_engine
from api.services.sync_health import get_sync_summary
from config.resolution_config import ACCOUNT_SEARCH_LIMIT, QUEUE_DEFAULT_PAGE_SIZE, QUEUE_MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/identity", tags=["identity"])


def _http_error(error: Exception) -> HTTPException:
    """Map service errors onto HTTP status codes."""
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, ValidationError):
        status_code = 400
    elif isinstance(error, ConflictError):
        status_code = 409
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=error_payload(error))


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ResolveCallRequest(BaseModel):
    account_id: str = Field(..., min_length=1)


class BulkResolveRequest(BaseModel):
    call_ids: list[str] = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)


class DismissRequest(BaseModel):
    call_ids: list[str] = Field(..., min_length=1)


class CreateAccountRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Account display name")
    domain: Optional[str] = Field(default=None, description="Primary domain; defaults to the first participant domain")


class MergeRequestBody(BaseModel):
    primary_account_id: str = Field(..., min_length=1, description="Surviving account")
    secondary_account_id: str = Field(..., min_length=1, description="Account folded into the primary")
    notes: Optional[str] = None
    requested_by: Optional[str] = None


class ReviewRequestBody(BaseModel):
    decision: ReviewDecision
    reviewer: Optional[str] = None
    notes: Optional[str] = None


class QueueStatsResponse(BaseModel):
    total_unresolved: int
    no_match: int
    low_confidence: int
    resolved_today: int


class ResolveCallResponse(BaseModel):
    call_id: str
    account_id: str
    aliases_created: list[str]


# ---------------------------------------------------------------------------
# Resolution queue (static paths before {call_id})
# ---------------------------------------------------------------------------

@router.get("/queue")
async def list_queue(
    org_id: str = Query(..., min_length=1),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=QUEUE_DEFAULT_PAGE_SIZE, ge=1, le=QUEUE_MAX_PAGE_SIZE),
    sort_by: str = Query(default="occurred_at"),
    sort_order: str = Query(default="desc"),
    search: Optional[str] = None,
):
    """Calls waiting for review, with suggested accounts."""
    try:
        result = get_resolution_queue().list_queue(
            org_id,
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
            search=search,
        )
    except ValidationError as e:
        raise _http_error(e)
    return result.to_dict()


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(org_id: str = Query(..., min_length=1)):
    return QueueStatsResponse(**get_resolution_queue().get_queue_stats(org_id))


@router.post("/queue/bulk-resolve")
async def bulk_resolve(request: BulkResolveRequest, org_id: str = Query(..., min_length=1)):
    return get_resolution_queue().bulk_resolve(org_id, request.call_ids, request.account_id)


@router.post("/queue/dismiss")
async def dismiss_calls(request: DismissRequest, org_id: str = Query(..., min_length=1)):
    return get_resolution_queue().dismiss_calls(org_id, request.call_ids)


@router.get("/queue/{call_id}/suggestions")
async def call_suggestions(call_id: str, org_id: str = Query(..., min_length=1)):
    try:
        suggestions = get_resolution_queue().get_suggestions(org_id, call_id)
    except NotFoundError as e:
        raise _http_error(e)
    return {"call_id": call_id, "suggestions": [s.to_dict() for s in suggestions]}


@router.post("/queue/{call_id}/resolve", response_model=ResolveCallResponse)
async def resolve_call(call_id: str, request: ResolveCallRequest, org_id: str = Query(..., min_length=1)):
    """Assign a queued call to an account."""
    try:
        result = get_resolution_queue().resolve_call(org_id, call_id, request.account_id)
    except NotFoundError as e:
        raise _http_error(e)
    return ResolveCallResponse(**result)


@router.post("/queue/{call_id}/create-account")
async def create_account_from_call(
    call_id: str,
    request: CreateAccountRequest,
    org_id: str = Query(..., min_length=1),
):
    """Create a new account from a queued call and resolve the call to it."""
    try:
        return get_resolution_queue().create_account_from_call(org_id, call_id, request.name, request.domain)
    except (NotFoundError, ValidationError) as e:
        raise _http_error(e)


@router.get("/accounts/search")
async def search_accounts(
    org_id: str = Query(..., min_length=1),
    q: str = Query(default=""),
    limit: int = Query(default=ACCOUNT_SEARCH_LIMIT, ge=1, le=100),
):
    accounts = get_resolution_queue().search_accounts(org_id, q, limit=limit)
    return {"accounts": [a.to_dict() for a in accounts], "total": len(accounts)}


# ---------------------------------------------------------------------------
# Account merge
# ---------------------------------------------------------------------------

@router.get("/merge/duplicates")
async def find_duplicates(
    org_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
):
    """Candidate duplicate account pairs, most similar first."""
    pairs = get_account_merge_engine().find_duplicates(org_id, limit=limit)
    return {"duplicates": [p.to_dict() for p in pairs], "total": len(pairs)}


@router.get("/merge/preview")
async def preview_merge(
    org_id: str = Query(..., min_length=1),
    primary_id: str = Query(..., min_length=1),
    secondary_id: str = Query(..., min_length=1),
):
    try:
        return get_account_merge_engine().preview_merge(org_id, primary_id, secondary_id).to_dict()
    except (NotFoundError, ValidationError) as e:
        raise _http_error(e)


@router.post("/merge")
async def execute_merge(request: MergeRequestBody, org_id: str = Query(..., min_length=1)):
    """Merge the secondary account into the primary immediately."""
    try:
        run = get_account_merge_engine().merge_accounts(
            request.secondary_account_id,
            request.primary_account_id,
            org_id,
            notes=request.notes,
            requested_by=request.requested_by,
        )
    except (NotFoundError, ValidationError) as e:
        raise _http_error(e)
    return run.to_dict()


@router.get("/merge/runs")
async def list_merge_runs(
    org_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    runs = get_account_merge_engine().list_merge_runs(org_id, limit=limit)
    return {
        "runs": [
            {
                "id": r.id,
                "primary_account_id": r.primary_account_id,
                "secondary_account_id": r.secondary_account_id,
                "status": r.status.value,
                "created_at": r.created_at,
                "undone_at": r.undone_at,
                "moved_counts": r.moved_counts,
            }
            for r in runs
        ],
        "total": len(runs),
    }


@router.post("/merge/runs/{run_id}/undo")
async def undo_merge(run_id: str, org_id: str = Query(..., min_length=1)):
    try:
        return get_account_merge_engine().undo_merge(org_id, run_id)
    except (NotFoundError, ConflictError) as e:
        raise _http_error(e)


@router.post("/merge/requests")
async def request_merge(request: MergeRequestBody, org_id: str = Query(..., min_length=1)):
    """Open a merge request for review instead of merging now."""
    try:
        merge_request = get_merge_approval_service().request_merge(
            org_id,
            request.primary_account_id,
            request.secondary_account_id,
            requested_by=request.requested_by,
            notes=request.notes,
        )
    except (NotFoundError, ValidationError) as e:
        raise _http_error(e)
    return merge_request.to_dict()


@router.get("/merge/requests")
async def list_merge_requests(org_id: str = Query(..., min_length=1), status: Optional[str] = None):
    requests = get_merge_approval_service().list_requests(org_id, status=status)
    return {"requests": [r.to_dict() for r in requests], "total": len(requests)}


@router.post("/merge/requests/{request_id}/review")
async def review_merge_request(
    request_id: str,
    request: ReviewRequestBody,
    org_id: str = Query(..., min_length=1),
):
    try:
        merge_request = get_merge_approval_service().review_request(
            org_id,
            request_id,
            request.decision,
            reviewer=request.reviewer,
            notes=request.notes,
        )
    except (NotFoundError, ValidationError, ConflictError) as e:
        raise _http_error(e)
    return merge_request.to_dict()


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

@router.post("/sync/trigger")
async def trigger_sync():
    """Run one sync pass over every syncable integration now."""
    outcomes = get_sync_engine().sync_all(trigger_source="manual")
    return {"outcomes": [o.to_dict() for o in outcomes], "total": len(outcomes)}


@router.get("/sync/summary")
async def sync_summary():
    return get_sync_summary(db_path=get_identity_store().db_path)
