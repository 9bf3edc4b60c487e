"""
Approval workflow in front of account merges.

A merge request captures the preview at request time; a reviewer then
approves (which executes the merge) or rejects it.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from api.services.account_merge import AccountMergeEngine
from api.services.identity_store import (
    IdentityStore,
    MergeRequest,
    MergeRequestStatus,
    get_identity_store,
)
from api.services.resilience import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class ReviewDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class MergeApprovalService:
    def __init__(
        self,
        store: Optional[IdentityStore] = None,
        engine: Optional[AccountMergeEngine] = None,
    ):
        self.store = store or get_identity_store()
        self.engine = engine or AccountMergeEngine(self.store)

    def request_merge(
        self,
        organization_id: str,
        primary_account_id: str,
        secondary_account_id: str,
        requested_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MergeRequest:
        """Open a PENDING request; fails like preview_merge on bad ids."""
        preview = self.engine.preview_merge(organization_id, primary_account_id, secondary_account_id)
        request = MergeRequest(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            primary_account_id=primary_account_id,
            secondary_account_id=secondary_account_id,
            requested_by=requested_by,
            status=MergeRequestStatus.PENDING,
            payload={"preview": preview.to_dict(), "notes": notes},
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.store.insert_merge_request(request)
        logger.info(
            f"Merge requested by {requested_by or 'unknown'}: "
            f"{preview.secondary.name} -> {preview.primary.name} ({request.id[:8]})"
        )
        return request

    def list_requests(self, organization_id: str, status: Optional[str] = None) -> list[MergeRequest]:
        return self.store.list_merge_requests(organization_id, status=status)

    def review_request(
        self,
        organization_id: str,
        request_id: str,
        decision: ReviewDecision,
        reviewer: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MergeRequest:
        """
        Apply a reviewer's decision.

        APPROVE runs the merge and the status change in one transaction: if
        the merge fails, or another review finalized the request meanwhile,
        nothing is committed and the request keeps its current status.
        """
        decision = ReviewDecision(decision)
        request = self.store.get_merge_request(request_id, organization_id)
        if request is None:
            raise NotFoundError("Merge request", request_id)
        if request.status != MergeRequestStatus.PENDING:
            raise ConflictError(f"Merge request {request_id} is already {request.status.value}")

        if decision == ReviewDecision.REJECT:
            if not self.store.finalize_merge_request(request_id, MergeRequestStatus.REJECTED, reviewer, notes):
                raise ConflictError(f"Merge request {request_id} was reviewed concurrently")
            logger.info(f"Merge request {request_id[:8]} rejected by {reviewer or 'unknown'}")
            return self.store.get_merge_request(request_id, organization_id)

        # Merge and status change commit together; losing the race undoes the merge
        with self.store.transaction() as conn:
            run = self.engine.merge_accounts(
                request.secondary_account_id,
                request.primary_account_id,
                organization_id,
                notes=notes or request.payload.get("notes"),
                requested_by=request.requested_by,
                conn=conn,
            )
            if not self.store.finalize_merge_request(
                request_id, MergeRequestStatus.APPROVED, reviewer, notes, merge_run_id=run.id, conn=conn
            ):
                raise ConflictError(f"Merge request {request_id} was reviewed concurrently")
        logger.info(f"Merge request {request_id[:8]} approved by {reviewer or 'unknown'}, run {run.id[:8]}")
        return self.store.get_merge_request(request_id, organization_id)


# Singleton instance
_approval_service: Optional[MergeApprovalService] = None


def get_merge_approval_service() -> MergeApprovalService:
    """Get singleton MergeApprovalService instance."""
    global _approval_service
    if _approval_service is None:
        _approval_service = MergeApprovalService()
    return _approval_service
