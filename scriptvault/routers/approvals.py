from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.errors import NotFoundError
from scriptvault.core.rbac import Actor
from scriptvault.db.engine import get_session
from scriptvault.models.approval import ApprovalRequest
from scriptvault.routers.auth import require_actor
from scriptvault.services.approval_service import (
    Committed,
    CommittedWithExecutionError,
    ExecutionOutcome,
    approval_service,
)


router = APIRouter(prefix="/approvals", tags=["approvals"])


class SubmitApprovalRequest(BaseModel):
    script_id: str = Field(min_length=1)
    operation_type: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    sql_content: Optional[str] = None
    priority: str = "medium"
    original_data: Optional[dict[str, Any]] = None
    changes_summary: Optional[str] = None


class ReviewRequest(BaseModel):
    comment: Optional[str] = None


def _serialize_request(request_row: ApprovalRequest) -> dict[str, Any]:
    return {
        "request_id": request_row.request_id,
        "script_id": request_row.script_id,
        "operation_type": request_row.operation_type,
        "script_type": request_row.script_type,
        "status": request_row.status,
        "priority": request_row.priority,
        "title": request_row.title,
        "description": request_row.description,
        "changes_summary": request_row.changes_summary,
        "original_data": approval_service.parse_original_data(request_row),
        "sql_content": request_row.sql_content,
        "requester_id": request_row.requester_id,
        "requester_email": request_row.requester_email,
        "requested_at": request_row.requested_at,
        "submitted_at": request_row.submitted_at,
        "reviewed_at": request_row.reviewed_at,
        "reviewed_by": request_row.reviewed_by,
        "reviewer_email": request_row.reviewer_email,
        "review_comment": request_row.review_comment,
        "updated_at": request_row.updated_at,
        "auto_approval_eligible": request_row.auto_approval_eligible,
        "required_approvers": approval_service.parse_approvers(request_row.required_approvers_json),
        "current_approvers": approval_service.parse_approvers(request_row.current_approvers_json),
    }


def _serialize_outcome(outcome: Optional[ExecutionOutcome]) -> Optional[dict[str, Any]]:
    if isinstance(outcome, Committed):
        return {"status": "committed", "version_id": outcome.version_id}
    if isinstance(outcome, CommittedWithExecutionError):
        return {"status": "execution_failed", "error": str(outcome.error)}
    return None


@router.get("")
async def list_approvals(
    status: str = "pending",
    page: int = 1,
    limit: int = 20,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    if status == "pending":
        rows, total = await approval_service.get_pending(session, page=page, limit=limit)
    elif status == "completed":
        rows, total = await approval_service.get_completed(session, page=page, limit=limit)
    else:
        raise HTTPException(status_code=400, detail="status must be 'pending' or 'completed'")

    return {
        "status": status,
        "page": max(page, 1),
        "total": total,
        "approvals": [_serialize_request(row) for row in rows],
    }


@router.post("")
async def submit_approval(
    body: SubmitApprovalRequest,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    result = await approval_service.submit(
        session=session,
        script_id=body.script_id,
        requester=actor,
        operation_type=body.operation_type,
        sql_content=body.sql_content,
        title=body.title,
        description=body.description,
        priority=body.priority,
        original_data=body.original_data,
        changes_summary=body.changes_summary,
    )
    return {
        "request_id": result.request_id,
        "auto_approved": result.auto_approved,
        "outcome": _serialize_outcome(result.outcome),
        "warning": result.warning,
        "request": _serialize_request(result.request),
    }


@router.get("/{request_id}")
async def get_approval(
    request_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    request_row = await approval_service.get_request(session, request_id)
    if not request_row:
        raise NotFoundError("ApprovalRequest", request_id)
    return _serialize_request(request_row)


@router.post("/{request_id}/approve")
async def approve_approval(
    request_id: str,
    body: Optional[ReviewRequest] = None,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    result = await approval_service.approve(
        session=session,
        request_id=request_id,
        approver=actor,
        comment=body.comment if body else None,
    )
    return {
        "success": result.success,
        "message": result.message,
        "outcome": _serialize_outcome(result.outcome),
        "warning": result.warning,
        "request": _serialize_request(result.request),
    }


@router.post("/{request_id}/reject")
async def reject_approval(
    request_id: str,
    body: ReviewRequest,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    result = await approval_service.reject(
        session=session,
        request_id=request_id,
        reviewer=actor,
        comment=body.comment,
    )
    return {
        "success": result.success,
        "message": result.message,
        "request": _serialize_request(result.request),
    }


@router.post("/{request_id}/withdraw")
async def withdraw_approval(
    request_id: str,
    body: Optional[ReviewRequest] = None,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    result = await approval_service.withdraw(
        session=session,
        request_id=request_id,
        actor=actor,
        comment=body.comment if body else None,
    )
    return {
        "success": result.success,
        "message": result.message,
        "request": _serialize_request(result.request),
    }
