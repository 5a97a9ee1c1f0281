from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.rbac import Actor, Permission, require_permission
from scriptvault.db.engine import get_session
from scriptvault.models.approval import ApprovalHistory
from scriptvault.routers.auth import require_actor
from scriptvault.services.approval_service import approval_service
from scriptvault.services.history_service import history_service


router = APIRouter(prefix="/approval-history", tags=["approval-history"])


def _serialize_entry(row: ApprovalHistory) -> dict[str, Any]:
    return {
        "history_id": row.history_id,
        "request_id": row.request_id,
        "script_id": row.script_id,
        "action": row.action,
        "action_by": row.action_by,
        "action_by_email": row.action_by_email,
        "action_at": row.action_at,
        "previous_status": row.previous_status,
        "new_status": row.new_status,
        "comment": row.comment,
        "metadata": history_service.parse_metadata(row),
    }


@router.get("")
async def list_history(
    script_id: Optional[str] = None,
    request_id: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    await require_permission(session, actor, Permission.HISTORY_READ)
    rows = await approval_service.get_history(session, script_id=script_id, request_id=request_id)
    return {
        "script_id": script_id,
        "request_id": request_id,
        "history": [_serialize_entry(row) for row in rows],
    }
