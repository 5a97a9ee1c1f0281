from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.errors import NotFoundError
from scriptvault.core.rbac import Actor, Permission, require_permission
from scriptvault.db.engine import get_session
from scriptvault.models.version import ScriptVersion
from scriptvault.routers.auth import require_actor
from scriptvault.services.version_service import version_service


router = APIRouter(prefix="/scripts/{script_id}/versions", tags=["versions"])


class RollbackRequest(BaseModel):
    target_version: str = Field(min_length=1)
    reason: Optional[str] = None


def _serialize_version(row: ScriptVersion) -> dict[str, Any]:
    return {
        "version_id": row.version_id,
        "script_id": row.script_id,
        "version": row.version,
        "status": row.status,
        "is_current_version": row.is_current_version,
        "name": row.name,
        "cn_name": row.cn_name,
        "description": row.description,
        "cn_description": row.cn_description,
        "scope": row.scope,
        "cn_scope": row.cn_scope,
        "author": row.author,
        "hashtags": version_service.parse_hashtags(row),
        "sql_content": row.sql_content,
        "created_by": row.created_by,
        "created_by_email": row.created_by_email,
        "created_at": row.created_at,
        "approval_status": row.approval_status,
        "approval_request_id": row.approval_request_id,
        "change_type": row.change_type,
        "change_description": row.change_description,
        "previous_version_id": row.previous_version_id,
        "execution_count": row.execution_count,
        "last_executed_at": row.last_executed_at,
        "rollback_count": row.rollback_count,
    }


@router.get("")
async def list_versions(
    script_id: str,
    limit: int = 50,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    await require_permission(session, actor, Permission.SCRIPT_READ)
    rows = await version_service.list_versions(session, script_id, limit=limit)
    return {
        "script_id": script_id,
        "versions": [_serialize_version(row) for row in rows],
    }


@router.get("/compare")
async def compare_versions(
    script_id: str,
    from_version: str = Query(alias="from"),
    to_version: str = Query(alias="to"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    await require_permission(session, actor, Permission.SCRIPT_READ)
    diff = await version_service.compare(session, script_id, from_version, to_version)
    return {
        "script_id": diff.script_id,
        "from_version": diff.from_version,
        "to_version": diff.to_version,
        "changed_fields": diff.changed_fields,
        "differences": [
            {
                "field": item.field,
                "label": item.label,
                "old_value": item.old_value,
                "new_value": item.new_value,
                "change_type": item.change_type,
            }
            for item in diff.differences
        ],
        "sql_diff": {
            "additions": diff.sql_diff.additions,
            "deletions": diff.sql_diff.deletions,
            "modifications": diff.sql_diff.modifications,
        },
    }


@router.get("/stats")
async def version_statistics(
    script_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    await require_permission(session, actor, Permission.SCRIPT_READ)
    stats = await version_service.get_statistics(session, script_id)
    return {
        "script_id": script_id,
        "total_versions": stats.total_versions,
        "current_version": stats.current_version,
        "total_executions": stats.total_executions,
        "total_rollbacks": stats.total_rollbacks,
        "latest_change": stats.latest_change,
    }


@router.post("/rollback")
async def rollback_version(
    script_id: str,
    body: RollbackRequest,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    # Rollback skips the approval queue; edit rights are enough.
    await require_permission(session, actor, Permission.SCRIPT_UPDATE)
    result = await version_service.rollback(
        session=session,
        script_id=script_id,
        target_version=body.target_version,
        actor=actor,
        reason=body.reason,
    )
    return {
        "new_version_id": result.new_version_id,
        "target_version": result.target_version,
        "message": result.message,
        "version": _serialize_version(result.version),
    }


@router.get("/{version}")
async def get_version(
    script_id: str,
    version: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_actor),
):
    await require_permission(session, actor, Permission.SCRIPT_READ)
    row = await version_service.get_version(session, script_id, version)
    if not row:
        raise NotFoundError("ScriptVersion", f"{script_id}@{version}")
    return _serialize_version(row)
