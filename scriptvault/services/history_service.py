import json
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.models.approval import ApprovalHistory, ApprovalStatus, HistoryAction


logger = logging.getLogger(__name__)


def generate_history_id() -> str:
    return f"hist_{uuid.uuid4().hex}"


class HistoryService:
    """Append-only log of approval request transitions.

    Unlike the best-effort sinks, a failed append is raised to the caller: the
    trail is the record of why a request changed state, so a transition whose
    entry cannot be written must not commit either.
    """

    async def append(
        self,
        session: AsyncSession,
        request_id: str,
        script_id: str,
        action: HistoryAction,
        actor_id: str,
        actor_email: str,
        previous_status: ApprovalStatus,
        new_status: ApprovalStatus,
        comment: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        action_at: Optional[datetime] = None,
        commit: bool = False,
    ) -> ApprovalHistory:
        row = ApprovalHistory(
            history_id=generate_history_id(),
            request_id=request_id,
            script_id=script_id,
            action=HistoryAction(action).value,
            action_by=actor_id,
            action_by_email=actor_email,
            action_at=action_at or datetime.utcnow(),
            previous_status=ApprovalStatus(previous_status).value,
            new_status=ApprovalStatus(new_status).value,
            comment=comment,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=True, default=str),
        )
        session.add(row)
        # flush so storage errors surface here rather than at the caller's commit
        await session.flush()
        if commit:
            await session.commit()
            await session.refresh(row)
        return row

    async def query(
        self,
        session: AsyncSession,
        script_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> list[ApprovalHistory]:
        query = select(ApprovalHistory)
        if script_id:
            query = query.where(ApprovalHistory.script_id == script_id)
        if request_id:
            query = query.where(ApprovalHistory.request_id == request_id)
        query = query.order_by(ApprovalHistory.action_at.desc(), ApprovalHistory.id.desc())
        result = await session.exec(query)
        return result.all()

    async def query_by_script(self, session: AsyncSession, script_id: str) -> list[ApprovalHistory]:
        return await self.query(session, script_id=script_id)

    async def query_by_request(self, session: AsyncSession, request_id: str) -> list[ApprovalHistory]:
        return await self.query(session, request_id=request_id)

    def parse_metadata(self, row: ApprovalHistory) -> dict[str, Any]:
        try:
            parsed = json.loads(row.metadata_json or "{}")
            return parsed if isinstance(parsed, dict) else {}
        except ValueError:
            return {}


history_service = HistoryService()
