import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from sqlalchemy import case, func, update
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.config import settings
from scriptvault.core.errors import (
    ExecutionError,
    ForbiddenError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from scriptvault.core.locks import KeyedLock
from scriptvault.core.rbac import SYSTEM_ACTOR, Actor, Permission, get_user_role, require_permission
from scriptvault.models.approval import (
    PRIORITY_RANK,
    TERMINAL_STATUSES,
    ApprovalHistory,
    ApprovalPriority,
    ApprovalRequest,
    ApprovalStatus,
    HistoryAction,
    OperationType,
)
from scriptvault.models.version import ChangeType, VersionBump
from scriptvault.services.approval_policy import (
    classify_script,
    is_auto_approval_eligible,
    required_approvers,
)
from scriptvault.services.cache_service import cache_service
from scriptvault.services.edit_history_service import edit_history_service
from scriptvault.services.history_service import history_service
from scriptvault.services.notification_service import notification_service
from scriptvault.services.script_service import normalize_document, script_service
from scriptvault.services.side_effects import run_best_effort
from scriptvault.services.version_service import version_service


logger = logging.getLogger(__name__)

AUTO_APPROVAL_COMMENT = "auto-approved"


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Committed:
    """The approved change was applied; ``version_id`` is None for deletes."""

    version_id: Optional[str] = None


@dataclass(frozen=True)
class CommittedWithExecutionError:
    """The approval committed but the change could not be applied."""

    error: ExecutionError


ExecutionOutcome = Union[Committed, CommittedWithExecutionError]


@dataclass
class ApprovalResult:
    success: bool
    message: str
    request: ApprovalRequest
    outcome: Optional[ExecutionOutcome] = None

    @property
    def warning(self) -> Optional[str]:
        if isinstance(self.outcome, CommittedWithExecutionError):
            return str(self.outcome.error)
        return None


@dataclass
class SubmissionResult:
    request: ApprovalRequest
    outcome: Optional[ExecutionOutcome] = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def auto_approved(self) -> bool:
        return self.request.status == ApprovalStatus.APPROVED.value

    @property
    def warning(self) -> Optional[str]:
        if isinstance(self.outcome, CommittedWithExecutionError):
            return str(self.outcome.error)
        return None


class ApprovalService:
    def __init__(self):
        self._request_locks = KeyedLock()

    def _normalize_operation(self, operation_type: Union[OperationType, str]) -> OperationType:
        try:
            return OperationType(str(getattr(operation_type, "value", operation_type) or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported operation type: {operation_type}")

    def _normalize_priority(self, priority: Union[ApprovalPriority, str, None]) -> ApprovalPriority:
        if not priority:
            return ApprovalPriority.MEDIUM
        try:
            return ApprovalPriority(str(getattr(priority, "value", priority)).strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported priority: {priority}")

    def _page_bounds(self, page: int, limit: int) -> tuple[int, int]:
        bounded_page = max(page, 1)
        bounded_limit = min(max(limit, 1), settings.APPROVAL_PAGE_MAX_LIMIT)
        return bounded_limit, (bounded_page - 1) * bounded_limit

    def parse_original_data(self, request_row: ApprovalRequest) -> dict[str, Any]:
        try:
            payload = json.loads(request_row.original_data_json or "{}")
        except ValueError:
            payload = {}
        return payload if isinstance(payload, dict) else {}

    def parse_approvers(self, raw: Optional[str]) -> list[str]:
        try:
            parsed = json.loads(raw or "[]")
        except ValueError:
            return []
        return [str(item) for item in parsed] if isinstance(parsed, list) else []

    async def submit(
        self,
        session: AsyncSession,
        script_id: str,
        requester: Actor,
        operation_type: Union[OperationType, str],
        sql_content: Optional[str],
        title: str,
        description: Optional[str] = None,
        priority: Union[ApprovalPriority, str, None] = ApprovalPriority.MEDIUM,
        original_data: Optional[dict[str, Any]] = None,
        changes_summary: Optional[str] = None,
    ) -> SubmissionResult:
        """Open an approval request for a script change.

        Admin requesters are auto-approved: the request is stored as
        ``approved`` under the system actor and the change is applied before
        this returns. Everyone else gets a ``pending`` request.

        The request row and its first history entry commit together; if
        either insert fails nothing is stored and the error propagates.
        """
        operation = self._normalize_operation(operation_type)
        priority_value = self._normalize_priority(priority)
        script_id = (script_id or "").strip()
        if not script_id:
            raise ValidationError("script_id is required")
        if not (title or "").strip():
            raise ValidationError("title is required")

        payload = None
        if operation != OperationType.DELETE:
            if not isinstance(original_data, dict):
                raise ValidationError(f"original_data is required for {operation.value} requests")
            payload = normalize_document(original_data)
            if not sql_content:
                sql_content = payload.get("sql_content") or ""
        elif not sql_content:
            existing = await script_service.get_script(session, script_id)
            sql_content = existing.sql_content if existing else ""

        role = requester.role or await get_user_role(session, requester.id)
        script_type = classify_script(sql_content or "")
        auto_approved = is_auto_approval_eligible(role, operation, script_type)
        approvers = required_approvers(operation, script_type)
        now = datetime.utcnow()

        request_row = ApprovalRequest(
            request_id=generate_request_id(),
            script_id=script_id,
            operation_type=operation.value,
            script_type=script_type.value,
            status=(ApprovalStatus.APPROVED if auto_approved else ApprovalStatus.PENDING).value,
            priority=priority_value.value,
            title=title.strip(),
            description=description or "",
            changes_summary=changes_summary,
            original_data_json=json.dumps(payload, ensure_ascii=True, default=str) if payload is not None else None,
            sql_content=sql_content or "",
            requester_id=requester.id,
            requester_email=requester.email,
            requested_at=now,
            submitted_at=now,
            updated_at=now,
            auto_approval_eligible=auto_approved,
            required_approvers_json=json.dumps(approvers),
            current_approvers_json=json.dumps([SYSTEM_ACTOR.id] if auto_approved else []),
        )
        if auto_approved:
            request_row.reviewed_at = now
            request_row.reviewed_by = SYSTEM_ACTOR.id
            request_row.reviewer_email = SYSTEM_ACTOR.email
            request_row.review_comment = AUTO_APPROVAL_COMMENT

        try:
            session.add(request_row)
            await session.flush()
            await history_service.append(
                session=session,
                request_id=request_row.request_id,
                script_id=script_id,
                action=HistoryAction.APPROVE if auto_approved else HistoryAction.SUBMIT,
                actor_id=SYSTEM_ACTOR.id if auto_approved else requester.id,
                actor_email=SYSTEM_ACTOR.email if auto_approved else requester.email,
                previous_status=ApprovalStatus.DRAFT,
                new_status=ApprovalStatus(request_row.status),
                comment=AUTO_APPROVAL_COMMENT if auto_approved else None,
                metadata={
                    "operation_type": operation.value,
                    "script_type": script_type.value,
                    "priority": priority_value.value,
                    "requested_by": requester.email,
                },
                action_at=now,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        await session.refresh(request_row)

        logger.info(
            "Approval request %s created for %s %s by %s (status=%s, script_type=%s)",
            request_row.request_id,
            operation.value,
            script_id,
            requester.email,
            request_row.status,
            script_type.value,
        )

        if not auto_approved:
            await run_best_effort(
                "submission notification",
                lambda: notification_service.notify(
                    "submitted",
                    script_id,
                    requester.email,
                    f"{operation.value}: {request_row.title}",
                ),
            )
            return SubmissionResult(request=request_row)

        outcome = await self.apply_approved_change(session, request_row, requester)
        await session.refresh(request_row)
        return SubmissionResult(request=request_row, outcome=outcome)

    async def _transition(
        self,
        session: AsyncSession,
        request_id: str,
        actor: Actor,
        new_status: ApprovalStatus,
        action: HistoryAction,
        comment: Optional[str] = None,
        stamp_review: bool = True,
    ) -> ApprovalRequest:
        """Move a pending request to ``new_status`` with a guarded update.

        The update only matches while the row is still ``pending``; zero
        affected rows means another caller won, and the actual status is
        reported back in the ``StaleStateError``.
        """
        expected = ApprovalStatus.PENDING
        request_row = await self.get_request(session, request_id)
        if not request_row:
            raise NotFoundError("ApprovalRequest", request_id)
        if request_row.status != expected.value:
            raise StaleStateError(request_id, expected=expected.value, actual=request_row.status)

        now = datetime.utcnow()
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if stamp_review:
            values.update(
                reviewed_at=now,
                reviewed_by=actor.id,
                reviewer_email=actor.email,
                review_comment=comment,
            )
        if new_status == ApprovalStatus.APPROVED:
            approvers = self.parse_approvers(request_row.current_approvers_json)
            if actor.id not in approvers:
                approvers.append(actor.id)
            values["current_approvers_json"] = json.dumps(approvers)

        result = await session.execute(
            update(ApprovalRequest)
            .where(
                and_(
                    ApprovalRequest.request_id == request_id,
                    ApprovalRequest.status == expected.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            current = await self.get_request(session, request_id)
            actual = current.status if current else "missing"
            raise StaleStateError(request_id, expected=expected.value, actual=actual)

        try:
            await history_service.append(
                session=session,
                request_id=request_id,
                script_id=request_row.script_id,
                action=action,
                actor_id=actor.id,
                actor_email=actor.email,
                previous_status=expected,
                new_status=new_status,
                comment=comment,
                action_at=now,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        await session.refresh(request_row)
        logger.info(
            "Approval request %s %s -> %s by %s",
            request_id,
            expected.value,
            new_status.value,
            actor.email,
        )
        return request_row

    async def approve(
        self,
        session: AsyncSession,
        request_id: str,
        approver: Actor,
        comment: Optional[str] = None,
    ) -> ApprovalResult:
        await require_permission(
            session,
            approver,
            Permission.SCRIPT_APPROVE,
            "You don't have permission to approve scripts",
        )
        async with self._request_locks.hold(request_id):
            request_row = await self._transition(
                session,
                request_id,
                approver,
                ApprovalStatus.APPROVED,
                HistoryAction.APPROVE,
                comment=comment,
            )

        outcome = await self.apply_approved_change(session, request_row, approver)
        # The apply step may have rolled the session back and expired the row.
        await session.refresh(request_row)
        message = "Request approved and applied"
        if isinstance(outcome, CommittedWithExecutionError):
            message = "Request approved but the change could not be applied"
        return ApprovalResult(success=True, message=message, request=request_row, outcome=outcome)

    async def reject(
        self,
        session: AsyncSession,
        request_id: str,
        reviewer: Actor,
        comment: Optional[str],
    ) -> ApprovalResult:
        await require_permission(
            session,
            reviewer,
            Permission.SCRIPT_REJECT,
            "You don't have permission to reject scripts",
        )
        if not (comment or "").strip():
            raise ValidationError("A comment is required when rejecting a request")

        async with self._request_locks.hold(request_id):
            request_row = await self._transition(
                session,
                request_id,
                reviewer,
                ApprovalStatus.REJECTED,
                HistoryAction.REJECT,
                comment=comment.strip(),
            )

        await run_best_effort(
            "rejection notification",
            lambda: notification_service.notify("rejected", request_row.script_id, reviewer.email, comment),
        )
        return ApprovalResult(success=True, message="Request rejected", request=request_row)

    async def withdraw(
        self,
        session: AsyncSession,
        request_id: str,
        actor: Actor,
        comment: Optional[str] = None,
    ) -> ApprovalResult:
        async with self._request_locks.hold(request_id):
            request_row = await self.get_request(session, request_id)
            if not request_row:
                raise NotFoundError("ApprovalRequest", request_id)
            if request_row.requester_id != actor.id:
                raise ForbiddenError(
                    "request:withdraw",
                    "Only the requester can withdraw this request",
                )
            request_row = await self._transition(
                session,
                request_id,
                actor,
                ApprovalStatus.WITHDRAWN,
                HistoryAction.WITHDRAW,
                comment=comment,
                stamp_review=False,
            )

        await run_best_effort(
            "withdrawal notification",
            lambda: notification_service.notify("withdrawn", request_row.script_id, actor.email, comment),
        )
        return ApprovalResult(success=True, message="Request withdrawn", request=request_row)

    async def apply_approved_change(
        self,
        session: AsyncSession,
        request_row: ApprovalRequest,
        actor: Actor,
    ) -> ExecutionOutcome:
        """Apply an approved request to the script record.

        Runs after the approval has committed. The script record change and
        its new version commit together; a failure in either is returned as
        ``CommittedWithExecutionError`` rather than raised, and the approval
        is not undone. Edit history, cache invalidation and the webhook run
        afterwards and only log their failures.

        Any of these steps may roll the session back, so everything read from
        ``request_row`` is copied up front.
        """
        operation = OperationType(request_row.operation_type)
        payload = self.parse_original_data(request_row)
        script_id = request_row.script_id
        request_id = request_row.request_id
        title = request_row.title
        approved = ApprovalStatus.APPROVED.value

        documents: dict[str, Optional[dict[str, Any]]] = {"old": None, "new": None}

        async def stage_create():
            script = await script_service.create_script(
                session,
                script_id,
                payload,
                approval_status=approved,
                approval_request_id=request_id,
                commit=False,
            )
            documents["new"] = script_service.to_document(script)
            return script_service.snapshot_of(script)

        async def stage_update():
            documents["old"], script = await script_service.update_script(
                session,
                script_id,
                payload,
                approval_status=approved,
                approval_request_id=request_id,
                commit=False,
            )
            documents["new"] = script_service.to_document(script)
            return script_service.snapshot_of(script)

        version_id = None
        version_number = None
        try:
            if operation == OperationType.DELETE:
                documents["old"] = await script_service.delete_script(session, script_id)
            else:
                is_create = operation == OperationType.CREATE
                version = await version_service.create_version(
                    session=session,
                    script_id=script_id,
                    content=None,
                    author=actor,
                    change_type=ChangeType.CREATE if is_create else ChangeType.UPDATE,
                    description=title,
                    bump=VersionBump.MINOR if is_create else VersionBump.PATCH,
                    approval_request_id=request_id,
                    approval_status=approved,
                    stage=stage_create if is_create else stage_update,
                )
                version_id = version.version_id
                version_number = version.version
        except Exception as exc:
            await session.rollback()
            error = ExecutionError(request_id, operation.value, str(exc))
            logger.exception(
                "Approved %s for %s (request %s) failed to apply",
                operation.value,
                script_id,
                request_id,
            )
            return CommittedWithExecutionError(error=error)

        await run_best_effort(
            "edit history",
            lambda: edit_history_service.record(
                session,
                script_id,
                operation.value,
                old_data=documents["old"],
                new_data=documents["new"],
                description=f"Applied approval request {request_id}",
            ),
            session=session,
        )
        await run_best_effort("scripts cache invalidation", cache_service.clear_scripts_cache)
        await run_best_effort(
            "approval notification",
            lambda: notification_service.notify(
                "approved",
                script_id,
                actor.email,
                f"{operation.value}: {title}",
            ),
        )

        logger.info(
            "Applied approved %s for %s (request %s)%s",
            operation.value,
            script_id,
            request_id,
            f" as v{version_number}" if version_number else "",
        )
        return Committed(version_id=version_id)

    async def get_request(self, session: AsyncSession, request_id: str) -> Optional[ApprovalRequest]:
        result = await session.exec(
            select(ApprovalRequest).where(ApprovalRequest.request_id == request_id)
        )
        return result.first()

    async def get_pending(
        self,
        session: AsyncSession,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ApprovalRequest], int]:
        bounded_limit, offset = self._page_bounds(page, limit)
        pending = ApprovalRequest.status == ApprovalStatus.PENDING.value
        priority_rank = case(PRIORITY_RANK, value=ApprovalRequest.priority, else_=0)

        result = await session.exec(
            select(ApprovalRequest)
            .where(pending)
            .order_by(priority_rank.desc(), ApprovalRequest.requested_at.desc())
            .offset(offset)
            .limit(bounded_limit)
        )
        rows = result.all()
        total = await session.exec(select(func.count()).select_from(ApprovalRequest).where(pending))
        return rows, int(total.one() or 0)

    async def get_completed(
        self,
        session: AsyncSession,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ApprovalRequest], int]:
        bounded_limit, offset = self._page_bounds(page, limit)
        completed = ApprovalRequest.status.in_([status.value for status in TERMINAL_STATUSES])

        result = await session.exec(
            select(ApprovalRequest)
            .where(completed)
            .order_by(ApprovalRequest.updated_at.desc())
            .offset(offset)
            .limit(bounded_limit)
        )
        rows = result.all()
        total = await session.exec(select(func.count()).select_from(ApprovalRequest).where(completed))
        return rows, int(total.one() or 0)

    async def get_history(
        self,
        session: AsyncSession,
        script_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> list[ApprovalHistory]:
        return await history_service.query(session, script_id=script_id, request_id=request_id)


approval_service = ApprovalService()
