import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.errors import ForbiddenError
from scriptvault.models.user_role import Role, UserRoleAssignment

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    SCRIPT_CREATE = "script:create"
    SCRIPT_READ = "script:read"
    SCRIPT_UPDATE = "script:update"
    SCRIPT_DELETE = "script:delete"
    SCRIPT_EXECUTE = "script:execute"
    SCRIPT_APPROVE = "script:approve"
    SCRIPT_REJECT = "script:reject"

    HISTORY_READ = "history:read"
    HISTORY_DELETE = "history:delete"

    USER_MANAGE = "user:manage"
    USER_ROLE_ASSIGN = "user:role:assign"

    SYSTEM_MANAGE = "system:manage"
    CACHE_MANAGE = "cache:manage"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.MANAGER: frozenset({
        Permission.SCRIPT_CREATE,
        Permission.SCRIPT_READ,
        Permission.SCRIPT_UPDATE,
        Permission.SCRIPT_DELETE,
        Permission.SCRIPT_EXECUTE,
        Permission.SCRIPT_APPROVE,
        Permission.SCRIPT_REJECT,
        Permission.HISTORY_READ,
        # managers may hand out developer/viewer roles only
        Permission.USER_ROLE_ASSIGN,
    }),
    Role.DEVELOPER: frozenset({
        Permission.SCRIPT_CREATE,
        Permission.SCRIPT_READ,
        Permission.SCRIPT_UPDATE,
        Permission.SCRIPT_EXECUTE,
        Permission.HISTORY_READ,
    }),
    Role.VIEWER: frozenset({
        Permission.SCRIPT_READ,
        Permission.HISTORY_READ,
    }),
}


@dataclass(frozen=True)
class Actor:
    id: str
    email: str
    role: Optional[Role] = None


SYSTEM_ACTOR = Actor(id="system", email="system@auto-approval", role=Role.ADMIN)


def role_allows(role: Optional[Role], permission: Permission) -> bool:
    if role is None:
        return False
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


async def get_user_role(session: AsyncSession, user_id: str) -> Optional[Role]:
    result = await session.exec(
        select(UserRoleAssignment).where(
            and_(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active == True,  # noqa: E712
            )
        )
    )
    assignment = result.first()
    return Role(assignment.role) if assignment else None


async def has_permission(session: AsyncSession, user_id: str, permission: Permission) -> bool:
    role = await get_user_role(session, user_id)
    return role_allows(role, permission)


async def require_permission(
    session: AsyncSession,
    actor: Actor,
    permission: Permission,
    detail: Optional[str] = None,
) -> None:
    if not await has_permission(session, actor.id, permission):
        logger.info("Denied %s to user %s", permission.value, actor.id)
        raise ForbiddenError(permission.value, detail)


async def set_user_role(
    session: AsyncSession,
    user_id: str,
    email: str,
    role: Role,
    assigned_by: str,
) -> UserRoleAssignment:
    result = await session.exec(
        select(UserRoleAssignment).where(UserRoleAssignment.user_id == user_id)
    )
    assignment = result.first()
    now = datetime.utcnow()
    if assignment:
        assignment.email = email
        assignment.role = role
        assignment.assigned_by = assigned_by
        assignment.is_active = True
        assignment.updated_at = now
    else:
        assignment = UserRoleAssignment(
            user_id=user_id,
            email=email,
            role=role,
            assigned_by=assigned_by,
            assigned_at=now,
            updated_at=now,
        )
    session.add(assignment)
    await session.commit()
    await session.refresh(assignment)
    logger.info("Assigned role %s to %s by %s", role.value, user_id, assigned_by)
    return assignment
