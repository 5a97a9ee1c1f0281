"""Semantic-version snapshots of script content.

Each accepted change mints a new ``ScriptVersion``; the prior current version
is demoted in the same transaction so a script never has two current
versions. Rollback copies an old snapshot forward under a fresh number rather
than rewinding the counter.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.config import settings
from scriptvault.core.errors import NotFoundError, StaleStateError
from scriptvault.core.locks import KeyedLock
from scriptvault.core.rbac import Actor
from scriptvault.models.script import SqlScript
from scriptvault.models.version import (
    ChangeType,
    ScriptSnapshot,
    ScriptVersion,
    VersionBump,
    VersionStatus,
)
from scriptvault.services.cache_service import cache_service
from scriptvault.services.notification_service import notification_service
from scriptvault.services.script_service import script_service
from scriptvault.services.side_effects import run_best_effort


logger = logging.getLogger(__name__)

MAX_CREATE_ATTEMPTS = 3

COMPARED_FIELDS = (
    ("name", "Script name"),
    ("cn_name", "Localized name"),
    ("description", "Description"),
    ("cn_description", "Localized description"),
    ("scope", "Scope"),
    ("cn_scope", "Localized scope"),
    ("author", "Author"),
    ("sql_content", "SQL content"),
)


@dataclass
class FieldDifference:
    field: str
    label: str
    old_value: Optional[str]
    new_value: Optional[str]
    change_type: str


@dataclass
class SqlDiff:
    additions: list[str] = field(default_factory=list)
    deletions: list[str] = field(default_factory=list)
    modifications: list[str] = field(default_factory=list)


@dataclass
class VersionDiff:
    script_id: str
    from_version: str
    to_version: str
    differences: list[FieldDifference]
    sql_diff: SqlDiff

    @property
    def changed_fields(self) -> list[str]:
        return [diff.field for diff in self.differences if diff.change_type != "unchanged"]


@dataclass
class VersionStatistics:
    total_versions: int
    current_version: Optional[str]
    total_executions: int
    total_rollbacks: int
    latest_change: Optional[datetime]


@dataclass
class RollbackResult:
    new_version_id: str
    version: ScriptVersion
    target_version: str
    message: str


class _CurrentVersionMoved(Exception):
    pass


def generate_version_id() -> str:
    return f"ver_{uuid.uuid4().hex}"


def parse_version(version: Optional[str]) -> tuple[int, int, int]:
    parts = []
    for part in (version or "").split("."):
        try:
            parts.append(int(part))
        except ValueError:
            parts.append(0)
    major = parts[0] if parts and parts[0] else 1
    minor = parts[1] if len(parts) > 1 else 0
    patch = parts[2] if len(parts) > 2 else 0
    return major, minor, patch


def next_version(last_version: Optional[str], bump: Union[VersionBump, str] = VersionBump.PATCH) -> str:
    major, minor, patch = parse_version(last_version) if last_version else (1, 0, 0)
    bump = VersionBump(bump)
    if bump == VersionBump.MAJOR:
        return f"{major + 1}.0.0"
    if bump == VersionBump.MINOR:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def _split_lines(sql: Optional[str]) -> list[str]:
    return [line.strip() for line in (sql or "").split("\n") if line.strip()]


def analyze_sql_diff(old_sql: Optional[str], new_sql: Optional[str]) -> SqlDiff:
    # Set difference, not alignment: reordered lines do not show up.
    old_lines = _split_lines(old_sql)
    new_lines = _split_lines(new_sql)
    old_set = set(old_lines)
    new_set = set(new_lines)
    return SqlDiff(
        additions=[line for line in new_lines if line not in old_set],
        deletions=[line for line in old_lines if line not in new_set],
        modifications=[],
    )


def classify_field_change(old_value: Any, new_value: Any) -> str:
    if old_value == new_value or (not old_value and not new_value):
        return "unchanged"
    if not old_value:
        return "added"
    if not new_value:
        return "removed"
    return "modified"


def diff_versions(script_id: str, from_row: ScriptVersion, to_row: ScriptVersion) -> VersionDiff:
    differences = []
    for field_name, label in COMPARED_FIELDS:
        old_value = getattr(from_row, field_name)
        new_value = getattr(to_row, field_name)
        differences.append(
            FieldDifference(
                field=field_name,
                label=label,
                old_value=old_value,
                new_value=new_value,
                change_type=classify_field_change(old_value, new_value),
            )
        )
    return VersionDiff(
        script_id=script_id,
        from_version=from_row.version,
        to_version=to_row.version,
        differences=differences,
        sql_diff=analyze_sql_diff(from_row.sql_content, to_row.sql_content),
    )


class VersionService:
    def __init__(self):
        self._script_locks = KeyedLock()

    def parse_hashtags(self, row: ScriptVersion) -> list[str]:
        try:
            parsed = json.loads(row.hashtags_json or "[]")
            return parsed if isinstance(parsed, list) else []
        except ValueError:
            return []

    async def get_version(
        self,
        session: AsyncSession,
        script_id: str,
        version: str,
    ) -> Optional[ScriptVersion]:
        result = await session.exec(
            select(ScriptVersion).where(
                and_(
                    ScriptVersion.script_id == script_id,
                    ScriptVersion.version == version,
                )
            )
        )
        return result.first()

    async def get_current_version(self, session: AsyncSession, script_id: str) -> Optional[ScriptVersion]:
        result = await session.exec(
            select(ScriptVersion).where(
                and_(
                    ScriptVersion.script_id == script_id,
                    ScriptVersion.is_current_version == True,  # noqa: E712
                )
            )
        )
        return result.first()

    async def get_latest_version(self, session: AsyncSession, script_id: str) -> Optional[ScriptVersion]:
        versions = await self.list_versions(session, script_id, limit=1)
        return versions[0] if versions else None

    async def list_versions(
        self,
        session: AsyncSession,
        script_id: str,
        limit: int = 50,
    ) -> list[ScriptVersion]:
        # numeric ordering, so 1.10.0 sorts above 1.9.0
        result = await session.exec(
            select(ScriptVersion)
            .where(ScriptVersion.script_id == script_id)
            .order_by(
                ScriptVersion.major_version.desc(),
                ScriptVersion.minor_version.desc(),
                ScriptVersion.patch_version.desc(),
            )
            .limit(min(max(limit, 1), settings.VERSION_LIST_MAX_LIMIT))
        )
        return result.all()

    async def create_version(
        self,
        session: AsyncSession,
        script_id: str,
        content: Optional[ScriptSnapshot],
        author: Actor,
        change_type: Union[ChangeType, str] = ChangeType.CREATE,
        description: Optional[str] = None,
        bump: Union[VersionBump, str] = VersionBump.PATCH,
        approval_request_id: Optional[str] = None,
        approval_status: Optional[str] = None,
        sync_script_content: bool = False,
        stage: Optional[Callable[[], Awaitable[ScriptSnapshot]]] = None,
        rollback_of: Optional[str] = None,
    ) -> ScriptVersion:
        """Mint the next version of ``script_id`` and make it current.

        The prior current version is demoted with a compare-and-swap on its
        ``version_id``. A lost race (another writer moved the pointer or took
        the same number) rolls back and retries against the new state. Any
        other failure rolls the transaction back and propagates, so staged
        script changes never outlive a failed version.

        Args:
            sync_script_content: Also copy the snapshot onto the script record
                in the same transaction, used when rolling back.
            stage: Coroutine run at the start of every attempt, inside the
                version transaction. It stages the script record change and
                returns the snapshot to version, replacing ``content``.
            rollback_of: ``version_id`` whose ``rollback_count`` is bumped in
                the same transaction.
        """
        async with self._script_locks.hold(script_id):
            for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
                try:
                    if stage is not None:
                        content = await stage()
                    version = await self._insert_next_version(
                        session=session,
                        script_id=script_id,
                        content=content,
                        author=author,
                        change_type=ChangeType(change_type),
                        description=description,
                        bump=VersionBump(bump),
                        approval_request_id=approval_request_id,
                        approval_status=approval_status,
                        sync_script_content=sync_script_content,
                        rollback_of=rollback_of,
                    )
                except (_CurrentVersionMoved, IntegrityError) as exc:
                    await session.rollback()
                    logger.warning(
                        "Version creation for %s lost a race (attempt %s/%s): %s",
                        script_id,
                        attempt,
                        MAX_CREATE_ATTEMPTS,
                        exc,
                    )
                    continue
                except Exception:
                    await session.rollback()
                    raise

                logger.info(
                    "Created script version %s v%s (%s)",
                    script_id,
                    version.version,
                    version.change_type,
                )
                return version

        raise StaleStateError(script_id, expected="a stable current version", actual="concurrently modified")

    async def _insert_next_version(
        self,
        session: AsyncSession,
        script_id: str,
        content: ScriptSnapshot,
        author: Actor,
        change_type: ChangeType,
        description: Optional[str],
        bump: VersionBump,
        approval_request_id: Optional[str],
        approval_status: Optional[str],
        sync_script_content: bool,
        rollback_of: Optional[str] = None,
    ) -> ScriptVersion:
        latest = await self.get_latest_version(session, script_id)
        current = await self.get_current_version(session, script_id)
        new_version = next_version(latest.version if latest else None, bump)
        major, minor, patch = parse_version(new_version)
        now = datetime.utcnow()

        previous_version_id = None
        if current:
            demoted = await session.execute(
                update(ScriptVersion)
                .where(
                    and_(
                        ScriptVersion.version_id == current.version_id,
                        ScriptVersion.is_current_version == True,  # noqa: E712
                    )
                )
                .values(is_current_version=False, status=VersionStatus.ARCHIVED.value)
            )
            if demoted.rowcount != 1:
                raise _CurrentVersionMoved(f"{current.version_id} is no longer current")
            previous_version_id = current.version_id

        version = ScriptVersion(
            version_id=generate_version_id(),
            script_id=script_id,
            version=new_version,
            major_version=major,
            minor_version=minor,
            patch_version=patch,
            status=VersionStatus.ACTIVE.value,
            is_current_version=True,
            name=content.name,
            cn_name=content.cn_name,
            description=content.description,
            cn_description=content.cn_description,
            scope=content.scope,
            cn_scope=content.cn_scope,
            author=content.author,
            hashtags_json=json.dumps(list(content.hashtags or []), ensure_ascii=True),
            sql_content=content.sql_content,
            created_by=author.id,
            created_by_email=author.email,
            created_at=now,
            approval_status=approval_status,
            approval_request_id=approval_request_id,
            change_type=change_type.value,
            change_description=description,
            previous_version_id=previous_version_id,
            execution_count=0,
            rollback_count=0,
        )
        session.add(version)
        await session.flush()

        script_values: dict[str, Any] = {
            "current_version_id": version.version_id,
            "current_version": new_version,
            "updated_at": now,
        }
        if sync_script_content:
            script_values.update(
                name=content.name,
                cn_name=content.cn_name,
                description=content.description,
                cn_description=content.cn_description,
                scope=content.scope,
                cn_scope=content.cn_scope,
                author=content.author,
                hashtags_json=version.hashtags_json,
                sql_content=content.sql_content,
            )
        await session.execute(
            update(SqlScript)
            .where(SqlScript.script_id == script_id)
            .values(**script_values)
        )
        if rollback_of:
            await session.execute(
                update(ScriptVersion)
                .where(ScriptVersion.version_id == rollback_of)
                .values(rollback_count=ScriptVersion.rollback_count + 1)
                .execution_options(synchronize_session=False)
            )
        await session.commit()
        await session.refresh(version)
        return version

    async def rollback(
        self,
        session: AsyncSession,
        script_id: str,
        target_version: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> RollbackResult:
        # Rollback is not routed through the approval workflow; callers with
        # edit rights may roll back directly.
        target = await self.get_version(session, script_id, target_version)
        if not target:
            raise NotFoundError("ScriptVersion", f"{script_id}@{target_version}")

        new_version = await self.create_version(
            session=session,
            script_id=script_id,
            content=script_service.snapshot_of(target),
            author=actor,
            change_type=ChangeType.ROLLBACK,
            description=reason or f"Rollback to version {target_version}",
            bump=VersionBump.PATCH,
            sync_script_content=True,
            rollback_of=target.version_id,
        )

        await run_best_effort("scripts cache invalidation", cache_service.clear_scripts_cache)
        await run_best_effort(
            "rollback notification",
            lambda: notification_service.notify(
                "rolled_back",
                script_id,
                actor.email,
                f"{target_version} -> {new_version.version}",
            ),
        )

        logger.info(
            "Rolled back %s to v%s as v%s by %s",
            script_id,
            target_version,
            new_version.version,
            actor.email,
        )
        return RollbackResult(
            new_version_id=new_version.version_id,
            version=new_version,
            target_version=target_version,
            message=f"Rolled back to version {target_version}",
        )

    async def compare(
        self,
        session: AsyncSession,
        script_id: str,
        from_version: str,
        to_version: str,
    ) -> VersionDiff:
        from_row = await self.get_version(session, script_id, from_version)
        if not from_row:
            raise NotFoundError("ScriptVersion", f"{script_id}@{from_version}")
        to_row = await self.get_version(session, script_id, to_version)
        if not to_row:
            raise NotFoundError("ScriptVersion", f"{script_id}@{to_version}")
        return diff_versions(script_id, from_row, to_row)

    async def get_statistics(self, session: AsyncSession, script_id: str) -> VersionStatistics:
        result = await session.exec(
            select(
                func.count(ScriptVersion.id),
                func.coalesce(func.sum(ScriptVersion.execution_count), 0),
                func.coalesce(func.sum(ScriptVersion.rollback_count), 0),
                func.max(ScriptVersion.created_at),
            ).where(ScriptVersion.script_id == script_id)
        )
        total_versions, total_executions, total_rollbacks, latest_change = result.one()
        current = await self.get_current_version(session, script_id)
        return VersionStatistics(
            total_versions=int(total_versions or 0),
            current_version=current.version if current else None,
            total_executions=int(total_executions or 0),
            total_rollbacks=int(total_rollbacks or 0),
            latest_change=latest_change,
        )

    async def record_execution(
        self,
        session: AsyncSession,
        script_id: str,
        executed_at: Optional[datetime] = None,
    ) -> bool:
        result = await session.execute(
            update(ScriptVersion)
            .where(
                and_(
                    ScriptVersion.script_id == script_id,
                    ScriptVersion.is_current_version == True,  # noqa: E712
                )
            )
            .values(
                execution_count=ScriptVersion.execution_count + 1,
                last_executed_at=executed_at or datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0


version_service = VersionService()
