import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.errors import NotFoundError, ValidationError
from scriptvault.models.script import SqlScript
from scriptvault.models.version import ScriptSnapshot


logger = logging.getLogger(__name__)

# Fields a proposed change may set; script_id and id are never overwritten.
EDITABLE_FIELDS = (
    "name",
    "cn_name",
    "description",
    "cn_description",
    "scope",
    "cn_scope",
    "author",
    "hashtags",
    "sql_content",
    "is_scheduled",
    "cron_schedule",
)

# Payloads written by older clients use camelCase keys.
_LEGACY_KEYS = {
    "scriptId": "script_id",
    "cnName": "cn_name",
    "cnDescription": "cn_description",
    "cnScope": "cn_scope",
    "sqlContent": "sql_content",
    "isScheduled": "is_scheduled",
    "cronSchedule": "cron_schedule",
}


def normalize_document(data: Optional[dict[str, Any]]) -> dict[str, Any]:
    if not data:
        return {}
    return {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}


class ScriptService:
    def _parse_hashtags(self, raw: Optional[str]) -> list[str]:
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        return [str(tag) for tag in parsed] if isinstance(parsed, list) else []

    def _apply_fields(self, script: SqlScript, data: dict[str, Any]) -> None:
        for field_name in EDITABLE_FIELDS:
            if field_name not in data:
                continue
            value = data[field_name]
            if field_name == "hashtags":
                script.hashtags_json = json.dumps(list(value or []), ensure_ascii=True)
            elif field_name == "is_scheduled":
                script.is_scheduled = bool(value)
            else:
                setattr(script, field_name, value)

    async def get_script(self, session: AsyncSession, script_id: str) -> Optional[SqlScript]:
        result = await session.exec(select(SqlScript).where(SqlScript.script_id == script_id))
        return result.first()

    async def create_script(
        self,
        session: AsyncSession,
        script_id: str,
        data: dict[str, Any],
        approval_status: Optional[str] = None,
        approval_request_id: Optional[str] = None,
        commit: bool = True,
    ) -> SqlScript:
        data = normalize_document(data)
        if not data.get("name"):
            raise ValidationError("name is required to create a script")
        if not data.get("sql_content"):
            raise ValidationError("sql_content is required to create a script")
        if await self.get_script(session, script_id):
            raise ValidationError(f"Script with ID '{script_id}' already exists")

        now = datetime.utcnow()
        script = SqlScript(
            script_id=script_id,
            name=data["name"],
            sql_content=data["sql_content"],
            approval_status=approval_status,
            approval_request_id=approval_request_id,
            created_at=now,
            updated_at=now,
        )
        self._apply_fields(script, data)
        session.add(script)
        if not commit:
            await session.flush()
            return script
        await session.commit()
        await session.refresh(script)
        logger.info("Created script %s", script_id)
        return script

    async def update_script(
        self,
        session: AsyncSession,
        script_id: str,
        data: dict[str, Any],
        approval_status: Optional[str] = None,
        approval_request_id: Optional[str] = None,
        commit: bool = True,
    ) -> tuple[dict[str, Any], SqlScript]:
        """Overwrite the proposed fields and return ``(old_document, script)``.

        With ``commit=False`` the change is only flushed, leaving the caller's
        transaction to commit or discard it.
        """
        script = await self.get_script(session, script_id)
        if not script:
            raise NotFoundError("Script", script_id)

        old_document = self.to_document(script)
        self._apply_fields(script, normalize_document(data))
        if approval_status is not None:
            script.approval_status = approval_status
        if approval_request_id is not None:
            script.approval_request_id = approval_request_id
        script.updated_at = datetime.utcnow()
        session.add(script)
        if not commit:
            await session.flush()
            return old_document, script
        await session.commit()
        await session.refresh(script)
        logger.info("Updated script %s", script_id)
        return old_document, script

    async def delete_script(self, session: AsyncSession, script_id: str) -> dict[str, Any]:
        script = await self.get_script(session, script_id)
        if not script:
            raise NotFoundError("Script", script_id)

        old_document = self.to_document(script)
        await session.delete(script)
        await session.commit()
        logger.info("Deleted script %s", script_id)
        return old_document

    def snapshot_of(self, source: Any) -> ScriptSnapshot:
        """Build a content snapshot from a script record, a version or a document."""
        if isinstance(source, dict):
            data = normalize_document(source)
            hashtags = data.get("hashtags") or []
        else:
            data = {field_name: getattr(source, field_name, None) for field_name in EDITABLE_FIELDS}
            hashtags = self._parse_hashtags(getattr(source, "hashtags_json", None))
        return ScriptSnapshot(
            name=data.get("name") or "",
            cn_name=data.get("cn_name"),
            description=data.get("description"),
            cn_description=data.get("cn_description"),
            scope=data.get("scope"),
            cn_scope=data.get("cn_scope"),
            author=data.get("author") or "",
            hashtags=list(hashtags),
            sql_content=data.get("sql_content") or "",
        )

    def to_document(self, script: SqlScript) -> dict[str, Any]:
        return {
            "script_id": script.script_id,
            "name": script.name,
            "cn_name": script.cn_name,
            "description": script.description,
            "cn_description": script.cn_description,
            "scope": script.scope,
            "cn_scope": script.cn_scope,
            "author": script.author,
            "hashtags": self._parse_hashtags(script.hashtags_json),
            "sql_content": script.sql_content,
            "is_scheduled": script.is_scheduled,
            "cron_schedule": script.cron_schedule,
            "approval_status": script.approval_status,
            "approval_request_id": script.approval_request_id,
            "current_version_id": script.current_version_id,
            "current_version": script.current_version,
            "created_at": script.created_at,
            "updated_at": script.updated_at,
        }


script_service = ScriptService()
