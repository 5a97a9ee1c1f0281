import json
import logging
from typing import Any, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.models.edit_history import EditHistory


logger = logging.getLogger(__name__)

TRACKED_FIELDS = (
    "name",
    "cn_name",
    "description",
    "cn_description",
    "scope",
    "cn_scope",
    "author",
    "is_scheduled",
    "cron_schedule",
    "sql_content",
)


def _normalize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value).strip()


def get_object_changes(
    old_obj: Optional[dict[str, Any]],
    new_obj: Optional[dict[str, Any]],
) -> list[dict[str, Any]]:
    old_obj = old_obj or {}
    new_obj = new_obj or {}
    changes = []
    for key in TRACKED_FIELDS:
        if key not in old_obj and key not in new_obj:
            continue
        old_value = old_obj.get(key)
        new_value = new_obj.get(key)
        if _normalize_value(old_value) != _normalize_value(new_value):
            changes.append({"field": key, "old_value": old_value, "new_value": new_value})
    return changes


class EditHistoryService:
    async def record(
        self,
        session: AsyncSession,
        script_id: str,
        operation: str,
        old_data: Optional[dict[str, Any]] = None,
        new_data: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> EditHistory:
        changes = get_object_changes(old_data, new_data)
        row = EditHistory(
            script_id=script_id,
            operation=operation,
            description=description,
            changes_json=json.dumps(changes, ensure_ascii=True, default=str),
            old_data_json=json.dumps(old_data, ensure_ascii=True, default=str) if old_data else None,
            new_data_json=json.dumps(new_data, ensure_ascii=True, default=str) if new_data else None,
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        return row

    async def list_for_script(
        self,
        session: AsyncSession,
        script_id: str,
        limit: int = 50,
    ) -> list[EditHistory]:
        bounded_limit = min(max(limit, 1), 200)
        result = await session.exec(
            select(EditHistory)
            .where(EditHistory.script_id == script_id)
            .order_by(EditHistory.created_at.desc(), EditHistory.id.desc())
            .limit(bounded_limit)
        )
        return result.all()

    def parse_changes(self, row: EditHistory) -> list[dict[str, Any]]:
        try:
            parsed = json.loads(row.changes_json or "[]")
            return parsed if isinstance(parsed, list) else []
        except ValueError:
            return []


edit_history_service = EditHistoryService()
