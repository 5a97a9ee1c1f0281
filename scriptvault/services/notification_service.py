import logging
from typing import Any, Optional

import httpx

from scriptvault.core.config import settings


logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def build_message(self, event: str, script_id: str, actor_email: str, detail: Optional[str] = None) -> dict[str, Any]:
        text = f"[{event}] script `{script_id}` by {actor_email}"
        if detail:
            text = f"{text}: {detail}"
        return {"text": text, "event": event, "script_id": script_id}

    async def notify(
        self,
        event: str,
        script_id: str,
        actor_email: str,
        detail: Optional[str] = None,
    ) -> bool:
        if not settings.APPROVAL_WEBHOOK_URL:
            return False

        async with httpx.AsyncClient(
            timeout=settings.APPROVAL_WEBHOOK_TIMEOUT_SECONDS,
            transport=self.transport,
        ) as client:
            response = await client.post(
                settings.APPROVAL_WEBHOOK_URL,
                json=self.build_message(event, script_id, actor_email, detail),
            )
            response.raise_for_status()
        logger.info("Posted %s webhook for %s", event, script_id)
        return True


notification_service = NotificationService()
