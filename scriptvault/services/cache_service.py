import logging
from typing import Optional

import redis.asyncio as redis

from scriptvault.core.config import settings


logger = logging.getLogger(__name__)


class CacheService:
    """Invalidates the cached script listings kept in Redis."""

    def __init__(self):
        self.client: Optional[redis.Redis] = None

    def _get_client(self) -> redis.Redis:
        if self.client is None:
            self.client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.client

    async def clear_scripts_cache(self) -> int:
        if not settings.CACHE_ENABLED:
            return 0

        client = self._get_client()
        keys = [key async for key in client.scan_iter(match=f"{settings.SCRIPTS_CACHE_PREFIX}*")]
        if not keys:
            return 0
        deleted = await client.delete(*keys)
        logger.info("Cleared %s cached script keys", deleted)
        return deleted

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


cache_service = CacheService()
