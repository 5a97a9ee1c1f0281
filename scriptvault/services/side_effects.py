import logging
from typing import Any, Awaitable, Callable, Optional

from sqlmodel.ext.asyncio.session import AsyncSession


logger = logging.getLogger(__name__)


async def run_best_effort(
    label: str,
    action: Callable[[], Awaitable[Any]],
    session: Optional[AsyncSession] = None,
) -> bool:
    """Run a post-commit side effect; failures are logged, never raised.

    When the side effect shares the caller's session, a failure rolls back
    only its own pending writes, since the authoritative change is already
    committed.
    """
    try:
        await action()
        return True
    except Exception as exc:
        logger.warning("Side effect %s failed: %s", label, exc)
        if session is not None:
            try:
                await session.rollback()
            except Exception as rollback_exc:
                logger.warning("Rollback after failed side effect %s also failed: %s", label, rollback_exc)
        return False
