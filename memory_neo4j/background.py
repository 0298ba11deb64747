"""Fire-and-forget scheduling for non-critical async work."""

import asyncio
import logging
from typing import Coroutine, Optional, Set

logger = logging.getLogger(__name__)

# Strong references; the event loop only keeps weak ones to running tasks.
_pending: Set[asyncio.Task] = set()


def spawn(coro: Coroutine, label: str) -> Optional[asyncio.Task]:
    """
    Schedule ``coro`` without awaiting it.

    Failures are logged, never raised. Returns None (and closes the
    coroutine) when no event loop is running.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug(f"Skipping background task {label}: no event loop")
        coro.close()
        return None

    task = loop.create_task(coro)
    _pending.add(task)

    def _done(t: asyncio.Task) -> None:
        _pending.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning(f"Background task {label} failed: {exc}")

    task.add_done_callback(_done)
    return task


async def drain() -> None:
    """Wait for every outstanding background task (shutdown and tests)."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
