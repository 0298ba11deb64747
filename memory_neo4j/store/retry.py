"""Retry-with-backoff for transient Neo4j failures."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from neo4j.exceptions import Neo4jError, ServiceUnavailable, SessionExpired, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_RETRY_ATTEMPTS = 3
TRANSIENT_RETRY_BASE_DELAY = 0.5  # seconds

_TRANSIENT_MESSAGES = (
    "DeadlockDetected",
    "TransientError",
    "ServiceUnavailable",
    "SessionExpired",
    "ConnectionRefused",
    "connection terminated",
)


def is_transient_neo4j_error(err: BaseException) -> bool:
    """Deadlocks, connection blips and unavailable/expired sessions."""
    if isinstance(err, (TransientError, ServiceUnavailable, SessionExpired, ConnectionRefusedError)):
        return True
    message = str(err)
    if any(marker in message for marker in _TRANSIENT_MESSAGES):
        return True
    if isinstance(err, Neo4jError):
        code = getattr(err, "code", None) or ""
        return code.startswith("Neo.TransientError.")
    return False


async def retry_on_transient(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = TRANSIENT_RETRY_ATTEMPTS,
    base_delay: float = TRANSIENT_RETRY_BASE_DELAY,
) -> T:
    """
    Run ``fn`` and retry it on transient errors with exponential backoff.

    Non-transient errors, and the last transient one, are re-raised.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        max_attempts: Total attempts including the first
        base_delay: Delay before the first retry; doubles each attempt
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_transient_neo4j_error(e) or attempt >= max_attempts - 1:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"Transient Neo4j error, retrying ({attempt + 1}/{max_attempts}): {e}"
            )
            await asyncio.sleep(delay)
            attempt += 1
