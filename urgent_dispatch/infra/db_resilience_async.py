# urgent_dispatch/infra/db_resilience_async.py
"""
Retry helpers for transient asyncpg failures.

Only connection acquisition and idempotent reads are retried. A failure
inside a write transaction propagates after rollback; the caller (or the
job queue) decides whether to run the whole operation again.
"""
from __future__ import annotations
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps
from typing import Callable

import asyncpg
from urgent_dispatch.infra.db_async import db_conn
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if a database error is worth retrying.

    Connection loss, pool exhaustion, deadlocks and serialization failures
    are transient. Anything else is judged by its message.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an async function on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_request(self, request_id: str):
            async with safe_db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM urgent_requests WHERE id = $1", request_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded in {func.__name__}", exc_info=True)
                        AppMetrics.database_error(func.__name__)
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    ``db_conn`` with retries on transient errors while acquiring the connection.

    Usage:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(...)
    """
    max_retries = 3
    delay = 0.1

    async with AsyncExitStack() as stack:
        for attempt in range(max_retries + 1):
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc) or attempt >= max_retries:
                    AppMetrics.database_error("acquire")
                    raise

                logger.warning(
                    f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2.0, 5.0)

        yield conn
