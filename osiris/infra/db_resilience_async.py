# osiris/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic for transient asyncpg failures.
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from osiris.infra import db_async
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics

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
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors / server closed connection
    - Too many connections
    - Deadlock and serialization failures
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        ConnectionError,
        asyncio.TimeoutError,
        OSError,
    )):
        return True

    # Constraint violations and bad SQL are never transient
    if isinstance(exc, asyncpg.PostgresError):
        return False

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3) -> AsyncIterator:
    """
    Database connection whose acquisition is retried on transient errors.

    Only acquiring the connection is retried: the body of the ``async with``
    runs exactly once, so statements are never replayed behind the caller's back.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM jobs WHERE date = $1", day)
    """
    delay = 0.1
    conn = None

    for attempt in range(max_retries + 1):
        try:
            conn = await db_async.acquire()
            break
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                AppMetrics.database_error("acquire")
                logger.error(f"Could not acquire database connection: {exc}")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await db_async.release(conn)
