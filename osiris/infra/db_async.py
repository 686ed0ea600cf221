# osiris/infra/db_async.py
"""
Async database access using asyncpg.

One process-wide pool, created in the FastAPI lifespan (or by the migrate
CLI) and closed on shutdown.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from osiris.config import settings
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None

_SERVER_SETTINGS = {
    "application_name": "osiris",
}


def _server_settings() -> dict[str, str]:
    server_settings = dict(_SERVER_SETTINGS)
    server_settings["statement_timeout"] = str(settings.pg_statement_timeout_ms)
    server_settings["idle_in_transaction_session_timeout"] = str(settings.pg_idle_in_tx_timeout_ms)
    return server_settings


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=60,
        server_settings=_server_settings(),
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


async def acquire() -> asyncpg.Connection:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return await _pool.acquire()


async def release(conn: asyncpg.Connection) -> None:
    if _pool is not None:
        await _pool.release(conn)


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

    Args:
        autocommit: If True (default), each statement commits on its own.
            If False, the block runs in one transaction that is rolled back on error.
    """
    conn = await acquire()

    try:
        if not autocommit:
            async with conn.transaction():
                yield conn
        else:
            yield conn
    finally:
        await release(conn)


async def open_listener_connection() -> asyncpg.Connection:
    """Dedicated (non-pooled) connection for LISTEN/NOTIFY."""
    return await asyncpg.connect(
        dsn=settings.database_dsn,
        timeout=settings.pg_connect_timeout,
        server_settings={"application_name": "osiris-listener"},
    )


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for advanced usage)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
