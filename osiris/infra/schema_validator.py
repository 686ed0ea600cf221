# osiris/infra/schema_validator.py
"""
Startup schema check.

The web process never migrates. It compares the latest applied migration
with ``settings.expected_schema_version`` and refuses to start on mismatch,
so a release is never served against a schema it was not written for.
"""
from __future__ import annotations
from osiris.config import settings
from osiris.infra.db_async import db_conn
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m osiris.infra.migrate"

_TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name = 'schema_migrations'
    )
"""


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: schema not initialized or not at the expected version
    """
    async with db_conn() as conn:
        if not await conn.fetchval(_TABLE_EXISTS_SQL):
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not latest:
        error = f"No migrations have been applied. {_MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current_version = latest["version"]
    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch: expected {settings.expected_schema_version}, "
            f"found {current_version}. {_MIGRATE_HINT}"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
        "error": None,
    }


async def get_schema_info() -> dict:
    """Schema state for /health/detailed."""
    async with db_conn() as conn:
        if not await conn.fetchval(_TABLE_EXISTS_SQL):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch("SELECT version, applied_at FROM schema_migrations ORDER BY version")

    latest = rows[-1]["version"] if rows else None
    return {
        "initialized": True,
        "migrations_applied": len(rows),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
