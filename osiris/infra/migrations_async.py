# osiris/infra/migrations_async.py
"""
SQL migrations runner (asyncpg).

Files in osiris/infra/sql are applied in name order inside one transaction;
applied versions are tracked in schema_migrations.
"""
from __future__ import annotations
from pathlib import Path

from osiris.infra.db_async import db_conn
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def list_migration_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending migrations.

    Returns:
        {"ok": bool, "applied": [filenames applied in this run], "count": int}
    """
    files = list_migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        applied = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}

        applied_now = []
        for path in files:
            if path.name in applied:
                logger.debug(f"Migration {path.name} already applied, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
