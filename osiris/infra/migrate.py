#!/usr/bin/env python3
# osiris/infra/migrate.py
"""
Standalone migration runner:

    python -m osiris.infra.migrate

Run it before starting a new release (CI/CD step, init container or by
hand). The web process only checks the schema version, it never migrates.
"""
import asyncio
import sys
from urllib.parse import urlparse

from osiris.config import settings
from osiris.infra.db_async import close_pool, init_pool
from osiris.infra.logging_config import get_logger, setup_logging
from osiris.infra.migrations_async import apply_migrations

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


def _database_label() -> str:
    """host:port/db without credentials."""
    parsed = urlparse(settings.database_dsn)
    return f"{parsed.hostname}:{parsed.port or 5432}{parsed.path}"


async def main() -> int:
    logger.info("=" * 60)
    logger.info("OSIRIS database migrations")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {_database_label()}")
    logger.info("=" * 60)

    try:
        await init_pool()
        logger.info("✓ Database connected")

        result = await apply_migrations()

        logger.info("=" * 60)
        logger.info(f"Status: {'SUCCESS' if result['ok'] else 'FAILED'}")
        if result["applied"]:
            for migration in result["applied"]:
                logger.info(f"  ✓ {migration}")
        else:
            logger.info("No new migrations to apply")
        logger.info("=" * 60)
        return 0 if result["ok"] else 1

    except Exception as exc:
        logger.critical("=" * 60)
        logger.critical("MIGRATION FAILED")
        logger.critical(f"Error: {exc}", exc_info=True)
        logger.critical("=" * 60)
        return 1

    finally:
        await close_pool()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
