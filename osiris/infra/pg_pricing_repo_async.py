# osiris/infra/pg_pricing_repo_async.py
"""Async PostgreSQL pricing table (asyncpg). Saves replace the whole table in one transaction."""
from __future__ import annotations

from osiris.core.domain import PricingAddon, PricingRow
from osiris.core.ports import PricingRepository
from osiris.infra.db_resilience_async import safe_db_conn
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

_TIER_FIELDS = (
    "service_type", "bedrooms", "bathrooms", "max_sq_ft", "price", "price_min", "price_max",
    "labor_hours", "cleaners", "hours_per_cleaner",
)


def _row_to_tier(row) -> PricingRow:
    return PricingRow(**{name: row[name] for name in _TIER_FIELDS})


def _row_to_addon(row) -> PricingAddon:
    return PricingAddon(
        addon_key=row["addon_key"],
        label=row["label"],
        minutes=row["minutes"],
        flat_price=row["flat_price"],
        price_multiplier=row["price_multiplier"],
        included_in=list(row["included_in"] or []),
        keywords=list(row["keywords"] or []),
        active=row["active"],
    )


class AsyncPostgresPricingRepository(PricingRepository):

    async def list_tiers(self) -> list[PricingRow]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM pricing_tiers ORDER BY service_type, bedrooms, bathrooms, max_sq_ft"
            )
        return [_row_to_tier(row) for row in rows]

    async def list_addons(self) -> list[PricingAddon]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM pricing_addons ORDER BY addon_key")
        return [_row_to_addon(row) for row in rows]

    async def replace_tiers(self, rows: list[PricingRow]) -> None:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute("DELETE FROM pricing_tiers")
            await conn.executemany(
                f"""
                INSERT INTO pricing_tiers ({", ".join(_TIER_FIELDS)})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                [tuple(getattr(r, name) for name in _TIER_FIELDS) for r in rows],
            )
        logger.info(f"Pricing tiers replaced: {len(rows)} rows")

    async def replace_addons(self, addons: list[PricingAddon]) -> None:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute("DELETE FROM pricing_addons")
            await conn.executemany(
                """
                INSERT INTO pricing_addons
                  (addon_key, label, minutes, flat_price, price_multiplier, included_in, keywords, active)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                [
                    (a.addon_key, a.label, a.minutes, a.flat_price, a.price_multiplier,
                     list(a.included_in), list(a.keywords), a.active)
                    for a in addons
                ],
            )
        logger.info(f"Pricing add-ons replaced: {len(addons)} rows")


_pricing_repo: AsyncPostgresPricingRepository | None = None


def get_pricing_repo() -> AsyncPostgresPricingRepository:
    global _pricing_repo
    if _pricing_repo is None:
        _pricing_repo = AsyncPostgresPricingRepository()
    return _pricing_repo
