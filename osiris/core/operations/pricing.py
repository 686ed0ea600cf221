# osiris/core/operations/pricing.py
"""
Cleaning price tiers and add-ons.

Tiers are keyed by service type (``standard``, ``deep``; ``move`` is priced
as ``deep``), bedrooms, bathrooms and a square-footage ceiling. The
operator can edit the table from the dashboard; until they do, the bundled
``data/pricing_defaults.json`` is used.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from osiris.core.domain import PricingAddon, PricingRow
from osiris.core.errors import NotFoundError, ValidationError
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

SERVICE_TYPES = ("standard", "deep", "move")
TIER_SERVICE_TYPES = ("standard", "deep")

_DEFAULTS_PATH = Path(__file__).parent / "data" / "pricing_defaults.json"


def _load_default_tiers() -> list[PricingRow]:
    with open(_DEFAULTS_PATH, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return [
        PricingRow(service_type=service_type, **row)
        for service_type, rows in raw["tiers"].items()
        for row in rows
    ]


DEFAULT_TIERS: list[PricingRow] = _load_default_tiers()

DEFAULT_ADDONS: list[PricingAddon] = [
    PricingAddon("inside_fridge", "Inside fridge", 30, None, 1.0, ["move"],
                 ["inside fridge", "fridge interior", "clean fridge"]),
    PricingAddon("inside_oven", "Inside oven", 30, None, 1.0, ["move"],
                 ["inside oven", "oven interior", "clean oven"]),
    PricingAddon("inside_cabinets", "Inside cabinets", 60, None, 1.0, ["move"],
                 ["inside cabinets", "cabinet interior"]),
    PricingAddon("windows_interior", "Interior windows", 30, 50.0, 1.0, [],
                 ["interior windows", "inside windows"]),
    PricingAddon("windows_exterior", "Exterior windows", 60, 100.0, 1.0, [],
                 ["exterior windows", "outside windows"]),
    PricingAddon("windows_both", "Interior + exterior windows", 90, 150.0, 1.0, [],
                 ["both windows", "all windows"]),
    PricingAddon("pet_fee", "Pet fee", 0, 25.0, 1.0, [],
                 ["pet", "pets", "dog", "cat"]),
]


def tier_for_service(service_type: str) -> str:
    return "deep" if service_type == "move" else service_type


def select_pricing_row(
    rows: Iterable[PricingRow],
    service_type: str,
    bedrooms: int,
    bathrooms: float,
    square_footage: int | None = None,
) -> PricingRow | None:
    """
    Pick the tier row for a home.

    Rows matching bed/bath are ordered by ``max_sq_ft``. With a square
    footage, the first row whose ceiling covers it wins (the largest row if
    none does); without one, the largest row is used.
    """
    tier = tier_for_service(service_type)
    matching = sorted(
        (r for r in rows if r.service_type == tier and r.bedrooms == bedrooms and r.bathrooms == bathrooms),
        key=lambda r: r.max_sq_ft,
    )
    if not matching:
        return None

    if square_footage and square_footage > 0:
        for row in matching:
            if row.max_sq_ft >= square_footage:
                return row

    return matching[-1]


def match_addon(addons: Iterable[PricingAddon], text: str) -> PricingAddon | None:
    """Find the add-on a free-text description refers to (longest keyword wins)."""
    needle = (text or "").strip().lower()
    if not needle:
        return None

    candidates: list[tuple[int, PricingAddon]] = []
    for addon in addons:
        if not addon.active:
            continue
        if needle in (addon.addon_key.lower(), addon.label.lower()):
            return addon
        for keyword in addon.keywords:
            if keyword.lower() in needle:
                candidates.append((len(keyword), addon))

    if not candidates:
        return None
    return max(candidates, key=lambda c: c[0])[1]


def build_quote(
    row: PricingRow,
    addons: Iterable[PricingAddon],
    service_type: str,
    addon_keys: Iterable[str] = (),
) -> dict[str, Any]:
    """
    Price a tier row plus selected add-ons.

    Add-ons included in the service type are free. Add-ons without a flat
    price are charged by time at the row's effective hourly rate.
    """
    by_key = {a.addon_key: a for a in addons if a.active}
    hourly_rate = row.price / row.labor_hours if row.labor_hours else 0.0

    base = row.price
    extras_total = 0.0
    extra_hours = 0.0
    lines: list[dict[str, Any]] = []

    for key in addon_keys:
        addon = by_key.get(key)
        if addon is None:
            raise ValidationError(f"Unknown add-on: {key}")

        if service_type in addon.included_in:
            lines.append({"addon_key": key, "label": addon.label, "price": 0.0, "included": True})
            continue

        if addon.flat_price is not None:
            price = float(addon.flat_price)
        else:
            price = round(hourly_rate * addon.minutes / 60, 2)

        base *= addon.price_multiplier
        extras_total += price
        extra_hours += addon.minutes / 60
        lines.append({"addon_key": key, "label": addon.label, "price": price, "included": False})

    labor_hours = row.labor_hours + extra_hours
    total = round(base + extras_total, 2)

    return {
        "service_type": service_type,
        "bedrooms": row.bedrooms,
        "bathrooms": row.bathrooms,
        "max_sq_ft": row.max_sq_ft,
        "base_price": round(base, 2),
        "addons": lines,
        "total": total,
        "price_min": row.price_min,
        "price_max": row.price_max,
        "labor_hours": round(labor_hours, 2),
        "cleaners": row.cleaners,
        "hours_per_cleaner": round(labor_hours / row.cleaners, 2) if row.cleaners else labor_hours,
    }


class PricingService:
    """Reads/writes the operator's pricing table with bundled defaults as fallback."""

    def __init__(self, ports: ServicePorts | None = None) -> None:
        self.ports = ports or ServicePorts()

    async def tiers(self) -> list[PricingRow]:
        rows = await self.ports.pricing.list_tiers()
        if not rows:
            logger.debug("No pricing tiers stored, using bundled defaults")
            return list(DEFAULT_TIERS)
        return rows

    async def addons(self) -> list[PricingAddon]:
        addons = [a for a in await self.ports.pricing.list_addons() if a.active]
        return addons or list(DEFAULT_ADDONS)

    async def get_table(self) -> dict[str, Any]:
        tiers = await self.tiers()
        return {
            "standard": [r.to_dict() for r in tiers if r.service_type == "standard"],
            "deep": [r.to_dict() for r in tiers if r.service_type == "deep"],
            "addons": [a.to_dict() for a in await self.addons()],
        }

    async def get_pricing_row(
        self,
        service_type: str,
        bedrooms: int,
        bathrooms: float,
        square_footage: int | None = None,
    ) -> PricingRow | None:
        if service_type not in SERVICE_TYPES:
            raise ValidationError(f"Unknown service type: {service_type}")
        return select_pricing_row(await self.tiers(), service_type, bedrooms, bathrooms, square_footage)

    async def quote(
        self,
        service_type: str,
        bedrooms: int,
        bathrooms: float,
        square_footage: int | None = None,
        addon_keys: Iterable[str] = (),
    ) -> dict[str, Any]:
        row = await self.get_pricing_row(service_type, bedrooms, bathrooms, square_footage)
        if row is None:
            raise NotFoundError(f"No pricing for {bedrooms} bed / {bathrooms} bath ({service_type})")
        return build_quote(row, await self.addons(), service_type, addon_keys)

    async def upsell_value(self, description: str) -> tuple[str, float]:
        """Map a reported upsell to (add-on key or raw text, value in dollars)."""
        addon = match_addon(await self.addons(), description)
        if addon is None:
            return description.strip(), 0.0
        return addon.addon_key, float(addon.flat_price or 0.0)

    async def save(self, tiers: list[PricingRow], addons: list[PricingAddon] | None = None) -> None:
        """Replace the whole table. Addons are left untouched when not given."""
        for row in tiers:
            if row.service_type not in TIER_SERVICE_TYPES:
                raise ValidationError(f"Invalid service_type in pricing row: {row.service_type}")
            if row.price <= 0 or row.max_sq_ft <= 0:
                raise ValidationError(
                    f"Invalid pricing row {row.bedrooms} bed / {row.bathrooms} bath: "
                    f"price and max_sq_ft must be positive"
                )

        keys = [a.addon_key for a in addons or []]
        if len(keys) != len(set(keys)):
            raise ValidationError("Duplicate addon_key in add-ons")

        await self.ports.pricing.replace_tiers(tiers)
        if addons is not None:
            await self.ports.pricing.replace_addons(addons)
        logger.info(f"Pricing saved: {len(tiers)} tiers, {len(keys)} add-ons")

    async def reset(self) -> None:
        await self.save(list(DEFAULT_TIERS), list(DEFAULT_ADDONS))
        logger.info("Pricing reset to defaults")


def get_pricing_service() -> PricingService:
    return PricingService()
