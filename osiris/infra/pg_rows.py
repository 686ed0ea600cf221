# osiris/infra/pg_rows.py
"""Small helpers shared by the asyncpg repositories."""
from __future__ import annotations

import uuid
from typing import Any, Iterable


def as_uuid(value: Any) -> uuid.UUID | None:
    """Parse an id from the outside world; None when it is not a UUID."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def id_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def pick(fields: dict[str, Any], allowed: Iterable[str]) -> dict[str, Any]:
    """Keep only whitelisted column names; column names are never taken from input."""
    allowed = set(allowed)
    return {k: v for k, v in fields.items() if k in allowed}


def insert_parts(values: dict[str, Any]) -> tuple[str, str, list[Any]]:
    """('a, b', '$1, $2', [va, vb])"""
    columns = list(values)
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return ", ".join(columns), placeholders, [values[c] for c in columns]


def set_clause(values: dict[str, Any], start: int = 2) -> tuple[str, list[Any]]:
    """('a = $2, b = $3', [va, vb]); $1 is left for the row id."""
    columns = list(values)
    clause = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=start))
    return clause, [values[c] for c in columns]


def affected(result: str | None) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    return int(result.split()[-1]) if result else 0
