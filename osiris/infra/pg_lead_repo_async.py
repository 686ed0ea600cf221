# osiris/infra/pg_lead_repo_async.py
"""Async PostgreSQL lead repository (asyncpg)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from osiris.core.domain import Lead
from osiris.core.ports import LeadRepository
from osiris.infra.db_resilience_async import safe_db_conn
from osiris.infra.logging_config import get_logger
from osiris.infra.pg_rows import as_uuid, id_str, insert_parts, pick, set_clause

logger = get_logger(__name__)

LEAD_COLUMNS = (
    "name", "phone", "email", "source", "status", "service_type", "notes",
    "followup_stage", "last_contact_at", "converted_to_job_id",
)


def _row_to_lead(row) -> Lead:
    return Lead(
        id=str(row["id"]),
        name=row["name"],
        phone=row["phone"],
        email=row["email"],
        source=row["source"],
        status=row["status"],
        service_type=row["service_type"],
        notes=row["notes"] or "",
        followup_stage=row["followup_stage"],
        last_contact_at=row["last_contact_at"],
        converted_to_job_id=id_str(row["converted_to_job_id"]),
        created_at=row["created_at"],
    )


def _lead_values(fields: dict[str, Any]) -> dict[str, Any]:
    values = pick(fields, LEAD_COLUMNS)
    if "converted_to_job_id" in values:
        values["converted_to_job_id"] = as_uuid(values["converted_to_job_id"])
    return values


class AsyncPostgresLeadRepository(LeadRepository):

    async def get(self, lead_id: str) -> Optional[Lead]:
        key = as_uuid(lead_id)
        if key is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM leads WHERE id = $1", key)
        return _row_to_lead(row) if row else None

    async def create(self, fields: dict[str, Any]) -> Lead:
        columns, placeholders, args = insert_parts(_lead_values(fields))
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO leads ({columns}) VALUES ({placeholders}) RETURNING *", *args,
            )
        lead = _row_to_lead(row)
        logger.info(f"Lead created: source={lead.source}", extra={"lead_id": lead.id})
        return lead

    async def update(self, lead_id: str, fields: dict[str, Any]) -> Optional[Lead]:
        key = as_uuid(lead_id)
        values = _lead_values(fields)
        if key is None:
            return None
        if not values:
            return await self.get(lead_id)

        clause, args = set_clause(values)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"UPDATE leads SET {clause} WHERE id = $1 RETURNING *", key, *args)
        return _row_to_lead(row) if row else None

    async def list(
        self,
        *,
        source: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Lead], int]:
        conditions: list[str] = []
        args: list[Any] = []
        if source is not None:
            args.append(source)
            conditions.append(f"source = ${len(args)}")
        if status is not None:
            args.append(status)
            conditions.append(f"status = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with safe_db_conn() as conn:
            total = await conn.fetchval(f"SELECT count(*) FROM leads {where}", *args)
            rows = await conn.fetch(
                f"""
                SELECT * FROM leads {where}
                ORDER BY created_at DESC
                LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
                """,
                *args, limit, offset,
            )
        return [_row_to_lead(row) for row in rows], total

    async def list_created_between(self, start: datetime, end: datetime) -> list[Lead]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM leads WHERE created_at >= $1 AND created_at < $2 ORDER BY created_at",
                start, end,
            )
        return [_row_to_lead(row) for row in rows]


_lead_repo: AsyncPostgresLeadRepository | None = None


def get_lead_repo() -> AsyncPostgresLeadRepository:
    global _lead_repo
    if _lead_repo is None:
        _lead_repo = AsyncPostgresLeadRepository()
    return _lead_repo
