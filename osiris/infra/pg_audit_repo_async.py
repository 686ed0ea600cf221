# osiris/infra/pg_audit_repo_async.py
"""
Audit trail (asyncpg).

- automation_logs: one row per automation run (success/failed + payload)
- system_events: business events shown in the dashboard feed
- exceptions: operator to-do rows created when automation gives up
- rain_day_reschedules: one row per rain-day run

System events are also written to the dedicated "audit" logger so they
can be routed to a separate sink by logging configuration.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from osiris.core.domain import OperatorException, RainDayReschedule
from osiris.core.ports import AuditRepository
from osiris.infra.db_resilience_async import safe_db_conn
from osiris.infra.logging_config import get_logger
from osiris.infra.pg_rows import as_uuid, id_str

logger = get_logger(__name__)
_audit_logger = logging.getLogger("audit")


def _json(value: Any) -> str:
    return json.dumps(value or {}, default=str)


class AsyncPostgresAuditRepository(AuditRepository):

    async def log_automation(
        self,
        automation_type: str,
        source: str,
        payload: dict[str, Any],
        status: str,
        error: Optional[str] = None,
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO automation_logs (automation_type, source, payload, status, error)
                VALUES ($1, $2, $3::jsonb, $4, $5)
                """,
                automation_type, source, _json(payload), status, error,
            )
        if status == "failed":
            logger.warning(f"Automation {automation_type} failed ({source}): {error}")

    async def log_event(
        self,
        event_type: str,
        *,
        source: str,
        message: str,
        job_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO system_events (event_type, source, message, job_id, lead_id, metadata)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                """,
                event_type, source, message, as_uuid(job_id), as_uuid(lead_id), _json(metadata),
            )
        _audit_logger.info(
            f"EVENT: {event_type} source={source} {message}",
            extra={"job_id": job_id, "lead_id": lead_id},
        )

    async def create_exception(
        self,
        exception_type: str,
        description: str,
        *,
        job_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        created_by: str = "automation",
    ) -> OperatorException:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO exceptions (type, description, created_by, job_id, lead_id)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                exception_type, description, created_by, as_uuid(job_id), as_uuid(lead_id),
            )
        logger.info(f"Operator exception created: {description}", extra={"job_id": job_id, "lead_id": lead_id})
        return OperatorException(
            id=str(row["id"]),
            type=row["type"],
            description=row["description"],
            status=row["status"],
            created_by=row["created_by"],
            job_id=id_str(row["job_id"]),
            lead_id=id_str(row["lead_id"]),
            created_at=row["created_at"],
        )

    async def save_reschedule(self, record: RainDayReschedule) -> RainDayReschedule:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO rain_day_reschedules (
                  id, affected_date, target_date, initiated_by, jobs_affected,
                  jobs_successfully_rescheduled, jobs_failed, notifications_sent, completed_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, now())
                RETURNING created_at, completed_at
                """,
                as_uuid(record.id), record.affected_date, record.target_date, record.initiated_by,
                record.jobs_affected, record.jobs_successfully_rescheduled,
                json.dumps(record.jobs_failed, default=str), record.notifications_sent,
            )
        record.created_at = row["created_at"]
        record.completed_at = row["completed_at"]
        return record


_audit_repo: AsyncPostgresAuditRepository | None = None


def get_audit_repo() -> AsyncPostgresAuditRepository:
    global _audit_repo
    if _audit_repo is None:
        _audit_repo = AsyncPostgresAuditRepository()
    return _audit_repo
