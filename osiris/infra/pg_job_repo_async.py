# osiris/infra/pg_job_repo_async.py
"""
Async PostgreSQL repositories for jobs, customers and job offers (asyncpg).

Jobs are always read joined with their customer so services get the name
and phone without a second query.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from osiris.core.domain import Customer, Job, JobOffer, OfferResponse
from osiris.core.ports import CustomerRepository, JobRepository, OfferRepository
from osiris.infra.db_resilience_async import safe_db_conn
from osiris.infra.logging_config import get_logger
from osiris.infra.pg_rows import affected, as_uuid, id_str, insert_parts, pick, set_clause

logger = get_logger(__name__)

JOB_COLUMNS = (
    "date", "scheduled_time", "customer_id", "address", "city", "service_type", "job_type",
    "status", "estimated_hours", "total_amount", "team_id", "assigned_team_lead", "team_confirmed",
    "notes", "payment_status", "paid", "lead_id", "hcp_job_id", "confirmed_at", "completed_at",
    "day_before_reminder_sent_at", "review_request_sent_at", "monthly_followup_sent_at",
    "escalated_at", "deposit_session_id",
)

CUSTOMER_COLUMNS = ("name", "phone", "email", "address", "city", "hcp_customer_id")

_UUID_COLUMNS = {"customer_id", "team_id", "assigned_team_lead", "lead_id"}

_JOB_SELECT = """
    SELECT j.*, c.name AS customer_name, c.phone AS customer_phone
    FROM jobs j
    LEFT JOIN customers c ON c.id = j.customer_id
"""


def _row_to_job(row) -> Job:
    return Job(
        id=str(row["id"]),
        job_number=row["job_number"],
        date=row["date"],
        scheduled_time=row["scheduled_time"] or "",
        customer_id=id_str(row["customer_id"]),
        customer_name=row["customer_name"] or "",
        customer_phone=row["customer_phone"],
        address=row["address"],
        city=row["city"],
        service_type=row["service_type"],
        job_type=row["job_type"],
        status=row["status"],
        estimated_hours=float(row["estimated_hours"] or 0),
        total_amount=float(row["total_amount"] or 0),
        team_id=id_str(row["team_id"]),
        assigned_team_lead=id_str(row["assigned_team_lead"]),
        team_confirmed=row["team_confirmed"],
        notes=row["notes"] or "",
        payment_status=row["payment_status"],
        paid=row["paid"],
        lead_id=id_str(row["lead_id"]),
        hcp_job_id=row["hcp_job_id"],
        confirmed_at=row["confirmed_at"],
        completed_at=row["completed_at"],
        day_before_reminder_sent_at=row["day_before_reminder_sent_at"],
        review_request_sent_at=row["review_request_sent_at"],
        monthly_followup_sent_at=row["monthly_followup_sent_at"],
        escalated_at=row["escalated_at"],
        deposit_session_id=row["deposit_session_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_customer(row) -> Customer:
    return Customer(
        id=str(row["id"]),
        name=row["name"],
        phone=row["phone"],
        email=row["email"],
        address=row["address"],
        city=row["city"],
        hcp_customer_id=row["hcp_customer_id"],
        created_at=row["created_at"],
    )


def _row_to_offer(row) -> JobOffer:
    return JobOffer(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        member_id=str(row["member_id"]),
        phase=row["phase"],
        telegram_chat_id=row["telegram_chat_id"],
        telegram_message_id=row["telegram_message_id"],
        response=row["response"],
        sent_at=row["sent_at"],
        responded_at=row["responded_at"],
    )


def _job_values(fields: dict[str, Any]) -> dict[str, Any]:
    values = pick(fields, JOB_COLUMNS)
    for column in _UUID_COLUMNS & set(values):
        values[column] = as_uuid(values[column])
    return values


class AsyncPostgresJobRepository(JobRepository):

    async def get(self, job_id: str) -> Optional[Job]:
        key = as_uuid(job_id)
        if key is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"{_JOB_SELECT} WHERE j.id = $1", key)
        return _row_to_job(row) if row else None

    async def get_by_number(self, job_number: int) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"{_JOB_SELECT} WHERE j.job_number = $1", job_number)
        return _row_to_job(row) if row else None

    async def get_by_hcp_id(self, hcp_job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"{_JOB_SELECT} WHERE j.hcp_job_id = $1", hcp_job_id)
        return _row_to_job(row) if row else None

    async def list(
        self,
        *,
        day: Optional[date] = None,
        team_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        conditions: list[str] = []
        args: list[Any] = []
        if day is not None:
            args.append(day)
            conditions.append(f"j.date = ${len(args)}")
        if team_id is not None:
            args.append(as_uuid(team_id))
            conditions.append(f"j.team_id = ${len(args)}")
        if status is not None:
            args.append(status)
            conditions.append(f"j.status = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with safe_db_conn() as conn:
            total = await conn.fetchval(f"SELECT count(*) FROM jobs j {where}", *args)
            rows = await conn.fetch(
                f"""
                {_JOB_SELECT} {where}
                ORDER BY j.date DESC, j.scheduled_time, j.job_number
                LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
                """,
                *args, limit, offset,
            )
        return [_row_to_job(row) for row in rows], total

    async def list_for_date(self, day: date, *, status: Optional[str] = None) -> list[Job]:
        async with safe_db_conn() as conn:
            if status:
                rows = await conn.fetch(
                    f"{_JOB_SELECT} WHERE j.date = $1 AND j.status = $2 ORDER BY j.scheduled_time",
                    day, status,
                )
            else:
                rows = await conn.fetch(f"{_JOB_SELECT} WHERE j.date = $1 ORDER BY j.scheduled_time", day)
        return [_row_to_job(row) for row in rows]

    async def list_between(self, start: date, end: date) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"{_JOB_SELECT} WHERE j.date BETWEEN $1 AND $2 ORDER BY j.date, j.scheduled_time",
                start, end,
            )
        return [_row_to_job(row) for row in rows]

    async def create(self, fields: dict[str, Any]) -> Job:
        columns, placeholders, args = insert_parts(_job_values(fields))
        async with safe_db_conn() as conn:
            job_id = await conn.fetchval(
                f"INSERT INTO jobs ({columns}) VALUES ({placeholders}) RETURNING id", *args,
            )
            row = await conn.fetchrow(f"{_JOB_SELECT} WHERE j.id = $1", job_id)
        job = _row_to_job(row)
        logger.info(f"Job {job.short_ref} stored", extra={"job_id": job.id})
        return job

    async def update(self, job_id: str, fields: dict[str, Any]) -> Optional[Job]:
        key = as_uuid(job_id)
        values = _job_values(fields)
        if key is None:
            return None
        if not values:
            return await self.get(job_id)

        clause, args = set_clause(values)
        async with safe_db_conn() as conn:
            result = await conn.execute(f"UPDATE jobs SET {clause} WHERE id = $1", key, *args)
            if not affected(result):
                return None
            row = await conn.fetchrow(f"{_JOB_SELECT} WHERE j.id = $1", key)
        return _row_to_job(row)

    async def append_note(self, job_id: str, note: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET notes = COALESCE(notes, '') || $2 WHERE id = $1",
                as_uuid(job_id), note,
            )

    async def try_assign(self, job_id: str, member_id: str, team_id: Optional[str]) -> Optional[Job]:
        # Single conditional UPDATE: concurrent claims serialize on the row lock,
        # and only the first one still sees assigned_team_lead IS NULL.
        async with safe_db_conn() as conn:
            assigned_id = await conn.fetchval(
                """
                UPDATE jobs
                SET assigned_team_lead = $2,
                    team_id = COALESCE($3, team_id)
                WHERE id = $1
                  AND assigned_team_lead IS NULL
                  AND status NOT IN ('completed', 'cancelled')
                RETURNING id
                """,
                as_uuid(job_id), as_uuid(member_id), as_uuid(team_id),
            )
            if assigned_id is None:
                return None
            row = await conn.fetchrow(f"{_JOB_SELECT} WHERE j.id = $1", assigned_id)
        return _row_to_job(row)

    async def list_reengagement_candidates(
        self, completed_from: datetime, completed_to: datetime, limit: int,
    ) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                {_JOB_SELECT}
                WHERE j.status = 'completed'
                  AND j.monthly_followup_sent_at IS NULL
                  AND j.completed_at >= $1
                  AND j.completed_at <= $2
                ORDER BY j.completed_at
                LIMIT $3
                """,
                completed_from, completed_to, limit,
            )
        return [_row_to_job(row) for row in rows]

    async def customer_has_job_since(self, customer_id: str, since: datetime) -> bool:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM jobs WHERE customer_id = $1 AND created_at > $2)",
                as_uuid(customer_id), since,
            )


class AsyncPostgresCustomerRepository(CustomerRepository):

    async def get(self, customer_id: str) -> Optional[Customer]:
        key = as_uuid(customer_id)
        if key is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM customers WHERE id = $1", key)
        return _row_to_customer(row) if row else None

    async def get_by_hcp_id(self, hcp_customer_id: str) -> Optional[Customer]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM customers WHERE hcp_customer_id = $1", hcp_customer_id)
        return _row_to_customer(row) if row else None

    async def create(self, fields: dict[str, Any]) -> Customer:
        columns, placeholders, args = insert_parts(pick(fields, CUSTOMER_COLUMNS))
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO customers ({columns}) VALUES ({placeholders}) RETURNING *", *args,
            )
        return _row_to_customer(row)

    async def update(self, customer_id: str, fields: dict[str, Any]) -> Optional[Customer]:
        values = pick(fields, CUSTOMER_COLUMNS)
        if not values:
            return await self.get(customer_id)
        clause, args = set_clause(values)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"UPDATE customers SET {clause} WHERE id = $1 RETURNING *", as_uuid(customer_id), *args,
            )
        return _row_to_customer(row) if row else None


class AsyncPostgresOfferRepository(OfferRepository):

    async def record(
        self,
        job_id: str,
        member_id: str,
        phase: str,
        chat_id: str,
        message_id: Optional[int],
    ) -> JobOffer:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_offers (job_id, member_id, phase, telegram_chat_id, telegram_message_id)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                as_uuid(job_id), as_uuid(member_id), phase, str(chat_id), message_id,
            )
        return _row_to_offer(row)

    async def list_for_job(self, job_id: str) -> list[JobOffer]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_offers WHERE job_id = $1 ORDER BY sent_at", as_uuid(job_id),
            )
        return [_row_to_offer(row) for row in rows]

    async def mark_response(self, offer_id: str, response: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE job_offers SET response = $2, responded_at = now() WHERE id = $1",
                as_uuid(offer_id), response,
            )

    async def withdraw_open(self, job_id: str) -> list[JobOffer]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                UPDATE job_offers
                SET response = $2, responded_at = now()
                WHERE job_id = $1 AND response = $3
                RETURNING *
                """,
                as_uuid(job_id), OfferResponse.WITHDRAWN.value, OfferResponse.PENDING.value,
            )
        if rows:
            logger.info(f"Withdrew {len(rows)} open offers", extra={"job_id": job_id})
        return [_row_to_offer(row) for row in rows]


_job_repo: AsyncPostgresJobRepository | None = None
_customer_repo: AsyncPostgresCustomerRepository | None = None
_offer_repo: AsyncPostgresOfferRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo


def get_customer_repo() -> AsyncPostgresCustomerRepository:
    global _customer_repo
    if _customer_repo is None:
        _customer_repo = AsyncPostgresCustomerRepository()
    return _customer_repo


def get_offer_repo() -> AsyncPostgresOfferRepository:
    global _offer_repo
    if _offer_repo is None:
        _offer_repo = AsyncPostgresOfferRepository()
    return _offer_repo
