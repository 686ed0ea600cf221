# osiris/infra/pg_team_repo_async.py
"""
Async PostgreSQL repositories for teams, team members and team earnings
(tips and upsells).
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from osiris.core.domain import Team, TeamMember, Tip, Upsell
from osiris.core.ports import EarningsRepository, TeamRepository
from osiris.infra.db_resilience_async import safe_db_conn
from osiris.infra.logging_config import get_logger
from osiris.infra.pg_rows import as_uuid, id_str

logger = get_logger(__name__)


def _row_to_team(row) -> Team:
    return Team(
        id=str(row["id"]),
        name=row["name"],
        daily_target=float(row["daily_target"] or 0),
        active=row["active"],
        created_at=row["created_at"],
    )


def _row_to_member(row) -> TeamMember:
    return TeamMember(
        id=str(row["id"]),
        team_id=id_str(row["team_id"]),
        name=row["name"],
        phone=row["phone"],
        telegram_id=row["telegram_id"],
        role=row["role"],
        active=row["active"],
        available=row["available"],
    )


def _row_to_tip(row) -> Tip:
    return Tip(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        amount=float(row["amount"]),
        team_id=id_str(row["team_id"]),
        member_id=id_str(row["member_id"]),
        reported_via=row["reported_via"],
        stripe_session_id=row["stripe_session_id"],
        created_at=row["created_at"],
    )


def _row_to_upsell(row) -> Upsell:
    return Upsell(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        upsell_type=row["upsell_type"],
        value=float(row["value"]),
        team_id=id_str(row["team_id"]),
        member_id=id_str(row["member_id"]),
        created_at=row["created_at"],
    )


class AsyncPostgresTeamRepository(TeamRepository):

    async def list_teams(self, *, active_only: bool = False) -> list[Team]:
        sql = "SELECT * FROM teams"
        if active_only:
            sql += " WHERE active"
        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql + " ORDER BY name")
        return [_row_to_team(row) for row in rows]

    async def get_team(self, team_id: str) -> Optional[Team]:
        key = as_uuid(team_id)
        if key is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM teams WHERE id = $1", key)
        return _row_to_team(row) if row else None

    async def list_members(self, team_id: Optional[str] = None) -> list[TeamMember]:
        async with safe_db_conn() as conn:
            if team_id is None:
                rows = await conn.fetch("SELECT * FROM team_members ORDER BY name")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM team_members WHERE team_id = $1 ORDER BY name", as_uuid(team_id),
                )
        return [_row_to_member(row) for row in rows]

    async def available_members(self) -> list[TeamMember]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT m.* FROM team_members m
                LEFT JOIN teams t ON t.id = m.team_id
                WHERE m.active AND m.available AND COALESCE(t.active, true)
                ORDER BY m.name
                """
            )
        return [_row_to_member(row) for row in rows]

    async def get_member(self, member_id: str) -> Optional[TeamMember]:
        key = as_uuid(member_id)
        if key is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM team_members WHERE id = $1", key)
        return _row_to_member(row) if row else None

    async def get_member_by_telegram(self, telegram_id: str) -> Optional[TeamMember]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM team_members WHERE telegram_id = $1", str(telegram_id))
        return _row_to_member(row) if row else None


class AsyncPostgresEarningsRepository(EarningsRepository):

    async def add_tip(
        self,
        job_id: str,
        amount: float,
        *,
        team_id: Optional[str],
        member_id: Optional[str],
        reported_via: str,
        stripe_session_id: Optional[str] = None,
    ) -> Optional[Tip]:
        """Insert a tip. None when a tip for ``stripe_session_id`` is already stored."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO tips (job_id, amount, team_id, member_id, reported_via, stripe_session_id)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (stripe_session_id) WHERE stripe_session_id IS NOT NULL DO NOTHING
                RETURNING *
                """,
                as_uuid(job_id), amount, as_uuid(team_id), as_uuid(member_id), reported_via, stripe_session_id,
            )
        return _row_to_tip(row) if row else None

    async def add_upsell(
        self,
        job_id: str,
        upsell_type: str,
        value: float,
        *,
        team_id: Optional[str],
        member_id: Optional[str],
    ) -> Upsell:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO upsells (job_id, upsell_type, value, team_id, member_id)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                as_uuid(job_id), upsell_type, value, as_uuid(team_id), as_uuid(member_id),
            )
        return _row_to_upsell(row)

    async def tips_between(self, start: datetime, end: datetime) -> list[Tip]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM tips WHERE created_at >= $1 AND created_at < $2", start, end,
            )
        return [_row_to_tip(row) for row in rows]

    async def upsells_between(self, start: datetime, end: datetime) -> list[Upsell]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM upsells WHERE created_at >= $1 AND created_at < $2", start, end,
            )
        return [_row_to_upsell(row) for row in rows]


_team_repo: AsyncPostgresTeamRepository | None = None
_earnings_repo: AsyncPostgresEarningsRepository | None = None


def get_team_repo() -> AsyncPostgresTeamRepository:
    global _team_repo
    if _team_repo is None:
        _team_repo = AsyncPostgresTeamRepository()
    return _team_repo


def get_earnings_repo() -> AsyncPostgresEarningsRepository:
    global _earnings_repo
    if _earnings_repo is None:
        _earnings_repo = AsyncPostgresEarningsRepository()
    return _earnings_repo
