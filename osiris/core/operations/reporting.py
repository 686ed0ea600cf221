# osiris/core/operations/reporting.py
"""
Dashboard metrics.

The aggregation functions are pure (rows in, read models out) so the
numbers can be tested without a database; ``ReportingService`` only
fetches the rows for a date range and hands them over.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from osiris.core.domain import (
    BOOKED_LEAD_STATUSES,
    DailyMetrics,
    Job,
    JobStatus,
    LeaderboardEntry,
    Lead,
    Team,
    TeamDailyMetrics,
    Tip,
    Upsell,
)
from osiris.core.errors import ValidationError
from osiris.core.schedule import day_bounds, local_now, local_today
from osiris.core.wiring import ServicePorts

LEADERBOARD_PERIODS = {"week": 7, "month": 30, "quarter": 90, "year": 365}
METRIC_RANGES = ("today", "week", "specific")

_NOT_ON_SCHEDULE = (JobStatus.CANCELLED.value, JobStatus.RESCHEDULED.value)


def _local_date(value: datetime | None) -> date | None:
    return local_now(value).date() if value else None


def _completed(job: Job) -> bool:
    return job.status == JobStatus.COMPLETED.value


def _money(value: float) -> float:
    return round(value, 2)


@dataclass
class ReportingData:
    """Rows for one date range, fetched once and sliced per day/team."""
    jobs: list[Job]
    leads: list[Lead]
    teams: list[Team]
    tips: list[Tip]
    upsells: list[Upsell]


def compute_daily_metrics(day: date, data: ReportingData) -> DailyMetrics:
    jobs = [j for j in data.jobs if j.date == day and j.status not in _NOT_ON_SCHEDULE]
    completed = [j for j in jobs if _completed(j)]
    leads = [lead for lead in data.leads if _local_date(lead.created_at) == day]
    booked = [lead for lead in leads if lead.status in BOOKED_LEAD_STATUSES]

    return DailyMetrics(
        date=day,
        revenue=_money(sum(j.total_amount for j in completed)),
        target=_money(sum(t.daily_target for t in data.teams if t.active)),
        jobs_completed=len(completed),
        jobs_scheduled=len(jobs),
        leads_in=len(leads),
        leads_booked=len(booked),
        close_rate=round(len(booked) / len(leads) * 100) if leads else 0,
        tips_total=_money(sum(t.amount for t in data.tips if _local_date(t.created_at) == day)),
        upsells_total=_money(sum(u.value for u in data.upsells if _local_date(u.created_at) == day)),
    )


def compute_team_metrics(day: date, team: Team, data: ReportingData) -> TeamDailyMetrics:
    jobs = [
        j for j in data.jobs
        if j.date == day and j.team_id == team.id and j.status not in _NOT_ON_SCHEDULE
    ]
    completed = [j for j in jobs if _completed(j)]

    return TeamDailyMetrics(
        team_id=team.id,
        team_name=team.name,
        date=day,
        revenue=_money(sum(j.total_amount for j in completed)),
        target=_money(team.daily_target),
        jobs_completed=len(completed),
        jobs_scheduled=len(jobs),
        tips_total=_money(sum(
            t.amount for t in data.tips if t.team_id == team.id and _local_date(t.created_at) == day
        )),
        upsells_total=_money(sum(
            u.value for u in data.upsells if u.team_id == team.id and _local_date(u.created_at) == day
        )),
    )


def build_leaderboard(teams: Iterable[Team], tips: Iterable[Tip], upsells: Iterable[Upsell],
                      jobs: Iterable[Job]) -> list[LeaderboardEntry]:
    """Rank teams by tips + upsells; completed jobs break ties."""
    tip_totals: dict[str, float] = defaultdict(float)
    upsell_totals: dict[str, float] = defaultdict(float)
    completed: dict[str, int] = defaultdict(int)

    for tip in tips:
        if tip.team_id:
            tip_totals[tip.team_id] += tip.amount
    for upsell in upsells:
        if upsell.team_id:
            upsell_totals[upsell.team_id] += upsell.value
    for job in jobs:
        if job.team_id and _completed(job):
            completed[job.team_id] += 1

    entries = [
        LeaderboardEntry(
            rank=0,
            team_id=team.id,
            team_name=team.name,
            tips_total=_money(tip_totals[team.id]),
            upsells_total=_money(upsell_totals[team.id]),
            total_earnings=_money(tip_totals[team.id] + upsell_totals[team.id]),
            jobs_completed=completed[team.id],
        )
        for team in teams
    ]
    entries.sort(key=lambda e: (-e.total_earnings, -e.jobs_completed, e.team_name))
    for rank, entry in enumerate(entries, start=1):
        entry.rank = rank
    return entries


def earnings_by_day(start: date, days: int, tips: Iterable[Tip], upsells: Iterable[Upsell]) -> list[dict[str, Any]]:
    tips_by_day: dict[date, float] = defaultdict(float)
    upsells_by_day: dict[date, float] = defaultdict(float)
    for tip in tips:
        tips_by_day[_local_date(tip.created_at)] += tip.amount
    for upsell in upsells:
        upsells_by_day[_local_date(upsell.created_at)] += upsell.value

    out = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        out.append({
            "date": day.isoformat(),
            "tips": _money(tips_by_day[day]),
            "upsells": _money(upsells_by_day[day]),
            "total": _money(tips_by_day[day] + upsells_by_day[day]),
        })
    return out


class ReportingService:
    def __init__(self, ports: ServicePorts | None = None) -> None:
        self.ports = ports or ServicePorts()

    async def collect(self, start: date, end: date) -> ReportingData:
        """All rows touching local days [start, end]."""
        range_start, _ = day_bounds(start)
        _, range_end = day_bounds(end)
        return ReportingData(
            jobs=await self.ports.jobs.list_between(start, end),
            leads=await self.ports.leads.list_created_between(range_start, range_end),
            teams=await self.ports.teams.list_teams(),
            tips=await self.ports.earnings.tips_between(range_start, range_end),
            upsells=await self.ports.earnings.upsells_between(range_start, range_end),
        )

    async def daily(self, day: date) -> DailyMetrics:
        return compute_daily_metrics(day, await self.collect(day, day))

    async def week(self, end: date) -> list[DailyMetrics]:
        start = end - timedelta(days=6)
        data = await self.collect(start, end)
        return [compute_daily_metrics(start + timedelta(days=i), data) for i in range(7)]

    async def metrics(self, range_: str = "today", day: date | None = None) -> Any:
        if range_ not in METRIC_RANGES:
            raise ValidationError(f"Invalid range: {range_}")

        today = local_today()
        if range_ == "week":
            return [m.to_dict() for m in await self.week(day or today)]
        if range_ == "specific" and day is None:
            raise ValidationError("date parameter is required for range=specific")
        return (await self.daily(day if range_ == "specific" else today)).to_dict()

    async def team_metrics(self, day: date) -> list[TeamDailyMetrics]:
        data = await self.collect(day, day)
        return [compute_team_metrics(day, team, data) for team in data.teams if team.active]

    async def teams_overview(self, include_metrics: bool = False) -> list[dict[str, Any]]:
        teams = await self.ports.teams.list_teams()
        members = await self.ports.teams.list_members()

        metrics_by_team: dict[str, TeamDailyMetrics] = {}
        if include_metrics:
            metrics_by_team = {m.team_id: m for m in await self.team_metrics(local_today())}

        overview = []
        for team in teams:
            entry = team.to_dict()
            entry["members"] = [m.to_dict() for m in members if m.team_id == team.id]
            if include_metrics:
                metrics = metrics_by_team.get(team.id)
                entry["daily_metrics"] = metrics.to_dict() if metrics else None
            overview.append(entry)
        return overview

    async def earnings(self, days: int = 7) -> dict[str, Any]:
        if days < 1 or days > 366:
            raise ValidationError("days must be between 1 and 366")

        end = local_today()
        start = end - timedelta(days=days - 1)
        data = await self.collect(start, end)
        daily = earnings_by_day(start, days, data.tips, data.upsells)

        return {
            "days": daily,
            "totals": {
                "tips": _money(sum(d["tips"] for d in daily)),
                "upsells": _money(sum(d["upsells"] for d in daily)),
                "total": _money(sum(d["total"] for d in daily)),
            },
            "by_team": [e.to_dict() for e in build_leaderboard(data.teams, data.tips, data.upsells, data.jobs)],
        }

    async def leaderboard(self, period: str = "week") -> list[LeaderboardEntry]:
        days = LEADERBOARD_PERIODS.get(period)
        if days is None:
            raise ValidationError(f"Invalid period: {period}")

        end = local_today()
        data = await self.collect(end - timedelta(days=days - 1), end)
        return build_leaderboard([t for t in data.teams if t.active], data.tips, data.upsells, data.jobs)


def get_reporting_service() -> ReportingService:
    return ReportingService()
