# osiris/core/automation/daily.py
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable

from osiris.core.automation.reengagement import MonthlyReengagementService
from osiris.core.automation.reminders import ReminderService
from osiris.core.dispatch import messages
from osiris.core.domain import JobStatus
from osiris.core.errors import DeliveryError
from osiris.core.schedule import local_today, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)


class DailyRunner:
    """
    The once-a-day cron job.

    Steps run in-process and independently: a failing step is reported in
    the result and does not stop the next one.
    """

    def __init__(
        self,
        ports: ServicePorts | None = None,
        reminders: ReminderService | None = None,
        reengagement: MonthlyReengagementService | None = None,
    ) -> None:
        self.ports = ports or ServicePorts()
        self.reminders = reminders or ReminderService(self.ports)
        self.reengagement = reengagement or MonthlyReengagementService(self.ports)

    async def run(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utc_now()
        today = local_today(now)

        results: dict[str, Any] = {
            "send_reminders": await self._step("send_reminders", lambda: self.send_reminders(today)),
            "monthly_followup": await self._step("monthly_followup", lambda: self.reengagement.run(now)),
            "timestamp": now.isoformat(),
        }
        return {"success": True, "results": results}

    async def send_reminders(self, today: date) -> dict[str, Any]:
        """Tomorrow's customer reminders plus today's team-lead briefings."""
        customers = await self.reminders.send_day_before_batch(today + timedelta(days=1))
        briefings = await self.send_team_briefings(today)
        return {"customers": customers, "team_briefings": briefings}

    async def send_team_briefings(self, day: date) -> dict[str, Any]:
        jobs = await self.ports.jobs.list_for_date(day, status=JobStatus.SCHEDULED.value)
        by_lead: dict[str, list] = {}
        for job in jobs:
            if job.assigned_team_lead:
                by_lead.setdefault(job.assigned_team_lead, []).append(job)

        sent = failed = 0
        for member_id, lead_jobs in by_lead.items():
            member = await self.ports.teams.get_member(member_id)
            if member is None or not member.telegram_id:
                failed += 1
                continue

            lead_jobs.sort(key=lambda j: j.scheduled_time or "")
            try:
                await self.ports.messenger.send(member.telegram_id, messages.daily_briefing(member.name, lead_jobs))
                sent += 1
            except DeliveryError as exc:
                failed += 1
                logger.warning(f"Briefing to {member.name} failed: {exc.detail}", extra={"member_id": member.id})

        return {"date": day.isoformat(), "sent": sent, "failed": failed}

    async def _step(self, name: str, fn: Callable[[], Awaitable[Any]]) -> dict[str, Any]:
        logger.info(f"[daily] Executing {name}...")
        try:
            detail = await fn()
        except Exception as exc:
            logger.error(f"[daily] {name} failed: {exc}", exc_info=True)
            await self.ports.audit.log_automation(f"daily_{name}", "cron", {}, "failed", str(exc))
            AppMetrics.automation_run(f"daily_{name}", "failed")
            return {"success": False, "error": str(exc)}

        AppMetrics.automation_run(f"daily_{name}", "success")
        logger.info(f"[daily] {name} completed")
        return {"success": True, "error": None, "detail": detail}


def get_daily_runner() -> DailyRunner:
    return DailyRunner()
