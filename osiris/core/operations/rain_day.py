# osiris/core/operations/rain_day.py
"""
Rain-day rescheduling.

Exterior work (windows, gutters, pressure washing) cannot happen in the
rain. The operator picks the affected date and a target date; every
scheduled exterior job is moved, released from its team lead and offered
to the teams again through the normal broadcast flow.
"""
from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from osiris.core import sms_templates
from osiris.core.dispatch import messages
from osiris.core.dispatch.broadcast import JobBroadcastService
from osiris.core.domain import Job, JobStatus, RainDayReschedule
from osiris.core.errors import DeliveryError, ValidationError
from osiris.core.schedule import format_date, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)


class RainDayService:
    def __init__(self, ports: ServicePorts | None = None, broadcast: JobBroadcastService | None = None) -> None:
        self.ports = ports or ServicePorts()
        self.broadcast = broadcast or JobBroadcastService(self.ports)

    async def affected_jobs(self, day: date) -> list[Job]:
        jobs = await self.ports.jobs.list_for_date(day, status=JobStatus.SCHEDULED.value)
        return [job for job in jobs if job.is_exterior]

    async def preview(self, day: date) -> dict[str, Any]:
        jobs = await self.affected_jobs(day)
        return {
            "date": day.isoformat(),
            "jobs_count": len(jobs),
            "total_revenue": round(sum(job.total_amount for job in jobs), 2),
            "jobs": [
                {
                    "id": job.id,
                    "job_number": job.job_number,
                    "customer_name": job.customer_name,
                    "time": job.scheduled_time,
                    "value": job.total_amount,
                    "team_id": job.team_id,
                    "address": job.address,
                }
                for job in jobs
            ],
        }

    async def reschedule(self, affected_date: date, target_date: date,
                         initiated_by: str | None = None) -> RainDayReschedule:
        if target_date <= affected_date:
            raise ValidationError("target_date must be after affected_date")

        jobs = await self.affected_jobs(affected_date)
        record = RainDayReschedule(
            id=str(uuid.uuid4()),
            affected_date=affected_date,
            target_date=target_date,
            initiated_by=initiated_by or "system",
            jobs_affected=len(jobs),
            created_at=utc_now(),
        )

        for job in jobs:
            try:
                record.notifications_sent += await self._move(job, affected_date, target_date)
                record.jobs_successfully_rescheduled += 1
            except Exception as exc:
                logger.error(f"Rain-day move failed for job {job.short_ref}: {exc}",
                             exc_info=True, extra={"job_id": job.id})
                record.jobs_failed.append({"job_id": job.id, "job_number": job.job_number, "error": str(exc)})

        record.completed_at = utc_now()
        saved = await self.ports.audit.save_reschedule(record)

        await self.ports.audit.log_event(
            "RAIN_DAY_RESCHEDULE",
            source="dashboard",
            message=(
                f"Rain day {affected_date.isoformat()} -> {target_date.isoformat()}: "
                f"{record.jobs_successfully_rescheduled} of {record.jobs_affected} jobs moved"
            ),
            metadata={"reschedule_id": record.id, "initiated_by": record.initiated_by},
        )
        logger.info(
            f"Rain day {affected_date} -> {target_date}: moved {record.jobs_successfully_rescheduled}"
            f"/{record.jobs_affected}, notifications={record.notifications_sent}"
        )
        return saved

    async def _move(self, job: Job, affected_date: date, target_date: date) -> int:
        """Move one job; returns the number of notifications delivered."""
        previous_lead = job.assigned_team_lead
        old_date = format_date(affected_date)

        moved = await self.ports.jobs.update(job.id, {
            "date": target_date,
            "assigned_team_lead": None,
            "team_id": None,
            "team_confirmed": False,
            "day_before_reminder_sent_at": None,
        })
        if moved is None:
            raise ValidationError("Job disappeared during reschedule")

        await self.ports.jobs.append_note(
            job.id, f"\n[RAIN DAY] Moved from {affected_date.isoformat()} to {target_date.isoformat()}",
        )
        await self.ports.offers.withdraw_open(job.id)

        sent = 0
        if moved.customer_phone:
            try:
                await self.ports.sms.send_sms(
                    moved.customer_phone,
                    sms_templates.rain_day_reschedule(moved.customer_name, old_date, format_date(target_date)),
                )
                sent += 1
            except DeliveryError as exc:
                logger.warning(f"Rain-day SMS failed for job {job.short_ref}: {exc.detail}", extra={"job_id": job.id})

        if previous_lead:
            member = await self.ports.teams.get_member(previous_lead)
            if member and member.telegram_id:
                try:
                    await self.ports.messenger.send(member.telegram_id, messages.rain_day_notice(moved, old_date))
                    sent += 1
                except DeliveryError as exc:
                    logger.warning(f"Rain-day notice to {member.name} failed: {exc.detail}",
                                   extra={"job_id": job.id})

        await self.broadcast.start(job.id)
        return sent


def get_rain_day_service() -> RainDayService:
    return RainDayService()
