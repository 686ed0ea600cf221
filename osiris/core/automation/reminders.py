# osiris/core/automation/reminders.py
from __future__ import annotations

from datetime import date
from typing import Any

from osiris.config import settings
from osiris.core import sms_templates
from osiris.core.domain import Job, JobStatus, ReminderType
from osiris.core.errors import DeliveryError, NotFoundError, ValidationError
from osiris.core.schedule import format_date, format_time, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)

AUTOMATION_TYPE = "send_reminder"
REVIEW_TASK_TYPE = "send_review_request"

_SKIP_STATUSES = (JobStatus.CANCELLED.value, JobStatus.RESCHEDULED.value)


class ReminderService:
    """Customer reminders: day-before, on-my-way and post-cleaning review."""

    def __init__(self, ports: ServicePorts | None = None) -> None:
        self.ports = ports or ServicePorts()

    async def send(
        self,
        job_id: str,
        reminder_type: str,
        *,
        customer_phone: str | None = None,
        customer_name: str | None = None,
        eta: str | None = None,
        team_lead_name: str | None = None,
        source: str = "task_queue",
    ) -> dict[str, Any]:
        payload = {"jobId": job_id, "type": reminder_type}

        job = await self.ports.jobs.get(job_id)
        if job is None:
            await self.ports.audit.log_automation(AUTOMATION_TYPE, source, payload, "failed", "Job not found")
            AppMetrics.automation_run(AUTOMATION_TYPE, "failed")
            raise NotFoundError("Job not found")

        if job.status in _SKIP_STATUSES:
            return {"skipped": True, "reason": f"Job status: {job.status}"}

        phone = customer_phone or job.customer_phone
        name = customer_name or job.customer_name
        if not phone:
            raise ValidationError("Customer has no phone number")

        if reminder_type == ReminderType.DAY_BEFORE.value:
            text = sms_templates.day_before_reminder(name, format_date(job.date), format_time(job.scheduled_time))
        elif reminder_type == ReminderType.ON_MY_WAY.value and eta and team_lead_name:
            text = sms_templates.on_my_way(name, team_lead_name, eta)
        else:
            raise ValidationError("Invalid reminder type")

        message_id = await self.ports.sms.send_sms(phone, text)
        AppMetrics.sms_sent(reminder_type)

        if reminder_type == ReminderType.DAY_BEFORE.value:
            await self.ports.jobs.update(job.id, {"day_before_reminder_sent_at": utc_now()})

        await self.ports.audit.log_automation(
            AUTOMATION_TYPE, source, {**payload, "result": {"messageId": message_id}}, "success",
        )
        AppMetrics.automation_run(AUTOMATION_TYPE, "success")
        return {"success": True, "type": reminder_type}

    async def send_day_before_batch(self, day: date) -> dict[str, Any]:
        """Remind every customer with a scheduled job on ``day`` (usually tomorrow)."""
        jobs = await self.ports.jobs.list_for_date(day, status=JobStatus.SCHEDULED.value)
        sent = skipped = failed = 0

        for job in jobs:
            if job.day_before_reminder_sent_at is not None or not job.customer_phone:
                skipped += 1
                continue
            try:
                await self.send(job.id, ReminderType.DAY_BEFORE.value, source="cron")
                sent += 1
            except (DeliveryError, ValidationError) as exc:
                failed += 1
                logger.warning(
                    f"Day-before reminder failed for job {job.short_ref}: {exc.detail}",
                    extra={"job_id": job.id},
                )

        logger.info(f"Day-before reminders for {day.isoformat()}: sent={sent}, skipped={skipped}, failed={failed}")
        return {"date": day.isoformat(), "total": len(jobs), "sent": sent, "skipped": skipped, "failed": failed}

    async def schedule_review_request(self, job: Job) -> str:
        return await self.ports.queue.enqueue(
            REVIEW_TASK_TYPE,
            {"jobId": job.id},
            delay_seconds=settings.review_request_delay_seconds,
        )

    async def send_review_request(self, job_id: str) -> dict[str, Any]:
        job = await self.ports.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        if job.review_request_sent_at is not None:
            return {"skipped": True, "reason": "Review request already sent"}
        if job.status != JobStatus.COMPLETED.value:
            return {"skipped": True, "reason": f"Job status: {job.status}"}
        if not job.customer_phone:
            return {"skipped": True, "reason": "No customer phone"}

        await self.ports.sms.send_sms(job.customer_phone, sms_templates.post_cleaning_review(job.customer_name))
        AppMetrics.sms_sent("review_request")
        await self.ports.jobs.update(job.id, {"review_request_sent_at": utc_now()})
        await self.ports.audit.log_automation("review_request", "task_queue", {"jobId": job.id}, "success")
        return {"success": True, "jobId": job.id}


def get_reminder_service() -> ReminderService:
    return ReminderService()
