# osiris/core/automation/reengagement.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from osiris.config import settings
from osiris.core import sms_templates
from osiris.core.domain import Job
from osiris.core.errors import DeliveryError
from osiris.core.schedule import utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)


class MonthlyReengagementService:
    """
    Daily sweep for customers whose last clean was completed N days ago
    (default 30) and who have not booked again: send a discount offer once.

    The one-day window [now-(N+1)d, now-Nd] plus ``monthly_followup_sent_at``
    guarantees a customer hears from us at most once per completed job.
    """

    def __init__(self, ports: ServicePorts | None = None) -> None:
        self.ports = ports or ServicePorts()

    async def run(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utc_now()
        days = settings.reengagement_days
        discount = settings.reengagement_discount

        window_end = now - timedelta(days=days)
        window_start = now - timedelta(days=days + 1)

        candidates = await self.ports.jobs.list_reengagement_candidates(
            window_start, window_end, settings.reengagement_batch_size,
        )
        if not candidates:
            logger.info("No customers need re-engagement today")
            return {"success": True, "processed": 0}

        logger.info(f"Re-engagement: {len(candidates)} candidate jobs")
        counts = {"processed": 0, "skipped": 0, "errors": 0}

        for job in candidates:
            try:
                outcome = await self._reengage(job, now, discount)
            except Exception as exc:
                logger.error(f"Re-engagement failed for job {job.short_ref}: {exc}",
                             exc_info=True, extra={"job_id": job.id})
                outcome = "errors"
            counts[outcome] += 1

        logger.info(
            f"Re-engagement done: processed={counts['processed']}, "
            f"skipped={counts['skipped']}, errors={counts['errors']}"
        )
        return {"success": True, **counts, "total": len(candidates)}

    async def _reengage(self, job: Job, now: datetime, discount: str) -> str:
        """Handle one candidate job; returns the counter it lands in."""
        if not job.customer_phone:
            logger.warning(f"No phone for job {job.short_ref}, skipping", extra={"job_id": job.id})
            return "skipped"

        if job.customer_id and await self.ports.jobs.customer_has_job_since(job.customer_id, job.completed_at):
            # Booked again: mark so the job is not checked tomorrow
            await self.ports.jobs.update(job.id, {"monthly_followup_sent_at": now})
            return "skipped"

        days_since = (now - job.completed_at).days
        text = sms_templates.monthly_reengagement(job.customer_name, discount, days_since)

        try:
            await self.ports.sms.send_sms(job.customer_phone, text)
        except DeliveryError as exc:
            logger.error(f"Re-engagement SMS failed for job {job.short_ref}: {exc.detail}",
                         extra={"job_id": job.id})
            return "errors"

        AppMetrics.sms_sent("monthly_reengagement")
        await self.ports.jobs.update(job.id, {"monthly_followup_sent_at": now})
        await self.ports.audit.log_event(
            "MONTHLY_REENGAGEMENT_SENT",
            source="cron",
            message=f"Monthly re-engagement sent to {job.customer_name or 'customer'}",
            job_id=job.id,
            metadata={
                "job_id": job.id,
                "customer_id": job.customer_id,
                "days_since_last_clean": days_since,
                "discount": discount,
            },
        )
        return "processed"


def get_reengagement_service() -> MonthlyReengagementService:
    return MonthlyReengagementService()
