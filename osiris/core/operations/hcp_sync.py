# osiris/core/operations/hcp_sync.py
"""
Housecall Pro mirror.

HCP is the source of truth for customers, jobs, schedule and payment
status; its webhooks are mirrored into the local tables so the automations
have something to work on. Payload parsing is deliberately lenient: HCP
sends slightly different shapes per event and account configuration.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from osiris.config import settings
from osiris.core import sms_templates
from osiris.core.automation.reminders import ReminderService
from osiris.core.dispatch import messages
from osiris.core.dispatch.broadcast import JobBroadcastService
from osiris.core.domain import Customer, Job, JobStatus, PaymentStatus
from osiris.core.errors import DeliveryError, ValidationError
from osiris.core.phone import normalize_phone
from osiris.core.schedule import business_tz, format_date, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)

AUTOMATION_TYPE = "hcp_webhook"

_STATUS_MAP = {
    "needs scheduling": JobStatus.SCHEDULED.value,
    "unscheduled": JobStatus.SCHEDULED.value,
    "scheduled": JobStatus.SCHEDULED.value,
    "in progress": JobStatus.IN_PROGRESS.value,
    "in_progress": JobStatus.IN_PROGRESS.value,
    "complete rated": JobStatus.COMPLETED.value,
    "complete unrated": JobStatus.COMPLETED.value,
    "completed": JobStatus.COMPLETED.value,
    "user canceled": JobStatus.CANCELLED.value,
    "pro canceled": JobStatus.CANCELLED.value,
    "canceled": JobStatus.CANCELLED.value,
    "cancelled": JobStatus.CANCELLED.value,
}


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=business_tz())
    return parsed.astimezone(business_tz())


def _service_type(text: str) -> str:
    text = text.lower()
    if "move" in text:
        return "move"
    if "deep" in text:
        return "deep"
    if "window" in text:
        return "window_cleaning"
    if "gutter" in text:
        return "gutter_cleaning"
    if "pressure" in text or "power wash" in text:
        return "pressure_washing"
    return "standard"


def customer_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Map an HCP customer object to local customer columns."""
    name = " ".join(p for p in (data.get("first_name"), data.get("last_name")) if p).strip()
    addresses = data.get("addresses") or []
    address = addresses[0] if addresses and isinstance(addresses[0], dict) else {}
    return {
        "hcp_customer_id": str(data["id"]) if data.get("id") else None,
        "name": name or data.get("company") or "Unknown",
        "phone": normalize_phone(data.get("mobile_number") or data.get("home_number") or data.get("phone")),
        "email": data.get("email"),
        "address": address.get("street"),
        "city": address.get("city"),
    }


def job_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Map an HCP job object to local job columns (customer excluded)."""
    if not data.get("id"):
        raise ValidationError("HCP job payload without id")

    schedule = data.get("schedule") or {}
    start = _parse_datetime(schedule.get("scheduled_start"))
    end = _parse_datetime(schedule.get("scheduled_end"))

    address = data.get("address") or {}
    job_type_obj = (data.get("job_fields") or {}).get("job_type") or {}
    label = job_type_obj.get("name") or data.get("description") or "Standard Clean"

    fields: dict[str, Any] = {
        "hcp_job_id": str(data["id"]),
        "address": address.get("street") or "",
        "city": address.get("city") or "",
        "job_type": label,
        "service_type": _service_type(label),
        "total_amount": round((data.get("total_amount") or 0) / 100, 2),
        "notes": data.get("notes") or "",
    }
    if start is not None:
        fields["date"] = start.date()
        fields["scheduled_time"] = start.strftime("%H:%M")
        if end is not None and end > start:
            fields["estimated_hours"] = round((end - start).total_seconds() / 3600, 2)

    work_status = (data.get("work_status") or "").lower()
    if work_status in _STATUS_MAP:
        fields["status"] = _STATUS_MAP[work_status]

    return fields


class HcpSyncService:
    def __init__(
        self,
        ports: ServicePorts | None = None,
        broadcast: JobBroadcastService | None = None,
        reminders: ReminderService | None = None,
    ) -> None:
        self.ports = ports or ServicePorts()
        self.broadcast = broadcast or JobBroadcastService(self.ports)
        self.reminders = reminders or ReminderService(self.ports)

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        event = payload.get("event") or ""
        data = payload.get("data") or {}
        AppMetrics.webhook_received("housecall_pro", event)
        logger.info(f"HCP webhook received: {event}")

        if event in ("job.created", "job.updated"):
            job, created = await self._upsert_job(data)
            if created and settings.hcp_auto_broadcast and job.status == JobStatus.SCHEDULED.value:
                await self.broadcast.start(job.id)
            result = {"jobId": job.id, "created": created}
        elif event == "job.completed":
            result = await self._job_completed(data)
        elif event == "job.cancelled":
            result = await self._job_cancelled(data)
        elif event in ("customer.created", "customer.updated"):
            customer = await self._upsert_customer(data)
            result = {"customerId": customer.id}
        elif event == "payment.received":
            result = await self._payment_received(data)
        else:
            logger.info(f"Unhandled HCP event: {event}")
            result = {"ignored": True}

        await self.ports.audit.log_automation(AUTOMATION_TYPE, "housecall_pro", {"event": event, **result}, "success")
        return {"event": event, **result}

    async def _upsert_customer(self, data: dict[str, Any]) -> Customer:
        fields = customer_fields(data)
        hcp_id = fields["hcp_customer_id"]
        existing = await self.ports.customers.get_by_hcp_id(hcp_id) if hcp_id else None
        if existing is not None:
            return await self.ports.customers.update(existing.id, fields) or existing
        return await self.ports.customers.create(fields)

    async def _upsert_job(self, data: dict[str, Any]) -> tuple[Job, bool]:
        fields = job_fields(data)
        if isinstance(data.get("customer"), dict) and data["customer"].get("id"):
            customer = await self._upsert_customer(data["customer"])
            fields["customer_id"] = customer.id

        existing = await self.ports.jobs.get_by_hcp_id(fields["hcp_job_id"])
        if existing is not None:
            # Local notes carry escalation/rain-day markers; keep them
            fields.pop("notes", None)
            updated = await self.ports.jobs.update(existing.id, fields)
            return updated or existing, False

        if "date" not in fields:
            raise ValidationError("HCP job payload without schedule")
        return await self.ports.jobs.create(fields), True

    async def _job_completed(self, data: dict[str, Any]) -> dict[str, Any]:
        job, _ = await self._upsert_job(data)
        if job.status == JobStatus.COMPLETED.value and job.completed_at is not None:
            return {"jobId": job.id, "alreadyCompleted": True}

        job = await self.ports.jobs.update(job.id, {
            "status": JobStatus.COMPLETED.value,
            "completed_at": utc_now(),
        }) or job
        await self.reminders.schedule_review_request(job)
        await self.ports.audit.log_event(
            "JOB_COMPLETED", source="housecall_pro",
            message=f"Job {job.short_ref} completed", job_id=job.id,
        )
        return {"jobId": job.id, "reviewRequestScheduled": True}

    async def _job_cancelled(self, data: dict[str, Any]) -> dict[str, Any]:
        before = await self.ports.jobs.get_by_hcp_id(str(data["id"])) if data.get("id") else None
        already = before is not None and before.status == JobStatus.CANCELLED.value

        job, _ = await self._upsert_job(data)
        job = await self.ports.jobs.update(job.id, {"status": JobStatus.CANCELLED.value}) or job
        await self.ports.offers.withdraw_open(job.id)

        if already:
            return {"jobId": job.id, "alreadyCancelled": True}

        notified = 0
        if job.assigned_team_lead:
            member = await self.ports.teams.get_member(job.assigned_team_lead)
            if member and member.telegram_id:
                try:
                    await self.ports.messenger.send(member.telegram_id, messages.job_cancelled_notice(job))
                    notified += 1
                except DeliveryError as exc:
                    logger.warning(f"Cancel notice to {member.name} failed: {exc.detail}", extra={"job_id": job.id})

        if job.customer_phone:
            try:
                await self.ports.sms.send_sms(
                    job.customer_phone, sms_templates.job_cancelled(job.customer_name, format_date(job.date)),
                )
                notified += 1
            except DeliveryError as exc:
                logger.warning(f"Cancel SMS failed for job {job.short_ref}: {exc.detail}", extra={"job_id": job.id})

        await self.ports.audit.log_event(
            "JOB_CANCELLED", source="housecall_pro",
            message=f"Job {job.short_ref} cancelled", job_id=job.id,
            metadata={"notifications_sent": notified},
        )
        return {"jobId": job.id, "notificationsSent": notified}

    async def _payment_received(self, data: dict[str, Any]) -> dict[str, Any]:
        hcp_job_id = data.get("job_id") or (data.get("job") or {}).get("id")
        job = await self.ports.jobs.get_by_hcp_id(str(hcp_job_id)) if hcp_job_id else None
        if job is None:
            logger.warning(f"HCP payment for unknown job {hcp_job_id}")
            return {"jobId": None, "matched": False}

        amount = round((data.get("amount") or 0) / 100, 2)
        await self.ports.jobs.update(job.id, {"payment_status": PaymentStatus.FULLY_PAID.value, "paid": True})
        await self.ports.audit.log_event(
            "PAYMENT_RECEIVED", source="housecall_pro",
            message=f"Payment ${amount:.2f} received for job {job.short_ref}",
            job_id=job.id, metadata={"amount": amount},
        )
        return {"jobId": job.id, "matched": True}
