# osiris/core/operations/records.py
"""Job and lead records behind the dashboard list/create endpoints."""
from __future__ import annotations

import math
from datetime import date
from typing import Any

from osiris.core.automation.lead_followup import LeadFollowupService
from osiris.core.dispatch.broadcast import JobBroadcastService
from osiris.core.domain import Job, JobStatus, Lead, LeadStatus
from osiris.core.errors import ValidationError
from osiris.core.phone import normalize_phone
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

MAX_PER_PAGE = 100

_JOB_FIELDS = (
    "date", "scheduled_time", "address", "city", "service_type", "job_type",
    "estimated_hours", "total_amount", "team_id", "notes", "lead_id", "hcp_job_id",
)


def paginate(rows: list[Any], total: int, page: int, per_page: int) -> dict[str, Any]:
    return {
        "data": [row.to_dict() for row in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": math.ceil(total / per_page) if per_page else 0,
    }


def _page_window(page: int, per_page: int) -> tuple[int, int]:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if per_page < 1 or per_page > MAX_PER_PAGE:
        raise ValidationError(f"per_page must be between 1 and {MAX_PER_PAGE}")
    return per_page, (page - 1) * per_page


class RecordsService:
    def __init__(
        self,
        ports: ServicePorts | None = None,
        broadcast: JobBroadcastService | None = None,
        followup: LeadFollowupService | None = None,
    ) -> None:
        self.ports = ports or ServicePorts()
        self.broadcast = broadcast or JobBroadcastService(self.ports)
        self.followup = followup or LeadFollowupService(self.ports)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def list_jobs(
        self,
        *,
        day: date | None = None,
        team_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> dict[str, Any]:
        if status is not None and status not in {s.value for s in JobStatus}:
            raise ValidationError(f"Invalid status: {status}")
        limit, offset = _page_window(page, per_page)
        rows, total = await self.ports.jobs.list(day=day, team_id=team_id, status=status,
                                                 limit=limit, offset=offset)
        return paginate(rows, total, page, per_page)

    async def create_job(self, data: dict[str, Any], *, broadcast: bool = False) -> Job:
        """
        Create a job from dashboard input.

        ``customer_id`` links an existing customer; otherwise ``customer_name``
        (plus optional phone/email) creates one.
        """
        fields = {k: data[k] for k in _JOB_FIELDS if data.get(k) is not None}
        if "date" not in fields:
            raise ValidationError("date is required")
        if not fields.get("address"):
            raise ValidationError("address is required")

        customer_id = data.get("customer_id")
        if not customer_id:
            name = (data.get("customer_name") or "").strip()
            if not name:
                raise ValidationError("customer_id or customer_name is required")
            raw_phone = data.get("customer_phone")
            phone = normalize_phone(raw_phone)
            if raw_phone and phone is None:
                raise ValidationError("Invalid customer phone number")
            customer = await self.ports.customers.create({
                "name": name,
                "phone": phone,
                "email": data.get("customer_email"),
                "address": fields.get("address"),
                "city": fields.get("city"),
            })
            customer_id = customer.id

        fields["customer_id"] = customer_id
        fields["status"] = JobStatus.SCHEDULED.value
        fields["team_confirmed"] = False

        job = await self.ports.jobs.create(fields)
        await self.ports.audit.log_event(
            "JOB_CREATED", source="dashboard", message=f"Job {job.short_ref} created", job_id=job.id,
        )
        logger.info(f"Job {job.short_ref} created", extra={"job_id": job.id})

        if broadcast:
            await self.broadcast.start(job.id)
        return job

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def list_leads(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> dict[str, Any]:
        if status is not None and status not in {s.value for s in LeadStatus}:
            raise ValidationError(f"Invalid status: {status}")
        limit, offset = _page_window(page, per_page)
        rows, total = await self.ports.leads.list(source=source, status=status, limit=limit, offset=offset)
        return paginate(rows, total, page, per_page)

    async def create_lead(self, data: dict[str, Any]) -> Lead:
        """Create a lead and queue its follow-up sequence."""
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required")
        phone = normalize_phone(data.get("phone"))
        if phone is None:
            raise ValidationError("A valid phone number is required")

        lead = await self.ports.leads.create({
            "name": name,
            "phone": phone,
            "email": data.get("email"),
            "source": data.get("source") or "other",
            "service_type": data.get("service_type"),
            "notes": data.get("notes") or "",
            "status": LeadStatus.NEW.value,
        })
        await self.ports.audit.log_event(
            "LEAD_CREATED", source="dashboard", message=f"Lead {lead.name} created", lead_id=lead.id,
            metadata={"source": lead.source},
        )
        await self.followup.schedule_sequence(lead)
        return lead


def get_records_service() -> RecordsService:
    return RecordsService()
