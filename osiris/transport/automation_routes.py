# osiris/transport/automation_routes.py
"""
QStash callback endpoints.

- POST /api/automation/job-broadcast   {jobId, phase}
- POST /api/automation/lead-followup   {leadId, leadPhone, leadName, stage, action}
- POST /api/automation/send-reminder   {jobId, customerPhone, customerName, type, eta?, teamLeadName?}

Signature failures answer 401, unparsable payloads 400. Domain errors keep
their own status (404 job/lead not found, 400 invalid reminder type).
Anything unexpected is recorded as a failed automation run and answered
with a bare 500 so internals never leak to the caller.
"""
from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, TypeVar

import pydantic
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from osiris.core.automation.lead_followup import LeadFollowupService, get_lead_followup_service
from osiris.core.automation.reminders import ReminderService, get_reminder_service
from osiris.core.dispatch.broadcast import JobBroadcastService, get_broadcast_service
from osiris.core.errors import OsirisError
from osiris.core.ports import AuditRepository
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics
from osiris.infra.pg_audit_repo_async import get_audit_repo
from osiris.transport.schemas import JobBroadcastIn, LeadFollowupIn, SendReminderIn
from osiris.transport.security import InvalidSignature, verify_qstash_request

logger = get_logger(__name__)

SOURCE = "qstash"

router = APIRouter(prefix="/api/automation", tags=["automation"])

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


async def _read_payload(request: Request, model: type[ModelT]) -> tuple[ModelT, dict[str, Any]]:
    try:
        body = await verify_qstash_request(request)
    except InvalidSignature as exc:
        logger.warning(f"QStash signature rejected on {request.url.path}: {exc}")
        AppMetrics.webhook_validation_failed("qstash")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        raw = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        return model.model_validate(raw), raw
    except pydantic.ValidationError as exc:
        logger.warning(f"Invalid automation payload on {request.url.path}: {exc.error_count()} errors")
        raise HTTPException(status_code=400, detail="Invalid payload")


async def _run(
    automation_type: str,
    raw: dict[str, Any],
    audit: AuditRepository,
    action: Callable[[], Awaitable[dict[str, Any]]],
):
    try:
        return await action()
    except OsirisError:
        raise
    except Exception as exc:
        logger.error(f"{automation_type} failed: {exc}", exc_info=True)
        AppMetrics.automation_run(automation_type, "failed")
        await audit.log_automation(automation_type, SOURCE, raw, "failed", str(exc))
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


@router.post("/job-broadcast")
async def job_broadcast(
    request: Request,
    service: JobBroadcastService = Depends(get_broadcast_service),
    audit: AuditRepository = Depends(get_audit_repo),
):
    payload, raw = await _read_payload(request, JobBroadcastIn)
    return await _run(
        "job_broadcast", raw, audit,
        lambda: service.run_phase(payload.job_id, payload.phase.value, source=SOURCE),
    )


@router.post("/lead-followup")
async def lead_followup(
    request: Request,
    service: LeadFollowupService = Depends(get_lead_followup_service),
    audit: AuditRepository = Depends(get_audit_repo),
):
    payload, raw = await _read_payload(request, LeadFollowupIn)
    return await _run(
        "lead_followup", raw, audit,
        lambda: service.run(
            payload.lead_id,
            payload.stage,
            payload.action.value,
            lead_phone=payload.lead_phone,
            lead_name=payload.lead_name,
            source=SOURCE,
        ),
    )


@router.post("/send-reminder")
async def send_reminder(
    request: Request,
    service: ReminderService = Depends(get_reminder_service),
    audit: AuditRepository = Depends(get_audit_repo),
):
    payload, raw = await _read_payload(request, SendReminderIn)
    return await _run(
        "send_reminder", raw, audit,
        lambda: service.send(
            payload.job_id,
            payload.type,
            customer_phone=payload.customer_phone,
            customer_name=payload.customer_name,
            eta=payload.eta,
            team_lead_name=payload.team_lead_name,
            source=SOURCE,
        ),
    )
