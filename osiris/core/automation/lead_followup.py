# osiris/core/automation/lead_followup.py
"""
Lead follow-up sequence.

Default sequence for a new lead (delays configurable in settings):

    stage 1  text         immediately
    stage 2  call         +5 min
    stage 3  double_call  +30 min
    stage 4  text         +24 h

Each stage re-reads the lead first: a lead that booked, was lost, or already
got past this stage is left alone. Calls are only placed during business
hours; a queued call that comes due after hours is deferred to the next
opening instead of being dropped.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from osiris.config import settings
from osiris.core import sms_templates
from osiris.core.domain import FollowupAction, Lead, LeadStatus
from osiris.core.errors import DeliveryError, NotFoundError, ValidationError
from osiris.core.phone import normalize_phone
from osiris.core.schedule import is_business_hours, next_business_opening, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger, LogContext
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)

AUTOMATION_TYPE = "lead_followup"
TASK_TYPE = "lead_followup"
SECOND_CALL_NOTE = "Second attempt in double-call sequence"


def default_sequence() -> list[tuple[int, FollowupAction, int]]:
    """(stage, action, delay_seconds) for a new lead."""
    return [
        (1, FollowupAction.TEXT, 0),
        (2, FollowupAction.CALL, settings.lead_followup_call_delay_seconds),
        (3, FollowupAction.DOUBLE_CALL, settings.lead_followup_double_call_delay_seconds),
        (4, FollowupAction.TEXT, settings.lead_followup_second_text_delay_seconds),
    ]


class LeadFollowupService:
    def __init__(self, ports: ServicePorts | None = None, *, sleep=asyncio.sleep) -> None:
        self.ports = ports or ServicePorts()
        self._sleep = sleep

    async def schedule_sequence(self, lead: Lead) -> list[str]:
        """Queue every stage of the default sequence. Returns the task ids."""
        if not settings.lead_followup_enabled:
            logger.info("Lead follow-up disabled, sequence not scheduled", extra={"lead_id": lead.id})
            return []

        task_ids = []
        for stage, action, delay in default_sequence():
            task_ids.append(await self.ports.queue.enqueue(
                TASK_TYPE,
                {
                    "leadId": lead.id,
                    "leadPhone": lead.phone,
                    "leadName": lead.name,
                    "stage": stage,
                    "action": action.value,
                },
                delay_seconds=delay,
            ))
        logger.info(f"Follow-up sequence scheduled ({len(task_ids)} stages)", extra={"lead_id": lead.id})
        return task_ids

    async def run(
        self,
        lead_id: str,
        stage: int,
        action: str,
        *,
        lead_phone: str | None = None,
        lead_name: str | None = None,
        source: str = "task_queue",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        try:
            action = FollowupAction(action)
        except ValueError:
            raise ValidationError(f"Invalid action: {action}")

        payload = {"leadId": lead_id, "stage": stage, "action": action.value}
        log = LogContext(logger, lead_id=lead_id)

        lead = await self.ports.leads.get(lead_id)
        if lead is None:
            await self.ports.audit.log_automation(AUTOMATION_TYPE, source, payload, "failed", "Lead not found")
            AppMetrics.automation_run(AUTOMATION_TYPE, "failed")
            raise NotFoundError("Lead not found")

        if lead.is_terminal:
            await self.ports.audit.log_automation(
                AUTOMATION_TYPE, source, payload, "success", f"Skipped - lead status: {lead.status}",
            )
            return {"skipped": True, "reason": "Lead already processed"}

        if lead.followup_stage >= stage:
            return {"skipped": True, "reason": "Stage already completed"}

        phone = normalize_phone(lead_phone or lead.phone)
        if phone is None:
            await self.ports.audit.log_automation(AUTOMATION_TYPE, source, payload, "failed", "Invalid phone number")
            raise ValidationError("Lead has no valid phone number")

        name = lead_name or lead.name

        with AppMetrics.track_processing_time(AUTOMATION_TYPE):
            if action is FollowupAction.TEXT:
                result = await self._text(phone, name, stage)
            else:
                if not is_business_hours(now):
                    return await self._outside_hours(payload, lead, name, source, now)
                result = await self._call(phone, name, action)

        await self.ports.leads.update(lead.id, {
            "status": LeadStatus.CONTACTED.value,
            "followup_stage": stage,
            "last_contact_at": utc_now(),
        })

        await self.ports.audit.log_automation(AUTOMATION_TYPE, source, {**payload, "result": result}, "success")
        AppMetrics.automation_run(AUTOMATION_TYPE, "success")
        log.info(f"Follow-up stage {stage} ({action.value}) done")
        return {"success": True, "stage": stage, "action": action.value}

    async def _text(self, phone: str, name: str, stage: int) -> dict[str, Any]:
        if stage <= 1:
            text = sms_templates.lead_followup_initial(name)
        else:
            text = sms_templates.lead_followup_second(name)
        message_id = await self.ports.sms.send_sms(phone, text)
        AppMetrics.sms_sent("lead_followup")
        return {"messageId": message_id}

    async def _call(self, phone: str, name: str, action: FollowupAction) -> dict[str, Any]:
        previous = "call_no_answer" if action is FollowupAction.DOUBLE_CALL else "text"
        call_ids = [await self.ports.caller.place_call(phone=phone, name=name, previous_contact=previous)]
        AppMetrics.call_placed(action.value)

        if action is FollowupAction.DOUBLE_CALL:
            await self._sleep(settings.double_call_gap_seconds)
            # First call already placed; the stage must not fail from here
            try:
                call_ids.append(await self.ports.caller.place_call(
                    phone=phone, name=name, previous_contact="call_no_answer", notes=SECOND_CALL_NOTE,
                ))
            except DeliveryError as exc:
                logger.warning(f"Second call of double call not placed: {exc.detail}")
                return {"callIds": call_ids, "secondCallError": exc.detail}
            AppMetrics.call_placed(action.value)

        return {"callIds": call_ids}

    async def _outside_hours(self, payload: dict[str, Any], lead: Lead, name: str, source: str,
                             now: datetime | None) -> dict[str, Any]:
        await self.ports.audit.log_automation(
            AUTOMATION_TYPE, source, payload, "success", "Skipped call - outside business hours",
        )
        result: dict[str, Any] = {"skipped": True, "reason": "Outside business hours"}

        if source == "task_queue":
            current = now or utc_now()
            opening = next_business_opening(current)
            delay = max((opening - current).total_seconds(), 0)
            await self.ports.queue.enqueue(
                TASK_TYPE,
                {**payload, "leadPhone": lead.phone, "leadName": name},
                delay_seconds=delay,
            )
            result["deferredTo"] = opening.isoformat()
            logger.info(f"Call deferred to {opening.isoformat()}", extra={"lead_id": lead.id})

        return result


def get_lead_followup_service() -> LeadFollowupService:
    return LeadFollowupService()
