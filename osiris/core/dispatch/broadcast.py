# osiris/core/dispatch/broadcast.py
"""
Job broadcast state machine.

A new job is offered to every available team lead over Telegram
(``initial``). If nobody claims it, the worker runs the ``urgent`` phase
(re-ping everyone who has not passed) and then ``escalate`` (hand the job to
the operator). The first lead to press "Accept" wins: assignment is a single
conditional UPDATE, so two leads racing for the same job cannot both get it.

Phase timing lives in the task queue: ``initial`` enqueues the later phases
with a delay, and each phase re-checks the job before acting, so a job that
was claimed (or cancelled) in the meantime is simply skipped. Escalation
stamps ``escalated_at``; later phases of the same broadcast are then skipped
and a fresh ``start`` clears it.
"""
from __future__ import annotations

from typing import Any

from osiris.config import settings
from osiris.core import sms_templates
from osiris.core.dispatch import messages
from osiris.core.domain import BroadcastPhase, Job, JobStatus, MemberRole, OfferResponse, TeamMember
from osiris.core.errors import ConflictError, DeliveryError, NotFoundError, ValidationError
from osiris.core.schedule import format_date, format_time, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger, LogContext
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)

AUTOMATION_TYPE = "job_broadcast"
TASK_TYPE = "job_broadcast"

ESCALATION_NOTE = "\n[ESCALATED] Not claimed in time"
EXCEPTION_DESCRIPTION = "Job not claimed within broadcast window"

REASON_NO_LEADS = "No team leads currently available"
REASON_UNDELIVERED = "Job offer could not be delivered to any team lead"
REASON_ALL_PASSED = "All team leads passed on this job"
REASON_TIMEOUT = "Not claimed after urgent broadcast window"

_CLOSED_STATUSES = (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value)


class JobBroadcastService:
    """Offers jobs to team leads, handles claims and passes, escalates to the operator."""

    def __init__(self, ports: ServicePorts | None = None) -> None:
        self.ports = ports or ServicePorts()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self, job_id: str, *, delay_seconds: float = 0) -> str:
        """Queue the initial broadcast for a job. Returns the task id."""
        job = await self.ports.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        if job.escalated_at is not None:
            await self.ports.jobs.update(job.id, {"escalated_at": None})

        task_id = await self.ports.queue.enqueue(
            TASK_TYPE,
            {"jobId": job.id, "phase": BroadcastPhase.INITIAL.value},
            delay_seconds=delay_seconds,
        )
        logger.info(f"Broadcast queued for job {job.short_ref}", extra={"job_id": job.id})
        return task_id

    async def run_phase(self, job_id: str, phase: str, *, source: str = "task_queue") -> dict[str, Any]:
        try:
            phase = BroadcastPhase(phase)
        except ValueError:
            raise ValidationError(f"Invalid phase: {phase}")

        payload = {"jobId": job_id, "phase": phase.value}
        job = await self.ports.jobs.get(job_id)

        if job is None:
            await self.ports.audit.log_automation(AUTOMATION_TYPE, source, payload, "failed", "Job not found")
            AppMetrics.automation_run(AUTOMATION_TYPE, "failed")
            raise NotFoundError("Job not found")

        if job.is_assigned:
            return {"skipped": True, "reason": "Job already assigned", "assignedTo": job.assigned_team_lead}

        if job.status in _CLOSED_STATUSES:
            return {"skipped": True, "reason": f"Job status: {job.status}"}

        if job.escalated_at is not None and phase is not BroadcastPhase.INITIAL:
            return {"skipped": True, "reason": "Job already escalated"}

        log = LogContext(logger, job_id=job.id)
        log.info(f"Broadcast phase '{phase.value}' for job {job.short_ref}")

        with AppMetrics.track_processing_time(AUTOMATION_TYPE):
            if phase is BroadcastPhase.INITIAL:
                result = await self._initial(job)
            elif phase is BroadcastPhase.URGENT:
                result = await self._urgent(job)
            else:
                result = await self._escalate(job)

        await self.ports.audit.log_automation(
            AUTOMATION_TYPE, source, {**payload, **result}, "success",
        )
        AppMetrics.automation_run(AUTOMATION_TYPE, "success")
        return result

    async def claim(self, job_id: str, member: TeamMember) -> Job:
        """
        Assign the job to ``member``.

        Raises ConflictError when another lead got there first.
        """
        job = await self.ports.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        if not (member.active and member.role == MemberRole.TEAM_LEAD.value):
            raise ValidationError("Only active team leads can claim jobs")

        if job.status in _CLOSED_STATUSES:
            raise ConflictError(f"Job is {job.status}")

        assigned = await self.ports.jobs.try_assign(job.id, member.id, member.team_id)
        if assigned is None:
            AppMetrics.claim_conflict()
            logger.info(
                f"Claim lost: job {job.short_ref} already assigned",
                extra={"job_id": job.id, "member_id": member.id},
            )
            raise ConflictError("Job already claimed")

        offers = await self.ports.offers.list_for_job(job.id)
        had_offer = False
        for offer in offers:
            if offer.member_id == member.id and offer.response == OfferResponse.PENDING.value:
                had_offer = True
                await self.ports.offers.mark_response(offer.id, OfferResponse.ACCEPTED.value)
                await self._safe_edit(offer.telegram_chat_id, offer.telegram_message_id,
                                      messages.job_claimed(assigned, member.name))
            elif offer.response == OfferResponse.PENDING.value:
                await self.ports.offers.mark_response(offer.id, OfferResponse.WITHDRAWN.value)
                await self._safe_edit(offer.telegram_chat_id, offer.telegram_message_id,
                                      messages.offer_taken(assigned, member.name))

        if not had_offer and member.telegram_id:
            await self._safe_send(member.telegram_id, messages.job_claimed(assigned, member.name))

        await self._notify_customer_assigned(assigned, member)

        await self.ports.audit.log_event(
            "JOB_CLAIMED",
            source="telegram",
            message=f"Job {assigned.short_ref} claimed by {member.name}",
            job_id=assigned.id,
            metadata={"member_id": member.id, "team_id": member.team_id},
        )
        AppMetrics.job_claimed()
        logger.info(
            f"Job {assigned.short_ref} claimed by {member.name}",
            extra={"job_id": assigned.id, "member_id": member.id},
        )
        return assigned

    async def decline(self, job_id: str, member: TeamMember) -> dict[str, Any]:
        """Record a pass. When nobody is left with an open offer, escalate right away."""
        job = await self.ports.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        offers = await self.ports.offers.list_for_job(job.id)
        responses: dict[str, str] = {}
        for offer in offers:
            responses[offer.id] = offer.response
            if offer.member_id == member.id and offer.response == OfferResponse.PENDING.value:
                await self.ports.offers.mark_response(offer.id, OfferResponse.PASSED.value)
                await self._safe_edit(offer.telegram_chat_id, offer.telegram_message_id,
                                      messages.offer_passed(job))
                responses[offer.id] = OfferResponse.PASSED.value

        values = list(responses.values())
        everyone_passed = (
            OfferResponse.PASSED.value in values
            and OfferResponse.PENDING.value not in values
            and OfferResponse.ACCEPTED.value not in values
        )

        escalated = False
        if everyone_passed and not job.is_assigned:
            await self._hand_to_operator(job, REASON_ALL_PASSED)
            escalated = True

        return {"passed": True, "escalated": escalated}

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _initial(self, job: Job) -> dict[str, Any]:
        leads = await self._available_leads()

        if not leads:
            await self._hand_to_operator(job, REASON_NO_LEADS)
            return {"escalated": True, "reason": "No available team leads"}

        sent, failed = await self._offer(job, leads, BroadcastPhase.INITIAL)

        if sent == 0:
            await self._hand_to_operator(job, REASON_UNDELIVERED)
            return {"escalated": True, "reason": REASON_UNDELIVERED, "failed": failed}

        if settings.broadcast_auto_escalation:
            await self.ports.queue.enqueue(
                TASK_TYPE,
                {"jobId": job.id, "phase": BroadcastPhase.URGENT.value},
                delay_seconds=settings.broadcast_urgent_delay_seconds,
            )
            await self.ports.queue.enqueue(
                TASK_TYPE,
                {"jobId": job.id, "phase": BroadcastPhase.ESCALATE.value},
                delay_seconds=settings.broadcast_escalate_delay_seconds,
            )

        return {"success": True, "phase": BroadcastPhase.INITIAL.value, "sentTo": sent, "failed": failed}

    async def _urgent(self, job: Job) -> dict[str, Any]:
        offers = await self.ports.offers.list_for_job(job.id)
        passed = {o.member_id for o in offers if o.response == OfferResponse.PASSED.value}
        leads = [m for m in await self._available_leads() if m.id not in passed]

        sent, failed = await self._offer(job, leads, BroadcastPhase.URGENT)
        return {"success": True, "phase": BroadcastPhase.URGENT.value, "sentTo": sent, "failed": failed}

    async def _escalate(self, job: Job) -> dict[str, Any]:
        await self.ports.jobs.update(job.id, {"escalated_at": utc_now()})
        await self._notify_control(job, REASON_TIMEOUT)
        await self.ports.jobs.append_note(job.id, ESCALATION_NOTE)
        await self.ports.audit.create_exception("callback", EXCEPTION_DESCRIPTION, job_id=job.id)

        for offer in await self.ports.offers.withdraw_open(job.id):
            await self._safe_edit(offer.telegram_chat_id, offer.telegram_message_id,
                                  messages.offer_withdrawn(job))

        return {"success": True, "phase": BroadcastPhase.ESCALATE.value}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _available_leads(self) -> list[TeamMember]:
        members = await self.ports.teams.available_members()
        return [m for m in members if m.can_receive_offers]

    async def _offer(self, job: Job, leads: list[TeamMember], phase: BroadcastPhase) -> tuple[int, int]:
        """
        Send this phase's offer to each lead. Returns (sent, failed).

        Leads still holding an open offer for the same phase got the message
        on an earlier attempt of this task; they count as sent and are not
        messaged again.
        """
        text = messages.job_offer(job, urgent=phase is BroadcastPhase.URGENT)
        buttons = messages.offer_buttons(job.id)
        already_offered = {
            offer.member_id for offer in await self.ports.offers.list_for_job(job.id)
            if offer.phase == phase.value and offer.response == OfferResponse.PENDING.value
        }
        sent = failed = delivered = 0

        for lead in leads:
            if lead.id in already_offered:
                sent += 1
                continue

            try:
                message_id = await self.ports.messenger.send(lead.telegram_id, text, buttons=buttons)
            except DeliveryError as exc:
                failed += 1
                AppMetrics.offer_delivery_failed(phase.value)
                logger.warning(
                    f"Offer for job {job.short_ref} not delivered to {lead.name}: {exc.detail}",
                    extra={"job_id": job.id, "member_id": lead.id},
                )
                continue

            await self.ports.offers.record(job.id, lead.id, phase.value, lead.telegram_id, message_id)
            sent += 1
            delivered += 1

        if delivered:
            AppMetrics.offer_sent(phase.value, delivered)
        return sent, failed

    async def _hand_to_operator(self, job: Job, reason: str) -> None:
        """Immediate escalation: control chat message plus an operator exception row."""
        await self.ports.jobs.update(job.id, {"escalated_at": utc_now()})
        await self._notify_control(job, reason)
        await self.ports.audit.create_exception("callback", f"{EXCEPTION_DESCRIPTION}: {reason}", job_id=job.id)

    async def _notify_control(self, job: Job, reason: str) -> None:
        AppMetrics.escalation(reason)
        try:
            delivered = await self.ports.messenger.send_control(messages.escalation(job, reason))
        except DeliveryError as exc:
            logger.error(
                f"Escalation for job {job.short_ref} not delivered: {exc.detail}",
                extra={"job_id": job.id},
            )
            return

        if not delivered:
            logger.warning(
                f"Control chat not configured, escalation for job {job.short_ref} only logged: {reason}",
                extra={"job_id": job.id},
            )

    async def _notify_customer_assigned(self, job: Job, member: TeamMember) -> None:
        if not job.customer_phone:
            return
        text = sms_templates.cleaner_assigned(
            job.customer_name, member.name, format_date(job.date),
            format_time(job.scheduled_time), member.phone,
        )
        try:
            await self.ports.sms.send_sms(job.customer_phone, text)
            AppMetrics.sms_sent("cleaner_assigned")
        except DeliveryError as exc:
            logger.warning(
                f"Cleaner-assigned SMS failed for job {job.short_ref}: {exc.detail}",
                extra={"job_id": job.id},
            )

    async def _safe_send(self, chat_id: str, text: str) -> None:
        try:
            await self.ports.messenger.send(chat_id, text)
        except DeliveryError as exc:
            logger.warning(f"Telegram message to {chat_id} failed: {exc.detail}")

    async def _safe_edit(self, chat_id: str, message_id: int | None, text: str) -> None:
        if message_id is None:
            return
        try:
            await self.ports.messenger.edit(chat_id, message_id, text)
        except DeliveryError as exc:
            logger.warning(f"Telegram edit of message {message_id} failed: {exc.detail}")


def get_broadcast_service() -> JobBroadcastService:
    return JobBroadcastService()
