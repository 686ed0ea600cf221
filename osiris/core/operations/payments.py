# osiris/core/operations/payments.py
"""
Stripe payment events and the public tip flow.

Checkout sessions carry ``metadata.job_id`` and ``metadata.payment_type``
(DEPOSIT, FINAL or TIP). A paid deposit books the lead and starts the job
broadcast; a final payment marks the job paid; a tip is credited to the team
that did the job.
"""
from __future__ import annotations

from typing import Any

from osiris.config import settings
from osiris.core.dispatch.broadcast import JobBroadcastService
from osiris.core.domain import Job, LeadStatus, PaymentStatus, PaymentType
from osiris.core.errors import NotFoundError, ValidationError
from osiris.core.schedule import format_date, utc_now
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics

logger = get_logger(__name__)

MAX_TIP_AMOUNT = 1000.0


def _cents_to_dollars(value: Any) -> float:
    return round((value or 0) / 100, 2)


class PaymentService:
    def __init__(self, ports: ServicePorts | None = None, broadcast: JobBroadcastService | None = None) -> None:
        self.ports = ports or ServicePorts()
        self.broadcast = broadcast or JobBroadcastService(self.ports)

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Apply a verified Stripe event. Unknown events are acknowledged and ignored."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        AppMetrics.webhook_received("stripe", event_type)
        logger.info(f"Stripe event received: {event_type}")

        if event_type == "checkout.session.completed":
            await self._checkout_completed(obj)
        elif event_type == "payment_intent.succeeded":
            await self._payment_intent_succeeded(obj)
        else:
            logger.debug(f"Unhandled Stripe event type: {event_type}")

        return {"received": True}

    async def _checkout_completed(self, session: dict[str, Any]) -> None:
        metadata = session.get("metadata") or {}
        job_id = metadata.get("job_id")
        payment_type = (metadata.get("payment_type") or "").upper()

        if not job_id:
            logger.error("Stripe checkout completed without job_id in metadata")
            return

        job = await self.ports.jobs.get(job_id)
        if job is None:
            logger.error(f"Stripe checkout for unknown job {job_id}")
            return

        if payment_type == PaymentType.DEPOSIT.value:
            await self._deposit_paid(job, metadata.get("lead_id"), session)
        elif payment_type == PaymentType.FINAL.value:
            await self._final_paid(job, session)
        elif payment_type == PaymentType.TIP.value:
            await self._tip_paid(job, session)
        else:
            logger.warning(f"Unknown payment_type '{payment_type}' for job {job.short_ref}")

    async def _deposit_paid(self, job: Job, lead_id: str | None, session: dict[str, Any]) -> None:
        session_id = session.get("id")
        if session_id and job.deposit_session_id == session_id:
            logger.info(f"Deposit session {session_id} already applied to job {job.short_ref}, skipping")
            return

        await self.ports.jobs.update(job.id, {
            "payment_status": PaymentStatus.DEPOSIT_PAID.value,
            "confirmed_at": utc_now(),
        })

        lead_id = lead_id or job.lead_id
        if lead_id:
            await self.ports.leads.update(lead_id, {
                "status": LeadStatus.BOOKED.value,
                "converted_to_job_id": job.id,
            })

        triggered = False
        if not job.is_assigned:
            await self.broadcast.start(job.id)
            triggered = True

        await self.ports.audit.log_event(
            "DEPOSIT_PAID",
            source="stripe",
            message=f"Deposit paid for job {job.short_ref}",
            job_id=job.id,
            lead_id=lead_id,
            metadata={
                "session_id": session.get("id"),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
                "lead_id": lead_id,
                "cleaner_assignment_triggered": triggered,
            },
        )
        if session_id:
            await self.ports.jobs.update(job.id, {"deposit_session_id": session_id})

    async def _final_paid(self, job: Job, session: dict[str, Any]) -> None:
        await self.ports.jobs.update(job.id, {
            "payment_status": PaymentStatus.FULLY_PAID.value,
            "paid": True,
        })
        await self.ports.audit.log_event(
            "FINAL_PAID",
            source="stripe",
            message=f"Final payment received for job {job.short_ref}",
            job_id=job.id,
            metadata={
                "session_id": session.get("id"),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
            },
        )

    async def _tip_paid(self, job: Job, session: dict[str, Any]) -> None:
        amount = _cents_to_dollars(session.get("amount_total"))
        tip = await self.ports.earnings.add_tip(
            job.id, amount, team_id=job.team_id, member_id=job.assigned_team_lead,
            reported_via="stripe", stripe_session_id=session.get("id"),
        )
        if tip is None:
            logger.info(f"Tip session {session.get('id')} already recorded for job {job.short_ref}, skipping")
            return
        await self.ports.audit.log_event(
            "TIP_PAID",
            source="stripe",
            message=f"Tip ${amount:.2f} paid for job {job.short_ref}",
            job_id=job.id,
            metadata={"session_id": session.get("id"), "amount": amount},
        )

    async def _payment_intent_succeeded(self, intent: dict[str, Any]) -> None:
        metadata = intent.get("metadata") or {}
        job_id = metadata.get("job_id")
        payment_type = (metadata.get("payment_type") or "").upper()
        if not job_id:
            return

        event_type = f"{payment_type}_PAID" if payment_type in ("DEPOSIT", "FINAL") else "PAYMENT_SUCCEEDED"
        await self.ports.audit.log_event(
            event_type,
            source="stripe",
            message=f"Payment intent succeeded ({payment_type or 'unknown type'})",
            job_id=job_id,
            metadata={
                "payment_intent_id": intent.get("id"),
                "amount": _cents_to_dollars(intent.get("amount")),
                "confirmation": True,
            },
        )

    # ------------------------------------------------------------------
    # Public tip flow
    # ------------------------------------------------------------------

    async def tip_job_info(self, job_id: str) -> dict[str, Any]:
        job = await self.ports.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        team_name = None
        if job.team_id:
            team = await self.ports.teams.get_team(job.team_id)
            team_name = team.name if team else None

        first_name = (job.customer_name or "").split()[0] if job.customer_name else None
        return {
            "id": job.id,
            "job_number": job.job_number,
            "customer_first_name": first_name,
            "date": format_date(job.date),
            "team_name": team_name,
            "business_name": settings.business_name,
            "tip_amounts": settings.tip_amounts,
        }

    async def create_tip_checkout(self, job_id: str, amount: float) -> dict[str, Any]:
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        if amount > MAX_TIP_AMOUNT:
            raise ValidationError(f"Amount must not exceed {MAX_TIP_AMOUNT:.0f}")

        job = await self.ports.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        session = await self.ports.checkout.create_tip_session(job, round(amount, 2))
        logger.info(f"Tip checkout created for job {job.short_ref}: ${amount:.2f}", extra={"job_id": job.id})
        return session


def get_payment_service() -> PaymentService:
    return PaymentService()
