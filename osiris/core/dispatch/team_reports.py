# osiris/core/dispatch/team_reports.py
"""
Free-text reports from team leads in the team Telegram chat.

Recognized commands (case-insensitive, "-" or "–" as separator):
    tip job 123 - $20            tip accepted job 123 - 20.50
    upsell job 123 - inside oven  upsold job 123 - pet fee
    confirm job 123
"""
from __future__ import annotations

import re
from typing import Any

from osiris.core.dispatch import messages
from osiris.core.domain import Job, TeamMember
from osiris.core.errors import DeliveryError
from osiris.core.operations.pricing import PricingService
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

TIP_RE = re.compile(r"tip\s+(?:accepted\s+)?job\s+(\d+)\s*[-–]\s*\$?(\d+(?:\.\d{2})?)", re.IGNORECASE)
UPSELL_RE = re.compile(r"ups(?:ell|old)\s+job\s+(\d+)\s*[-–]\s*(.+)", re.IGNORECASE)
CONFIRM_RE = re.compile(r"confirm\s+job\s+(\d+)", re.IGNORECASE)

NO_ACTION = {"action": "no_action"}


class TeamReportService:
    """Turns chat reports into tips, upsells and job confirmations."""

    def __init__(self, ports: ServicePorts | None = None, pricing: PricingService | None = None) -> None:
        self.ports = ports or ServicePorts()
        self.pricing = pricing or PricingService(self.ports)

    async def handle_text(self, telegram_user_id: str, chat_id: str, text: str) -> dict[str, Any]:
        text = (text or "").strip()
        if not text:
            return dict(NO_ACTION)

        if text.lower() in ("/start", "/help", "help"):
            await self._reply(chat_id, messages.help_text())
            return dict(NO_ACTION)

        tip = TIP_RE.search(text)
        upsell = UPSELL_RE.search(text)
        confirm = CONFIRM_RE.search(text)
        if not (tip or upsell or confirm):
            return dict(NO_ACTION)

        member = await self.ports.teams.get_member_by_telegram(telegram_user_id)
        if member is None:
            logger.info(f"Report from unknown Telegram user {telegram_user_id} ignored")
            await self._reply(chat_id, "You are not registered as a team member.")
            return {"action": "no_action", "reason": "Unknown team member"}

        if tip:
            return await self._record_tip(member, chat_id, int(tip.group(1)), float(tip.group(2)))
        if upsell:
            return await self._record_upsell(member, chat_id, int(upsell.group(1)), upsell.group(2))
        return await self._confirm(member, chat_id, int(confirm.group(1)))

    async def _job_or_reply(self, chat_id: str, job_number: int) -> Job | None:
        job = await self.ports.jobs.get_by_number(job_number)
        if job is None:
            await self._reply(chat_id, f"❓ Job #{job_number} not found.")
        return job

    async def _record_tip(self, member: TeamMember, chat_id: str, job_number: int, amount: float) -> dict[str, Any]:
        if amount <= 0:
            await self._reply(chat_id, "⚠️ Tip amount must be greater than $0.")
            return {"action": "no_action", "reason": "Invalid tip amount"}

        job = await self._job_or_reply(chat_id, job_number)
        if job is None:
            return {"action": "no_action", "reason": "Job not found"}

        tip = await self.ports.earnings.add_tip(
            job.id, amount, team_id=member.team_id or job.team_id, member_id=member.id, reported_via="telegram",
        )
        await self.ports.audit.log_event(
            "TIP_REPORTED",
            source="telegram",
            message=f"Tip ${amount:.2f} on job {job.short_ref} reported by {member.name}",
            job_id=job.id,
            metadata={"member_id": member.id, "amount": amount},
        )
        await self._reply(chat_id, messages.earnings_recorded("tip", amount, job))
        return {"action": "tip_recorded", "jobId": job.id, "tipId": tip.id, "amount": amount}

    async def _record_upsell(self, member: TeamMember, chat_id: str, job_number: int,
                             description: str) -> dict[str, Any]:
        job = await self._job_or_reply(chat_id, job_number)
        if job is None:
            return {"action": "no_action", "reason": "Job not found"}

        upsell_type, value = await self.pricing.upsell_value(description)
        upsell = await self.ports.earnings.add_upsell(
            job.id, upsell_type, value, team_id=member.team_id or job.team_id, member_id=member.id,
        )
        await self.ports.audit.log_event(
            "UPSELL_REPORTED",
            source="telegram",
            message=f"Upsell '{upsell_type}' on job {job.short_ref} reported by {member.name}",
            job_id=job.id,
            metadata={"member_id": member.id, "upsell_type": upsell_type, "value": value},
        )
        await self._reply(chat_id, messages.earnings_recorded("upsell", value, job))
        return {"action": "upsell_recorded", "jobId": job.id, "upsellId": upsell.id,
                "upsellType": upsell_type, "value": value}

    async def _confirm(self, member: TeamMember, chat_id: str, job_number: int) -> dict[str, Any]:
        job = await self._job_or_reply(chat_id, job_number)
        if job is None:
            return {"action": "no_action", "reason": "Job not found"}

        if job.assigned_team_lead and job.assigned_team_lead != member.id:
            await self._reply(chat_id, f"⚠️ Job {job.short_ref} is assigned to another team lead.")
            return {"action": "no_action", "reason": "Job assigned to another team lead"}

        await self.ports.jobs.update(job.id, {"team_confirmed": True})
        await self.ports.audit.log_event(
            "JOB_CONFIRMED",
            source="telegram",
            message=f"Job {job.short_ref} confirmed by {member.name}",
            job_id=job.id,
            metadata={"member_id": member.id},
        )
        await self._reply(chat_id, messages.job_confirmed(job))
        return {"action": "job_confirmed", "jobId": job.id}

    async def _reply(self, chat_id: str, text: str) -> None:
        try:
            await self.ports.messenger.send(chat_id, text)
        except DeliveryError as exc:
            logger.warning(f"Telegram reply to {chat_id} failed: {exc.detail}")
