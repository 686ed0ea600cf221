# osiris/core/ports.py
from __future__ import annotations
from datetime import date, datetime
from typing import Protocol, Optional, Any

from osiris.core.domain import (
    Customer,
    Job,
    JobOffer,
    Lead,
    OperatorException,
    PricingAddon,
    PricingRow,
    RainDayReschedule,
    Team,
    TeamMember,
    Tip,
    Upsell,
)

# Inline keyboard: rows of (label, callback_data)
Buttons = list[list[tuple[str, str]]]


# ============================================================================
# REPOSITORIES
# ============================================================================

class JobRepository(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...
    async def get_by_number(self, job_number: int) -> Optional[Job]: ...
    async def get_by_hcp_id(self, hcp_job_id: str) -> Optional[Job]: ...

    async def list(
        self,
        *,
        day: Optional[date] = None,
        team_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]: ...

    async def list_for_date(self, day: date, *, status: Optional[str] = None) -> list[Job]: ...
    async def list_between(self, start: date, end: date) -> list[Job]: ...
    async def create(self, fields: dict[str, Any]) -> Job: ...
    async def update(self, job_id: str, fields: dict[str, Any]) -> Optional[Job]: ...
    async def append_note(self, job_id: str, note: str) -> None: ...

    async def try_assign(self, job_id: str, member_id: str, team_id: Optional[str]) -> Optional[Job]:
        """
        Atomically assign the job to ``member_id`` if nobody holds it yet.

        Returns the updated job, or None when the job was already assigned.
        """
        ...

    async def list_reengagement_candidates(
        self, completed_from: datetime, completed_to: datetime, limit: int,
    ) -> list[Job]: ...

    async def customer_has_job_since(self, customer_id: str, since: datetime) -> bool: ...


class CustomerRepository(Protocol):
    async def get(self, customer_id: str) -> Optional[Customer]: ...
    async def get_by_hcp_id(self, hcp_customer_id: str) -> Optional[Customer]: ...
    async def create(self, fields: dict[str, Any]) -> Customer: ...
    async def update(self, customer_id: str, fields: dict[str, Any]) -> Optional[Customer]: ...


class OfferRepository(Protocol):
    async def record(
        self,
        job_id: str,
        member_id: str,
        phase: str,
        chat_id: str,
        message_id: Optional[int],
    ) -> JobOffer: ...

    async def list_for_job(self, job_id: str) -> list[JobOffer]: ...
    async def mark_response(self, offer_id: str, response: str) -> None: ...

    async def withdraw_open(self, job_id: str) -> list[JobOffer]:
        """Mark all pending offers of a job withdrawn; returns the offers that changed."""
        ...


class LeadRepository(Protocol):
    async def get(self, lead_id: str) -> Optional[Lead]: ...
    async def create(self, fields: dict[str, Any]) -> Lead: ...
    async def update(self, lead_id: str, fields: dict[str, Any]) -> Optional[Lead]: ...

    async def list(
        self,
        *,
        source: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Lead], int]: ...

    async def list_created_between(self, start: datetime, end: datetime) -> list[Lead]: ...


class TeamRepository(Protocol):
    async def list_teams(self, *, active_only: bool = False) -> list[Team]: ...
    async def get_team(self, team_id: str) -> Optional[Team]: ...
    async def list_members(self, team_id: Optional[str] = None) -> list[TeamMember]: ...
    async def available_members(self) -> list[TeamMember]: ...
    async def get_member(self, member_id: str) -> Optional[TeamMember]: ...
    async def get_member_by_telegram(self, telegram_id: str) -> Optional[TeamMember]: ...


class EarningsRepository(Protocol):
    async def add_tip(
        self,
        job_id: str,
        amount: float,
        *,
        team_id: Optional[str],
        member_id: Optional[str],
        reported_via: str,
        stripe_session_id: Optional[str] = None,
    ) -> Optional[Tip]: ...

    async def add_upsell(
        self,
        job_id: str,
        upsell_type: str,
        value: float,
        *,
        team_id: Optional[str],
        member_id: Optional[str],
    ) -> Upsell: ...

    async def tips_between(self, start: datetime, end: datetime) -> list[Tip]: ...
    async def upsells_between(self, start: datetime, end: datetime) -> list[Upsell]: ...


class AuditRepository(Protocol):
    async def log_automation(
        self,
        automation_type: str,
        source: str,
        payload: dict[str, Any],
        status: str,
        error: Optional[str] = None,
    ) -> None: ...

    async def log_event(
        self,
        event_type: str,
        *,
        source: str,
        message: str,
        job_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def create_exception(
        self,
        exception_type: str,
        description: str,
        *,
        job_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        created_by: str = "automation",
    ) -> OperatorException: ...

    async def save_reschedule(self, record: RainDayReschedule) -> RainDayReschedule: ...


class PricingRepository(Protocol):
    async def list_tiers(self) -> list[PricingRow]: ...
    async def list_addons(self) -> list[PricingAddon]: ...
    async def replace_tiers(self, rows: list[PricingRow]) -> None: ...
    async def replace_addons(self, addons: list[PricingAddon]) -> None: ...


class TaskQueue(Protocol):
    async def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str: ...


# ============================================================================
# MESSAGING
# ============================================================================

class TeamMessenger(Protocol):
    """Telegram: team bot for leads, control bot for the operator chat."""

    async def send(self, chat_id: str, text: str, *, buttons: Optional[Buttons] = None) -> Optional[int]:
        """Send an HTML message; returns the Telegram message_id."""
        ...

    async def edit(self, chat_id: str, message_id: int, text: str) -> None: ...
    async def answer_callback(self, callback_query_id: str, text: Optional[str] = None) -> None: ...

    async def send_control(self, text: str) -> bool:
        """Send to the operator control chat. False when no control chat is configured."""
        ...


class SmsSender(Protocol):
    async def send_sms(self, to: str, text: str) -> Optional[str]: ...


class VoiceCaller(Protocol):
    async def place_call(
        self,
        *,
        phone: str,
        name: str,
        previous_contact: str,
        notes: str = "",
    ) -> Optional[str]: ...


class TipCheckout(Protocol):
    async def create_tip_session(self, job: Job, amount: float) -> dict[str, Any]:
        """Create a hosted checkout for a tip; returns {"session_id", "url"}."""
        ...
