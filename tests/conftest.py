# tests/conftest.py
"""
Pytest configuration and in-memory fakes for every service port.

Services receive a ``ServicePorts`` built from these fakes, so no test
needs a database or a network connection.
"""
from __future__ import annotations

import dataclasses
import itertools
import sys
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from osiris.core.domain import (  # noqa: E402
    Customer,
    Job,
    JobOffer,
    Lead,
    MemberRole,
    OfferResponse,
    OperatorException,
    PricingAddon,
    PricingRow,
    RainDayReschedule,
    Team,
    TeamMember,
    Tip,
    Upsell,
)
from osiris.core.errors import DeliveryError  # noqa: E402
from osiris.core.wiring import ServicePorts  # noqa: E402


def _in_range(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    return value is not None and start <= value < end


# ============================================================================
# REPOSITORIES
# ============================================================================

class FakeCustomers:
    def __init__(self, customers=()):
        self.customers: dict[str, Customer] = {c.id: c for c in customers}
        self._ids = itertools.count(1)

    async def get(self, customer_id):
        return self.customers.get(customer_id)

    async def get_by_hcp_id(self, hcp_customer_id):
        return next((c for c in self.customers.values() if c.hcp_customer_id == hcp_customer_id), None)

    async def create(self, fields):
        customer = Customer(id=f"cust-{next(self._ids)}", **fields)
        self.customers[customer.id] = customer
        return customer

    async def update(self, customer_id, fields):
        if customer_id not in self.customers:
            return None
        self.customers[customer_id] = dataclasses.replace(self.customers[customer_id], **fields)
        return self.customers[customer_id]


class FakeJobs:
    def __init__(self, jobs=(), customers: FakeCustomers | None = None):
        self.jobs: dict[str, Job] = {j.id: j for j in jobs}
        self.customers = customers
        self.reengagement_candidates: list[Job] = []
        self.rebooked_customers: set[str] = set()
        self._ids = itertools.count(1)
        self._numbers = itertools.count(2001)

    def _with_customer(self, job: Job) -> Job:
        if self.customers and job.customer_id in self.customers.customers:
            customer = self.customers.customers[job.customer_id]
            job = dataclasses.replace(job, customer_name=customer.name, customer_phone=customer.phone)
        return job

    async def get(self, job_id):
        return self.jobs.get(job_id)

    async def get_by_number(self, job_number):
        return next((j for j in self.jobs.values() if j.job_number == job_number), None)

    async def get_by_hcp_id(self, hcp_job_id):
        return next((j for j in self.jobs.values() if j.hcp_job_id == hcp_job_id), None)

    async def list(self, *, day=None, team_id=None, status=None, limit=50, offset=0):
        rows = [
            j for j in self.jobs.values()
            if (day is None or j.date == day)
            and (team_id is None or j.team_id == team_id)
            and (status is None or j.status == status)
        ]
        return rows[offset:offset + limit], len(rows)

    async def list_for_date(self, day, *, status=None):
        return [j for j in self.jobs.values() if j.date == day and (status is None or j.status == status)]

    async def list_between(self, start, end):
        return [j for j in self.jobs.values() if start <= j.date <= end]

    async def create(self, fields):
        fields = dict(fields)
        fields.setdefault("scheduled_time", "09:00")
        job = self._with_customer(Job(id=f"job-{next(self._ids)}", job_number=next(self._numbers), **fields))
        self.jobs[job.id] = job
        return job

    async def update(self, job_id, fields):
        if job_id not in self.jobs:
            return None
        self.jobs[job_id] = self._with_customer(dataclasses.replace(self.jobs[job_id], **fields))
        return self.jobs[job_id]

    async def append_note(self, job_id, note):
        job = self.jobs[job_id]
        self.jobs[job_id] = dataclasses.replace(job, notes=(job.notes or "") + note)

    async def try_assign(self, job_id, member_id, team_id):
        job = self.jobs.get(job_id)
        if job is None or job.assigned_team_lead:
            return None
        self.jobs[job_id] = dataclasses.replace(job, assigned_team_lead=member_id, team_id=team_id)
        return self.jobs[job_id]

    async def list_reengagement_candidates(self, completed_from, completed_to, limit):
        return self.reengagement_candidates[:limit]

    async def customer_has_job_since(self, customer_id, since):
        return customer_id in self.rebooked_customers


class FakeOffers:
    def __init__(self):
        self.offers: dict[str, JobOffer] = {}
        self._ids = itertools.count(1)

    async def record(self, job_id, member_id, phase, chat_id, message_id):
        offer = JobOffer(
            id=f"offer-{next(self._ids)}",
            job_id=job_id,
            member_id=member_id,
            phase=phase,
            telegram_chat_id=chat_id,
            telegram_message_id=message_id,
        )
        self.offers[offer.id] = offer
        return offer

    async def list_for_job(self, job_id):
        return [o for o in self.offers.values() if o.job_id == job_id]

    async def mark_response(self, offer_id, response):
        self.offers[offer_id] = dataclasses.replace(self.offers[offer_id], response=response)

    async def withdraw_open(self, job_id):
        changed = []
        for offer in list(self.offers.values()):
            if offer.job_id == job_id and offer.response == OfferResponse.PENDING.value:
                self.offers[offer.id] = dataclasses.replace(offer, response=OfferResponse.WITHDRAWN.value)
                changed.append(self.offers[offer.id])
        return changed

    def responses(self, job_id) -> dict[str, str]:
        return {o.member_id: o.response for o in self.offers.values() if o.job_id == job_id}


class FakeLeads:
    def __init__(self, leads=()):
        self.leads: dict[str, Lead] = {lead.id: lead for lead in leads}
        self._ids = itertools.count(1)

    async def get(self, lead_id):
        return self.leads.get(lead_id)

    async def create(self, fields):
        lead = Lead(id=f"lead-{next(self._ids)}", created_at=datetime.now(timezone.utc), **fields)
        self.leads[lead.id] = lead
        return lead

    async def update(self, lead_id, fields):
        if lead_id not in self.leads:
            return None
        self.leads[lead_id] = dataclasses.replace(self.leads[lead_id], **fields)
        return self.leads[lead_id]

    async def list(self, *, source=None, status=None, limit=50, offset=0):
        rows = [
            lead for lead in self.leads.values()
            if (source is None or lead.source == source) and (status is None or lead.status == status)
        ]
        return rows[offset:offset + limit], len(rows)

    async def list_created_between(self, start, end):
        return [lead for lead in self.leads.values() if _in_range(lead.created_at, start, end)]


class FakeTeams:
    def __init__(self, teams=(), members=()):
        self.teams: dict[str, Team] = {t.id: t for t in teams}
        self.members: dict[str, TeamMember] = {m.id: m for m in members}

    async def list_teams(self, *, active_only=False):
        return [t for t in self.teams.values() if t.active or not active_only]

    async def get_team(self, team_id):
        return self.teams.get(team_id)

    async def list_members(self, team_id=None):
        return [m for m in self.members.values() if team_id is None or m.team_id == team_id]

    async def available_members(self):
        return [m for m in self.members.values() if m.active and m.available]

    async def get_member(self, member_id):
        return self.members.get(member_id)

    async def get_member_by_telegram(self, telegram_id):
        return next((m for m in self.members.values() if m.telegram_id == telegram_id), None)


class FakeEarnings:
    def __init__(self):
        self.tips: list[Tip] = []
        self.upsells: list[Upsell] = []

    async def add_tip(self, job_id, amount, *, team_id, member_id, reported_via, stripe_session_id=None):
        if stripe_session_id and any(t.stripe_session_id == stripe_session_id for t in self.tips):
            return None
        tip = Tip(
            id=f"tip-{len(self.tips) + 1}", job_id=job_id, amount=amount, team_id=team_id,
            member_id=member_id, reported_via=reported_via, stripe_session_id=stripe_session_id,
            created_at=datetime.now(timezone.utc),
        )
        self.tips.append(tip)
        return tip

    async def add_upsell(self, job_id, upsell_type, value, *, team_id, member_id):
        upsell = Upsell(
            id=f"upsell-{len(self.upsells) + 1}", job_id=job_id, upsell_type=upsell_type, value=value,
            team_id=team_id, member_id=member_id, created_at=datetime.now(timezone.utc),
        )
        self.upsells.append(upsell)
        return upsell

    async def tips_between(self, start, end):
        return [t for t in self.tips if _in_range(t.created_at, start, end)]

    async def upsells_between(self, start, end):
        return [u for u in self.upsells if _in_range(u.created_at, start, end)]


class FakeAudit:
    def __init__(self):
        self.automation_logs: list[dict[str, Any]] = []
        self.events: list[dict[str, Any]] = []
        self.exceptions: list[OperatorException] = []
        self.reschedules: list[RainDayReschedule] = []

    async def log_automation(self, automation_type, source, payload, status, error=None):
        self.automation_logs.append({
            "type": automation_type, "source": source, "payload": payload, "status": status, "error": error,
        })

    async def log_event(self, event_type, *, source, message, job_id=None, lead_id=None, metadata=None):
        self.events.append({
            "type": event_type, "source": source, "message": message,
            "job_id": job_id, "lead_id": lead_id, "metadata": metadata or {},
        })

    async def create_exception(self, exception_type, description, *, job_id=None, lead_id=None,
                               created_by="automation"):
        exc = OperatorException(
            id=f"exc-{len(self.exceptions) + 1}", type=exception_type, description=description,
            created_by=created_by, job_id=job_id, lead_id=lead_id,
        )
        self.exceptions.append(exc)
        return exc

    async def save_reschedule(self, record):
        self.reschedules.append(record)
        return record

    def event_types(self) -> list[str]:
        return [e["type"] for e in self.events]


class FakePricing:
    def __init__(self, tiers=(), addons=()):
        self.tiers: list[PricingRow] = list(tiers)
        self.addons: list[PricingAddon] = list(addons)

    async def list_tiers(self):
        return list(self.tiers)

    async def list_addons(self):
        return list(self.addons)

    async def replace_tiers(self, rows):
        self.tiers = list(rows)

    async def replace_addons(self, addons):
        self.addons = list(addons)


class FakeQueue:
    def __init__(self):
        self.enqueued: list[dict[str, Any]] = []

    async def enqueue(self, task_type, payload, *, priority=0, max_attempts=5, delay_seconds=0):
        self.enqueued.append({"type": task_type, "payload": payload, "delay": delay_seconds})
        return f"task-{len(self.enqueued)}"

    def of_type(self, task_type: str) -> list[dict[str, Any]]:
        return [t for t in self.enqueued if t["type"] == task_type]


# ============================================================================
# MESSAGING
# ============================================================================

class FakeMessenger:
    def __init__(self, *, control_configured: bool = True):
        self.sent: list[dict[str, Any]] = []
        self.edits: list[dict[str, Any]] = []
        self.answers: list[dict[str, Any]] = []
        self.control: list[str] = []
        self.failing_chats: set[str] = set()
        self.control_configured = control_configured
        self._message_ids = itertools.count(500)

    async def send(self, chat_id, text, *, buttons=None):
        if chat_id in self.failing_chats:
            raise DeliveryError("Forbidden: bot was blocked by the user", retryable=False)
        self.sent.append({"chat_id": chat_id, "text": text, "buttons": buttons})
        return next(self._message_ids)

    async def edit(self, chat_id, message_id, text):
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})

    async def answer_callback(self, callback_query_id, text=None):
        self.answers.append({"id": callback_query_id, "text": text})

    async def send_control(self, text):
        if not self.control_configured:
            return False
        self.control.append(text)
        return True

    def sent_to(self, chat_id: str) -> list[str]:
        return [m["text"] for m in self.sent if m["chat_id"] == chat_id]


class FakeSms:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send_sms(self, to, text):
        if self.fail:
            raise DeliveryError("OpenPhone unavailable", retryable=True)
        self.sent.append((to, text))
        return f"msg-{len(self.sent)}"


class FakeCaller:
    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    async def place_call(self, *, phone, name, previous_contact, notes=""):
        self.calls.append({"phone": phone, "name": name, "previous_contact": previous_contact, "notes": notes})
        return f"call-{len(self.calls)}"


class FakeCheckout:
    def __init__(self):
        self.sessions: list[tuple[str, float]] = []

    async def create_tip_session(self, job, amount):
        self.sessions.append((job.id, amount))
        return {"session_id": f"cs_test_{len(self.sessions)}", "url": "https://checkout.stripe.com/c/pay/cs_test"}


# ============================================================================
# BUILDERS
# ============================================================================

def make_job(**overrides) -> Job:
    fields = dict(
        id="job-1",
        job_number=1042,
        date=date(2026, 3, 12),
        scheduled_time="10:00",
        customer_id="cust-1",
        customer_name="Jane Doe",
        customer_phone="+15125550100",
        address="123 Main St",
        city="Austin",
        estimated_hours=3,
        total_amount=180.0,
    )
    fields.update(overrides)
    return Job(**fields)


def make_member(**overrides) -> TeamMember:
    fields = dict(
        id="member-1",
        team_id="team-1",
        name="Alice",
        phone="+15125550111",
        telegram_id="1001",
        role=MemberRole.TEAM_LEAD.value,
    )
    fields.update(overrides)
    return TeamMember(**fields)


def make_lead(**overrides) -> Lead:
    fields = dict(id="lead-1", name="Bob Smith", phone="+15125550122", source="website")
    fields.update(overrides)
    return Lead(**fields)


def make_team(**overrides) -> Team:
    fields = dict(id="team-1", name="Team Alpha", daily_target=1000.0)
    fields.update(overrides)
    return Team(**fields)


@dataclasses.dataclass
class Fakes:
    customers: FakeCustomers
    jobs: FakeJobs
    offers: FakeOffers
    leads: FakeLeads
    teams: FakeTeams
    earnings: FakeEarnings
    audit: FakeAudit
    pricing: FakePricing
    queue: FakeQueue
    messenger: FakeMessenger
    sms: FakeSms
    caller: FakeCaller
    checkout: FakeCheckout

    def ports(self) -> ServicePorts:
        return ServicePorts(**{f.name: getattr(self, f.name) for f in dataclasses.fields(self)})


@pytest.fixture
def fakes() -> Fakes:
    customers = FakeCustomers()
    return Fakes(
        customers=customers,
        jobs=FakeJobs(customers=customers),
        offers=FakeOffers(),
        leads=FakeLeads(),
        teams=FakeTeams(),
        earnings=FakeEarnings(),
        audit=FakeAudit(),
        pricing=FakePricing(),
        queue=FakeQueue(),
        messenger=FakeMessenger(),
        sms=FakeSms(),
        caller=FakeCaller(),
        checkout=FakeCheckout(),
    )


@pytest.fixture
def ports(fakes) -> ServicePorts:
    return fakes.ports()
