# osiris/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional, Any, Dict, List


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    BOOKED = "booked"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    LOST = "lost"


# Leads in these states are never contacted by the follow-up sequence again
TERMINAL_LEAD_STATUSES = frozenset({
    LeadStatus.SCHEDULED.value,
    LeadStatus.BOOKED.value,
    LeadStatus.COMPLETED.value,
    LeadStatus.LOST.value,
})

# Leads counted as "booked" by the metrics
BOOKED_LEAD_STATUSES = frozenset({
    LeadStatus.BOOKED.value,
    LeadStatus.SCHEDULED.value,
    LeadStatus.COMPLETED.value,
})


class LeadSource(str, Enum):
    WEBSITE = "website"
    PHONE = "phone"
    SMS = "sms"
    REFERRAL = "referral"
    GOOGLE = "google"
    FACEBOOK = "facebook"
    HOUSECALL_PRO = "housecall_pro"
    OTHER = "other"


class MemberRole(str, Enum):
    TEAM_LEAD = "team_lead"
    TECHNICIAN = "technician"


class BroadcastPhase(str, Enum):
    INITIAL = "initial"
    URGENT = "urgent"
    ESCALATE = "escalate"


class FollowupAction(str, Enum):
    TEXT = "text"
    CALL = "call"
    DOUBLE_CALL = "double_call"


class ReminderType(str, Enum):
    DAY_BEFORE = "day_before"
    ON_MY_WAY = "on_my_way"


class PaymentType(str, Enum):
    DEPOSIT = "DEPOSIT"
    FINAL = "FINAL"
    TIP = "TIP"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    DEPOSIT_PAID = "deposit_paid"
    FULLY_PAID = "fully_paid"


class OfferResponse(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PASSED = "passed"
    WITHDRAWN = "withdrawn"


EXTERIOR_SERVICE_KEYWORDS = ("window", "gutter", "pressure", "power wash", "exterior")


def _iso(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class _Serializable:
    """asdict() with dates/enums rendered for JSON responses."""

    def to_dict(self) -> Dict[str, Any]:
        return {k: _iso(v) for k, v in asdict(self).items()}


# ============================================================================
# OPERATIONAL ENTITIES
# ============================================================================

@dataclass
class Customer(_Serializable):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    hcp_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Job(_Serializable):
    """
    A cleaning job. ``customer_name`` / ``customer_phone`` are joined in from
    the customers table when the job is loaded.
    """
    id: str
    job_number: int
    date: date
    scheduled_time: str  # "HH:MM", local business time
    customer_id: Optional[str] = None
    customer_name: str = ""
    customer_phone: Optional[str] = None
    address: str = ""
    city: str = ""
    service_type: str = "standard"
    job_type: str = "Standard Clean"
    status: str = JobStatus.SCHEDULED.value
    estimated_hours: float = 0.0
    total_amount: float = 0.0
    team_id: Optional[str] = None
    assigned_team_lead: Optional[str] = None
    team_confirmed: bool = False
    notes: str = ""
    payment_status: str = PaymentStatus.UNPAID.value
    paid: bool = False
    lead_id: Optional[str] = None
    hcp_job_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    day_before_reminder_sent_at: Optional[datetime] = None
    review_request_sent_at: Optional[datetime] = None
    monthly_followup_sent_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    deposit_session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def short_ref(self) -> str:
        return f"#{self.job_number}"

    @property
    def is_exterior(self) -> bool:
        text = f"{self.service_type} {self.job_type}".lower()
        return any(keyword in text for keyword in EXTERIOR_SERVICE_KEYWORDS)

    @property
    def is_assigned(self) -> bool:
        return bool(self.assigned_team_lead)


@dataclass
class Lead(_Serializable):
    id: str
    name: str
    phone: str
    email: Optional[str] = None
    source: str = LeadSource.OTHER.value
    status: str = LeadStatus.NEW.value
    service_type: Optional[str] = None
    notes: str = ""
    followup_stage: int = 0
    last_contact_at: Optional[datetime] = None
    converted_to_job_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LEAD_STATUSES


@dataclass
class Team(_Serializable):
    id: str
    name: str
    daily_target: float = 0.0
    active: bool = True
    created_at: Optional[datetime] = None


@dataclass
class TeamMember(_Serializable):
    id: str
    team_id: Optional[str]
    name: str
    phone: Optional[str] = None
    telegram_id: Optional[str] = None
    role: str = MemberRole.TECHNICIAN.value
    active: bool = True
    available: bool = True

    @property
    def can_receive_offers(self) -> bool:
        return (
            self.active
            and self.available
            and self.role == MemberRole.TEAM_LEAD.value
            and bool(self.telegram_id)
        )


@dataclass
class JobOffer(_Serializable):
    """One Telegram message offering a job to one team lead."""
    id: str
    job_id: str
    member_id: str
    phase: str
    telegram_chat_id: str
    telegram_message_id: Optional[int] = None
    response: str = OfferResponse.PENDING.value
    sent_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None


@dataclass
class Tip(_Serializable):
    id: str
    job_id: str
    amount: float
    team_id: Optional[str] = None
    member_id: Optional[str] = None
    reported_via: str = "telegram"
    stripe_session_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Upsell(_Serializable):
    id: str
    job_id: str
    upsell_type: str
    value: float
    team_id: Optional[str] = None
    member_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class OperatorException(_Serializable):
    """A to-do row for the operator, created when automation gives up."""
    id: str
    type: str
    description: str
    status: str = "pending"
    created_by: str = "automation"
    job_id: Optional[str] = None
    lead_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class RainDayReschedule(_Serializable):
    id: str
    affected_date: date
    target_date: date
    initiated_by: str = "system"
    jobs_affected: int = 0
    jobs_successfully_rescheduled: int = 0
    jobs_failed: List[Dict[str, Any]] = field(default_factory=list)
    notifications_sent: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ============================================================================
# PRICING
# ============================================================================

@dataclass
class PricingRow(_Serializable):
    service_type: str
    bedrooms: int
    bathrooms: float
    max_sq_ft: int
    price: float
    price_min: float
    price_max: float
    labor_hours: float
    cleaners: int
    hours_per_cleaner: float


@dataclass
class PricingAddon(_Serializable):
    addon_key: str
    label: str
    minutes: int = 0
    flat_price: Optional[float] = None
    price_multiplier: float = 1.0
    included_in: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    active: bool = True


# ============================================================================
# METRICS (read models)
# ============================================================================

@dataclass
class DailyMetrics(_Serializable):
    date: date
    revenue: float = 0.0
    target: float = 0.0
    jobs_completed: int = 0
    jobs_scheduled: int = 0
    leads_in: int = 0
    leads_booked: int = 0
    close_rate: int = 0  # percent, rounded
    tips_total: float = 0.0
    upsells_total: float = 0.0


@dataclass
class TeamDailyMetrics(_Serializable):
    team_id: str
    team_name: str
    date: date
    revenue: float = 0.0
    target: float = 0.0
    jobs_completed: int = 0
    jobs_scheduled: int = 0
    tips_total: float = 0.0
    upsells_total: float = 0.0


@dataclass
class LeaderboardEntry(_Serializable):
    rank: int
    team_id: str
    team_name: str
    tips_total: float = 0.0
    upsells_total: float = 0.0
    total_earnings: float = 0.0
    jobs_completed: int = 0
