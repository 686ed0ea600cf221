# osiris/transport/schemas.py
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from osiris.core.domain import BroadcastPhase, FollowupAction, PricingAddon, PricingRow


# ============================================================================
# AUTOMATION (QStash payloads, camelCase on the wire)
# ============================================================================

class JobBroadcastIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    phase: BroadcastPhase
    team_lead_ids: Optional[list[str]] = Field(default=None, alias="teamLeadIds")


class LeadFollowupIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lead_id: str = Field(alias="leadId", min_length=1)
    lead_phone: Optional[str] = Field(default=None, alias="leadPhone")
    lead_name: Optional[str] = Field(default=None, alias="leadName")
    stage: int = Field(ge=1, le=10)
    action: FollowupAction


class SendReminderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    customer_phone: Optional[str] = Field(default=None, alias="customerPhone")
    customer_name: Optional[str] = Field(default=None, alias="customerName")
    type: str
    eta: Optional[str] = None
    team_lead_name: Optional[str] = Field(default=None, alias="teamLeadName")


# ============================================================================
# DASHBOARD
# ============================================================================

class JobCreateIn(BaseModel):
    date: date
    scheduled_time: str = Field(default="09:00", pattern=r"^\d{1,2}:\d{2}$")
    address: str = Field(min_length=1, max_length=300)
    city: str = ""
    customer_id: Optional[str] = None
    customer_name: Optional[str] = Field(default=None, max_length=200)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    customer_email: Optional[str] = Field(default=None, max_length=200)
    service_type: str = "standard"
    job_type: Optional[str] = None
    estimated_hours: float = Field(default=0.0, ge=0)
    total_amount: float = Field(default=0.0, ge=0)
    team_id: Optional[str] = None
    notes: str = ""
    broadcast: bool = False


class LeadCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=1, max_length=32)
    email: Optional[str] = Field(default=None, max_length=200)
    source: str = "website"
    service_type: Optional[str] = None
    notes: str = ""


class RainDayIn(BaseModel):
    affected_date: date
    target_date: date
    initiated_by: Optional[str] = None


class PricingRowIn(BaseModel):
    service_type: str
    bedrooms: int = Field(ge=0)
    bathrooms: float = Field(ge=0)
    max_sq_ft: int
    price: float
    price_min: float
    price_max: float
    labor_hours: float = Field(ge=0)
    cleaners: int = Field(ge=1)
    hours_per_cleaner: float = Field(ge=0)

    def to_domain(self) -> PricingRow:
        return PricingRow(**self.model_dump())


class PricingAddonIn(BaseModel):
    addon_key: str = Field(min_length=1, max_length=64)
    label: str
    minutes: int = Field(default=0, ge=0)
    flat_price: Optional[float] = None
    price_multiplier: float = 1.0
    included_in: list[str] = []
    keywords: list[str] = []
    active: bool = True

    def to_domain(self) -> PricingAddon:
        return PricingAddon(**self.model_dump())


class PricingUpdateIn(BaseModel):
    tiers: list[PricingRowIn] = Field(min_length=1)
    addons: Optional[list[PricingAddonIn]] = None


class TipCreateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    amount: float
