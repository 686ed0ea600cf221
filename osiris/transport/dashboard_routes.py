# osiris/transport/dashboard_routes.py
"""
JSON API behind the operator dashboard (Authorization: Bearer <ADMIN_TOKEN>),
plus the two public tip endpoints used by the customer tip page.

Responses follow the dashboard envelope ``{"success": true, "data": ...}``;
list endpoints return the paginated shape ``{data, total, page, per_page,
total_pages}``.
"""
from __future__ import annotations

import asyncio
import json
from datetime import date
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from osiris.config import settings
from osiris.core.dispatch.broadcast import JobBroadcastService, get_broadcast_service
from osiris.core.errors import ValidationError
from osiris.core.operations.payments import PaymentService, get_payment_service
from osiris.core.operations.pricing import PricingService, get_pricing_service
from osiris.core.operations.rain_day import RainDayService, get_rain_day_service
from osiris.core.operations.records import RecordsService, get_records_service
from osiris.core.operations.reporting import ReportingService, get_reporting_service
from osiris.infra.logging_config import get_logger
from osiris.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from osiris.infra.realtime import ChangeFeed, get_change_feed
from osiris.transport.schemas import (
    JobCreateIn,
    LeadCreateIn,
    PricingUpdateIn,
    RainDayIn,
    TipCreateIn,
)
from osiris.transport.security import require_admin

logger = get_logger(__name__)

SSE_KEEPALIVE_SECONDS = 25.0

router = APIRouter(prefix="/api", tags=["dashboard"], dependencies=[Depends(require_admin)])
public_router = APIRouter(prefix="/api/tip", tags=["tip"])


def _ok(data: Any, message: str | None = None, status_code: int = 200):
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if status_code == 200:
        return body
    return JSONResponse(status_code=status_code, content=body)


# ============================================================================
# JOBS
# ============================================================================

@router.get("/jobs")
async def list_jobs(
    day: Optional[date] = Query(default=None, alias="date"),
    team_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
    records: RecordsService = Depends(get_records_service),
):
    return await records.list_jobs(day=day, team_id=team_id, status=status, page=page, per_page=per_page)


@router.post("/jobs")
async def create_job(body: JobCreateIn, records: RecordsService = Depends(get_records_service)):
    job = await records.create_job(body.model_dump(exclude={"broadcast"}), broadcast=body.broadcast)
    return _ok(job.to_dict(), "Job created successfully", status_code=201)


@router.post("/jobs/{job_id}/broadcast")
async def broadcast_job(job_id: str, broadcast: JobBroadcastService = Depends(get_broadcast_service)):
    task_id = await broadcast.start(job_id)
    return _ok({"job_id": job_id, "task_id": task_id}, "Broadcast queued")


# ============================================================================
# LEADS
# ============================================================================

@router.get("/leads")
async def list_leads(
    source: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
    records: RecordsService = Depends(get_records_service),
):
    return await records.list_leads(source=source, status=status, page=page, per_page=per_page)


@router.post("/leads")
async def create_lead(body: LeadCreateIn, records: RecordsService = Depends(get_records_service)):
    lead = await records.create_lead(body.model_dump())
    return _ok(lead.to_dict(), "Lead created successfully", status_code=201)


# ============================================================================
# TEAMS / METRICS / EARNINGS
# ============================================================================

@router.get("/teams")
async def teams(include_metrics: bool = False, reporting: ReportingService = Depends(get_reporting_service)):
    return _ok(await reporting.teams_overview(include_metrics=include_metrics))


@router.get("/metrics")
async def metrics(
    range_: str = Query(default="today", alias="range"),
    day: Optional[date] = Query(default=None, alias="date"),
    reporting: ReportingService = Depends(get_reporting_service),
):
    return _ok(await reporting.metrics(range_, day))


@router.get("/earnings")
async def earnings(days: int = 7, reporting: ReportingService = Depends(get_reporting_service)):
    return _ok(await reporting.earnings(days))


@router.get("/leaderboard")
async def leaderboard(period: str = "week", reporting: ReportingService = Depends(get_reporting_service)):
    entries = await reporting.leaderboard(period)
    return _ok([e.to_dict() for e in entries])


# ============================================================================
# RAIN DAY
# ============================================================================

@router.get("/rain-day")
async def rain_day_preview(
    day: Optional[date] = Query(default=None, alias="date"),
    rain_day: RainDayService = Depends(get_rain_day_service),
):
    if day is None:
        raise ValidationError("date parameter is required")
    return _ok(await rain_day.preview(day))


@router.post("/rain-day")
async def rain_day_reschedule(body: RainDayIn, rain_day: RainDayService = Depends(get_rain_day_service)):
    record = await rain_day.reschedule(body.affected_date, body.target_date, body.initiated_by)
    return _ok(
        record.to_dict(),
        f"Successfully rescheduled {record.jobs_successfully_rescheduled} of {record.jobs_affected} jobs",
    )


# ============================================================================
# PRICING
# ============================================================================

@router.get("/pricing")
async def get_pricing(pricing: PricingService = Depends(get_pricing_service)):
    return _ok(await pricing.get_table())


@router.put("/pricing")
async def update_pricing(body: PricingUpdateIn, pricing: PricingService = Depends(get_pricing_service)):
    addons = [a.to_domain() for a in body.addons] if body.addons is not None else None
    await pricing.save([t.to_domain() for t in body.tiers], addons)
    return _ok(await pricing.get_table(), "Pricing saved")


@router.post("/pricing/reset")
async def reset_pricing(pricing: PricingService = Depends(get_pricing_service)):
    await pricing.reset()
    return _ok(await pricing.get_table(), "Pricing reset to defaults")


@router.get("/pricing/quote")
async def pricing_quote(
    service_type: str = "standard",
    bedrooms: int = Query(ge=0),
    bathrooms: float = Query(ge=0),
    sqft: Optional[int] = Query(default=None, ge=0),
    addons: str = "",
    pricing: PricingService = Depends(get_pricing_service),
):
    addon_keys = [key.strip() for key in addons.split(",") if key.strip()]
    return _ok(await pricing.quote(service_type, bedrooms, bathrooms, sqft, addon_keys))


# ============================================================================
# REALTIME (SSE)
# ============================================================================

def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def event_stream(request: Request, feed: ChangeFeed) -> AsyncIterator[str]:
    queue = feed.subscribe()
    try:
        yield _sse({"type": "connected", "message": "Subscribed to real-time updates"})
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            yield _sse(event)
    finally:
        feed.unsubscribe(queue)


@router.get("/events")
async def events(request: Request, feed: ChangeFeed = Depends(get_change_feed)):
    return StreamingResponse(
        event_stream(request, feed),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ============================================================================
# TIP FLOW (public)
# ============================================================================

_tip_rate_limiter: RateLimitDependency | None = None


async def tip_rate_limit(request: Request) -> None:
    global _tip_rate_limiter
    if _tip_rate_limiter is None:
        _tip_rate_limiter = RateLimitDependency(
            InMemoryRateLimiter(max_requests=settings.rate_limit_per_minute, window_seconds=60),
            trust_proxy_headers=settings.trust_proxy_headers,
        )
    await _tip_rate_limiter(request)


@public_router.get("/job-info", dependencies=[Depends(tip_rate_limit)])
async def tip_job_info(
    job_id: str = Query(alias="jobId", min_length=1),
    payments: PaymentService = Depends(get_payment_service),
):
    return _ok(await payments.tip_job_info(job_id))


@public_router.post("/create", dependencies=[Depends(tip_rate_limit)])
async def tip_create(body: TipCreateIn, payments: PaymentService = Depends(get_payment_service)):
    return _ok(await payments.create_tip_checkout(body.job_id, body.amount))
