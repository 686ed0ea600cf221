# osiris/transport/cron_routes.py
"""
Cron endpoints (GET and POST, Authorization: Bearer <CRON_SECRET>).

- /api/cron/unified-daily          reminders, team briefings, re-engagement
- /api/cron/monthly-reengagement   re-engagement sweep on its own
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from osiris.core.automation.daily import DailyRunner, get_daily_runner
from osiris.core.automation.reengagement import MonthlyReengagementService, get_reengagement_service
from osiris.infra.logging_config import get_logger
from osiris.transport.security import require_cron_auth

logger = get_logger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_auth)])


@router.api_route("/unified-daily", methods=["GET", "POST"])
async def unified_daily(runner: DailyRunner = Depends(get_daily_runner)):
    logger.info("Unified daily cron started")
    result = await runner.run()
    logger.info(f"Unified daily cron finished: {result['results']}")
    return result


@router.api_route("/monthly-reengagement", methods=["GET", "POST"])
async def monthly_reengagement(service: MonthlyReengagementService = Depends(get_reengagement_service)):
    return await service.run()
