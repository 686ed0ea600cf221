# osiris/infra/health_checks_async.py
"""
Readiness and detailed health.

``/ready`` runs only the critical checks; ``/health/detailed`` runs all of
them and appends the migration state.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict

from osiris.infra.db_async import get_pool
from osiris.infra.logging_config import get_logger
from osiris.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("jobs", "customers", "leads", "teams", "team_members", "job_offers", "tasks")

SLOW_DB_SECONDS = 1.0

# Pending tasks older than this mean the worker is not keeping up
TASK_BACKLOG_WARN_SECONDS = 300

_TASK_QUEUE_SQL = """
SELECT
  count(*) FILTER (WHERE status = 'pending')::int AS pending,
  count(*) FILTER (WHERE status = 'running')::int AS running,
  count(*) FILTER (WHERE status = 'failed')::int AS failed,
  COALESCE(EXTRACT(EPOCH FROM now() - min(scheduled_at)
    FILTER (WHERE status = 'pending' AND scheduled_at <= now())), 0)::float AS oldest_due_seconds
FROM tasks
"""


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _result(status: HealthStatus, details: str, **extra) -> Dict[str, Any]:
    return {"status": status, "details": details, **extra}


class AsyncHealthCheck:
    name = "base"
    critical = True
    # Status reported when check() itself blows up
    failure_status = HealthStatus.UNHEALTHY

    async def check(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def safe_check(self) -> Dict[str, Any]:
        try:
            return await self.check()
        except Exception as exc:
            logger.error(f"Health check '{self.name}' failed", exc_info=True)
            return _result(self.failure_status, f"{self.name} check failed", error=str(exc)[:200])


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """SELECT 1, required tables present, response time."""

    name = "database"

    async def check(self) -> Dict[str, Any]:
        started = time.perf_counter()
        pool = await get_pool()
        async with pool.acquire() as conn:
            if await conn.fetchval("SELECT 1") != 1:
                return _result(HealthStatus.UNHEALTHY, "Unexpected query result")
            missing = [
                table for table in REQUIRED_TABLES
                if await conn.fetchval("SELECT to_regclass($1)", table) is None
            ]

        if missing:
            return _result(HealthStatus.UNHEALTHY, "Missing required tables", error=f"Missing: {', '.join(missing)}")

        elapsed = round(time.perf_counter() - started, 4)
        if elapsed > SLOW_DB_SECONDS:
            return _result(HealthStatus.DEGRADED, f"Slow database response: {elapsed:.3f}s", response_time=elapsed)
        return _result(HealthStatus.HEALTHY, "Database operational", response_time=elapsed)


class AsyncTaskQueueHealthCheck(AsyncHealthCheck):
    """Queue depth and the age of the oldest due task."""

    name = "task_queue"
    critical = False
    failure_status = HealthStatus.DEGRADED

    async def check(self) -> Dict[str, Any]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(_TASK_QUEUE_SQL)

        depth = {
            "pending": row["pending"],
            "running": row["running"],
            "failed": row["failed"],
            "oldest_due_seconds": round(row["oldest_due_seconds"], 1),
        }
        if row["oldest_due_seconds"] > TASK_BACKLOG_WARN_SECONDS:
            return _result(HealthStatus.DEGRADED, "Task backlog growing", **depth)
        return _result(HealthStatus.HEALTHY, "Task queue operational", **depth)


class AsyncHealthChecker:
    def __init__(self):
        self.checks: list[AsyncHealthCheck] = [AsyncDatabaseHealthCheck(), AsyncTaskQueueHealthCheck()]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...},
             "schema": {...}, "timestamp": float}
        """
        results: Dict[str, Any] = {}
        overall = HealthStatus.HEALTHY

        for check in self.checks:
            if check.critical or include_non_critical:
                result = await check.safe_check()
                results[check.name] = result
                if result["status"] is HealthStatus.UNHEALTHY and check.critical:
                    overall = HealthStatus.UNHEALTHY
                elif result["status"] is not HealthStatus.HEALTHY and overall is HealthStatus.HEALTHY:
                    overall = HealthStatus.DEGRADED

        try:
            schema = await get_schema_info()
        except Exception as exc:
            logger.warning(f"Schema info unavailable: {exc}")
            schema = {"error": str(exc)[:200]}

        return {"status": overall.value, "checks": results, "schema": schema, "timestamp": time.time()}


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    return _async_health_checker
