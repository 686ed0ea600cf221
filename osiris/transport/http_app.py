# osiris/transport/http_app.py
"""
OSIRIS HTTP application.

Security layers:
1. Signed: provider webhooks (Telegram secret token, Stripe signature,
   HCP HMAC) and QStash automation callbacks (JWT)
2. Cron: CRON_SECRET bearer
3. Dashboard: ADMIN_TOKEN bearer
4. Internal: /metrics and /health/detailed (internal network or METRICS_TOKEN)
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from osiris.config import settings
from osiris.core.errors import OsirisError
from osiris.core.tasks import TASK_HANDLERS
from osiris.infra.db_async import close_pool, init_pool
from osiris.infra.health_checks_async import get_async_health_checker
from osiris.infra.http_client import close_all_sessions
from osiris.infra.logging_config import get_logger, setup_logging
from osiris.infra.metrics import get_metrics_collector
from osiris.infra.pg_task_queue_async import get_task_queue
from osiris.infra.realtime import get_change_feed
from osiris.infra.schema_validator import validate_schema_version
from osiris.infra.task_worker import TaskWorker
from osiris.transport import automation_routes, cron_routes, dashboard_routes
from osiris.transport.hcp_webhook import hcp_webhook_handler
from osiris.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from osiris.transport.security import (
    check_configured_tokens,
    require_admin,
    require_metrics_auth,
    sanitize_error_message,
)
from osiris.transport.stripe_webhook import stripe_webhook_handler
from osiris.transport.telegram_webhook import telegram_webhook_handler

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)


def build_task_worker() -> TaskWorker:
    worker = TaskWorker(
        queue=get_task_queue(),
        poll_interval=settings.task_worker_poll_interval,
        batch_size=settings.task_worker_batch_size,
        base_retry_delay=settings.task_worker_base_retry_delay,
        stale_timeout=settings.task_worker_stale_timeout,
    )
    for task_type, handler in TASK_HANDLERS.items():
        worker.register(task_type, handler)
    return worker


def _check_production_config() -> None:
    """Refuse to boot a production process with unsafe settings."""
    missing = settings.validate_required_for_production()
    problems = [f"missing settings: {', '.join(missing)}"] if missing else []
    if len(settings.admin_token or "") < 32:
        problems.append("ADMIN_TOKEN shorter than 32 characters")
    if not settings.require_webhook_validation:
        problems.append("REQUIRE_WEBHOOK_VALIDATION is off")
    if settings.log_level.upper() == "DEBUG":
        problems.append("LOG_LEVEL=DEBUG")

    if problems:
        for problem in problems:
            logger.critical(f"Production config rejected: {problem}")
        raise RuntimeError(f"Unsafe production config: {'; '.join(problems)}")


# ----------------------------------------------------------------------------
# Lifespan
# ----------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(f"Starting OSIRIS: env={settings.app_env}, run_mode={settings.run_mode}")

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        _check_production_config()

    check_configured_tokens()

    # Validate schema version (does NOT run migrations)
    # Migrations should be run separately: python -m osiris.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}", extra=schema_result)
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m osiris.infra.migrate",
            exc_info=True,
        )
        raise

    # Dashboard change feed: only the web-facing processes serve /api/events
    feed = get_change_feed()
    if settings.run_mode in ("all", "web"):
        await feed.start()

    # Only start in "all" or "worker" mode to prevent duplicate processing.
    task_worker = None
    if settings.run_mode in ("all", "worker") and settings.task_worker_enabled:
        task_worker = build_task_worker()
        logger.info(f"Task worker handlers: {task_worker.list_handlers()}")
        await task_worker.start()
    elif not settings.task_worker_enabled:
        logger.info("Task worker skipped (task_worker_enabled=false)")
    else:
        logger.info(f"Task worker skipped (run_mode={settings.run_mode})")

    fastapi_app.state.task_worker = task_worker
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")

    if task_worker is not None:
        await task_worker.stop()

    await feed.stop()
    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ----------------------------------------------------------------------------
# App
# ----------------------------------------------------------------------------

app = FastAPI(
    title="OSIRIS",
    description="Cleaning operations backend: job dispatch, lead follow-up, reminders and payments",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# The dashboard is the only browser client; outside dev it must be listed in ALLOWED_ORIGINS
if settings.is_production or settings.is_staging:
    cors = dict(
        allow_origins=[o for o in settings.allowed_origins if o != "*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    cors = dict(allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.add_middleware(CORSMiddleware, **cors)

# Added last runs first: request id wraps everything
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ----------------------------------------------------------------------------
# Error envelopes
# ----------------------------------------------------------------------------

@app.exception_handler(OsirisError)
async def domain_exception_handler(request: Request, exc: OsirisError):
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(errors) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ----------------------------------------------------------------------------
# Probes
# ----------------------------------------------------------------------------

@app.get("/health")
def health():
    """Liveness check. Minimal output."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    result = await get_async_health_checker().run_checks(include_non_critical=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health():
    """Full check report. Internal network or METRICS_TOKEN."""
    return await get_async_health_checker().run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


# ----------------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------------

@app.post("/api/webhooks/telegram")
async def webhook_telegram(request: Request):
    """Team bot updates: offer buttons and text reports."""
    return await telegram_webhook_handler(request)


@app.post("/api/webhooks/stripe")
async def webhook_stripe(request: Request):
    return await stripe_webhook_handler(request)


@app.post("/api/webhooks/housecall-pro")
async def webhook_housecall_pro(request: Request):
    return await hcp_webhook_handler(request)


app.include_router(automation_routes.router)
app.include_router(cron_routes.router)
app.include_router(dashboard_routes.router)
app.include_router(dashboard_routes.public_router)


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------

@app.get("/admin/tasks", dependencies=[Depends(require_admin)])
async def admin_tasks_status(status: str | None = None, limit: int = 50):
    """Task queue counts by status plus the most recent tasks."""
    queue = get_task_queue()
    counts = await queue.count_by_status()
    recent = await queue.get_recent(limit=min(limit, 200), status=status)
    return {"counts": counts, "recent": [task.to_dict() for task in recent]}


@app.post("/admin/tasks/cleanup", dependencies=[Depends(require_admin)])
async def admin_tasks_cleanup():
    """Purge old completed/failed tasks and requeue stale running ones."""
    queue = get_task_queue()
    completed = await queue.cleanup_completed(ttl_days=settings.task_cleanup_completed_ttl_days)
    failed = await queue.cleanup_failed(ttl_days=settings.task_cleanup_failed_ttl_days)
    stale = await queue.reset_stale_running(timeout_seconds=settings.task_worker_stale_timeout)
    logger.info(f"Task cleanup: completed={completed}, failed={failed}, stale_reset={stale}")
    return {"deleted_completed": completed, "deleted_failed": failed, "reset_stale": stale}


@app.post("/admin/metrics/reset", dependencies=[Depends(require_admin)])
def admin_reset_metrics():
    logger.warning("Metrics reset triggered")
    get_metrics_collector().reset()
    return {"ok": True, "message": "Metrics reset"}


@app.get("/", include_in_schema=False)
def root_public():
    return HTMLResponse(
        "<!doctype html><html><head><meta charset='utf-8'>"
        "<title>OSIRIS</title></head><body>"
        "<h3>OSIRIS</h3><p>Service is running.</p>"
        "</body></html>"
    )


# ----------------------------------------------------------------------------
# Unknown routes
# ----------------------------------------------------------------------------

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "osiris.transport.http_app:app",
        host="0.0.0.0",
        port=8000,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
