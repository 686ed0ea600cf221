# osiris/transport/middleware.py
"""
HTTP middleware stack.

Registered outermost-first in http_app: request id, access log, error
envelope, security headers.
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from osiris.infra.logging_config import LogContext, get_logger
from osiris.infra.metrics import inc_counter, observe_histogram
from osiris.transport.security import SecurityHeaders

logger = get_logger(__name__)

TELEGRAM_WEBHOOK_PATH = "/api/webhooks/telegram"

# Probes hit these every few seconds; they are counted but not logged
QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Honour an incoming X-Request-ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line plus http_* metrics per request"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        line = f"{request.method} {path}"
        log = LogContext(logger, request_id=_request_id(request))
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            log.error(
                f"{line} raised {exc.__class__.__name__} after {_elapsed_ms(started)}ms",
                exc_info=True,
            )
            raise

        duration_ms = _elapsed_ms(started)
        inc_counter("http_requests_total", method=request.method, status=str(response.status_code))
        observe_histogram("http_request_duration_ms", duration_ms, method=request.method)

        if path not in QUIET_PATHS:
            client = request.client.host if request.client else "-"
            log.info(
                f"{line} -> {response.status_code} in {duration_ms}ms",
                extra={"client_ip": client, "status_code": response.status_code, "duration_ms": duration_ms},
            )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn an unhandled exception into a JSON 500 carrying the request id"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = _request_id(request)
            logger.error(
                f"Unhandled {exc.__class__.__name__} on {request.url.path}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            inc_counter("http_unhandled_errors_total", error=exc.__class__.__name__)

            # Telegram redelivers anything but a 200
            if request.url.path == TELEGRAM_WEBHOOK_PATH:
                return JSONResponse({"ok": True}, status_code=200)

            return JSONResponse(
                {"error": "Internal server error", "request_id": request_id},
                status_code=500,
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        return SecurityHeaders.add_security_headers(await call_next(request))
