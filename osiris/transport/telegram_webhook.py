# osiris/transport/telegram_webhook.py
"""
Telegram Bot API webhook handler for the team bot.

Handles:
- callback_query "accept_job:<id>" / "pass_job:<id>" from job offer buttons
- text reports from team leads (tips, upsells, confirmations)

Security features:
- X-Telegram-Bot-Api-Secret-Token header validation (if configured)
- Per-user rate limiting (anti-spam)
- Always 200 once authenticated, so Telegram never redelivers an update
"""
from __future__ import annotations

import time
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from osiris.config import settings
from osiris.core.dispatch import messages
from osiris.core.dispatch.broadcast import JobBroadcastService
from osiris.core.dispatch.team_reports import TeamReportService
from osiris.core.errors import ConflictError, DeliveryError, NotFoundError, ValidationError
from osiris.core.wiring import ServicePorts
from osiris.infra.logging_config import LogContext, get_logger
from osiris.infra.metrics import AppMetrics, inc_counter, observe_histogram
from osiris.infra.rate_limiter import InMemoryRateLimiter
from osiris.transport.security import verify_telegram_secret

logger = get_logger(__name__)


_user_rate_limiter: InMemoryRateLimiter | None = None


def _get_user_rate_limiter() -> InMemoryRateLimiter:
    global _user_rate_limiter
    if _user_rate_limiter is None:
        _user_rate_limiter = InMemoryRateLimiter(
            max_requests=settings.telegram_rate_limit_per_minute,
            window_seconds=60,
        )
    return _user_rate_limiter


def parse_callback_data(data: str) -> tuple[str, str] | None:
    """'accept_job:<id>' → ("accept", id); 'pass_job:<id>' → ("pass", id)."""
    if data.startswith(messages.ACCEPT_PREFIX):
        job_id = data[len(messages.ACCEPT_PREFIX):]
        return ("accept", job_id) if job_id else None
    if data.startswith(messages.PASS_PREFIX):
        job_id = data[len(messages.PASS_PREFIX):]
        return ("pass", job_id) if job_id else None
    return None


class TelegramUpdateHandler:
    """Dispatches one Telegram Update to the broadcast or report services."""

    def __init__(
        self,
        ports: ServicePorts | None = None,
        broadcast: JobBroadcastService | None = None,
        reports: TeamReportService | None = None,
    ) -> None:
        self.ports = ports or ServicePorts()
        self.broadcast = broadcast or JobBroadcastService(self.ports)
        self.reports = reports or TeamReportService(self.ports)

    async def handle(self, update: dict[str, Any]) -> dict[str, Any]:
        callback = update.get("callback_query")
        if callback:
            return await self.handle_callback(callback)

        message = update.get("message") or {}
        text = message.get("text")
        if not text:
            return {"action": "no_action"}

        user_id = str((message.get("from") or {}).get("id", ""))
        chat_id = str((message.get("chat") or {}).get("id", ""))
        return await self.reports.handle_text(user_id, chat_id, text)

    async def handle_callback(self, callback: dict[str, Any]) -> dict[str, Any]:
        callback_id = str(callback.get("id", ""))
        user_id = str((callback.get("from") or {}).get("id", ""))

        parsed = parse_callback_data(callback.get("data") or "")
        if parsed is None:
            await self._answer(callback_id)
            return {"action": "no_action"}
        action, job_id = parsed

        member = await self.ports.teams.get_member_by_telegram(user_id)
        if member is None:
            await self._answer(callback_id, "You are not registered as a team lead.")
            return {"action": "no_action", "reason": "Unknown team member"}

        log = LogContext(logger, job_id=job_id, member_id=member.id)

        if action == "accept":
            try:
                job = await self.broadcast.claim(job_id, member)
            except ConflictError as exc:
                await self._answer(callback_id, "Sorry, this job was already claimed.")
                return {"action": "claim", "success": False, "reason": exc.detail}
            except (NotFoundError, ValidationError) as exc:
                log.warning(f"Claim rejected: {exc.detail}")
                await self._answer(callback_id, exc.detail)
                return {"action": "claim", "success": False, "reason": exc.detail}

            await self._answer(callback_id, f"Job {job.short_ref} is yours!")
            return {"action": "claim", "success": True, "job_id": job.id}

        try:
            result = await self.broadcast.decline(job_id, member)
        except NotFoundError as exc:
            await self._answer(callback_id, exc.detail)
            return {"action": "pass", "success": False, "reason": exc.detail}

        await self._answer(callback_id, "Passed.")
        return {"action": "pass", "success": True, **result}

    async def _answer(self, callback_id: str, text: str | None = None) -> None:
        if not callback_id:
            return
        try:
            await self.ports.messenger.answer_callback(callback_id, text)
        except DeliveryError as exc:
            logger.warning(f"answerCallbackQuery failed: {exc.detail}")


def _rate_limit_key(update: dict[str, Any]) -> str | None:
    source = update.get("callback_query") or update.get("message") or {}
    user = source.get("from") or {}
    return str(user["id"]) if "id" in user else None


async def telegram_webhook_handler(request: Request, handler: TelegramUpdateHandler | None = None) -> JSONResponse:
    """
    Handle a Telegram Bot API webhook Update (POST).

    Returns 200 for every authenticated request: a failing update is logged,
    never redelivered.
    """
    start_time = time.time()

    if not verify_telegram_secret(request.headers.get("X-Telegram-Bot-Api-Secret-Token")):
        logger.error("Telegram webhook: secret token verification failed")
        AppMetrics.webhook_validation_failed("telegram")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        update = await request.json()
    except ValueError:
        logger.warning("Telegram webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    if not isinstance(update, dict):
        return JSONResponse({"ok": True}, status_code=200)

    user_key = _rate_limit_key(update)
    if user_key:
        allowed, _ = _get_user_rate_limiter().is_allowed(user_key)
        if not allowed:
            logger.warning(f"Telegram user {user_key} rate limited")
            inc_counter("telegram_webhook_rate_limited")
            return JSONResponse({"ok": True, "action": "rate_limited"}, status_code=200)

    kind = "callback_query" if "callback_query" in update else "message"
    AppMetrics.webhook_received("telegram", kind)

    try:
        result = await (handler or TelegramUpdateHandler()).handle(update)
    except Exception as exc:
        logger.error(f"Telegram update {update.get('update_id')} failed: {exc}", exc_info=True)
        inc_counter("telegram_webhook_errors")
        return JSONResponse({"ok": True, "error": "processing_failed"}, status_code=200)

    observe_histogram("telegram_webhook_duration_ms", (time.time() - start_time) * 1000)
    return JSONResponse({"ok": True, **result}, status_code=200)
