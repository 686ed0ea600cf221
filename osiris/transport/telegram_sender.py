# osiris/transport/telegram_sender.py
"""
Telegram Bot API client for the team bot and the control bot.

The team bot carries job offers, briefings and report replies; the control
bot carries escalations to the operator chat and falls back to the team bot
token when it has none of its own. Requests go through the shared sender
session from osiris.infra.http_client.

Failures raise TelegramSendError. Its ``retryable`` flag is false for auth
problems, blocked bots and bad requests, true for 429s, 5xx and network errors.
"""
from __future__ import annotations

from typing import Any, Optional

import aiohttp

from osiris.config import settings
from osiris.core.errors import DeliveryError
from osiris.core.ports import Buttons, TeamMessenger
from osiris.infra.http_client import get_sender_session
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


# HTTP status -> (metric suffix, retryable); anything unlisted retries
_ERROR_CLASSES = {
    400: ("bad_request", False),
    401: ("auth_error", False),
    403: ("forbidden", False),
    429: ("rate_limited", True),
}


def _bot_url(method: str, token: str | None = None) -> str:
    bot_token = token or settings.telegram_bot_token
    if not bot_token:
        raise TelegramSendError(0, None, "Telegram bot token is not configured", retryable=False)
    return f"{TELEGRAM_API_BASE}/bot{bot_token}/{method}"


def inline_keyboard(buttons: Buttons) -> dict:
    """Rows of (label, callback_data) → Telegram reply_markup."""
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row]
            for row in buttons
        ]
    }


def _mask(chat_id: str) -> str:
    return chat_id[:4] + "***" if len(chat_id) > 4 else chat_id


class TelegramSendError(DeliveryError):
    """A Bot API call failed. ``status`` is 0 for connection-level errors."""

    def __init__(self, status: int, error_code: int | None, message: str, *, retryable: bool = False):
        self.status = status
        self.error_code = error_code
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}", retryable=retryable)


# ---------------------------------------------------------------------------
# Bot API methods
# ---------------------------------------------------------------------------

async def send_message(
    chat_id: str,
    text: str,
    *,
    buttons: Buttons | None = None,
    token: str | None = None,
) -> dict:
    """
    Send an HTML message, optionally with inline keyboard rows of
    (label, callback_data). ``token`` overrides the team bot token.
    """
    payload: dict[str, Any] = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }
    if buttons:
        payload["reply_markup"] = inline_keyboard(buttons)

    return await _send_request(_bot_url("sendMessage", token), payload, str(chat_id))


async def edit_message_text(chat_id: str, message_id: int, text: str, token: str | None = None) -> dict:
    """Replace the text of a sent message. The inline keyboard is dropped."""
    payload = {"chat_id": chat_id, "message_id": message_id, "text": text, "parse_mode": "HTML"}
    return await _send_request(_bot_url("editMessageText", token), payload, str(chat_id))


async def answer_callback_query(callback_query_id: str, text: str | None = None, token: str | None = None) -> dict:
    """Stop the loading spinner on an inline button, with an optional toast."""
    payload: dict[str, Any] = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text
    return await _send_request(_bot_url("answerCallbackQuery", token), payload, "callback")


# ---------------------------------------------------------------------------
# TeamMessenger adapter
# ---------------------------------------------------------------------------

class TelegramTeamMessenger(TeamMessenger):
    """TeamMessenger backed by the team bot and the control bot."""

    async def send(self, chat_id: str, text: str, *, buttons: Optional[Buttons] = None) -> Optional[int]:
        body = await send_message(chat_id, text, buttons=buttons)
        result = body.get("result")
        return result.get("message_id") if isinstance(result, dict) else None

    async def edit(self, chat_id: str, message_id: int, text: str) -> None:
        await edit_message_text(chat_id, message_id, text)

    async def answer_callback(self, callback_query_id: str, text: Optional[str] = None) -> None:
        await answer_callback_query(callback_query_id, text)

    async def send_control(self, text: str) -> bool:
        chat_id = settings.telegram_control_chat_id
        if not chat_id:
            return False
        await send_message(chat_id, text, token=settings.control_bot_token)
        inc_counter("telegram_control_sent")
        return True


_team_messenger: TelegramTeamMessenger | None = None


def get_team_messenger() -> TelegramTeamMessenger:
    global _team_messenger
    if _team_messenger is None:
        _team_messenger = TelegramTeamMessenger()
    return _team_messenger


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def _classify(status: int, body: dict | None, chat_id: str) -> TelegramSendError:
    body = body or {}
    description = body.get("description", "Unknown error")
    error_code = body.get("error_code")
    # Telegram reports a revoked token as error_code 401 even behind other statuses
    status_class = 401 if error_code == 401 else status
    suffix, retryable = _ERROR_CLASSES.get(status_class, ("error", True))

    inc_counter(f"telegram_outbound_{suffix}")
    if status_class == 429:
        retry_after = body.get("parameters", {}).get("retry_after", 30)
        logger.warning(f"Telegram rate limited, retry_after={retry_after}s")
    elif retryable:
        logger.error(f"Telegram API error: status={status}, code={error_code}, msg={description}")
    else:
        logger.warning(f"Telegram rejected request to {_mask(chat_id)}: {status} {description}")
    return TelegramSendError(status, error_code, description, retryable=retryable)


async def _send_request(url: str, payload: dict, chat_id: str) -> dict:
    try:
        async with get_sender_session().post(url, json=payload) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
                body = None
            status = resp.status
    except aiohttp.ClientError as exc:
        logger.error(f"Telegram API connection error: {exc}")
        inc_counter("telegram_outbound_connection_error")
        raise TelegramSendError(0, None, str(exc), retryable=True) from exc
    except TimeoutError as exc:
        logger.error("Telegram API timeout")
        inc_counter("telegram_outbound_connection_error")
        raise TelegramSendError(0, None, "timeout", retryable=True) from exc

    if status == 200 and body and body.get("ok"):
        inc_counter("telegram_outbound_sent")
        logger.debug(f"Telegram request ok: to={_mask(chat_id)}")
        return body
    raise _classify(status, body, chat_id)
