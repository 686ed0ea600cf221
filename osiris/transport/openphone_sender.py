# osiris/transport/openphone_sender.py
"""
OpenPhone outbound SMS.

POST https://api.openphone.com/v1/messages with the raw API key in the
Authorization header. Sender is ``openphone_phone_number_id`` ("PN..." id or
E.164 number).

Error classification (OpenPhoneSendError.retryable):
- 401/403 (bad key, number not owned) → NOT retryable
- 400/422 (invalid recipient)         → NOT retryable
- 429, 5xx, network                   → retryable
"""
from __future__ import annotations

from typing import Optional

import aiohttp

from osiris.config import settings
from osiris.core.errors import DeliveryError
from osiris.core.ports import SmsSender
from osiris.infra.http_client import get_sender_session
from osiris.infra.logging_config import get_logger, mask_phone
from osiris.infra.metrics import inc_counter

logger = get_logger(__name__)

OPENPHONE_MESSAGES_URL = "https://api.openphone.com/v1/messages"


class OpenPhoneSendError(DeliveryError):
    def __init__(self, status: int, message: str, *, retryable: bool = False):
        self.status = status
        super().__init__(f"OpenPhone API error {status}: {message}", retryable=retryable)


def _error_message(body: dict | None) -> str:
    if not body:
        return "Unknown error"
    return str(body.get("message") or body.get("error") or body)


class OpenPhoneSmsSender(SmsSender):

    async def send_sms(self, to: str, text: str) -> Optional[str]:
        """
        Send one SMS.

        Returns:
            OpenPhone message id

        Raises:
            OpenPhoneSendError: On API errors (check .retryable)
        """
        if not settings.openphone_enabled:
            raise OpenPhoneSendError(0, "OpenPhone is not configured", retryable=False)

        payload = {
            "from": settings.openphone_phone_number_id,
            "to": [to],
            "content": text,
        }
        headers = {"Authorization": settings.openphone_api_key}

        try:
            session = get_sender_session()
            async with session.post(OPENPHONE_MESSAGES_URL, json=payload, headers=headers) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None

                if resp.status in (200, 201, 202):
                    message_id = ((body or {}).get("data") or {}).get("id")
                    logger.info(f"SMS sent: to={mask_phone(to)}, id={message_id}")
                    inc_counter("sms_outbound_sent")
                    return message_id

                error = _error_message(body)
                retryable = resp.status == 429 or resp.status >= 500
                log = logger.error if resp.status in (401, 403) else logger.warning
                log(f"OpenPhone send failed: to={mask_phone(to)}, status={resp.status}, error={error}")
                inc_counter("sms_outbound_error")
                raise OpenPhoneSendError(resp.status, error, retryable=retryable)

        except OpenPhoneSendError:
            raise
        except aiohttp.ClientError as exc:
            logger.error(f"OpenPhone connection error: {exc}", exc_info=True)
            inc_counter("sms_outbound_connection_error")
            raise OpenPhoneSendError(0, str(exc), retryable=True)
        except TimeoutError as exc:
            logger.error(f"OpenPhone timeout: to={mask_phone(to)}")
            inc_counter("sms_outbound_connection_error")
            raise OpenPhoneSendError(0, "timeout", retryable=True) from exc


_sms_sender: OpenPhoneSmsSender | None = None


def get_sms_sender() -> OpenPhoneSmsSender:
    global _sms_sender
    if _sms_sender is None:
        _sms_sender = OpenPhoneSmsSender()
    return _sms_sender
