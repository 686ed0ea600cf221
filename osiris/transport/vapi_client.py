# osiris/transport/vapi_client.py
"""
VAPI outbound calls for lead follow-up.

The assistant receives ``previousContact`` ("text" / "call_no_answer") and
free-form ``notes`` as variable values so its opener can reference earlier
attempts.
"""
from __future__ import annotations

from typing import Optional

import aiohttp

from osiris.config import settings
from osiris.core.errors import DeliveryError
from osiris.core.ports import VoiceCaller
from osiris.infra.http_client import get_sender_session
from osiris.infra.logging_config import get_logger, mask_phone
from osiris.infra.metrics import inc_counter

logger = get_logger(__name__)

VAPI_CALL_URL = "https://api.vapi.ai/call"


class VapiCallError(DeliveryError):
    def __init__(self, status: int, message: str, *, retryable: bool = False):
        self.status = status
        super().__init__(f"VAPI error {status}: {message}", retryable=retryable)


def build_call_payload(*, phone: str, name: str, previous_contact: str, notes: str = "") -> dict:
    return {
        "assistantId": settings.vapi_assistant_id,
        "phoneNumberId": settings.vapi_phone_number_id,
        "customer": {"number": phone, "name": name},
        "assistantOverrides": {
            "variableValues": {
                "customerName": name,
                "businessName": settings.business_name,
                "previousContact": previous_contact,
                "notes": notes,
            }
        },
    }


class VapiVoiceCaller(VoiceCaller):

    async def place_call(
        self,
        *,
        phone: str,
        name: str,
        previous_contact: str,
        notes: str = "",
    ) -> Optional[str]:
        if not settings.vapi_enabled:
            raise VapiCallError(0, "VAPI is not configured", retryable=False)

        payload = build_call_payload(phone=phone, name=name, previous_contact=previous_contact, notes=notes)
        headers = {"Authorization": f"Bearer {settings.vapi_api_key}"}

        try:
            session = get_sender_session()
            async with session.post(VAPI_CALL_URL, json=payload, headers=headers) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None

                if resp.status in (200, 201):
                    call_id = (body or {}).get("id")
                    logger.info(f"Call placed: to={mask_phone(phone)}, id={call_id}")
                    inc_counter("vapi_calls_placed")
                    return call_id

                error = str((body or {}).get("message") or "Unknown error")
                retryable = resp.status == 429 or resp.status >= 500
                logger.warning(f"VAPI call failed: to={mask_phone(phone)}, status={resp.status}, error={error}")
                inc_counter("vapi_calls_failed")
                raise VapiCallError(resp.status, error, retryable=retryable)

        except VapiCallError:
            raise
        except aiohttp.ClientError as exc:
            logger.error(f"VAPI connection error: {exc}", exc_info=True)
            inc_counter("vapi_calls_failed")
            raise VapiCallError(0, str(exc), retryable=True)
        except TimeoutError as exc:
            logger.error(f"VAPI timeout: to={mask_phone(phone)}")
            inc_counter("vapi_calls_failed")
            raise VapiCallError(0, "timeout", retryable=True) from exc


_voice_caller: VapiVoiceCaller | None = None


def get_voice_caller() -> VapiVoiceCaller:
    global _voice_caller
    if _voice_caller is None:
        _voice_caller = VapiVoiceCaller()
    return _voice_caller
