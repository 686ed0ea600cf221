# osiris/transport/stripe_client.py
"""
Stripe: webhook signature verification and tip checkout sessions.

The ``stripe`` library is synchronous; checkout creation runs in a worker
thread so it never blocks the event loop.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

import stripe

from osiris.config import settings
from osiris.core.domain import Job, PaymentType
from osiris.core.errors import DeliveryError
from osiris.core.ports import TipCheckout
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import inc_counter

logger = get_logger(__name__)


class StripeNotConfigured(RuntimeError):
    pass


def verify_webhook(payload: bytes, signature: str | None) -> dict[str, Any]:
    """
    Verify ``Stripe-Signature`` and return the event as a plain dict.

    Raises:
        StripeNotConfigured: no webhook secret
        ValueError: payload is not JSON
        stripe.SignatureVerificationError: bad or missing signature
    """
    if not settings.stripe_webhook_secret:
        raise StripeNotConfigured("stripe_webhook_secret is not set")

    stripe.Webhook.construct_event(payload, signature or "", settings.stripe_webhook_secret)
    return json.loads(payload)


def _tip_urls(job: Job) -> tuple[str, str]:
    base = (settings.public_base_url or "").rstrip("/")
    return (
        f"{base}/tip/{job.id}?status=success&session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/tip/{job.id}?status=cancelled",
    )


class StripeTipCheckout(TipCheckout):

    async def create_tip_session(self, job: Job, amount: float) -> dict[str, Any]:
        if not settings.stripe_secret_key:
            raise DeliveryError("Stripe is not configured", retryable=False)

        success_url, cancel_url = _tip_urls(job)
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=settings.stripe_secret_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": "usd",
                            "product_data": {
                                "name": f"Tip for {settings.business_name} team",
                                "description": f"Job {job.short_ref}",
                            },
                            "unit_amount": int(round(amount * 100)),
                        },
                        "quantity": 1,
                    }
                ],
                metadata={"job_id": job.id, "payment_type": PaymentType.TIP.value},
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error(f"Stripe checkout creation failed: {exc}", extra={"job_id": job.id})
            inc_counter("stripe_checkout_failed")
            raise DeliveryError("Could not create checkout session", retryable=False) from exc

        inc_counter("stripe_checkout_created")
        return {"session_id": session["id"], "url": session["url"]}


_tip_checkout: StripeTipCheckout | None = None


def get_tip_checkout() -> StripeTipCheckout:
    global _tip_checkout
    if _tip_checkout is None:
        _tip_checkout = StripeTipCheckout()
    return _tip_checkout
