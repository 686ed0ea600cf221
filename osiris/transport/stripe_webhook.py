# osiris/transport/stripe_webhook.py
"""
Stripe webhook handler (POST /api/webhooks/stripe).

- 400 when the Stripe-Signature header does not verify
- 500 when applying the event fails, so Stripe redelivers it
- {"received": true} otherwise, including events we do not act on
"""
from __future__ import annotations

import stripe
from fastapi import Request
from fastapi.responses import JSONResponse

from osiris.core.operations.payments import PaymentService
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics
from osiris.transport.stripe_client import StripeNotConfigured, verify_webhook

logger = get_logger(__name__)


async def stripe_webhook_handler(request: Request, payments: PaymentService | None = None) -> JSONResponse:
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")

    try:
        event = verify_webhook(payload, signature)
    except StripeNotConfigured:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return JSONResponse({"error": "Webhook not configured"}, status_code=400)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook: signature verification failed")
        AppMetrics.webhook_validation_failed("stripe")
        return JSONResponse({"error": "Invalid signature"}, status_code=400)
    except ValueError:
        logger.warning("Stripe webhook: invalid payload")
        return JSONResponse({"error": "Invalid payload"}, status_code=400)

    try:
        result = await (payments or PaymentService()).handle_event(event)
    except Exception as exc:
        logger.error(f"Stripe event {event.get('id')} ({event.get('type')}) failed: {exc}", exc_info=True)
        return JSONResponse({"error": "Webhook handler failed"}, status_code=500)

    return JSONResponse(result, status_code=200)
