# osiris/transport/hcp_webhook.py
"""
Housecall Pro webhook handler (POST /api/webhooks/housecall-pro).

Mirrors HCP jobs, customers and payments into the local store. Answers
500 on processing failure so HCP retries the delivery.
"""
from __future__ import annotations

import json

from fastapi import Request
from fastapi.responses import JSONResponse

from osiris.core.errors import ValidationError
from osiris.core.operations.hcp_sync import HcpSyncService
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import AppMetrics
from osiris.transport.security import InvalidSignature, verify_hcp_signature

logger = get_logger(__name__)

FAILURE = {"success": False, "error": "Webhook processing failed"}


async def hcp_webhook_handler(request: Request, sync: HcpSyncService | None = None) -> JSONResponse:
    body = await request.body()

    try:
        verify_hcp_signature(body, request.headers.get("X-HCP-Signature"))
    except InvalidSignature as exc:
        logger.warning(f"HCP webhook rejected: {exc}")
        AppMetrics.webhook_validation_failed("housecall_pro")
        return JSONResponse({"success": False, "error": "Invalid signature"}, status_code=401)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("HCP webhook: invalid JSON payload")
        return JSONResponse({"success": False, "error": "Invalid payload"}, status_code=400)

    if not isinstance(payload, dict):
        return JSONResponse({"success": False, "error": "Invalid payload"}, status_code=400)

    try:
        result = await (sync or HcpSyncService()).handle(payload)
    except ValidationError as exc:
        logger.warning(f"HCP webhook payload rejected: {exc.detail}")
        return JSONResponse({"success": False, "error": exc.detail}, status_code=400)
    except Exception as exc:
        logger.error(f"HCP webhook processing failed: {exc}", exc_info=True)
        return JSONResponse(FAILURE, status_code=500)

    logger.info(f"HCP webhook processed: {result}")
    return JSONResponse({"success": True, "data": {"received": True}}, status_code=200)
