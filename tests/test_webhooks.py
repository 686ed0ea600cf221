# tests/test_webhooks.py
"""HTTP contract of the Stripe and Housecall Pro webhooks."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from osiris.core.errors import ValidationError
from osiris.transport.http_app import app
from osiris.transport.security import compute_hcp_signature

STRIPE_SECRET = "whsec_test_secret"
HCP_SECRET = "hcp-webhook-secret"


def _stripe_signature(payload: bytes, secret: str = STRIPE_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def client():
    return TestClient(app)


# ============================================================================
# Stripe
# ============================================================================

class TestStripeWebhook:
    URL = "/api/webhooks/stripe"
    EVENT = json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"metadata": {"job_id": "job-1", "payment_type": "DEPOSIT"}}},
    }).encode()

    @patch("osiris.transport.stripe_client.settings")
    def test_verified_event_is_applied(self, mock_settings, client):
        mock_settings.stripe_webhook_secret = STRIPE_SECRET
        payments = AsyncMock()
        payments.handle_event.return_value = {"received": True}

        with patch("osiris.transport.stripe_webhook.PaymentService", return_value=payments):
            response = client.post(self.URL, content=self.EVENT,
                                   headers={"Stripe-Signature": _stripe_signature(self.EVENT)})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        event = payments.handle_event.await_args[0][0]
        assert event["type"] == "checkout.session.completed"

    @patch("osiris.transport.stripe_client.settings")
    def test_bad_signature(self, mock_settings, client):
        mock_settings.stripe_webhook_secret = STRIPE_SECRET

        response = client.post(self.URL, content=self.EVENT,
                               headers={"Stripe-Signature": _stripe_signature(self.EVENT, "whsec_other")})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}

    @patch("osiris.transport.stripe_client.settings")
    def test_not_configured(self, mock_settings, client):
        mock_settings.stripe_webhook_secret = None

        response = client.post(self.URL, content=self.EVENT)

        assert response.status_code == 400
        assert response.json() == {"error": "Webhook not configured"}

    @patch("osiris.transport.stripe_client.settings")
    def test_handler_failure_asks_for_redelivery(self, mock_settings, client):
        mock_settings.stripe_webhook_secret = STRIPE_SECRET
        payments = AsyncMock()
        payments.handle_event.side_effect = RuntimeError("db down")

        with patch("osiris.transport.stripe_webhook.PaymentService", return_value=payments):
            response = client.post(self.URL, content=self.EVENT,
                                   headers={"Stripe-Signature": _stripe_signature(self.EVENT)})

        assert response.status_code == 500


# ============================================================================
# Housecall Pro
# ============================================================================

class TestHcpWebhook:
    URL = "/api/webhooks/housecall-pro"
    BODY = json.dumps({"event": "job.completed", "data": {"id": "job_abc"}}).encode()

    @patch("osiris.transport.security.settings")
    def test_signed_payload(self, mock_settings, client):
        mock_settings.hcp_webhook_secret = HCP_SECRET
        sync = AsyncMock()
        sync.handle.return_value = {"event": "job.completed", "jobId": "job-1"}

        with patch("osiris.transport.hcp_webhook.HcpSyncService", return_value=sync):
            response = client.post(self.URL, content=self.BODY,
                                   headers={"X-HCP-Signature": compute_hcp_signature(HCP_SECRET, self.BODY)})

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"received": True}}
        sync.handle.assert_awaited_once_with({"event": "job.completed", "data": {"id": "job_abc"}})

    @patch("osiris.transport.security.settings")
    def test_bad_signature_is_401(self, mock_settings, client):
        mock_settings.hcp_webhook_secret = HCP_SECRET

        response = client.post(self.URL, content=self.BODY, headers={"X-HCP-Signature": "deadbeef"})

        assert response.status_code == 401

    @patch("osiris.transport.security.settings")
    def test_invalid_json(self, mock_settings, client):
        mock_settings.hcp_webhook_secret = None

        response = client.post(self.URL, content=b"not json")

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid payload"

    @patch("osiris.transport.security.settings")
    def test_rejected_payload_is_400(self, mock_settings, client):
        mock_settings.hcp_webhook_secret = None
        sync = AsyncMock()
        sync.handle.side_effect = ValidationError("HCP job payload without id")

        with patch("osiris.transport.hcp_webhook.HcpSyncService", return_value=sync):
            response = client.post(self.URL, content=self.BODY)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "HCP job payload without id"}

    @patch("osiris.transport.security.settings")
    def test_processing_failure_is_500(self, mock_settings, client):
        mock_settings.hcp_webhook_secret = None
        sync = AsyncMock()
        sync.handle.side_effect = RuntimeError("boom")

        with patch("osiris.transport.hcp_webhook.HcpSyncService", return_value=sync):
            response = client.post(self.URL, content=self.BODY)

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Webhook processing failed"}
