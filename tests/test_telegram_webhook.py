# tests/test_telegram_webhook.py
"""Tests for the team bot webhook: callback buttons, text reports, HTTP contract."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from osiris.transport import telegram_webhook
from osiris.transport.http_app import app
from osiris.transport.telegram_webhook import TelegramUpdateHandler, parse_callback_data

from tests.conftest import make_job, make_member


def _callback(data: str, user_id: int = 1001, callback_id: str = "cb-1") -> dict:
    return {
        "update_id": 1,
        "callback_query": {"id": callback_id, "from": {"id": user_id}, "data": data},
    }


def _message(text: str, user_id: int = 1001, chat_id: int = -100500) -> dict:
    return {
        "update_id": 2,
        "message": {"message_id": 9, "from": {"id": user_id}, "chat": {"id": chat_id}, "text": text},
    }


@pytest.fixture
def handler(fakes, ports):
    fakes.teams.members["member-1"] = make_member()
    fakes.jobs.jobs["job-1"] = make_job(job_number=77)
    return TelegramUpdateHandler(ports)


# ============================================================================
# Callback data
# ============================================================================

class TestParseCallbackData:
    def test_accept(self):
        assert parse_callback_data("accept_job:abc-123") == ("accept", "abc-123")

    def test_pass(self):
        assert parse_callback_data("pass_job:abc-123") == ("pass", "abc-123")

    def test_missing_id(self):
        assert parse_callback_data("accept_job:") is None

    def test_unknown_prefix(self):
        assert parse_callback_data("delete_job:1") is None


# ============================================================================
# Update handler
# ============================================================================

class TestUpdateHandler:
    @pytest.mark.asyncio
    async def test_accept_claims_job(self, handler, fakes):
        result = await handler.handle(_callback("accept_job:job-1"))

        assert result == {"action": "claim", "success": True, "job_id": "job-1"}
        assert fakes.jobs.jobs["job-1"].assigned_team_lead == "member-1"
        assert fakes.messenger.answers == [{"id": "cb-1", "text": "Job #77 is yours!"}]

    @pytest.mark.asyncio
    async def test_accept_already_claimed(self, handler, fakes):
        fakes.jobs.jobs["job-1"] = make_job(job_number=77, assigned_team_lead="other")

        result = await handler.handle(_callback("accept_job:job-1"))

        assert result["success"] is False
        assert fakes.messenger.answers[0]["text"] == "Sorry, this job was already claimed."

    @pytest.mark.asyncio
    async def test_accept_unknown_job(self, handler, fakes):
        result = await handler.handle(_callback("accept_job:nope"))

        assert result["success"] is False
        assert fakes.messenger.answers[0]["text"] == "Job not found"

    @pytest.mark.asyncio
    async def test_pass(self, handler, fakes):
        result = await handler.handle(_callback("pass_job:job-1"))

        assert result["action"] == "pass"
        assert result["success"] is True
        assert fakes.messenger.answers[0]["text"] == "Passed."

    @pytest.mark.asyncio
    async def test_unregistered_user(self, handler, fakes):
        result = await handler.handle(_callback("accept_job:job-1", user_id=5555))

        assert result["reason"] == "Unknown team member"
        assert fakes.jobs.jobs["job-1"].assigned_team_lead is None
        assert fakes.messenger.answers[0]["text"] == "You are not registered as a team lead."

    @pytest.mark.asyncio
    async def test_garbage_callback_is_answered(self, handler, fakes):
        result = await handler.handle(_callback("whatever"))

        assert result == {"action": "no_action"}
        assert fakes.messenger.answers == [{"id": "cb-1", "text": None}]

    @pytest.mark.asyncio
    async def test_text_goes_to_reports(self, handler, fakes):
        result = await handler.handle(_message("tip job 77 - $15"))

        assert result["action"] == "tip_recorded"
        assert fakes.earnings.tips[0].amount == 15.0

    @pytest.mark.asyncio
    async def test_update_without_text(self, handler):
        update = {"update_id": 3, "message": {"from": {"id": 1}, "chat": {"id": 1}, "sticker": {}}}
        assert await handler.handle(update) == {"action": "no_action"}


# ============================================================================
# HTTP contract
# ============================================================================

URL = "/api/webhooks/telegram"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(telegram_webhook, "_user_rate_limiter", None)
    return TestClient(app)


class TestTelegramWebhookHttp:
    @patch("osiris.transport.security.settings")
    def test_wrong_secret_is_403(self, mock_settings, client):
        mock_settings.telegram_webhook_secret = "right-secret"

        response = client.post(URL, json=_message("hi"), headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"})

        assert response.status_code == 403

    def test_malformed_json_is_acknowledged(self, client):
        response = client.post(URL, content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_successful_update(self, client):
        fake_handler = AsyncMock()
        fake_handler.handle.return_value = {"action": "no_action"}

        with patch("osiris.transport.telegram_webhook.TelegramUpdateHandler", return_value=fake_handler):
            response = client.post(URL, json=_message("hello"))

        assert response.status_code == 200
        assert response.json() == {"ok": True, "action": "no_action"}

    def test_processing_failure_still_returns_200(self, client):
        fake_handler = AsyncMock()
        fake_handler.handle.side_effect = RuntimeError("database down")

        with patch("osiris.transport.telegram_webhook.TelegramUpdateHandler", return_value=fake_handler):
            response = client.post(URL, json=_message("hello"))

        assert response.status_code == 200
        assert response.json() == {"ok": True, "error": "processing_failed"}

    @patch("osiris.transport.telegram_webhook.settings")
    def test_per_user_rate_limit(self, mock_settings, client):
        mock_settings.telegram_rate_limit_per_minute = 1
        fake_handler = AsyncMock()
        fake_handler.handle.return_value = {"action": "no_action"}

        with patch("osiris.transport.telegram_webhook.TelegramUpdateHandler", return_value=fake_handler):
            first = client.post(URL, json=_message("one"))
            second = client.post(URL, json=_message("two"))

        assert first.json() == {"ok": True, "action": "no_action"}
        assert second.json() == {"ok": True, "action": "rate_limited"}
        assert fake_handler.handle.await_count == 1
