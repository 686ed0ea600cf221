# tests/test_task_queue.py
"""
Tests for the DB-backed task queue:
- Task dataclass / row mapping
- Queue repository (pg_task_queue_async.py)
- Worker dispatch logic (task_worker.py)
- Task handlers (osiris.core.tasks)
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from osiris.core.errors import NotFoundError
from osiris.core.tasks import (
    TASK_HANDLERS,
    handle_job_broadcast,
    handle_lead_followup,
    handle_send_reminder,
    handle_send_review_request,
)
from osiris.infra.pg_task_queue_async import AsyncPostgresTaskQueue, Task, _row_to_task
from osiris.infra.task_worker import TaskWorker


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_task(*, task_type: str = "job_broadcast", payload: dict | None = None, attempts: int = 0) -> Task:
    now = datetime.now(timezone.utc)
    return Task(
        id="aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        task_type=task_type,
        payload=payload or {},
        status="running",
        priority=0,
        attempts=attempts,
        max_attempts=5,
        error_message=None,
        scheduled_at=now,
        created_at=now,
        started_at=now,
    )


def _make_row(overrides: dict | None = None) -> dict:
    """A dict standing in for an asyncpg Record."""
    now = datetime.now(timezone.utc)
    row = {
        "id": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        "task_type": "job_broadcast",
        "payload": '{"jobId": "job-1", "phase": "urgent"}',
        "status": "pending",
        "priority": 0,
        "attempts": 0,
        "max_attempts": 5,
        "error_message": None,
        "scheduled_at": now,
        "created_at": now,
        "started_at": None,
        "completed_at": None,
    }
    if overrides:
        row.update(overrides)
    return row


def _patch_conn(mock_conn):
    ctx = patch("osiris.infra.pg_task_queue_async.safe_db_conn")
    mock_ctx = ctx.start()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return ctx


@pytest.fixture
def conn():
    mock_conn = AsyncMock()
    ctx = _patch_conn(mock_conn)
    yield mock_conn
    ctx.stop()


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

class TestRowToTask:
    def test_parses_json_string(self):
        task = _row_to_task(_make_row())
        assert task.payload == {"jobId": "job-1", "phase": "urgent"}
        assert task.status == "pending"

    def test_dict_payload(self):
        """asyncpg may hand back JSONB already decoded."""
        task = _row_to_task(_make_row({"payload": {"leadId": "l-1"}}))
        assert task.payload == {"leadId": "l-1"}

    def test_null_payload(self):
        assert _row_to_task(_make_row({"payload": None})).payload == {}

    def test_to_dict(self):
        data = _make_task().to_dict()
        assert data["task_type"] == "job_broadcast"
        assert data["completed_at"] is None
        assert data["scheduled_at"].endswith("+00:00")


# ---------------------------------------------------------------------------
# Queue repository
# ---------------------------------------------------------------------------

class TestTaskQueue:
    @pytest.mark.asyncio
    async def test_enqueue(self, conn):
        conn.fetchrow = AsyncMock(return_value={"id": "some-uuid-1234"})

        task_id = await AsyncPostgresTaskQueue().enqueue(
            "job_broadcast", {"jobId": "job-1", "phase": "urgent"}, delay_seconds=900,
        )

        assert task_id == "some-uuid-1234"
        args = conn.fetchrow.call_args[0]
        assert "INSERT INTO tasks" in args[0]
        assert args[1] == "job_broadcast"
        assert json.loads(args[2]) == {"jobId": "job-1", "phase": "urgent"}
        assert args[5] == 900.0

    @pytest.mark.asyncio
    async def test_claim_batch(self, conn):
        conn.fetch = AsyncMock(return_value=[_make_row({"status": "running"})])

        tasks = await AsyncPostgresTaskQueue().claim_batch(batch_size=3)

        assert [t.status for t in tasks] == ["running"]
        sql, batch_size = conn.fetch.call_args[0]
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert batch_size == 3

    @pytest.mark.asyncio
    async def test_complete(self, conn):
        conn.execute = AsyncMock(return_value="UPDATE 1")

        await AsyncPostgresTaskQueue().complete("task-1")

        sql, task_id = conn.execute.call_args[0]
        assert "completed" in sql
        assert task_id == "task-1"

    @pytest.mark.asyncio
    async def test_fail_retries_with_backoff(self, conn):
        conn.execute = AsyncMock(return_value="UPDATE 1")

        await AsyncPostgresTaskQueue().fail("task-1", "x" * 3000, base_delay=5.0)

        sql, task_id, error, base_delay = conn.execute.call_args[0]
        assert "CASE" in sql
        assert "power(2, attempts)" in sql
        assert len(error) == 2000
        assert base_delay == 5.0

    @pytest.mark.asyncio
    async def test_cleanup_and_stale_reset_counts(self, conn):
        conn.execute = AsyncMock(side_effect=["DELETE 5", "DELETE 0", "UPDATE 2"])
        queue = AsyncPostgresTaskQueue()

        assert await queue.cleanup_completed(ttl_days=7) == 5
        assert await queue.cleanup_failed(ttl_days=30) == 0
        assert await queue.reset_stale_running(timeout_seconds=300) == 2

    @pytest.mark.asyncio
    async def test_count_by_status(self, conn):
        conn.fetch = AsyncMock(return_value=[{"status": "pending", "cnt": 3}, {"status": "failed", "cnt": 1}])

        assert await AsyncPostgresTaskQueue().count_by_status() == {"pending": 3, "failed": 1}

    @pytest.mark.asyncio
    async def test_recent_filtered_by_status(self, conn):
        conn.fetch = AsyncMock(return_value=[_make_row({"status": "failed"})])

        tasks = await AsyncPostgresTaskQueue().get_recent(limit=10, status="failed")

        assert tasks[0].status == "failed"
        assert conn.fetch.call_args[0][1:] == ("failed", 10)


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class TestTaskWorker:
    @pytest.mark.asyncio
    async def test_dispatches_to_handler(self):
        queue = AsyncMock(spec=AsyncPostgresTaskQueue)
        task = _make_task()
        handler = AsyncMock()
        worker = TaskWorker(queue)
        worker.register("job_broadcast", handler)

        await worker._execute(task)

        handler.assert_awaited_once_with(task)
        queue.complete.assert_awaited_once_with(task.id)

    @pytest.mark.asyncio
    async def test_handler_error_fails_task(self):
        queue = AsyncMock(spec=AsyncPostgresTaskQueue)
        task = _make_task()
        worker = TaskWorker(queue, base_retry_delay=7.0)
        worker.register("job_broadcast", AsyncMock(side_effect=RuntimeError("Telegram down")))

        await worker._execute(task)

        queue.fail.assert_awaited_once()
        assert queue.fail.call_args[0][0] == task.id
        assert "RuntimeError: Telegram down" in queue.fail.call_args[0][1]
        assert queue.fail.call_args.kwargs == {"base_delay": 7.0}
        queue.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_task_type(self):
        queue = AsyncMock(spec=AsyncPostgresTaskQueue)
        worker = TaskWorker(queue)

        await worker._execute(_make_task(task_type="mystery"))

        error = queue.fail.call_args[0][1]
        assert "No handler registered" in error
        assert "mystery" in error

    @pytest.mark.asyncio
    async def test_run_once(self):
        queue = AsyncMock(spec=AsyncPostgresTaskQueue)
        queue.claim_batch.return_value = [_make_task(), _make_task()]
        handler = AsyncMock()
        worker = TaskWorker(queue, batch_size=2)
        worker.register("job_broadcast", handler)

        assert await worker.run_once() == 2
        assert handler.await_count == 2
        queue.claim_batch.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_start_stop(self):
        queue = AsyncMock(spec=AsyncPostgresTaskQueue)
        queue.claim_batch.return_value = []
        worker = TaskWorker(queue, poll_interval=0.05)

        await worker.start()
        assert worker.is_running is True
        await asyncio.sleep(0.1)
        await worker.stop()

        assert worker.is_running is False


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class TestTaskHandlers:
    def test_registry(self):
        assert set(TASK_HANDLERS) == {"job_broadcast", "lead_followup", "send_reminder", "send_review_request"}

    @pytest.mark.asyncio
    async def test_job_broadcast(self):
        service = MagicMock()
        service.run_phase = AsyncMock()

        with patch("osiris.core.dispatch.broadcast.get_broadcast_service", return_value=service):
            await handle_job_broadcast(_make_task(payload={"jobId": "job-1", "phase": "urgent"}))

        service.run_phase.assert_awaited_once_with("job-1", "urgent")

    @pytest.mark.asyncio
    async def test_missing_job_is_dropped_not_retried(self):
        service = MagicMock()
        service.run_phase = AsyncMock(side_effect=NotFoundError("Job not found"))

        with patch("osiris.core.dispatch.broadcast.get_broadcast_service", return_value=service):
            await handle_job_broadcast(_make_task(payload={"jobId": "gone"}))

    @pytest.mark.asyncio
    async def test_transient_errors_propagate_for_retry(self):
        service = MagicMock()
        service.run_phase = AsyncMock(side_effect=ConnectionError("db"))

        with patch("osiris.core.dispatch.broadcast.get_broadcast_service", return_value=service):
            with pytest.raises(ConnectionError):
                await handle_job_broadcast(_make_task(payload={"jobId": "job-1"}))

    @pytest.mark.asyncio
    async def test_lead_followup(self):
        service = MagicMock()
        service.run = AsyncMock()
        payload = {"leadId": "lead-1", "stage": "2", "action": "call", "leadPhone": "+15125550122", "leadName": "Bob"}

        with patch("osiris.core.automation.lead_followup.get_lead_followup_service", return_value=service):
            await handle_lead_followup(_make_task(task_type="lead_followup", payload=payload))

        service.run.assert_awaited_once_with("lead-1", 2, "call", lead_phone="+15125550122", lead_name="Bob")

    @pytest.mark.asyncio
    async def test_lead_followup_bad_payload_is_dropped(self):
        await handle_lead_followup(_make_task(task_type="lead_followup", payload={"stage": 1}))

    @pytest.mark.asyncio
    async def test_send_reminder(self):
        service = MagicMock()
        service.send = AsyncMock()
        payload = {"jobId": "job-1", "type": "on_my_way", "eta": "10 min", "teamLeadName": "Alice"}

        with patch("osiris.core.automation.reminders.get_reminder_service", return_value=service):
            await handle_send_reminder(_make_task(task_type="send_reminder", payload=payload))

        service.send.assert_awaited_once_with(
            "job-1", "on_my_way", customer_phone=None, customer_name=None, eta="10 min", team_lead_name="Alice",
        )

    @pytest.mark.asyncio
    async def test_send_review_request(self):
        service = MagicMock()
        service.send_review_request = AsyncMock()

        with patch("osiris.core.automation.reminders.get_reminder_service", return_value=service):
            await handle_send_review_request(_make_task(task_type="send_review_request", payload={"jobId": "job-1"}))

        service.send_review_request.assert_awaited_once_with("job-1")
