# osiris/infra/pg_task_queue_async.py
"""
DB-backed task queue (asyncpg).

Drives everything that has to happen later: broadcast escalation phases,
lead follow-up stages, reminders and review requests. Tasks are claimed
with FOR UPDATE SKIP LOCKED so several worker processes can share the table.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any

from osiris.infra.db_resilience_async import safe_db_conn
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import inc_counter
from osiris.infra.pg_rows import affected

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000

_CLAIM_SQL = """
WITH due AS (
    SELECT id FROM tasks
    WHERE status = 'pending' AND scheduled_at <= now()
    ORDER BY priority, scheduled_at
    LIMIT $1
    FOR UPDATE SKIP LOCKED
)
UPDATE tasks t
SET status = 'running', started_at = now()
FROM due
WHERE t.id = due.id
RETURNING t.*
"""

# Retry with base_delay * 2^attempts until max_attempts, then park as failed
_FAIL_SQL = """
UPDATE tasks
SET attempts = attempts + 1,
    error_message = $2,
    status = CASE WHEN attempts + 1 < max_attempts THEN 'pending' ELSE 'failed' END,
    scheduled_at = CASE
        WHEN attempts + 1 < max_attempts THEN now() + make_interval(secs => $3 * power(2, attempts))
        ELSE scheduled_at
    END,
    completed_at = CASE WHEN attempts + 1 >= max_attempts THEN now() END
WHERE id = $1
"""


@dataclass
class Task:
    """A row from the tasks table."""

    id: str
    task_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data


def _row_to_task(row) -> Task:
    values = {f.name: row.get(f.name) for f in fields(Task)}
    payload = values["payload"]
    values["payload"] = (json.loads(payload) if isinstance(payload, str) else payload) or {}
    values["id"] = str(values["id"])
    return Task(**values)


class AsyncPostgresTaskQueue:
    async def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str:
        """
        Insert a pending task and return its id.

        ``priority``: lower runs first (-1 for urgent work).
        ``delay_seconds``: earliest start relative to now.
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO tasks (task_type, payload, priority, max_attempts, scheduled_at)
                VALUES ($1, $2::jsonb, $3, $4, now() + make_interval(secs => $5))
                RETURNING id
                """,
                task_type,
                json.dumps(payload, default=str),
                priority,
                max_attempts,
                float(delay_seconds),
            )
        task_id = str(row["id"])
        logger.debug(f"Task enqueued: id={task_id[:8]}, type={task_type}, delay={delay_seconds}s")
        inc_counter("tasks_enqueued", task_type=task_type)
        return task_id

    async def claim_batch(self, batch_size: int = 5) -> list[Task]:
        """Move up to batch_size due tasks to 'running' and return them."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(_CLAIM_SQL, batch_size)
        return [_row_to_task(row) for row in rows]

    async def complete(self, task_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE tasks SET status = 'completed', completed_at = now() WHERE id = $1",
                task_id,
            )

    async def fail(self, task_id: str, error_message: str, *, base_delay: float = 5.0) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(_FAIL_SQL, task_id, error_message[:MAX_ERROR_LENGTH], base_delay)

    async def count_by_status(self) -> dict[str, int]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT status, count(*)::int AS cnt FROM tasks GROUP BY status")
        return {row["status"]: row["cnt"] for row in rows}

    async def get_recent(self, limit: int = 50, status: str | None = None) -> list[Task]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM tasks
                WHERE ($1::text IS NULL OR status = $1)
                ORDER BY created_at DESC
                LIMIT $2
                """,
                status,
                limit,
            )
        return [_row_to_task(row) for row in rows]

    async def _purge(self, status: str, ttl_days: int) -> int:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "DELETE FROM tasks WHERE status = $1 AND completed_at < now() - make_interval(days => $2)",
                status,
                ttl_days,
            )
        count = affected(result)
        if count:
            logger.info(f"Purged {count} {status} tasks older than {ttl_days}d")
        return count

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        return await self._purge("completed", ttl_days)

    async def cleanup_failed(self, ttl_days: int = 30) -> int:
        return await self._purge("failed", ttl_days)

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Requeue tasks left 'running' by a worker that died mid-task."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE tasks
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running' AND started_at < now() - make_interval(secs => $1)
                """,
                float(timeout_seconds),
            )
        count = affected(result)
        if count:
            logger.warning(f"Requeued {count} tasks stuck in running for over {timeout_seconds}s")
            inc_counter("tasks_stale_reset")
        return count


_task_queue: AsyncPostgresTaskQueue | None = None


def get_task_queue() -> AsyncPostgresTaskQueue:
    global _task_queue
    if _task_queue is None:
        _task_queue = AsyncPostgresTaskQueue()
    return _task_queue
