# osiris/infra/task_worker.py
"""
In-process async task worker with handler dispatch.

Polls the tasks table, claims due tasks and routes them to registered
handler functions (see osiris.core.tasks). A handler that raises makes the
task retry with backoff; a handler that returns marks it completed.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import inc_counter, Timer
from osiris.infra.pg_task_queue_async import AsyncPostgresTaskQueue, Task

logger = get_logger(__name__)

TaskHandler = Callable[[Task], Awaitable[None]]


class TaskWorker:
    """
    Poll loop running as an asyncio task inside the web process.

    Usage:
        worker = TaskWorker(queue=get_task_queue())
        worker.register("job_broadcast", handle_job_broadcast)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        queue: AsyncPostgresTaskQueue,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._queue = queue
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, TaskHandler] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="task_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Task worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={self.list_handlers()}",
        )

    async def stop(self) -> None:
        """Stop polling; the batch in flight is cancelled and its tasks are reset as stale later."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Task worker stopped")

    async def run_once(self) -> int:
        """Claim and execute one batch. Returns the number of tasks processed."""
        tasks = await self._queue.claim_batch(self._batch_size)
        if tasks:
            await asyncio.gather(*(self._execute(task) for task in tasks), return_exceptions=True)
        return len(tasks)

    async def _loop(self) -> None:
        while self._running:
            try:
                self._loop_count += 1

                # Roughly once a minute when idle
                if self._loop_count % 60 == 0:
                    try:
                        await self._queue.reset_stale_running(self._stale_timeout)
                    except Exception as exc:
                        logger.warning(f"Stale task reset failed: {exc}")

                processed = await self.run_once()

                if processed:
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Task worker loop error: {exc}", exc_info=True)
                inc_counter("task_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, task: Task) -> None:
        handler = self._handlers.get(task.task_type)
        if handler is None:
            error = f"No handler registered for task_type={task.task_type}"
            logger.error(error)
            await self._queue.fail(task.id, error, base_delay=self._base_retry_delay)
            inc_counter("tasks_unknown_type")
            return

        try:
            with Timer("task_duration_seconds", task_type=task.task_type):
                await handler(task)
            await self._queue.complete(task.id)
            inc_counter("tasks_completed", task_type=task.task_type)
            logger.info(
                f"Task completed: id={task.id[:8]}, type={task.task_type}, "
                f"attempt={task.attempts + 1}",
            )
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._queue.fail(task.id, error_msg, base_delay=self._base_retry_delay)
            inc_counter("tasks_failed_attempt", task_type=task.task_type)
            logger.warning(
                f"Task failed: id={task.id[:8]}, type={task.task_type}, "
                f"attempt={task.attempts + 1}, error={error_msg[:100]}",
            )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Task worker died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
