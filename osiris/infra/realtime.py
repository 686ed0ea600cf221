# osiris/infra/realtime.py
"""
Row change feed for the dashboard.

Triggers on jobs, leads and job_offers publish ``{"table", "op", "id"}`` on
the ``osiris_changes`` NOTIFY channel. One dedicated asyncpg connection
LISTENs and fans every notification out to the per-client queues behind
``GET /api/events``. When the database drops that connection the feed
reconnects in the background with capped exponential backoff.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

import asyncpg

from osiris.infra.db_async import open_listener_connection
from osiris.infra.logging_config import get_logger
from osiris.infra.metrics import inc_counter

logger = get_logger(__name__)

CHANNEL = "osiris_changes"
SUBSCRIBER_QUEUE_SIZE = 100

# Seconds between reconnect attempts after the LISTEN connection drops
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0


def parse_notification(payload: str) -> dict[str, Any] | None:
    try:
        data = json.loads(payload)
    except ValueError:
        logger.warning(f"Ignoring malformed change notification: {payload[:100]}")
        return None
    return {"table": data.get("table"), "eventType": data.get("op"), "id": data.get("id")}


class ChangeFeed:
    def __init__(self) -> None:
        self._conn: asyncpg.Connection | None = None
        self._subscribers: set[asyncio.Queue] = set()
        self._reconnect_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def is_listening(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        if self.is_listening:
            return
        self._stopping = False
        conn = await open_listener_connection()
        await conn.add_listener(CHANNEL, self._on_notify)
        conn.add_termination_listener(self._on_terminated)
        self._conn = conn
        logger.info(f"Listening on '{CHANNEL}'")

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        if self._conn is None:
            return
        try:
            if not self._conn.is_closed():
                self._conn.remove_termination_listener(self._on_terminated)
                await self._conn.remove_listener(CHANNEL, self._on_notify)
                await self._conn.close()
        finally:
            self._conn = None
        logger.info("Change feed stopped")

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                # Slow client: drop its oldest event rather than block the listener
                queue.get_nowait()
                inc_counter("realtime_events_dropped")
            queue.put_nowait(event)

    def _on_notify(self, connection, pid, channel, payload) -> None:
        event = parse_notification(payload)
        if event is not None:
            self.publish(event)

    def _on_terminated(self, connection) -> None:
        if self._stopping or connection is not self._conn:
            return
        logger.warning(f"Listener connection on '{CHANNEL}' lost, reconnecting")
        inc_counter("realtime_listener_lost")
        self._conn = None
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        delay = RECONNECT_BASE_DELAY
        while not self._stopping and not self.is_listening:
            await asyncio.sleep(delay)
            try:
                await self.start()
            except Exception as exc:
                delay = min(delay * 2, RECONNECT_MAX_DELAY)
                logger.warning(f"Listener reconnect failed, retrying in {delay:.0f}s: {exc}")


_change_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    return _change_feed
