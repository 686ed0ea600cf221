# osiris/infra/http_client.py
"""
Shared aiohttp sessions.

- **sender**  Telegram / OpenPhone / VAPI API calls (total=25 s, connect=5 s, pool 20)
- **default** anything else (total=30 s, connect=5 s, pool 10)

``close_all_sessions()`` runs once on application shutdown.
"""
from __future__ import annotations

import aiohttp

from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(name: str, timeout: aiohttp.ClientTimeout, limit: int = 10) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(keepalive_timeout=30, limit=limit, enable_cleanup_closed=True),
        )
        _sessions[name] = session
        logger.debug(f"HTTP session '{name}' created (limit={limit})")
    return session


def get_sender_session() -> aiohttp.ClientSession:
    return _get_or_create("sender", aiohttp.ClientTimeout(total=25, connect=5), limit=20)


async def close_all_sessions() -> None:
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug(f"HTTP session '{name}' closed")
