# osiris/infra/rate_limiter.py
"""
Sliding-window rate limiting for the public tip endpoints and Telegram users.

State is per process, so N replicas allow N x max_requests per window.
"""
from __future__ import annotations

import math
import time
from collections import deque
from threading import Lock
from typing import Deque, Dict, Optional

from fastapi import HTTPException, Request, status

from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """Record a hit for ``key``; returns (allowed, retry_after_seconds)."""
        now = time.monotonic()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()

            if len(hits) < self.max_requests:
                hits.append(now)
                return True, None

            retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))

        logger.warning(
            f"Rate limit hit: key={key[:4]}***, limit={self.max_requests}/{self.window_seconds}s, "
            f"retry_after={retry_after}s"
        )
        return False, retry_after


def client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """FastAPI dependency that limits per client IP and answers 429."""

    def __init__(self, limiter: InMemoryRateLimiter, *, trust_proxy_headers: bool = False):
        self.limiter = limiter
        self.trust_proxy_headers = trust_proxy_headers

    async def __call__(self, request: Request) -> None:
        allowed, retry_after = self.limiter.is_allowed(client_ip(request, self.trust_proxy_headers))
        if allowed:
            return
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
