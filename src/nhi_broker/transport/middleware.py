"""Pre-authentication protection: per-IP rate limiting and body size cap."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..utils.http import first_forwarded_value
from ..utils.masking import sanitize_log_value

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/ready"})


class SlidingWindowRateLimiter:
    """Counts requests per key over the trailing ``window_seconds``.

    Process-local: with several uvicorn workers each keeps its own counters.
    """

    # Keys idle this long are dropped on the next prune.
    IDLE_KEY_SECONDS = 300.0
    PRUNE_EVERY_SECONDS = 60.0

    def __init__(
        self, window_seconds: float = 60.0, clock: Callable[[], float] = time.time
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._pruned_at = 0.0

    async def allow(self, key: str, limit: int) -> tuple[bool, int]:
        """Record a hit for ``key``; returns (allowed, retry_after_seconds)."""
        async with self._lock:
            now = self._clock()
            if now - self._pruned_at >= self.PRUNE_EVERY_SECONDS:
                self.prune(now)

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self._window:
                hits.popleft()

            if len(hits) >= limit:
                return False, max(1, int(hits[0] + self._window - now) + 1)
            hits.append(now)
            return True, 0

    def prune(self, now: float) -> None:
        """Forget keys with no hit in the last ``IDLE_KEY_SECONDS``."""
        cutoff = now - self.IDLE_KEY_SECONDS
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] < cutoff]:
            del self._hits[key]
        self._pruned_at = now

    def tracked_keys(self) -> frozenset[str]:
        return frozenset(self._hits)


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Client address; forwarding headers count only behind a trusted proxy."""
    if trust_forwarded_headers:
        candidate = first_forwarded_value(request.headers.get("x-forwarded-for")) or (
            request.headers.get("x-real-ip", "").strip()
        )
        if candidate:
            return sanitize_log_value(candidate)
    return request.client.host if request.client else "unknown"


def _declared_size(header: str | None) -> int | None:
    """Parsed Content-Length; raises ValueError when present but not a size."""
    if not header:
        return None
    size = int(header)
    if size < 0:
        raise ValueError(header)
    return size


class PreAuthSecurityMiddleware(BaseHTTPMiddleware):
    """Runs before any assertion is parsed to keep unauthenticated load cheap."""

    def __init__(
        self,
        app: Callable,
        *,
        max_body_size_bytes: int,
        rate_limit_per_ip: int,
        trust_forwarded_headers: bool = False,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        super().__init__(app)
        self._max_body_size = max_body_size_bytes
        self._rate_limit = rate_limit_per_ip
        self._trust_forwarded_headers = trust_forwarded_headers
        self._limiter = rate_limiter or SlidingWindowRateLimiter()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        try:
            size = _declared_size(request.headers.get("content-length"))
        except ValueError:
            return _error(400, "invalid_request", "Invalid Content-Length header")
        if size is not None and size > self._max_body_size:
            logger.warning("Rejected body of %d bytes (limit %d)", size, self._max_body_size)
            return _error(
                413, "request_too_large", f"Request body exceeds {self._max_body_size} bytes"
            )

        client_ip = get_client_ip(request, self._trust_forwarded_headers)
        allowed, retry_after = await self._limiter.allow(client_ip, self._rate_limit)
        if not allowed:
            logger.warning("Rate limit exceeded for %s", client_ip)
            response = _error(429, "rate_limited", "Too many requests", retryable=True)
            response.headers["Retry-After"] = str(retry_after)
            return response

        return await call_next(request)


def _error(status: int, code: str, message: str, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": code, "message": message, "retryable": retryable},
    )
