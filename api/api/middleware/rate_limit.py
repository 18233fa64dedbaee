"""Rate-limiting middleware -- sliding-window, per-user and per-IP.

Implements an in-memory sliding window counter with support for:
- Per-user rate limiting (keyed by ``sub`` from the auth middleware).
- Per-IP fallback for unauthenticated requests.
- Path presets: payment, expensive and auth endpoints carry lower limits
  than the standard budget.
- Automatic cleanup of stale tracking entries.

.. warning:: **Single-replica limitation**

   All rate-limit state is held in process-local memory.  Each replica
   keeps its own counters and a restart resets them.  Replacing
   :class:`SlidingWindowCounter` with a shared store only requires a class
   exposing the same async ``hit()`` / ``time_until_reset()`` API.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import deque
from typing import Any

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware becomes a
            no-op pass-through.
        standard_per_minute: Budget for any path not matched by a preset.
        payment_per_minute: Budget for paths in ``payment_paths``.
        expensive_per_minute: Budget for paths in ``expensive_paths``.
        auth_per_minute: Budget for paths in ``auth_paths``.
        exempt_paths: Paths that bypass rate limiting entirely.
    """

    enabled: bool = True
    standard_per_minute: int = 30
    payment_per_minute: int = 10
    expensive_per_minute: int = 5
    auth_per_minute: int = 20
    payment_paths: tuple[str, ...] = (
        "/api/v1/billing/create-order",
        "/api/v1/billing/verify-payment",
        "/api/v1/seats/purchase",
        "/api/v1/seats/verify",
    )
    expensive_paths: tuple[str, ...] = ("/api/v1/reports/*",)
    auth_paths: tuple[str, ...] = ("/api/v1/trial/*",)
    exempt_paths: set[str] = {"/api/v1/health", "/ready", "/api/v1/billing/webhook"}


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_WINDOW_SECONDS: float = 60.0
_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe sliding window request counter.

    Each client key maps to a :class:`~collections.deque` of monotonic
    timestamps.  Calling :meth:`hit` prunes entries older than
    ``window_seconds`` before appending the current timestamp.
    """

    def __init__(self, window_seconds: float = _WINDOW_SECONDS) -> None:
        self._window: float = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._last_cleanup: float = time.monotonic()

    async def hit(self, key: str) -> int:
        """Record a request for *key* and return the count inside the window."""
        now = time.monotonic()
        cutoff = now - self._window

        async with self._lock:
            if now - self._last_cleanup >= _CLEANUP_INTERVAL_SECONDS:
                self._cleanup(cutoff)
                self._last_cleanup = now

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max((bucket[0] + self._window) - now, 0.0)

    def _cleanup(self, cutoff: float) -> None:
        """Remove keys whose entries have all expired.  Caller holds the lock."""
        stale_keys: list[str] = []
        for key, bucket in self._buckets.items():
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                stale_keys.append(key)
        for key in stale_keys:
            del self._buckets[key]
        if stale_keys:
            logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing per-client sliding-window rate limits.

    Every response carries ``X-RateLimit-Limit``, ``X-RateLimit-Remaining``
    and ``X-RateLimit-Reset``.  A client over budget receives ``429`` with a
    ``Retry-After`` header.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._counter: SlidingWindowCounter = SlidingWindowCounter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, standard=%d/min)",
            self._config.enabled,
            self._config.standard_per_minute,
        )

    def _client_key(self, request: Request) -> str:
        sub: str | None = getattr(request.state, "sub", None)
        if sub:
            return f"user:{sub}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _limit_for_path(self, path: str) -> int:
        """Return the per-minute limit for *path*; ``0`` means exempt."""
        if path in self._config.exempt_paths:
            return 0

        presets = (
            (self._config.payment_paths, self._config.payment_per_minute),
            (self._config.expensive_paths, self._config.expensive_per_minute),
            (self._config.auth_paths, self._config.auth_per_minute),
        )
        for patterns, limit in presets:
            if any(path == pattern or fnmatch.fnmatch(path, pattern) for pattern in patterns):
                return limit

        return self._config.standard_per_minute

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)

        path = request.url.path
        limit = self._limit_for_path(path)
        if limit == 0:
            return await call_next(request)

        client_key = self._client_key(request)
        # Each preset tier is tracked independently.
        counter_key = f"{client_key}:{limit}"
        current_count = await self._counter.hit(counter_key)

        if current_count > limit:
            retry_after = await self._counter.time_until_reset(counter_key)
            retry_after_int = max(int(retry_after) + 1, 1)

            logger.warning(
                "Rate limit exceeded: key=%s path=%s count=%d limit=%d",
                client_key,
                path,
                current_count,
                limit,
            )

            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Too many requests. Please try again later.",
                    "retry_after": retry_after_int,
                },
                headers={
                    "Retry-After": str(retry_after_int),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after_int),
                },
            )

        response = await call_next(request)

        reset_seconds = await self._counter.time_until_reset(counter_key)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(limit - current_count, 0))
        response.headers["X-RateLimit-Reset"] = str(max(int(reset_seconds) + 1, 1))

        return response
