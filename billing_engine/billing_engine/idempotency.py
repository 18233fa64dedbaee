"""Idempotency guard and the TTL key-value caches backing it.

Two :class:`KeyValueTTLCache` implementations are provided:

* :class:`InMemoryTTLCache` -- process-local dict with monotonic
  timestamps.  Only suitable for a single-replica deployment: entries are
  lost on restart and each replica keeps its own view.
* :class:`DatabaseTTLCache` -- rows in the ``idempotency_keys`` table,
  written inside the caller's transaction.  Survives restarts and is shared
  across replicas, so a webhook recorded in the same commit as its state
  mutation is processed exactly once.

The same protocol also backs the abuse-alert cooldown in
:mod:`billing_engine.trial`.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.repository import IdempotencyKeyRepository

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS: float = 3600.0


class KeyValueTTLCache(Protocol):
    """Capability for short-lived keyed state with expiry."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool: ...

    async def sweep(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryTTLCache:
    """Dict-backed TTL cache with a lazy sweep on every call.

    Parameters
    ----------
    max_entries:
        Hard cap on cache size.  When reached, expired entries are swept
        and, if still full, the oldest entry is evicted.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        clock: Any = time.monotonic,
    ) -> None:
        self._entries: dict[str, tuple[Any, float]] = {}
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any | None:
        await self.sweep()
        entry = self._entries.get(key)
        return None if entry is None else entry[0]

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        await self.sweep()
        if key not in self._entries and len(self._entries) >= self._max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[oldest]
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        if await self.get(key) is not None:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def sweep(self) -> int:
        now = self._clock()
        stale = [k for k, (_, expires) in self._entries.items() if expires <= now]
        for k in stale:
            del self._entries[k]
        return len(stale)


# ---------------------------------------------------------------------------
# Durable backend
# ---------------------------------------------------------------------------


class DatabaseTTLCache:
    """TTL cache stored in the ``idempotency_keys`` table.

    Operates within the caller's session; nothing is committed here.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = IdempotencyKeyRepository(session)

    async def get(self, key: str) -> Any | None:
        await self.sweep()
        return await self._repo.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        await self._repo.put(key, value, expires_at=datetime.now(UTC) + timedelta(seconds=ttl_seconds))

    async def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        await self.sweep()
        return await self._repo.insert_if_absent(
            key,
            value,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl_seconds),
        )

    async def sweep(self) -> int:
        return await self._repo.purge_expired()


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class IdempotencyGuard:
    """Deduplicates payment verifications and webhook deliveries.

    A key is remembered together with the outcome it produced (success
    *or* failure).  A replay within the TTL window short-circuits to that
    stored outcome instead of re-running verification or re-mutating
    subscription state.
    """

    def __init__(self, cache: KeyValueTTLCache, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self._cache = cache
        self._ttl = ttl_seconds

    async def seen(self, key: str) -> bool:
        return await self._cache.get(key) is not None

    async def lookup(self, key: str) -> dict[str, Any] | None:
        """Return the outcome recorded for *key*, or ``None``."""
        return await self._cache.get(key)

    async def remember(self, key: str, result: dict[str, Any]) -> None:
        await self._cache.set(key, result, self._ttl)
        logger.debug("Idempotency key recorded: %s", key)

    async def claim(self, key: str, result: dict[str, Any]) -> bool:
        """Record *result* only if *key* is unclaimed.

        Returns ``False`` when another delivery already holds the key.  With
        the database backend the insert races on the primary key, so exactly
        one of two concurrent deliveries wins.
        """
        claimed = await self._cache.add(key, result, self._ttl)
        if not claimed:
            logger.info("Idempotency key already claimed: %s", key)
        return claimed


def payment_key(payment_id: str, subscription_id: str) -> str:
    return f"payment:{payment_id}_{subscription_id}"


def seat_payment_key(order_id: str, payment_id: str) -> str:
    return f"seat_payment:{order_id}_{payment_id}"


def webhook_key(event: str, subscription_id: str | None, payment_id: str | None) -> str:
    return f"webhook:{event}_{subscription_id or ''}_{payment_id or ''}"


def webhook_signature_key(attempt_digest: str) -> str:
    """Key for a rejected ``(body, signature)`` pair, by its SHA-256 digest."""
    return f"webhook_signature:{attempt_digest}"
