"""Notification dedup stores.

The event router claims one key per (subject, event type, recipient, time
bucket) before emitting a notification. A redelivered event maps to the same
key and loses the claim, so the recipient is notified once.

Usage:
    from garageflow.realtime.dedup import RedisDedupStore

    dedup = RedisDedupStore(redis_client)
    first = await dedup.claim("notif:...", ttl=3600)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class DedupStore(Protocol):
    async def claim(self, key: str, ttl: int) -> bool:
        """Return True the first time ``key`` is seen within ``ttl`` seconds."""
        ...


class InMemoryDedupStore:
    """Process-local dedup with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._expiry: dict[str, float] = {}
        self._clock = clock

    async def claim(self, key: str, ttl: int) -> bool:
        now = self._clock()
        self._prune(now)
        if key in self._expiry:
            return False
        self._expiry[key] = now + ttl
        return True

    def _prune(self, now: float) -> None:
        expired = [k for k, deadline in self._expiry.items() if deadline <= now]
        for k in expired:
            del self._expiry[k]

    def __len__(self) -> int:
        return len(self._expiry)


class RedisDedupStore:
    """Dedup backed by Redis ``SET key 1 NX EX ttl``, shared across processes."""

    def __init__(self, redis: object) -> None:
        self._redis = redis

    async def claim(self, key: str, ttl: int) -> bool:
        try:
            created = await self._redis.set(key, "1", nx=True, ex=ttl)
            return bool(created)
        except Exception:
            logger.exception("Dedup Redis error for key %s", key)
            # Fail open: treat as a first claim
            return True
