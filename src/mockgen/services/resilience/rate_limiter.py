"""Fixed-window request rate limiter.

One limiter per protected route; each tracks a counter per client key. A window
opens on the first request from a client and closes ``window_seconds`` later;
expired windows are reset lazily on the next request from that client, and
stale entries are purged at most once per window.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass

import structlog

from mockgen.core.clock import MonotonicClock, monotonic
from mockgen.services.resilience.state_store import InMemoryStateStore, StateStore

logger = structlog.get_logger(__name__)

STATE_KEY_PREFIX = "rate_limit:"


@dataclass(frozen=True)
class RateLimitRule:
    """Limit of ``max_requests`` per ``window_seconds`` per client."""

    window_seconds: float
    max_requests: int


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single ``allow`` check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    reset_after: float = 0.0
    retry_after: int = 0


class RateLimiter:
    """Per-client fixed-window limiter for one route."""

    def __init__(
        self,
        rule: RateLimitRule,
        store: StateStore | None = None,
        clock: MonotonicClock = monotonic,
        name: str = "default",
    ):
        self.rule = rule
        self.name = name
        self._store = store if store is not None else InMemoryStateStore()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_cleanup = clock()

    @property
    def store(self) -> StateStore:
        return self._store

    def _key(self, client_key: str) -> str:
        return f"{STATE_KEY_PREFIX}{self.name}:{client_key}"

    async def allow(self, client_key: str) -> RateLimitDecision:
        """Count a request from ``client_key`` and decide whether it may proceed.

        Rejected requests are not counted.
        """
        async with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= self.rule.window_seconds:
                await self._cleanup(now)

            key = self._key(client_key)
            entry = await self._store.get(key)
            if entry is None or now >= entry.reset_time:
                entry = RateLimitEntry(count=0, reset_time=now + self.rule.window_seconds)

            if entry.count >= self.rule.max_requests:
                retry_after = max(1, math.ceil(entry.reset_time - now))
                logger.warning(
                    "rate_limit.exceeded",
                    route=self.name,
                    client=client_key,
                    limit=self.rule.max_requests,
                    retry_after=retry_after,
                )
                await self._store.set(key, entry)
                return RateLimitDecision(
                    allowed=False,
                    limit=self.rule.max_requests,
                    remaining=0,
                    reset_at=entry.reset_time,
                    reset_after=entry.reset_time - now,
                    retry_after=retry_after,
                )

            entry.count += 1
            await self._store.set(key, entry)
            return RateLimitDecision(
                allowed=True,
                limit=self.rule.max_requests,
                remaining=self.rule.max_requests - entry.count,
                reset_at=entry.reset_time,
                reset_after=entry.reset_time - now,
            )

    async def cleanup_expired(self) -> int:
        """Drop entries whose window has closed. Returns the number removed."""
        async with self._lock:
            return await self._cleanup(self._clock())

    async def _cleanup(self, now: float) -> int:
        self._last_cleanup = now
        removed = 0
        for key, entry in await self._store.items(f"{STATE_KEY_PREFIX}{self.name}:"):
            if now >= entry.reset_time:
                await self._store.delete(key)
                removed += 1
        if removed:
            logger.debug("rate_limit.cleanup", route=self.name, removed=removed)
        return removed
