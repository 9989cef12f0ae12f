from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Protocol

from pilotlog.logging import get_logger
from pilotlog.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return max(0, math.ceil((self.reset_at - now).total_seconds()))


class RateLimitBackend(Protocol):
    """Counter storage for fixed-window limits.

    ``hit`` must perform its read-check-write atomically per key so two
    concurrent attempts can never both be allowed past the ceiling.
    """

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: datetime
    ) -> RateLimitDecision: ...

    async def clear(self, key: str) -> None: ...


@dataclass
class _WindowEntry:
    count: int
    reset_at: datetime


class MemoryRateLimitBackend:
    """Process-local fixed-window counters.

    Not durable and not shared between processes; a restart forgets every
    window. Use the Redis backend when more than one instance serves traffic.
    """

    _SWEEP_EVERY = 1000

    def __init__(self) -> None:
        self._entries: Dict[str, _WindowEntry] = {}
        self._lock = threading.Lock()
        self._hits_since_sweep = 0

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: datetime
    ) -> RateLimitDecision:
        with self._lock:
            self._maybe_sweep(now)
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _WindowEntry(count=1, reset_at=now + timedelta(seconds=window_seconds))
                self._entries[key] = entry
                return RateLimitDecision(True, limit - 1, entry.reset_at)
            if entry.count >= limit:
                return RateLimitDecision(False, 0, entry.reset_at)
            entry.count += 1
            return RateLimitDecision(True, limit - entry.count, entry.reset_at)

    async def clear(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _maybe_sweep(self, now: datetime) -> None:
        self._hits_since_sweep += 1
        if self._hits_since_sweep < self._SWEEP_EVERY:
            return
        self._hits_since_sweep = 0
        expired = [k for k, e in self._entries.items() if e.reset_at <= now]
        for k in expired:
            self._entries.pop(k, None)


class RateLimiter:
    """Fixed-window attempt limiter for one action (login, password reset, ...).

    Keys are namespaced by ``name`` so several limiters can share a backend.
    ``label`` is the plural noun phrase used in the retry message, e.g.
    ``"login attempts"``.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        *,
        name: str,
        label: str,
        limit: int,
        window_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.backend = backend
        self.name = name
        self.label = label
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.name}:{key}"

    async def consume_attempt(self, key: str) -> RateLimitDecision:
        decision = await self.backend.hit(
            self._key(key), self.limit, self.window_seconds, self._clock()
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                reset_at=decision.reset_at.isoformat(),
            )
        return decision

    async def consume_many(self, keys: Iterable[str]) -> RateLimitDecision:
        """Consume one attempt on every key; denied if any key is denied.

        Every key is charged even after one denies, so an attacker cannot
        rotate one half of the pair to dodge the other.
        """

        decisions = [await self.consume_attempt(key) for key in keys]
        if not decisions:
            raise ValueError("consume_many requires at least one key")
        denied = [d for d in decisions if not d.allowed]
        if denied:
            return RateLimitDecision(False, 0, max(d.reset_at for d in denied))
        return RateLimitDecision(
            True,
            min(d.remaining for d in decisions),
            max(d.reset_at for d in decisions),
        )

    async def reset(self, key: str) -> None:
        await self.backend.clear(self._key(key))

    def retry_message(
        self, decision: RateLimitDecision, now: Optional[datetime] = None
    ) -> str:
        return format_retry_message(self.label, decision.reset_at, now or self._clock())


def format_remaining_minutes(reset_at: datetime, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    remaining = (reset_at - now).total_seconds()
    minutes = max(1, math.ceil(remaining / 60))
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def format_retry_message(
    label: str, reset_at: datetime, now: Optional[datetime] = None
) -> str:
    return f"Too many {label}. Try again in {format_remaining_minutes(reset_at, now)}."


__all__ = [
    "MemoryRateLimitBackend",
    "RateLimitBackend",
    "RateLimitDecision",
    "RateLimiter",
    "format_remaining_minutes",
    "format_retry_message",
]
