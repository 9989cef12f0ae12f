from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis

from pilotlog.service.rate_limit import RateLimitDecision


class RedisRateLimitBackend:
    """Fixed-window rate-limit counters shared through Redis.

    The window check and increment run in one Lua script so concurrent
    attempts from several app instances stay under the ceiling.
    """

    # Returns {allowed, remaining, reset_at_ms}
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])

if count == nil or reset_at == nil or reset_at <= now then
  reset_at = now + window
  redis.call('HSET', key, 'count', 1, 'reset_at', reset_at)
  redis.call('PEXPIRE', key, window)
  return {1, limit - 1, reset_at}
end

if count >= limit then
  return {0, 0, reset_at}
end

count = redis.call('HINCRBY', key, 'count', 1)
return {1, limit - count, reset_at}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before routing rate limits through it."""
        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the subject so user-supplied emails cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: datetime
    ) -> RateLimitDecision:
        now_ms = int(now.timestamp() * 1000)
        allowed, remaining, reset_at_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, limit, window_seconds * 1000],
        )
        reset_at = datetime.fromtimestamp(int(reset_at_ms) / 1000, tz=timezone.utc)
        return RateLimitDecision(bool(int(allowed)), max(0, int(remaining)), reset_at)

    async def clear(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()
