from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for fixed-window rate-limit counters."""

    # INCRBY and EXPIRE in one script so a counter never outlives its window
    _WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCRBY', KEYS[1], tonumber(ARGV[1]))
if count == tonumber(ARGV[1]) then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so identifiers cannot inject key delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_window(self, key: str, window_seconds: int, amount: int = 1) -> int:
        count = await self._window_counter(
            keys=[self._normalize_rate_key(key)],
            args=[amount, max(1, window_seconds)],
        )
        return int(count)

    async def get_window(self, key: str) -> int:
        value = await self.client.get(self._normalize_rate_key(key))
        return int(value) if value else 0

    async def reset_window(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(
            RedisCache._WINDOW_COUNTER_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def incr_window(self, key: str, window_seconds: int, amount: int = 1) -> int:
        count = self._window_counter(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[amount, max(1, window_seconds)],
        )
        return int(count)

    async def get_window(self, key: str) -> int:
        value: Optional[str] = self.client.get(RedisCache._normalize_rate_key(key))
        return int(value) if value else 0

    async def reset_window(self, key: str) -> None:
        self.client.delete(RedisCache._normalize_rate_key(key))

    async def close(self) -> None:
        self.client.close()
