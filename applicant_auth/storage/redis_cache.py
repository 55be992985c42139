from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper implementing the CredentialCache contract."""

    # Fixed-window counter: EXPIRE only when INCR created the key, so later
    # increments never extend the window.
    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        result = await self._incr_with_ttl(keys=[key], args=[int(ttl_seconds)])
        return int(result[0]), max(1, int(result[1]))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        )

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self.client.ttl(key)
        # -2: missing key, -1: no expiry set
        if remaining is None or remaining == -2:
            return None
        return max(0, int(remaining))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self._sync_client.register_script(
            RedisCache._INCR_WITH_TTL_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        result = self._incr_with_ttl(keys=[key], args=[int(ttl_seconds)])
        return int(result[0]), max(1, int(result[1]))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        )

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def delete(self, key: str) -> None:
        self._sync_client.delete(key)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = self._sync_client.ttl(key)
        if remaining is None or remaining == -2:
            return None
        return max(0, int(remaining))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
