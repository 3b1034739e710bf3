from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for refresh tokens and rate-limit windows."""

    # Fixed window: first hit in a window sets the expiry, every hit returns count and PTTL
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
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
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def refresh_token_key(user_id: str) -> str:
        return f"refresh_token:{user_id}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the client-derived part so it cannot inject delimiters."""
        scope, _, subject = key.partition(":")
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"rate:{scope}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def store_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        await self.client.set(self.refresh_token_key(user_id), token, ex=max(1, int(ttl_seconds)))

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return await self.client.get(self.refresh_token_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> None:
        await self.client.delete(self.refresh_token_key(user_id))

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit; returns (hits in window, milliseconds until reset)."""
        result = await self._fixed_window(
            keys=[self._normalize_rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return int(result[0]), int(result[1])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so callers await it exactly like
    RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def store_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            RedisCache.refresh_token_key(user_id), token, ex=max(1, int(ttl_seconds))
        )

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return self._sync_client.get(RedisCache.refresh_token_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> None:
        self._sync_client.delete(RedisCache.refresh_token_key(user_id))

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        result = self._fixed_window(
            keys=[RedisCache._normalize_rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return int(result[0]), int(result[1])

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
