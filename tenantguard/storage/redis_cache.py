from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for revocations, rate-limit counters and sessions.

    Expiry is always delegated to Redis (``EX``/``EXPIRE``), so nodes never
    compare their own wall clocks against stored timestamps.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and refresh the window in one round trip; the sliding TTL means a
    # burst of failures keeps the lockout alive until it goes quiet.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
return count
"""

    # Scale a counter down but never below 1, preserving its TTL.
    _DECAY_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]))
if current == nil or current <= 0 then
  return 0
end
local decayed = math.max(1, math.floor(current * tonumber(ARGV[1])))
local ttl = redis.call('PTTL', KEYS[1])
if ttl > 0 then
  redis.call('SET', KEYS[1], decayed, 'PX', ttl)
else
  redis.call('SET', KEYS[1], decayed)
end
return decayed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._decay = self.client.register_script(self._DECAY_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # short-lived sync client; the async one must not bind to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def forget(self, key: str) -> None:
        await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        )

    async def increment(self, key: str, ttl_seconds: int) -> int:
        return int(await self._increment(keys=[key], args=[max(1, int(ttl_seconds))]))

    async def decay(self, key: str, factor: float) -> int:
        return int(await self._decay(keys=[key], args=[factor]))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def close(self) -> None:
        """Close the connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis client exposed through the same awaitable API.

    Commands run on the calling thread, so nothing binds to an event loop.
    Useful when the cache is shared by code that starts its own loops per
    call, such as worker threads or test runners that use ``asyncio.run``.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(RedisCache._INCREMENT_SCRIPT)
        self._decay = self.client.register_script(RedisCache._DECAY_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def forget(self, key: str) -> None:
        self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        return int(self._increment(keys=[key], args=[max(1, int(ttl_seconds))]))

    async def decay(self, key: str, factor: float) -> int:
        return int(self._decay(keys=[key], args=[factor]))

    async def ttl(self, key: str) -> int:
        return int(self.client.ttl(key))

    async def close(self) -> None:
        self.client.close()
