from __future__ import annotations

from typing import Iterable, Optional, Set

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for cache-aside entries, locks and login counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Delete the lock only if it still carries the caller's token, so an
    # expired-and-reacquired lock is never released by the previous owner.
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    # Atomic increment that resets the window TTL on every hit.
    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
return count
"""

    # Delete every key recorded under a tag set, then the set itself.
    _INVALIDATE_TAG_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, key in ipairs(members) do
  removed = removed + redis.call('DEL', key)
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)
        self._invalidate_tag = self.client.register_script(self._INVALIDATE_TAG_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET NX EX; True when this caller created the key."""
        return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def release_lock(self, key: str, token: str) -> bool:
        result = await self._release_lock(keys=[key], args=[token])
        return bool(int(result))

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        result = await self._incr_with_ttl(keys=[key], args=[ttl_seconds])
        return int(result)

    async def add_to_tag(self, tag: str, keys: Iterable[str], ttl_seconds: int) -> None:
        members = list(keys)
        if not members:
            return
        pipe = self.client.pipeline()
        pipe.sadd(tag, *members)
        pipe.expire(tag, ttl_seconds)
        await pipe.execute()

    async def tag_members(self, tag: str) -> Set[str]:
        return set(await self.client.smembers(tag))

    async def invalidate_tag(self, tag: str) -> int:
        result = await self._invalidate_tag(keys=[tag], args=[])
        return int(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited exactly
    like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self._sync_client.register_script(
            RedisCache._RELEASE_LOCK_SCRIPT
        )
        self._incr_with_ttl = self._sync_client.register_script(
            RedisCache._INCR_WITH_TTL_SCRIPT
        )
        self._invalidate_tag = self._sync_client.register_script(
            RedisCache._INVALIDATE_TAG_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._sync_client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._sync_client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(self._sync_client.exists(key))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self._sync_client.set(key, value, ex=ttl_seconds, nx=True))

    async def release_lock(self, key: str, token: str) -> bool:
        return bool(int(self._release_lock(keys=[key], args=[token])))

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        return int(self._incr_with_ttl(keys=[key], args=[ttl_seconds]))

    async def add_to_tag(self, tag: str, keys: Iterable[str], ttl_seconds: int) -> None:
        members = list(keys)
        if not members:
            return
        pipe = self._sync_client.pipeline()
        pipe.sadd(tag, *members)
        pipe.expire(tag, ttl_seconds)
        pipe.execute()

    async def tag_members(self, tag: str) -> Set[str]:
        return set(self._sync_client.smembers(tag))

    async def invalidate_tag(self, tag: str) -> int:
        return int(self._invalidate_tag(keys=[tag], args=[]))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
