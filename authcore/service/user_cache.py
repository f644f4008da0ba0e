from __future__ import annotations

from typing import Iterable, Optional, Protocol, Set

from authcore.logging import get_logger
from authcore.service.cache_aside import CacheAside
from authcore.storage.models import User

logger = get_logger(__name__)


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class TaggingCache(Protocol):
    async def add_to_tag(self, tag: str, keys: Iterable[str], ttl_seconds: int) -> None: ...

    async def tag_members(self, tag: str) -> Set[str]: ...

    async def invalidate_tag(self, tag: str) -> int: ...

    async def delete(self, *keys: str) -> int: ...


class UserCache:
    """Cache-aside view of user rows keyed by ``user:{id}``.

    Missing users are cached as ``null`` for a shorter TTL so a deleted
    account hammering the API does not reach the store on every request.
    Every key written for a user is recorded in ``user:{id}:cache_keys`` so
    one call can drop all of them.
    """

    def __init__(
        self,
        store: UserLookup,
        cache: TaggingCache,
        engine: CacheAside,
        *,
        ttl_seconds: int = 600,
        negative_ttl_seconds: int = 60,
    ) -> None:
        self.store = store
        self.cache = cache
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self.negative_ttl_seconds = negative_ttl_seconds

    @staticmethod
    def key(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def tag(user_id: str) -> str:
        return f"user:{user_id}:cache_keys"

    def _ttl_for(self, value) -> int:
        return self.negative_ttl_seconds if value is None else self.ttl_seconds

    async def get(self, user_id: str) -> Optional[User]:
        key = self.key(user_id)

        async def _load():
            user = self.store.get_user(user_id)
            await self.cache.add_to_tag(self.tag(user_id), [key], self.ttl_seconds)
            return user.to_cache() if user else None

        data = await self.engine.get_or_load(
            key, _load, self.ttl_seconds, ttl_for=self._ttl_for
        )
        return User.from_cache(data) if data else None

    async def invalidate_user(self, user_id: str) -> int:
        removed = await self.cache.invalidate_tag(self.tag(user_id))
        removed += await self.cache.delete(self.key(user_id))
        logger.debug("user_cache_invalidated", user_id=user_id, removed=removed)
        return removed

    async def invalidate_users(self, user_ids: Iterable[str]) -> int:
        total = 0
        for user_id in set(user_ids):
            total += await self.invalidate_user(user_id)
        return total
