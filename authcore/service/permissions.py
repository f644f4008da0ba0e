from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.cache_aside import CacheAside
from authcore.storage.common import dedupe_by_id
from authcore.storage.models import Permission

logger = get_logger(__name__)


class PermissionSource(Protocol):
    def list_member_permissions(
        self, user_id: str, org_id: str
    ) -> Optional[List[Tuple[str, Permission]]]: ...


class PermissionCache:
    """Effective permissions of one member, keyed by the org's ACL version.

    Nothing is ever deleted here: a permission change bumps the version, the
    key changes, and stale entries age out on their TTL.
    """

    def __init__(
        self, store: PermissionSource, engine: CacheAside, *, ttl_seconds: int = 3600
    ) -> None:
        self.store = store
        self.engine = engine
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(org_id: str, user_id: str, acl_version: int) -> str:
        return f"perm:{org_id}:{user_id}:{acl_version}"

    def load(self, user_id: str, org_id: str) -> List[Permission]:
        rows = self.store.list_member_permissions(user_id, org_id)
        if rows is None:
            logger.debug("permission_load_non_member", user_id=user_id, org_id=org_id)
            return []
        return dedupe_by_id([perm for _role_id, perm in rows])

    async def get(self, org_id: str, user_id: str, acl_version: int) -> List[Permission]:
        data = await self.engine.get_or_load(
            self.key(org_id, user_id, acl_version),
            lambda: [perm.to_cache() for perm in self.load(user_id, org_id)],
            self.ttl_seconds,
        )
        return [Permission.from_cache(item) for item in data or []]
