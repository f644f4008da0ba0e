"""User and permission caches built on the cache-aside engine."""

import pytest

from authcore.service.permissions import PermissionCache
from authcore.service.user_cache import UserCache
from authcore.storage.models import ADMIN_ROLE_NAME, MEMBER_ROLE_NAME, Permission


@pytest.fixture
def user_cache(store, cache, make_engine):
    return UserCache(store, cache, make_engine("user"), ttl_seconds=600, negative_ttl_seconds=60)


@pytest.fixture
def permission_cache(store, make_engine):
    return PermissionCache(store, make_engine("permission"))


class TestUserCache:
    async def test_second_read_served_from_cache(self, user_cache, store, metrics):
        user = store.create_user("cached@example.com", "Cached")

        first = await user_cache.get(user.id)
        second = await user_cache.get(user.id)

        assert first.email == second.email == "cached@example.com"
        assert metrics.snapshot("user").db_queries == 1
        assert metrics.snapshot("user").hits == 1

    async def test_missing_user_negatively_cached(self, user_cache, cache, metrics):
        assert await user_cache.get("ghost") is None
        assert await user_cache.get("ghost") is None

        assert metrics.snapshot("user").db_queries == 1
        assert await cache.ttl(UserCache.key("ghost")) <= 60

    async def test_invalidate_drops_key_and_tag(self, user_cache, store, cache):
        user = store.create_user("stale@example.com")
        await user_cache.get(user.id)
        assert UserCache.key(user.id) in await cache.tag_members(UserCache.tag(user.id))

        store.update_system_role(user.id, "SUPER_ADMIN")
        assert (await user_cache.get(user.id)).system_role == "USER"

        await user_cache.invalidate_user(user.id)
        assert await cache.get(UserCache.key(user.id)) is None
        assert await cache.tag_members(UserCache.tag(user.id)) == set()
        assert (await user_cache.get(user.id)).system_role == "SUPER_ADMIN"

    async def test_invalidate_users_dedupes(self, user_cache, store):
        a = store.create_user("a@example.com")
        b = store.create_user("b@example.com")
        await user_cache.get(a.id)
        await user_cache.get(b.id)

        assert await user_cache.invalidate_users([a.id, b.id, a.id]) == 2


def _org_with_member(store, *role_names):
    owner = store.create_user("owner@example.com")
    admin = store.get_system_role(ADMIN_ROLE_NAME)
    org = store.create_organization("Acme", "acme", owner.id, admin.id)
    member_user = store.create_user("member@example.com")
    first = store.get_system_role(role_names[0])
    member = store.add_member(member_user.id, org.id, first.id)
    for name in role_names[1:]:
        store.assign_member_role(member.id, store.get_system_role(name).id)
    return org, member_user


class TestPermissionCache:
    async def test_non_member_gets_empty_list(self, permission_cache, store):
        org, _ = _org_with_member(store, MEMBER_ROLE_NAME)
        outsider = store.create_user("outsider@example.com")
        assert await permission_cache.get(org.id, outsider.id, org.acl_version) == []

    async def test_permissions_deduplicated_across_roles(self, permission_cache, store):
        org, user = _org_with_member(store, MEMBER_ROLE_NAME)
        role = store.create_role(org.id, "Support")
        shared = Permission(id="perm-shared", action="read", subject="User", organization_id=org.id)
        store.add_role_permission(role.id, shared)
        other_role = store.create_role(org.id, "Billing")
        store.add_role_permission(other_role.id, shared)
        member = store.get_membership(user.id, org.id)
        store.assign_member_role(member.id, role.id)
        store.assign_member_role(member.id, other_role.id)

        perms = await permission_cache.get(org.id, user.id, org.acl_version)
        ids = [p.id for p in perms]
        assert ids.count("perm-shared") == 1
        assert len(ids) == len(set(ids))

    async def test_version_bump_changes_key(self, permission_cache, store, metrics):
        org, user = _org_with_member(store, MEMBER_ROLE_NAME)
        await permission_cache.get(org.id, user.id, 0)
        await permission_cache.get(org.id, user.id, 0)
        assert metrics.snapshot("permission").db_queries == 1

        version = store.bump_acl_version(org.id)
        await permission_cache.get(org.id, user.id, version)
        assert metrics.snapshot("permission").db_queries == 2
        assert PermissionCache.key(org.id, user.id, version).endswith(f":{version}")
