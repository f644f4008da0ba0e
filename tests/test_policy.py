from authcore.service.permissions import PermissionCache
from authcore.service.policy import (
    Ability,
    PolicyEngine,
    Rule,
    apply_scopes,
    interpolate,
    interpolate_conditions,
    matches_conditions,
)
from authcore.storage.models import (
    ADMIN_ROLE_NAME,
    MEMBER_ROLE_NAME,
    VIEWER_ROLE_NAME,
    Action,
    Permission,
    Principal,
    PrincipalKind,
    Subject,
)


def _principal(**overrides):
    values = dict(
        subject_id="user-1",
        kind=PrincipalKind.PASSWORD.value,
        system_role="USER",
        email="user@example.com",
    )
    values.update(overrides)
    return Principal(**values)


class TestInterpolation:
    def test_whole_placeholder_keeps_type(self):
        context = {"user": {"aclVersion": 4, "scopes": ["read:User"]}}
        assert interpolate("${user.aclVersion}", context) == 4
        assert interpolate("${user.scopes}", context) == ["read:User"]

    def test_embedded_placeholder_rendered_as_text(self):
        context = {"user": {"subjectId": "abc"}}
        assert interpolate("owner-${user.subjectId}-x", context) == "owner-abc-x"
        assert interpolate("owner-${user.missing}", context) == "owner-${user.missing}"

    def test_unresolved_embedded_placeholder_matches_nothing(self):
        conditions = interpolate({"ownerRef": "user:${user.nope}"}, {"user": {}})
        assert not matches_conditions(conditions, {"ownerRef": "user:"})
        assert not matches_conditions(conditions, {"ownerRef": "user:None"})

    def test_nested_structures_and_operators(self):
        principal = _principal(organization_id="org-9", acl_version=1)
        conditions = {
            "id": "${user.subjectId}",
            "organizationId": {"$in": ["${user.organizationId}", "shared"]},
            "count": 3,
        }
        assert interpolate_conditions(conditions, principal) == {
            "id": "user-1",
            "organizationId": {"$in": ["org-9", "shared"]},
            "count": 3,
        }

    def test_values_are_not_reparsed(self):
        # A value that looks like JSON or contains quotes stays a plain string
        principal = _principal(email='x", "id": "evil')
        result = interpolate_conditions({"email": "${user.email}"}, principal)
        assert result == {"email": 'x", "id": "evil'}

    def test_unresolved_whole_placeholder_is_none(self):
        assert interpolate("${user.nope}", {"user": {}}) is None

    def test_empty_conditions(self):
        assert interpolate_conditions(None, _principal()) is None
        assert interpolate_conditions({}, _principal()) is None


class TestMatching:
    def test_equality_and_operators(self):
        record = {"id": "u1", "status": "active", "owner": {"id": "u1"}}
        assert matches_conditions({"id": "u1"}, record)
        assert matches_conditions({"owner.id": "u1"}, record)
        assert matches_conditions({"status": {"$in": ["active", "pending"]}}, record)
        assert matches_conditions({"status": {"$ne": "deleted"}}, record)
        assert matches_conditions({"status": {"$nin": ["deleted"]}}, record)
        assert not matches_conditions({"status": {"$eq": "deleted"}}, record)
        assert not matches_conditions({"id": "u2"}, record)

    def test_unknown_operator_fails_closed(self):
        assert not matches_conditions({"id": {"$regex": ".*"}}, {"id": "u1"})

    def test_attribute_records(self):
        class Doc:
            id = "u1"

        assert matches_conditions({"id": "u1"}, Doc())


class TestAbility:
    def test_manage_and_all_are_wildcards(self):
        ability = Ability([Rule("manage", "all")])
        assert ability.can("delete", "Organization")
        assert ability.can("read", "User")

    def test_later_inverted_rule_wins(self):
        ability = Ability([Rule("read", "all"), Rule("read", "Role", inverted=True)])
        assert ability.can("read", "User")
        assert ability.cannot("read", "Role")

    def test_later_grant_overrides_earlier_deny(self):
        ability = Ability([Rule("read", "Role", inverted=True), Rule("read", "all")])
        assert ability.can("read", "Role")

    def test_conditions_checked_against_record(self):
        ability = Ability([Rule("update", "User", conditions={"id": "u1"})])
        assert ability.can("update", "User", {"id": "u1"})
        assert ability.cannot("update", "User", {"id": "u2"})
        # Type-level question counts a conditional grant
        assert ability.can("update", "User")

    def test_conditional_deny_ignored_without_record(self):
        ability = Ability(
            [Rule("read", "User"), Rule("read", "User", {"id": "u2"}, inverted=True)]
        )
        assert ability.can("read", "User")
        assert ability.cannot("read", "User", {"id": "u2"})

    def test_field_restrictions(self):
        ability = Ability([Rule("update", "User", fields=["name"])])
        assert ability.can("update", "User", field_name="name")
        assert ability.cannot("update", "User", field_name="email")
        assert ability.can("update", "User")

    def test_field_scoped_deny_only_applies_to_those_fields(self):
        ability = Ability(
            [
                Rule("manage", "User"),
                Rule("update", "User", fields=["password"], inverted=True),
            ]
        )
        assert ability.can("update", "User")
        assert ability.can("update", "User", field_name="name")
        assert ability.cannot("update", "User", field_name="password")

    def test_empty_ability_denies(self):
        assert Ability().cannot("read", "User")

    def test_enum_arguments_accepted(self):
        ability = Ability([Rule("read", "User")])
        assert ability.can(Action.READ, Subject.USER)


class TestScopes:
    def test_none_keeps_everything(self):
        perms = [Permission(id="1", action="read", subject="User")]
        assert apply_scopes(perms, None) == perms

    def test_intersection_by_action_and_subject(self):
        perms = [
            Permission(id="1", action="read", subject="User"),
            Permission(id="2", action="create", subject="all"),
        ]
        assert [p.id for p in apply_scopes(perms, ["read:User"])] == ["1"]
        assert apply_scopes(perms, []) == []


class TestPolicyEngine:
    def _engine(self, store, make_engine):
        return PolicyEngine(PermissionCache(store, make_engine("permission")))

    def _org(self, store, role_name):
        owner = store.create_user("owner@example.com")
        org = store.create_organization(
            "Acme", "acme", owner.id, store.get_system_role(ADMIN_ROLE_NAME).id
        )
        if role_name == ADMIN_ROLE_NAME:
            return org, owner
        user = store.create_user(f"{role_name.lower()}@example.com")
        store.add_member(user.id, org.id, store.get_system_role(role_name).id)
        return org, user

    async def test_super_admin_manages_everything(self, store, make_engine):
        ability = await self._engine(store, make_engine).build(
            _principal(system_role="SUPER_ADMIN")
        )
        assert ability.can("delete", "Organization")

    async def test_no_org_context_only_self(self, store, make_engine):
        ability = await self._engine(store, make_engine).build(_principal())
        assert ability.can("read", "User", {"id": "user-1"})
        assert ability.can("update", "User", {"id": "user-1"})
        assert ability.cannot("read", "User", {"id": "user-2"})
        assert ability.cannot("delete", "User", {"id": "user-1"})
        assert ability.cannot("read", "Organization")

    async def test_member_can_update_only_self(self, store, make_engine):
        org, user = self._org(store, MEMBER_ROLE_NAME)
        principal = _principal(
            subject_id=user.id, organization_id=org.id, acl_version=org.acl_version
        )
        ability = await self._engine(store, make_engine).build(principal)

        assert ability.can("read", "Organization")
        assert ability.can("create", "Role")
        assert ability.can("update", "User", {"id": user.id})
        assert ability.cannot("update", "User", {"id": "someone-else"})
        assert ability.cannot("delete", "Role")

    async def test_viewer_is_read_only(self, store, make_engine):
        org, user = self._org(store, VIEWER_ROLE_NAME)
        principal = _principal(
            subject_id=user.id, organization_id=org.id, acl_version=org.acl_version
        )
        ability = await self._engine(store, make_engine).build(principal)
        assert ability.can("read", "Permission")
        assert ability.cannot("create", "Role")

    async def test_admin_manages_org_subjects(self, store, make_engine):
        org, owner = self._org(store, ADMIN_ROLE_NAME)
        principal = _principal(
            subject_id=owner.id, organization_id=org.id, acl_version=org.acl_version
        )
        ability = await self._engine(store, make_engine).build(principal)
        assert ability.can("delete", "Role")
        assert ability.can("manage", "Organization")

    async def test_scoped_api_key_intersects(self, store, make_engine):
        org, user = self._org(store, MEMBER_ROLE_NAME)
        principal = _principal(
            subject_id=user.id,
            kind=PrincipalKind.API_KEY.value,
            organization_id=org.id,
            acl_version=org.acl_version,
            scopes=["read:all"],
        )
        ability = await self._engine(store, make_engine).build(principal)
        assert ability.can("read", "User")
        assert ability.cannot("create", "Role")

    async def test_acl_bump_picks_up_new_permissions(self, store, make_engine):
        org, user = self._org(store, VIEWER_ROLE_NAME)
        engine = self._engine(store, make_engine)
        before = _principal(subject_id=user.id, organization_id=org.id, acl_version=0)
        assert (await engine.build(before)).cannot("delete", "Role")

        custom = store.create_role(org.id, "Janitor")
        store.add_role_permission(
            custom.id,
            Permission(id="perm-del", action="delete", subject="Role", organization_id=org.id),
        )
        store.assign_member_role(store.get_membership(user.id, org.id).id, custom.id)

        # Same version is still served from cache
        assert (await engine.build(before)).cannot("delete", "Role")
        version = store.bump_acl_version(org.id)
        after = _principal(subject_id=user.id, organization_id=org.id, acl_version=version)
        assert (await engine.build(after)).can("delete", "Role")
