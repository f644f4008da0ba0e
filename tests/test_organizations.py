"""Organization, role, permission and membership mutations."""

import pytest

from authcore.service.errors import (
    BusinessRuleViolation,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from authcore.service.organizations import OrganizationService, slugify
from authcore.storage.models import (
    ADMIN_ROLE_NAME,
    MEMBER_ROLE_NAME,
    VIEWER_ROLE_NAME,
    Principal,
    PrincipalKind,
)


@pytest.fixture
def orgs(store):
    return OrganizationService(store)


@pytest.fixture
def owner(store):
    return store.create_user("owner@example.com", "Owner")


def _principal_for(user, org):
    return Principal(
        subject_id=user.id,
        kind=PrincipalKind.PASSWORD.value,
        system_role=user.system_role,
        email=user.email,
        organization_id=org.id,
        acl_version=org.acl_version,
    )


class TestSlugify:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Acme Corp", "acme-corp"),
            ("  Café  Société ", "cafe-societe"),
            ("Hello!!  World--Again", "hello-world-again"),
            ("***", ""),
        ],
    )
    def test_slugify(self, name, expected):
        assert slugify(name) == expected


class TestCreate:
    async def test_owner_becomes_admin(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme Corp")

        assert org.slug == "acme-corp"
        assert org.acl_version == 0
        member, role_ids = await orgs.member_roles(org.id, owner.id)
        assert role_ids == [store.get_system_role(ADMIN_ROLE_NAME).id]

    async def test_generated_slug_gets_suffix_when_taken(self, orgs, owner):
        first = await orgs.create(owner.id, "Acme")
        second = await orgs.create(owner.id, "Acme")
        assert first.slug == "acme"
        assert second.slug.startswith("acme-")
        assert len(second.slug) == len("acme-") + 6

    async def test_explicit_slug_conflict(self, orgs, owner):
        await orgs.create(owner.id, "Acme", slug="acme")
        with pytest.raises(ConflictError):
            await orgs.create(owner.id, "Other", slug="acme")

    async def test_name_required(self, orgs, owner):
        with pytest.raises(ValidationError):
            await orgs.create(owner.id, "   ")

    async def test_symbol_only_name_falls_back(self, orgs, owner):
        assert (await orgs.create(owner.id, "!!!")).slug == "org"


class TestRoles:
    async def test_context_must_match(self, orgs, owner):
        org = await orgs.create(owner.id, "Acme")
        other = await orgs.create(owner.id, "Other")
        with pytest.raises(ForbiddenError):
            await orgs.create_role(_principal_for(owner, other), org.id, "Support")

    async def test_create_and_delete_custom_role_bumps_version(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)

        role = await orgs.create_role(principal, org.id, "Support", "Helpdesk")
        assert role.organization_id == org.id and not role.is_system
        with pytest.raises(ConflictError):
            await orgs.create_role(principal, org.id, "Support")

        await orgs.delete_role(principal, org.id, role.id)
        assert store.get_role(role.id) is None
        assert store.get_organization(org.id).acl_version == 1

    async def test_system_roles_are_read_only(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        admin = store.get_system_role(ADMIN_ROLE_NAME)

        with pytest.raises(ForbiddenError):
            await orgs.delete_role(principal, org.id, admin.id)
        with pytest.raises(ForbiddenError):
            await orgs.assign_permission(principal, org.id, admin.id, "read", "User")

    async def test_role_of_another_org_not_found(self, orgs, owner):
        org = await orgs.create(owner.id, "Acme")
        other = await orgs.create(owner.id, "Other")
        foreign = await orgs.create_role(_principal_for(owner, other), other.id, "Foreign")

        with pytest.raises(NotFoundError):
            await orgs.delete_role(_principal_for(owner, org), org.id, foreign.id)


class TestPermissions:
    async def test_assign_and_remove(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        role = await orgs.create_role(principal, org.id, "Support")

        perm = await orgs.assign_permission(
            principal,
            org.id,
            role.id,
            "update",
            "User",
            conditions={"id": "${user.subjectId}"},
            fields=["name"],
        )
        assert perm.organization_id == org.id
        assert store.get_role_permission(role.id, perm.id).fields == ["name"]

        await orgs.remove_permission(principal, org.id, role.id, perm.id)
        assert store.get_role_permission(role.id, perm.id) is None
        assert store.get_organization(org.id).acl_version == 2

    async def test_unknown_action_or_subject(self, orgs, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        role = await orgs.create_role(principal, org.id, "Support")

        with pytest.raises(ValidationError):
            await orgs.assign_permission(principal, org.id, role.id, "explode", "User")
        with pytest.raises(ValidationError):
            await orgs.assign_permission(principal, org.id, role.id, "read", "Invoice")

    async def test_system_permission_cannot_be_removed(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        member_role = store.get_system_role(MEMBER_ROLE_NAME)
        system_perm_id = store.role_permissions[member_role.id][0]

        with pytest.raises(ForbiddenError):
            await orgs.remove_permission(principal, org.id, member_role.id, system_perm_id)

    async def test_missing_permission(self, orgs, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        role = await orgs.create_role(principal, org.id, "Support")
        with pytest.raises(NotFoundError):
            await orgs.remove_permission(principal, org.id, role.id, "nope")


class TestMembers:
    async def test_invite_defaults_to_member_role(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        invitee = store.create_user("invitee@example.com")

        member = await orgs.invite_member(_principal_for(owner, org), org.id, "Invitee@example.com")

        assert member.user_id == invitee.id
        _, role_ids = await orgs.member_roles(org.id, invitee.id)
        assert role_ids == [store.get_system_role(MEMBER_ROLE_NAME).id]
        assert store.get_organization(org.id).acl_version == 1

    async def test_invite_errors(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        store.create_user("invitee@example.com")

        with pytest.raises(NotFoundError):
            await orgs.invite_member(principal, org.id, "ghost@example.com")
        await orgs.invite_member(principal, org.id, "invitee@example.com")
        with pytest.raises(ConflictError):
            await orgs.invite_member(principal, org.id, "invitee@example.com")

    async def test_assign_and_remove_roles(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        invitee = store.create_user("invitee@example.com")
        await orgs.invite_member(principal, org.id, invitee.email)
        viewer = store.get_system_role(VIEWER_ROLE_NAME)

        await orgs.assign_role(principal, org.id, invitee.id, viewer.id)
        with pytest.raises(ConflictError):
            await orgs.assign_role(principal, org.id, invitee.id, viewer.id)
        await orgs.remove_role(principal, org.id, invitee.id, viewer.id)

        _, role_ids = await orgs.member_roles(org.id, invitee.id)
        assert viewer.id not in role_ids

    async def test_last_admin_is_protected(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        admin = store.get_system_role(ADMIN_ROLE_NAME)

        with pytest.raises(BusinessRuleViolation):
            await orgs.remove_member(principal, org.id, owner.id)
        with pytest.raises(BusinessRuleViolation):
            await orgs.remove_role(principal, org.id, owner.id, admin.id)

        second = store.create_user("second@example.com")
        await orgs.invite_member(principal, org.id, second.email, admin.id)
        await orgs.remove_role(principal, org.id, owner.id, admin.id)

    async def test_remove_member(self, orgs, store, owner):
        org = await orgs.create(owner.id, "Acme")
        principal = _principal_for(owner, org)
        invitee = store.create_user("invitee@example.com")
        await orgs.invite_member(principal, org.id, invitee.email)

        await orgs.remove_member(principal, org.id, invitee.id)
        assert store.get_membership(invitee.id, org.id) is None
        with pytest.raises(NotFoundError):
            await orgs.remove_member(principal, org.id, invitee.id)
