"""Integration tests for organization context, role management and ACL versioning."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime
from authcore.storage.models import Principal, PrincipalKind

PASSWORD = "P@ssw0rd1"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _register(email):
    # Separate clients so refresh cookies never mix
    response = TestClient(app_module.app).post(
        "/v1/auth/register", json={"email": email, "password": PASSWORD}
    )
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    return data["user"]["id"], data["access_token"]


def _switch(client, token, org_id):
    response = client.post(f"/v1/organizations/{org_id}/switch", headers=_auth(token))
    assert response.status_code == 200, response.text
    return response.json()["data"]["access_token"]


@pytest.fixture
def org_setup(client):
    owner_id, owner_token = _register("owner@test.com")
    created = client.post(
        "/v1/organizations", json={"name": "Acme Corp"}, headers=_auth(owner_token)
    )
    assert created.status_code == 201, created.text
    org = created.json()["data"]
    return {
        "org_id": org["id"],
        "owner_id": owner_id,
        "owner_token": _switch(client, owner_token, org["id"]),
    }


class TestOrganizationContext:
    def test_create_returns_slug_and_version(self, client):
        _, token = _register("creator@test.com")
        response = client.post(
            "/v1/organizations", json={"name": "Café Society"}, headers=_auth(token)
        )
        data = response.json()["data"]
        assert data["slug"] == "cafe-society"
        assert data["acl_version"] == 0

    def test_management_needs_switched_token(self, client):
        _, token = _register("noctx@test.com")
        org_id = client.post(
            "/v1/organizations", json={"name": "NoCtx"}, headers=_auth(token)
        ).json()["data"]["id"]

        response = client.post(
            f"/v1/organizations/{org_id}/roles", json={"name": "Support"}, headers=_auth(token)
        )
        assert response.status_code == 403

    def test_non_member_cannot_switch(self, client, org_setup):
        _, outsider = _register("outsider@test.com")
        response = client.post(
            f"/v1/organizations/{org_setup['org_id']}/switch", headers=_auth(outsider)
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "not_a_member"

    def test_token_for_other_org_is_rejected(self, client, org_setup):
        _, other_token = _register("other-owner@test.com")
        other_id = client.post(
            "/v1/organizations", json={"name": "Other"}, headers=_auth(other_token)
        ).json()["data"]["id"]
        other_ctx = _switch(client, other_token, other_id)

        response = client.post(
            f"/v1/organizations/{org_setup['org_id']}/roles",
            json={"name": "Hijack"},
            headers=_auth(other_ctx),
        )
        assert response.status_code == 403


class TestRolesAndMembers:
    def test_role_and_membership_flow(self, client, org_setup):
        org_id, owner_token = org_setup["org_id"], org_setup["owner_token"]
        member_id, _ = _register("member@test.com")

        role = client.post(
            f"/v1/organizations/{org_id}/roles",
            json={"name": "Support", "description": "Helpdesk"},
            headers=_auth(owner_token),
        )
        assert role.status_code == 201
        role_id = role.json()["data"]["id"]

        invited = client.post(
            f"/v1/organizations/{org_id}/members",
            json={"email": "member@test.com"},
            headers=_auth(owner_token),
        )
        assert invited.status_code == 201
        assert invited.json()["data"]["user_id"] == member_id

        assigned = client.post(
            f"/v1/organizations/{org_id}/members/{member_id}/roles",
            json={"role_id": role_id},
            headers=_auth(owner_token),
        )
        assert role_id in assigned.json()["data"]["role_ids"]

        removed = client.delete(
            f"/v1/organizations/{org_id}/members/{member_id}", headers=_auth(owner_token)
        )
        assert removed.status_code == 200

    def test_last_admin_cannot_leave(self, client, org_setup):
        response = client.delete(
            f"/v1/organizations/{org_setup['org_id']}/members/{org_setup['owner_id']}",
            headers=_auth(org_setup["owner_token"]),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "business_rule_violation"

    def test_invalid_permission_payload(self, client, org_setup):
        org_id, owner_token = org_setup["org_id"], org_setup["owner_token"]
        role_id = client.post(
            f"/v1/organizations/{org_id}/roles", json={"name": "Deep"}, headers=_auth(owner_token)
        ).json()["data"]["id"]

        deep = {"a": {"b": {"c": {"d": {"e": {"f": {"g": {"h": {"i": {"j": 1}}}}}}}}}}
        response = client.post(
            f"/v1/organizations/{org_id}/roles/{role_id}/permissions",
            json={"action": "read", "subject": "User", "conditions": deep},
            headers=_auth(owner_token),
        )
        assert response.status_code == 400


class TestAclVersioning:
    def test_old_token_keeps_old_rules_until_reswitch(self, client, org_setup):
        org_id, owner_token = org_setup["org_id"], org_setup["owner_token"]
        member_id, member_login = _register("member@test.com")
        client.post(
            f"/v1/organizations/{org_id}/members",
            json={"email": "member@test.com"},
            headers=_auth(owner_token),
        )
        member_token = _switch(client, member_login, org_id)

        denied = client.post(
            f"/v1/organizations/{org_id}/roles", json={"name": "Mine"}, headers=_auth(member_token)
        )
        assert denied.status_code == 403

        role_id = client.post(
            f"/v1/organizations/{org_id}/roles", json={"name": "Managers"}, headers=_auth(owner_token)
        ).json()["data"]["id"]
        client.post(
            f"/v1/organizations/{org_id}/roles/{role_id}/permissions",
            json={"action": "manage", "subject": "Role"},
            headers=_auth(owner_token),
        )
        client.post(
            f"/v1/organizations/{org_id}/members/{member_id}/roles",
            json={"role_id": role_id},
            headers=_auth(owner_token),
        )

        # Stale token: its ACL version still points at the cached rule set
        still_denied = client.post(
            f"/v1/organizations/{org_id}/roles", json={"name": "Mine"}, headers=_auth(member_token)
        )
        assert still_denied.status_code == 403

        fresh_token = _switch(client, member_login, org_id)
        allowed = client.post(
            f"/v1/organizations/{org_id}/roles", json={"name": "Mine"}, headers=_auth(fresh_token)
        )
        assert allowed.status_code == 201

    def test_grant_visible_only_at_bumped_version(self):
        runtime = get_runtime()
        store = runtime.store

        async def scenario():
            owner = store.create_user("v@test.com")
            org = await runtime.organizations.create(owner.id, "Versions")
            for _ in range(5):
                await runtime.organizations.bump_acl_version(org.id)
            principal = Principal(
                subject_id=owner.id,
                kind=PrincipalKind.PASSWORD.value,
                system_role="USER",
                organization_id=org.id,
                acl_version=5,
            )
            before = await runtime.policy.build(principal)
            assert before.cannot("delete", "all")

            role = await runtime.organizations.create_role(principal, org.id, "Wide")
            await runtime.organizations.assign_permission(principal, org.id, role.id, "delete", "all")
            await runtime.organizations.assign_role(principal, org.id, owner.id, role.id)

            stale = await runtime.policy.build(principal)
            assert stale.cannot("delete", "all")
            current = store.get_organization(org.id).acl_version
            assert current > 5
            principal.acl_version = current
            assert (await runtime.policy.build(principal)).can("delete", "all")

        asyncio.run(scenario())


class TestSuperAdmin:
    def test_super_admin_never_loads_permissions(self):
        runtime = get_runtime()

        async def scenario():
            principal = Principal(
                subject_id="root",
                kind=PrincipalKind.PASSWORD.value,
                system_role="SUPER_ADMIN",
                organization_id="any-org",
                acl_version=3,
            )
            ability = await runtime.policy.build(principal)
            assert ability.can("manage", "all")
            assert ability.can("delete", "Organization")

        asyncio.run(scenario())
        assert runtime.metrics.snapshot("permission").db_queries == 0
