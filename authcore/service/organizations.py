from __future__ import annotations

import re
import secrets
import unicodedata
from typing import Any, Dict, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.errors import (
    BusinessRuleViolation,
    ConflictError,
    ForbiddenError,
    NotAMember,
    NotFoundError,
    ServerError,
    ValidationError,
)
from authcore.storage.common import generate_uuid
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ADMIN_ROLE_NAME,
    MEMBER_ROLE_NAME,
    Action,
    Organization,
    OrgMember,
    Permission,
    Principal,
    Role,
    Subject,
    User,
)

logger = get_logger(__name__)


class OrganizationStore(Protocol):
    def create_organization(
        self, name: str, slug: str, owner_user_id: str, owner_role_id: str
    ) -> Organization: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]: ...

    def bump_acl_version(self, org_id: str) -> int: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_membership(self, user_id: str, org_id: str) -> Optional[OrgMember]: ...

    def add_member(self, user_id: str, org_id: str, role_id: str) -> OrgMember: ...

    def remove_member(self, member_id: str) -> int: ...

    def list_member_role_ids(self, member_id: str) -> List[str]: ...

    def assign_member_role(self, member_id: str, role_id: str) -> None: ...

    def remove_member_role(self, member_id: str, role_id: str) -> int: ...

    def list_role_holders(self, org_id: str, role_id: str) -> List[str]: ...

    def get_system_role(self, name: str) -> Optional[Role]: ...

    def create_role(
        self, org_id: str, name: str, description: Optional[str] = None
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> int: ...

    def add_role_permission(self, role_id: str, permission: Permission) -> Permission: ...

    def get_role_permission(self, role_id: str, permission_id: str) -> Optional[Permission]: ...

    def delete_permission(self, permission_id: str) -> int: ...


_VALID_ACTIONS = {a.value for a in Action}
_VALID_SUBJECTS = {s.value for s in Subject}


def slugify(name: str) -> str:
    normalized = unicodedata.normalize("NFKD", name)
    ascii_only = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    slug = re.sub(r"[^a-z0-9\s-]", "", ascii_only.lower()).strip()
    slug = re.sub(r"\s+", "-", slug)
    return re.sub(r"-+", "-", slug)


class OrganizationService:
    """Organization, role and membership mutations.

    Every change to what a member may do ends with ``bump_acl_version`` so
    permission cache entries keyed on the old version stop being read.
    """

    def __init__(self, store: OrganizationStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # guards
    # ------------------------------------------------------------------
    @staticmethod
    def assert_org_context(principal: Principal, org_id: str) -> None:
        if principal.organization_id != org_id:
            raise ForbiddenError(
                "organization context mismatch, switch to the organization first",
                detail={"organization_id": org_id},
            )

    def _system_role(self, name: str) -> Role:
        role = self.store.get_system_role(name)
        if not role:
            raise ServerError(f"system role {name} is not seeded")
        return role

    def _require_member(self, org_id: str, user_id: str) -> OrgMember:
        member = self.store.get_membership(user_id, org_id)
        if not member:
            raise NotFoundError("member not found in this organization")
        return member

    def _custom_role(self, org_id: str, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role and role.is_system:
            raise ForbiddenError("system roles cannot be modified")
        if not role or role.organization_id != org_id:
            raise NotFoundError("custom role not found in this organization")
        return role

    def _assignable_role(self, org_id: str, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role or not (role.is_system or role.organization_id == org_id):
            raise NotFoundError("role not found in this organization")
        return role

    def _assert_not_last_admin(self, org_id: str, user_id: str) -> None:
        admin = self._system_role(ADMIN_ROLE_NAME)
        holders = self.store.list_role_holders(org_id, admin.id)
        if user_id in holders and len(holders) == 1:
            raise BusinessRuleViolation(
                "cannot remove the last administrator from an organization"
            )

    # ------------------------------------------------------------------
    # organizations
    # ------------------------------------------------------------------
    def _generate_slug(self, name: str) -> str:
        base = slugify(name) or "org"
        if not self.store.get_organization_by_slug(base):
            return base
        return f"{base}-{secrets.token_hex(3)}"

    async def create(
        self, owner_user_id: str, name: str, slug: Optional[str] = None
    ) -> Organization:
        if not name or not name.strip():
            raise ValidationError("organization name is required")
        if slug:
            if self.store.get_organization_by_slug(slug):
                raise ConflictError(f"slug '{slug}' is already taken")
        else:
            slug = self._generate_slug(name)
        admin = self._system_role(ADMIN_ROLE_NAME)
        try:
            org = self.store.create_organization(name.strip(), slug, owner_user_id, admin.id)
        except ConstraintViolation as exc:
            raise ConflictError(f"slug '{slug}' is already taken", detail=exc.detail)
        logger.info("organization_created", org_id=org.id, owner_id=owner_user_id)
        return org

    async def get_for_switch(self, org_id: str, user_id: str) -> Organization:
        org = self.store.get_organization(org_id)
        if not org or not self.store.get_membership(user_id, org_id):
            raise NotAMember()
        return org

    async def bump_acl_version(self, org_id: str) -> int:
        version = self.store.bump_acl_version(org_id)
        logger.info("acl_version_bumped", org_id=org_id, acl_version=version)
        return version

    # ------------------------------------------------------------------
    # roles & permissions
    # ------------------------------------------------------------------
    async def create_role(
        self,
        principal: Principal,
        org_id: str,
        name: str,
        description: Optional[str] = None,
    ) -> Role:
        self.assert_org_context(principal, org_id)
        if not name or not name.strip():
            raise ValidationError("role name is required")
        try:
            role = self.store.create_role(org_id, name.strip(), description)
        except ConstraintViolation:
            raise ConflictError(f"role '{name}' already exists in this organization")
        logger.info("role_created", org_id=org_id, role_id=role.id)
        return role

    async def delete_role(self, principal: Principal, org_id: str, role_id: str) -> None:
        self.assert_org_context(principal, org_id)
        self._custom_role(org_id, role_id)
        self.store.delete_role(role_id)
        await self.bump_acl_version(org_id)

    async def assign_permission(
        self,
        principal: Principal,
        org_id: str,
        role_id: str,
        action: str,
        subject: str,
        *,
        conditions: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
        inverted: bool = False,
    ) -> Permission:
        self.assert_org_context(principal, org_id)
        self._custom_role(org_id, role_id)
        if action not in _VALID_ACTIONS:
            raise ValidationError(f"unknown action '{action}'")
        if subject not in _VALID_SUBJECTS:
            raise ValidationError(f"unknown subject '{subject}'")
        permission = Permission(
            id=generate_uuid(),
            action=action,
            subject=subject,
            conditions=conditions or None,
            fields=list(fields or []),
            inverted=inverted,
            organization_id=org_id,
        )
        self.store.add_role_permission(role_id, permission)
        await self.bump_acl_version(org_id)
        return permission

    async def remove_permission(
        self, principal: Principal, org_id: str, role_id: str, permission_id: str
    ) -> None:
        self.assert_org_context(principal, org_id)
        permission = self.store.get_role_permission(role_id, permission_id)
        if not permission:
            raise NotFoundError("permission not found on this role")
        if permission.organization_id != org_id:
            raise ForbiddenError("cannot remove system-level permissions")
        self.store.delete_permission(permission_id)
        await self.bump_acl_version(org_id)

    # ------------------------------------------------------------------
    # members
    # ------------------------------------------------------------------
    async def invite_member(
        self,
        principal: Principal,
        org_id: str,
        email: str,
        role_id: Optional[str] = None,
    ) -> OrgMember:
        self.assert_org_context(principal, org_id)
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("no account found with this email address")
        if self.store.get_membership(user.id, org_id):
            raise ConflictError("user is already a member of this organization")
        role = (
            self._assignable_role(org_id, role_id)
            if role_id
            else self._system_role(MEMBER_ROLE_NAME)
        )
        try:
            member = self.store.add_member(user.id, org_id, role.id)
        except ConstraintViolation:
            raise ConflictError("user is already a member of this organization")
        await self.bump_acl_version(org_id)
        return member

    async def remove_member(self, principal: Principal, org_id: str, user_id: str) -> None:
        self.assert_org_context(principal, org_id)
        member = self._require_member(org_id, user_id)
        self._assert_not_last_admin(org_id, user_id)
        self.store.remove_member(member.id)
        await self.bump_acl_version(org_id)

    async def assign_role(
        self, principal: Principal, org_id: str, user_id: str, role_id: str
    ) -> None:
        self.assert_org_context(principal, org_id)
        member = self._require_member(org_id, user_id)
        self._assignable_role(org_id, role_id)
        if role_id in self.store.list_member_role_ids(member.id):
            raise ConflictError("member already has this role")
        self.store.assign_member_role(member.id, role_id)
        await self.bump_acl_version(org_id)

    async def remove_role(
        self, principal: Principal, org_id: str, user_id: str, role_id: str
    ) -> None:
        self.assert_org_context(principal, org_id)
        member = self._require_member(org_id, user_id)
        if role_id == self._system_role(ADMIN_ROLE_NAME).id:
            self._assert_not_last_admin(org_id, user_id)
        self.store.remove_member_role(member.id, role_id)
        await self.bump_acl_version(org_id)

    async def member_roles(self, org_id: str, user_id: str) -> Tuple[OrgMember, List[str]]:
        member = self._require_member(org_id, user_id)
        return member, self.store.list_member_role_ids(member.id)
