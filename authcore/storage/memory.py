from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.common import (
    SYSTEM_ROLE_SEED,
    generate_uuid,
    normalize_email,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ApiKey,
    OneTimeToken,
    OrgMember,
    Organization,
    Permission,
    Role,
    Session,
    SystemRole,
    User,
)


class MemoryStore:
    """In-process store used for tests and local development.

    Mirrors the PostgresStore surface. All reads and writes go through one
    re-entrant lock; multi-record writes validate first and mutate second so
    a failed call leaves no partial state behind.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self.organizations: Dict[str, Organization] = {}
        self.members: Dict[str, OrgMember] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        # role_id -> ordered permission ids
        self.role_permissions: Dict[str, List[str]] = {}
        # member_id -> ordered role ids
        self.member_roles: Dict[str, List[str]] = {}
        self.ensure_system_roles()

    # ------------------------------------------------------------------
    # seed
    # ------------------------------------------------------------------
    def ensure_system_roles(self) -> None:
        with self._data_lock:
            for name, description, grants in SYSTEM_ROLE_SEED:
                if self.get_system_role(name):
                    continue
                role = Role(
                    id=generate_uuid(),
                    name=name,
                    description=description,
                    organization_id=None,
                    is_system=True,
                )
                self.roles[role.id] = role
                self.role_permissions[role.id] = []
                for action, subject, conditions in grants:
                    perm = Permission(
                        id=generate_uuid(),
                        action=action,
                        subject=subject,
                        conditions=copy.deepcopy(conditions),
                    )
                    self.permissions[perm.id] = perm
                    self.role_permissions[role.id].append(perm.id)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        system_role: str = SystemRole.USER.value,
        password_hash: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="user_email"
                )
            user = User(
                id=generate_uuid(), email=normalized, name=name, system_role=system_role
            )
            self.users[user.id] = user
            if password_hash:
                self.passwords[user.id] = password_hash
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.copy(user) if user else None

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.passwords[user_id] = password_hash

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.passwords.get(user_id)

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            return copy.copy(user)

    def update_system_role(self, user_id: str, system_role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.system_role = system_role
            return copy.copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.passwords.pop(user_id, None)
            for sid in [s.id for s in self.sessions.values() if s.user_id == user_id]:
                self.sessions.pop(sid, None)
            for kid in [k.id for k in self.api_keys.values() if k.user_id == user_id]:
                self.api_keys.pop(kid, None)
            for tid in [t.id for t in self.one_time_tokens.values() if t.user_id == user_id]:
                self.one_time_tokens.pop(tid, None)
            for mid in [m.id for m in self.members.values() if m.user_id == user_id]:
                self.members.pop(mid, None)
                self.member_roles.pop(mid, None)
            return True

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(
                s.refresh_token_hash == session.refresh_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token hash already exists",
                    constraint="session_refresh_token_hash",
                )
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            self.sessions[session.id] = copy.copy(session)
            return session

    def get_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return copy.copy(sess) if sess else None

    def delete_session_by_hash(self, refresh_token_hash: str) -> int:
        with self._data_lock:
            stale = [
                s.id
                for s in self.sessions.values()
                if s.refresh_token_hash == refresh_token_hash
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_session(self, session_id: str, user_id: str) -> int:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id:
                return 0
            self.sessions.pop(session_id, None)
            return 1

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [copy.copy(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def delete_user_sessions(
        self, user_id: str, except_hash: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                s.id
                for s in self.sessions.values()
                if s.user_id == user_id and s.refresh_token_hash != except_hash
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [s.id for s in self.sessions.values() if s.expires_at < now]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # ------------------------------------------------------------------
    # api keys
    # ------------------------------------------------------------------
    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            if any(k.short_token == api_key.short_token for k in self.api_keys.values()):
                raise ConstraintViolation(
                    "short token already exists", constraint="api_key_short_token"
                )
            if api_key.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": api_key.user_id}
                )
            self.api_keys[api_key.id] = copy.deepcopy(api_key)
            return api_key

    def get_api_key_by_short_token(self, short_token: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = next(
                (k for k in self.api_keys.values() if k.short_token == short_token), None
            )
            return copy.deepcopy(key) if key else None

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            results = [
                copy.deepcopy(k) for k in self.api_keys.values() if k.user_id == user_id
            ]
        return sorted(results, key=lambda k: k.created_at, reverse=True)

    def delete_api_key(self, api_key_id: str, user_id: str) -> int:
        with self._data_lock:
            key = self.api_keys.get(api_key_id)
            if not key or key.user_id != user_id:
                return 0
            self.api_keys.pop(api_key_id, None)
            return 1

    def touch_api_key(self, api_key_id: str, at: datetime) -> None:
        with self._data_lock:
            key = self.api_keys.get(api_key_id)
            if key:
                key.last_used_at = at

    def delete_expired_api_keys(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                k.id
                for k in self.api_keys.values()
                if k.expires_at is not None and k.expires_at < now
            ]
            for kid in stale:
                self.api_keys.pop(kid, None)
            return len(stale)

    # ------------------------------------------------------------------
    # one-time tokens
    # ------------------------------------------------------------------
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.one_time_tokens.values()):
                raise ConstraintViolation(
                    "token hash already exists", constraint="one_time_token_hash"
                )
            self.one_time_tokens[token.id] = copy.copy(token)
            return token

    def get_one_time_token(self, purpose: str, token_hash: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            tok = next(
                (
                    t
                    for t in self.one_time_tokens.values()
                    if t.purpose == purpose and t.token_hash == token_hash
                ),
                None,
            )
            return copy.copy(tok) if tok else None

    def mark_one_time_token_used(self, token_id: str, at: datetime) -> bool:
        with self._data_lock:
            tok = self.one_time_tokens.get(token_id)
            if not tok or tok.used:
                return False
            tok.used = True
            tok.used_at = at
            return True

    def invalidate_one_time_tokens(self, user_id: str, purpose: str) -> int:
        with self._data_lock:
            count = 0
            for tok in self.one_time_tokens.values():
                if tok.user_id == user_id and tok.purpose == purpose and not tok.used:
                    tok.used = True
                    count += 1
            return count

    def delete_expired_one_time_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [t.id for t in self.one_time_tokens.values() if t.expires_at < now]
            for tid in stale:
                self.one_time_tokens.pop(tid, None)
            return len(stale)

    # ------------------------------------------------------------------
    # organizations
    # ------------------------------------------------------------------
    def create_organization(
        self, name: str, slug: str, owner_user_id: str, owner_role_id: str
    ) -> Organization:
        """Create org, owner membership and owner role link as one unit."""
        with self._data_lock:
            if any(o.slug == slug for o in self.organizations.values()):
                raise ConstraintViolation(
                    "slug already exists", {"field": "slug"}, constraint="org_slug"
                )
            if owner_user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": owner_user_id}
                )
            if owner_role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": owner_role_id})
            org = Organization(id=generate_uuid(), name=name, slug=slug)
            member = OrgMember(
                id=generate_uuid(), user_id=owner_user_id, organization_id=org.id
            )
            self.organizations[org.id] = org
            self.members[member.id] = member
            self.member_roles[member.id] = [owner_role_id]
            return copy.copy(org)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            return copy.copy(org) if org else None

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._data_lock:
            org = next((o for o in self.organizations.values() if o.slug == slug), None)
            return copy.copy(org) if org else None

    def bump_acl_version(self, org_id: str) -> int:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if not org:
                raise ConstraintViolation("organization does not exist", {"org_id": org_id})
            org.acl_version += 1
            return org.acl_version

    def get_membership(self, user_id: str, org_id: str) -> Optional[OrgMember]:
        with self._data_lock:
            member = self._find_member(user_id, org_id)
            return copy.copy(member) if member else None

    def _find_member(self, user_id: str, org_id: str) -> Optional[OrgMember]:
        return next(
            (
                m
                for m in self.members.values()
                if m.user_id == user_id and m.organization_id == org_id
            ),
            None,
        )

    def add_member(self, user_id: str, org_id: str, role_id: str) -> OrgMember:
        with self._data_lock:
            if self._find_member(user_id, org_id):
                raise ConstraintViolation(
                    "user is already a member", constraint="org_member"
                )
            if org_id not in self.organizations:
                raise ConstraintViolation("organization does not exist", {"org_id": org_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            member = OrgMember(id=generate_uuid(), user_id=user_id, organization_id=org_id)
            self.members[member.id] = member
            self.member_roles[member.id] = [role_id]
            return copy.copy(member)

    def remove_member(self, member_id: str) -> int:
        with self._data_lock:
            if self.members.pop(member_id, None) is None:
                return 0
            self.member_roles.pop(member_id, None)
            return 1

    def list_member_role_ids(self, member_id: str) -> List[str]:
        with self._data_lock:
            return list(self.member_roles.get(member_id, []))

    def assign_member_role(self, member_id: str, role_id: str) -> None:
        with self._data_lock:
            roles = self.member_roles.setdefault(member_id, [])
            if role_id in roles:
                raise ConstraintViolation(
                    "member already has this role", constraint="member_role"
                )
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            roles.append(role_id)

    def remove_member_role(self, member_id: str, role_id: str) -> int:
        with self._data_lock:
            roles = self.member_roles.get(member_id, [])
            if role_id not in roles:
                return 0
            roles.remove(role_id)
            return 1

    def list_role_holders(self, org_id: str, role_id: str) -> List[str]:
        with self._data_lock:
            return [
                m.user_id
                for m in self.members.values()
                if m.organization_id == org_id and role_id in self.member_roles.get(m.id, [])
            ]

    # ------------------------------------------------------------------
    # roles & permissions
    # ------------------------------------------------------------------
    def get_system_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next(
                (
                    r
                    for r in self.roles.values()
                    if r.name == name and r.is_system and r.organization_id is None
                ),
                None,
            )
            return copy.copy(role) if role else None

    def create_role(
        self, org_id: str, name: str, description: Optional[str] = None
    ) -> Role:
        with self._data_lock:
            if any(
                r.name == name and r.organization_id == org_id for r in self.roles.values()
            ):
                raise ConstraintViolation(
                    "role name already exists", {"field": "name"}, constraint="role_name"
                )
            role = Role(
                id=generate_uuid(),
                name=name,
                description=description,
                organization_id=org_id,
                is_system=False,
            )
            self.roles[role.id] = role
            self.role_permissions[role.id] = []
            return copy.copy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return copy.copy(role) if role else None

    def delete_role(self, role_id: str) -> int:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return 0
            self.role_permissions.pop(role_id, None)
            for roles in self.member_roles.values():
                if role_id in roles:
                    roles.remove(role_id)
            return 1

    def add_role_permission(self, role_id: str, permission: Permission) -> Permission:
        """Insert the permission and link it to the role in one step."""
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            stored = copy.deepcopy(permission)
            self.permissions[stored.id] = stored
            self.role_permissions.setdefault(role_id, []).append(stored.id)
            return permission

    def get_role_permission(self, role_id: str, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            if permission_id not in self.role_permissions.get(role_id, []):
                return None
            perm = self.permissions.get(permission_id)
            return copy.deepcopy(perm) if perm else None

    def delete_permission(self, permission_id: str) -> int:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return 0
            for perm_ids in self.role_permissions.values():
                if permission_id in perm_ids:
                    perm_ids.remove(permission_id)
            return 1

    def list_member_permissions(
        self, user_id: str, org_id: str
    ) -> Optional[List[Tuple[str, Permission]]]:
        """Return (role_id, permission) pairs for every role of the member.

        ``None`` means the user is not a member of the organization. The same
        permission appears once per role that grants it.
        """
        with self._data_lock:
            member = self._find_member(user_id, org_id)
            if not member:
                return None
            rows: List[Tuple[str, Permission]] = []
            for role_id in self.member_roles.get(member.id, []):
                for perm_id in self.role_permissions.get(role_id, []):
                    perm = self.permissions.get(perm_id)
                    if perm:
                        rows.append((role_id, copy.deepcopy(perm)))
            return rows
