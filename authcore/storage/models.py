from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"


class Subject(str, Enum):
    USER = "User"
    ORGANIZATION = "Organization"
    ROLE = "Role"
    PERMISSION = "Permission"
    ALL = "all"


class SystemRole(str, Enum):
    USER = "USER"
    SUPER_ADMIN = "SUPER_ADMIN"


class PrincipalKind(str, Enum):
    PASSWORD = "password"
    API_KEY = "api_key"


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


ADMIN_ROLE_NAME = "ADMIN"
MEMBER_ROLE_NAME = "MEMBER"
VIEWER_ROLE_NAME = "VIEWER"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    system_role: str = SystemRole.USER.value
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    def to_cache(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "system_role": self.system_role,
            "email_verified": self.email_verified,
            "created_at": self.created_at.isoformat(),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "User":
        last_login = data.get("last_login_at")
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            system_role=data.get("system_role", SystemRole.USER.value),
            email_verified=bool(data.get("email_verified", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_login_at=datetime.fromisoformat(last_login) if last_login else None,
        )


@dataclass
class Session:
    """One row per logical login; only the SHA-256 of the refresh token is kept."""

    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=expires_at,
            created_at=utcnow(),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())


@dataclass
class ApiKey:
    id: str
    user_id: str
    name: str
    short_token: str
    key_hash: str
    salt: str
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or utcnow())


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    acl_version: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OrgMember:
    id: str
    user_id: str
    organization_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    organization_id: Optional[str] = None
    description: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    action: str
    subject: str
    conditions: Optional[Dict[str, Any]] = None
    fields: List[str] = field(default_factory=list)
    inverted: bool = False
    organization_id: Optional[str] = None

    def scope_key(self) -> str:
        return f"{self.action}:{self.subject}"

    def to_cache(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "subject": self.subject,
            "conditions": self.conditions,
            "fields": list(self.fields),
            "inverted": self.inverted,
            "organization_id": self.organization_id,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "Permission":
        return cls(
            id=data["id"],
            action=data["action"],
            subject=data["subject"],
            conditions=data.get("conditions"),
            fields=list(data.get("fields") or []),
            inverted=bool(data.get("inverted", False)),
            organization_id=data.get("organization_id"),
        )


@dataclass
class OneTimeToken:
    id: str
    user_id: str
    purpose: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Principal:
    """Resolved identity and claims for one request. Never persisted."""

    subject_id: str
    kind: str
    system_role: str
    email: Optional[str] = None
    organization_id: Optional[str] = None
    acl_version: Optional[int] = None
    scopes: Optional[List[str]] = None
    api_key_id: Optional[str] = None

    @property
    def has_org_context(self) -> bool:
        return bool(self.organization_id) and self.acl_version is not None

    def as_template_source(self) -> Dict[str, Any]:
        """Values reachable from ``${user.<path>}`` condition placeholders."""
        return {
            "subjectId": self.subject_id,
            "subject_id": self.subject_id,
            "sub": self.subject_id,
            "id": self.subject_id,
            "kind": self.kind,
            "systemRole": self.system_role,
            "system_role": self.system_role,
            "email": self.email,
            "organizationId": self.organization_id,
            "organization_id": self.organization_id,
            "aclVersion": self.acl_version,
            "acl_version": self.acl_version,
            "scopes": list(self.scopes) if self.scopes is not None else None,
        }


def expiry_after(*, days: int = 0, hours: int = 0, minutes: int = 0) -> datetime:
    return utcnow() + timedelta(days=days, hours=hours, minutes=minutes)
