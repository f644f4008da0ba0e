from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nested depth accepted for permission conditions
MAX_CONDITION_DEPTH = 8

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "session_not_found",
    "session_expired",
    "user_not_found",
    "malformed_api_key",
    "forbidden",
    "not_a_member",
    "not_found",
    "conflict",
    "business_rule_violation",
    "rate_limited",
    "validation_error",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _check_depth(obj: Any, depth: int = 0) -> None:
    if depth > MAX_CONDITION_DEPTH:
        raise ValueError(f"conditions nesting exceeds {MAX_CONDITION_DEPTH} levels")
    if isinstance(obj, dict):
        for value in obj.values():
            _check_depth(value, depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _check_depth(item, depth + 1)


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------
class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # Not format-checked: a malformed email must fail as bad credentials
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    system_role: str
    email_verified: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "Bearer"
    session_id: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    current: bool = False


class RevokedSessionsResponse(BaseModel):
    revoked: int


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ResendVerificationRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class MessageResponse(BaseModel):
    message: str


# ----------------------------------------------------------------------
# organizations
# ----------------------------------------------------------------------
class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    acl_version: int
    created_at: datetime


class SwitchOrganizationResponse(BaseModel):
    organization: OrganizationResponse
    access_token: str
    token_type: str = "Bearer"


class CreateOrganizationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    slug: Optional[str] = Field(default=None, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$", max_length=64)


class CreateRoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    organization_id: Optional[str] = None
    is_system: bool = False


class AssignPermissionRequest(BaseModel):
    action: str = Field(..., max_length=32)
    subject: str = Field(..., max_length=64)
    conditions: Optional[Dict[str, Any]] = None
    fields: List[str] = Field(default_factory=list, max_length=64)
    inverted: bool = False

    @field_validator("conditions")
    @classmethod
    def _validate_conditions(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _check_depth(value)
        return value


class PermissionResponse(BaseModel):
    id: str
    action: str
    subject: str
    conditions: Optional[Dict[str, Any]] = None
    fields: List[str] = Field(default_factory=list)
    inverted: bool = False
    organization_id: Optional[str] = None


class InviteMemberRequest(BaseModel):
    email: str
    role_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class AssignRoleRequest(BaseModel):
    role_id: str = Field(..., max_length=64)


class MemberResponse(BaseModel):
    id: str
    user_id: str
    organization_id: str
    role_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# api keys
# ----------------------------------------------------------------------
class CreateApiKeyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    scopes: List[str] = Field(..., min_length=1, max_length=64)
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    scopes: List[str]
    short_token: str
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime


class CreatedApiKeyResponse(BaseModel):
    id: str
    name: str
    key: str = Field(..., description="Full key; shown once and never retrievable again")
    scopes: List[str]
    expires_at: Optional[datetime] = None
    created_at: datetime
