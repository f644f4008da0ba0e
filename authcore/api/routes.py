from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from fastapi import APIRouter, Depends, Header, Request, Response

from authcore.api.schemas import (
    ApiKeyResponse,
    AssignPermissionRequest,
    AssignRoleRequest,
    AuthResponse,
    CreateApiKeyRequest,
    CreatedApiKeyResponse,
    CreateOrganizationRequest,
    CreateRoleRequest,
    Envelope,
    ForgotPasswordRequest,
    InviteMemberRequest,
    LoginRequest,
    MemberResponse,
    MessageResponse,
    OrganizationResponse,
    PermissionResponse,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RevokedSessionsResponse,
    RoleResponse,
    SessionResponse,
    SwitchOrganizationResponse,
    UserResponse,
    VerifyEmailRequest,
)
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.auth import AuthResult
from authcore.service.pipeline import (
    AuthContext,
    AuthRequest,
    AuthType,
    Check,
    requirement,
)
from authcore.service.runtime import get_runtime
from authcore.service.sessions import DeviceInfo
from authcore.storage.models import Action, Organization, Role, Subject, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"

_GENERIC_RESET_MESSAGE = "if an account exists for that email, a reset link has been sent"
_GENERIC_VERIFY_MESSAGE = "if the account needs verification, a new link has been sent"


def require_auth(
    *auth_types: AuthType,
    system_roles: Optional[Sequence[str]] = None,
    checks: Optional[List[Check]] = None,
) -> Callable:
    """Build a dependency that authenticates and authorizes the request.

    Defaults to bearer tokens only; pass ``AuthType.API_KEY`` to also accept
    API keys on a route.
    """
    needed = requirement(*auth_types, system_roles=system_roles, checks=checks)

    async def _dependency(authorization: Optional[str] = Header(None)) -> AuthContext:
        runtime = get_runtime()
        return await runtime.pipeline.run(AuthRequest(authorization=authorization), needed)

    return _dependency


def _device(request: Request) -> DeviceInfo:
    return DeviceInfo(
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        system_role=user.system_role,
        email_verified=user.email_verified,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _org_to_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        acl_version=org.acl_version,
        created_at=org.created_at,
    )


def _role_to_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        organization_id=role.organization_id,
        is_system=role.is_system,
    )


def _auth_envelope(result: AuthResult, response: Response, settings: Settings) -> Envelope:
    _set_refresh_cookie(response, result.refresh_token, settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(result.user),
            access_token=result.access_token,
            session_id=result.session_id,
        ),
    )


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a password account and start a session.

    The refresh token is only ever delivered as an HttpOnly cookie.
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, body.name, device=_device(request)
    )
    await runtime.auth.request_email_verification(result.user)
    return _auth_envelope(result, response, runtime.settings)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, device=_device(request))
    return _auth_envelope(result, response, runtime.settings)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.logout(request.cookies.get(REFRESH_COOKIE))
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        request.cookies.get(REFRESH_COOKIE), device=_device(request)
    )
    return _auth_envelope(result, response, runtime.settings)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(require_auth(AuthType.BEARER, AuthType.API_KEY))):
    runtime = get_runtime()
    user = await runtime.auth.me(ctx.principal)
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(request: Request, ctx: AuthContext = Depends(require_auth())):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(
        ctx.principal.subject_id, request.cookies.get(REFRESH_COOKIE)
    )
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=view.id,
                user_agent=view.user_agent,
                ip_address=view.ip_address,
                created_at=view.created_at,
                expires_at=view.expires_at,
                current=view.current,
            )
            for view in sessions
        ],
    )


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(request: Request, ctx: AuthContext = Depends(require_auth())):
    """Sign out every other device; the calling session survives."""
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_other_sessions(
        ctx.principal.subject_id, request.cookies.get(REFRESH_COOKIE)
    )
    return Envelope(status="ok", data=RevokedSessionsResponse(revoked=revoked))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, ctx: AuthContext = Depends(require_auth())):
    runtime = get_runtime()
    await runtime.auth.revoke_session(ctx.principal.subject_id, session_id)
    return Envelope(status="ok", data=RevokedSessionsResponse(revoked=1))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Always answers the same way so the endpoint cannot enumerate accounts."""
    runtime = get_runtime()
    token = await runtime.auth.forgot_password(body.email)
    if token:
        logger.info("password_reset_requested")
    return Envelope(status="ok", data=MessageResponse(message=_GENERIC_RESET_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    token = await runtime.auth.resend_verification(body.email)
    if token:
        logger.info("email_verification_resent")
    return Envelope(status="ok", data=MessageResponse(message=_GENERIC_VERIFY_MESSAGE))


# ----------------------------------------------------------------------
# organizations
# ----------------------------------------------------------------------
@router.post("/organizations", response_model=Envelope, status_code=201, tags=["organizations"])
async def create_organization(
    body: CreateOrganizationRequest, ctx: AuthContext = Depends(require_auth())
):
    runtime = get_runtime()
    org = await runtime.organizations.create(ctx.principal.subject_id, body.name, body.slug)
    return Envelope(status="ok", data=_org_to_response(org))


@router.post("/organizations/{org_id}/switch", response_model=Envelope, tags=["organizations"])
async def switch_organization(org_id: str, ctx: AuthContext = Depends(require_auth())):
    """Re-issue the access token scoped to ``org_id`` and its current ACL version."""
    runtime = get_runtime()
    switched = await runtime.auth.switch_organization(ctx.principal, org_id)
    return Envelope(
        status="ok",
        data=SwitchOrganizationResponse(
            organization=_org_to_response(switched.organization),
            access_token=switched.access_token,
        ),
    )


_manage_roles = require_auth(checks=[(Action.MANAGE, Subject.ROLE)])
_manage_permissions = require_auth(checks=[(Action.MANAGE, Subject.PERMISSION)])
_manage_members = require_auth(checks=[(Action.MANAGE, Subject.ORGANIZATION)])


@router.post("/organizations/{org_id}/roles", response_model=Envelope, status_code=201, tags=["organizations"])
async def create_role(
    org_id: str, body: CreateRoleRequest, ctx: AuthContext = Depends(_manage_roles)
):
    runtime = get_runtime()
    role = await runtime.organizations.create_role(
        ctx.principal, org_id, body.name, body.description
    )
    return Envelope(status="ok", data=_role_to_response(role))


@router.delete("/organizations/{org_id}/roles/{role_id}", response_model=Envelope, tags=["organizations"])
async def delete_role(org_id: str, role_id: str, ctx: AuthContext = Depends(_manage_roles)):
    runtime = get_runtime()
    await runtime.organizations.delete_role(ctx.principal, org_id, role_id)
    return Envelope(status="ok", data=MessageResponse(message="role deleted"))


@router.post(
    "/organizations/{org_id}/roles/{role_id}/permissions",
    response_model=Envelope,
    status_code=201,
    tags=["organizations"],
)
async def assign_permission(
    org_id: str,
    role_id: str,
    body: AssignPermissionRequest,
    ctx: AuthContext = Depends(_manage_permissions),
):
    runtime = get_runtime()
    perm = await runtime.organizations.assign_permission(
        ctx.principal,
        org_id,
        role_id,
        body.action,
        body.subject,
        conditions=body.conditions,
        fields=body.fields,
        inverted=body.inverted,
    )
    return Envelope(
        status="ok",
        data=PermissionResponse(
            id=perm.id,
            action=perm.action,
            subject=perm.subject,
            conditions=perm.conditions,
            fields=perm.fields,
            inverted=perm.inverted,
            organization_id=perm.organization_id,
        ),
    )


@router.delete(
    "/organizations/{org_id}/roles/{role_id}/permissions/{permission_id}",
    response_model=Envelope,
    tags=["organizations"],
)
async def remove_permission(
    org_id: str,
    role_id: str,
    permission_id: str,
    ctx: AuthContext = Depends(_manage_permissions),
):
    runtime = get_runtime()
    await runtime.organizations.remove_permission(ctx.principal, org_id, role_id, permission_id)
    return Envelope(status="ok", data=MessageResponse(message="permission removed"))


async def _member_envelope(org_id: str, user_id: str) -> Envelope:
    runtime = get_runtime()
    member, role_ids = await runtime.organizations.member_roles(org_id, user_id)
    return Envelope(
        status="ok",
        data=MemberResponse(
            id=member.id,
            user_id=member.user_id,
            organization_id=member.organization_id,
            role_ids=role_ids,
            created_at=member.created_at,
        ),
    )


@router.post("/organizations/{org_id}/members", response_model=Envelope, status_code=201, tags=["organizations"])
async def invite_member(
    org_id: str, body: InviteMemberRequest, ctx: AuthContext = Depends(_manage_members)
):
    runtime = get_runtime()
    member = await runtime.organizations.invite_member(
        ctx.principal, org_id, body.email, body.role_id
    )
    return await _member_envelope(org_id, member.user_id)


@router.delete("/organizations/{org_id}/members/{user_id}", response_model=Envelope, tags=["organizations"])
async def remove_member(org_id: str, user_id: str, ctx: AuthContext = Depends(_manage_members)):
    runtime = get_runtime()
    await runtime.organizations.remove_member(ctx.principal, org_id, user_id)
    return Envelope(status="ok", data=MessageResponse(message="member removed"))


@router.post("/organizations/{org_id}/members/{user_id}/roles", response_model=Envelope, tags=["organizations"])
async def assign_member_role(
    org_id: str,
    user_id: str,
    body: AssignRoleRequest,
    ctx: AuthContext = Depends(_manage_members),
):
    runtime = get_runtime()
    await runtime.organizations.assign_role(ctx.principal, org_id, user_id, body.role_id)
    return await _member_envelope(org_id, user_id)


@router.delete(
    "/organizations/{org_id}/members/{user_id}/roles/{role_id}",
    response_model=Envelope,
    tags=["organizations"],
)
async def remove_member_role(
    org_id: str,
    user_id: str,
    role_id: str,
    ctx: AuthContext = Depends(_manage_members),
):
    runtime = get_runtime()
    await runtime.organizations.remove_role(ctx.principal, org_id, user_id, role_id)
    return await _member_envelope(org_id, user_id)


# ----------------------------------------------------------------------
# api keys
# ----------------------------------------------------------------------
@router.post("/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
async def create_api_key(body: CreateApiKeyRequest, ctx: AuthContext = Depends(require_auth())):
    """Issue a key. The full key string is returned here and nowhere else."""
    runtime = get_runtime()
    issued = await runtime.api_keys.issue(
        ctx.principal.subject_id, body.name, body.scopes, body.expires_at
    )
    return Envelope(
        status="ok",
        data=CreatedApiKeyResponse(
            id=issued.id,
            name=issued.name,
            key=issued.key,
            scopes=issued.scopes,
            expires_at=issued.expires_at,
            created_at=issued.created_at,
        ),
    )


@router.get("/api-keys", response_model=Envelope, tags=["api-keys"])
async def list_api_keys(
    ctx: AuthContext = Depends(require_auth(AuthType.BEARER, AuthType.API_KEY)),
):
    runtime = get_runtime()
    keys = await runtime.api_keys.list(ctx.principal.subject_id)
    return Envelope(
        status="ok",
        data=[
            ApiKeyResponse(
                id=key.id,
                name=key.name,
                scopes=key.scopes,
                short_token=key.short_token,
                expires_at=key.expires_at,
                last_used_at=key.last_used_at,
                created_at=key.created_at,
            )
            for key in keys
        ],
    )


@router.delete("/api-keys/{api_key_id}", response_model=Envelope, tags=["api-keys"])
async def revoke_api_key(api_key_id: str, ctx: AuthContext = Depends(require_auth())):
    runtime = get_runtime()
    await runtime.api_keys.revoke(api_key_id, ctx.principal.subject_id)
    return Envelope(status="ok", data=MessageResponse(message="api key revoked"))
