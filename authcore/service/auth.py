from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from authcore.config import Settings
from authcore.logging import get_logger, hash_for_log
from authcore.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    InvalidToken,
    UserNotFound,
    ValidationError,
)
from authcore.service.one_time_tokens import OneTimeTokenService
from authcore.service.organizations import OrganizationService
from authcore.service.rate_limiter import LoginRateLimiter
from authcore.service.sessions import DeviceInfo, SessionManager, SessionView
from authcore.service.tokens import TokenService
from authcore.service.user_cache import UserCache
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Organization,
    Principal,
    PrincipalKind,
    TokenPurpose,
    User,
    utcnow,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        system_role: str = ...,
        password_hash: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def update_last_login(self, user_id: str, at: datetime) -> None: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    session_id: str


@dataclass
class OrganizationSwitch:
    organization: Organization
    access_token: str


def validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at most {MAX_PASSWORD_LENGTH} characters"
        )


class AuthService:
    """Password registration and login, refresh rotation, and account recovery."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        sessions: SessionManager,
        rate_limiter: LoginRateLimiter,
        one_time_tokens: OneTimeTokenService,
        user_cache: UserCache,
        organizations: OrganizationService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.one_time_tokens = one_time_tokens
        self.user_cache = user_cache
        self.organizations = organizations
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("authcore-timing-equaliser")
        self.logger = logger

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Check ``password`` against the stored hash.

        Any hasher failure (mismatch, corrupt hash, unsupported parameters)
        reads as a plain mismatch so callers only ever see InvalidCredentials.
        """
        stored_hash = self.store.get_password_hash(user_id)
        if not stored_hash:
            self._verify_dummy(password)
            self.logger.info("password_record_missing", user_id=user_id)
            return False
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (VerificationError, InvalidHashError) as exc:
            self.logger.info(
                "password_verification_failed",
                user_id=user_id,
                reason=type(exc).__name__,
            )
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            self.store.save_password(user_id, self._hash_password(password))
            self.logger.info("password_rehashed", user_id=user_id)
        return True

    def _verify_dummy(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (VerificationError, InvalidHashError):
            pass

    def issue_access_token(
        self, user: User, organization: Optional[Organization] = None
    ) -> str:
        principal = Principal(
            subject_id=user.id,
            kind=PrincipalKind.PASSWORD.value,
            system_role=user.system_role,
            email=user.email,
            organization_id=organization.id if organization else None,
            acl_version=organization.acl_version if organization else None,
        )
        return self.tokens.issue_access_token(principal)

    async def _issue(self, user: User, device: Optional[DeviceInfo]) -> AuthResult:
        issued = await self.sessions.create(user.id, device)
        return AuthResult(
            user=user,
            access_token=self.issue_access_token(user),
            refresh_token=issued.refresh_token,
            session_id=issued.session.id,
        )

    # ------------------------------------------------------------------
    # registration / login
    # ------------------------------------------------------------------
    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        if not email or "@" not in email:
            raise ValidationError("a valid email is required")
        validate_password(password)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered")
        try:
            user = self.store.create_user(
                email, name, password_hash=self._hash_password(password)
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        now = utcnow()
        self.store.update_last_login(user.id, now)
        user.last_login_at = now
        self.logger.info("user_registered", user_id=user.id)
        return await self._issue(user, device)

    async def login(
        self, email: str, password: str, device: Optional[DeviceInfo] = None
    ) -> AuthResult:
        device = device or DeviceInfo()
        ip = device.ip_address or "unknown"
        await self.rate_limiter.check(email, ip)

        user = self.store.get_user_by_email(email) if email else None
        if user is None:
            self._verify_dummy(password or "")
            verified = False
        else:
            verified = self.verify_password(user.id, password or "")
        if not verified:
            attempts = await self.rate_limiter.consume(email or "", ip)
            self.logger.warning(
                "login_failed",
                email_hash=hash_for_log(email or ""),
                ip=ip,
                attempts=attempts,
            )
            raise InvalidCredentials()

        await self.rate_limiter.reset(email, ip)
        now = utcnow()
        self.store.update_last_login(user.id, now)
        user.last_login_at = now
        self.logger.info("login_succeeded", user_id=user.id)
        return await self._issue(user, device)

    async def logout(self, raw_refresh_token: Optional[str]) -> None:
        if not raw_refresh_token:
            return
        removed = await self.sessions.revoke(self.tokens.hash(raw_refresh_token))
        self.logger.info("logout", sessions_removed=removed)

    async def refresh(
        self, raw_refresh_token: Optional[str], device: Optional[DeviceInfo] = None
    ) -> AuthResult:
        if not raw_refresh_token:
            raise InvalidToken("refresh token missing")
        issued = await self.sessions.rotate(self.tokens.hash(raw_refresh_token), device)
        user = self.store.get_user(issued.session.user_id)
        if not user:
            await self.sessions.revoke(issued.session.refresh_token_hash)
            raise UserNotFound()
        return AuthResult(
            user=user,
            access_token=self.issue_access_token(user),
            refresh_token=issued.refresh_token,
            session_id=issued.session.id,
        )

    async def me(self, principal: Principal) -> User:
        user = await self.user_cache.get(principal.subject_id)
        if not user:
            raise UserNotFound()
        return user

    async def switch_organization(
        self, principal: Principal, org_id: str
    ) -> OrganizationSwitch:
        organization = await self.organizations.get_for_switch(
            org_id, principal.subject_id
        )
        user = await self.me(principal)
        self.logger.info(
            "organization_switched",
            user_id=user.id,
            org_id=org_id,
            acl_version=organization.acl_version,
        )
        return OrganizationSwitch(
            organization=organization,
            access_token=self.issue_access_token(user, organization),
        )

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def _current_hash(self, raw_refresh_token: Optional[str]) -> Optional[str]:
        return self.tokens.hash(raw_refresh_token) if raw_refresh_token else None

    async def list_sessions(
        self, user_id: str, raw_refresh_token: Optional[str] = None
    ) -> List[SessionView]:
        return await self.sessions.list_sessions(
            user_id, self._current_hash(raw_refresh_token)
        )

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        await self.sessions.revoke_session(session_id, user_id)

    async def revoke_other_sessions(
        self, user_id: str, raw_refresh_token: Optional[str]
    ) -> int:
        current = self._current_hash(raw_refresh_token)
        if current is None:
            return await self.sessions.revoke_all(user_id)
        return await self.sessions.revoke_all_except_current(user_id, current)

    # ------------------------------------------------------------------
    # recovery / verification
    # ------------------------------------------------------------------
    async def forgot_password(self, email: str) -> Optional[str]:
        """Issue a reset token; ``None`` for unknown emails (caller stays silent)."""
        user = self.store.get_user_by_email(email) if email else None
        if not user:
            self.logger.info(
                "password_reset_unknown_email", email_hash=hash_for_log(email or "")
            )
            return None
        return await self.one_time_tokens.generate(user.id, TokenPurpose.PASSWORD_RESET)

    async def reset_password(self, token: str, new_password: str) -> None:
        validate_password(new_password)
        record = await self.one_time_tokens.consume(token, TokenPurpose.PASSWORD_RESET)
        user = self.store.get_user(record.user_id)
        if not user:
            raise InvalidToken("invalid or expired token")
        self.store.save_password(user.id, self._hash_password(new_password))
        revoked = await self.sessions.revoke_all(user.id)
        await self.user_cache.invalidate_user(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    async def verify_email(self, token: str) -> User:
        record = await self.one_time_tokens.consume(token, TokenPurpose.EMAIL_VERIFICATION)
        user = self.store.mark_email_verified(record.user_id)
        if not user:
            raise InvalidToken("invalid or expired token")
        await self.user_cache.invalidate_user(user.id)
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, email: str) -> Optional[str]:
        user = self.store.get_user_by_email(email) if email else None
        if not user or user.email_verified:
            return None
        return await self.one_time_tokens.generate(
            user.id, TokenPurpose.EMAIL_VERIFICATION
        )

    async def request_email_verification(self, user: User) -> str:
        return await self.one_time_tokens.generate(
            user.id, TokenPurpose.EMAIL_VERIFICATION
        )
