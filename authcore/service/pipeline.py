from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from authcore.logging import get_logger
from authcore.service.api_keys import ApiKeyService
from authcore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidToken,
    UserNotFound,
)
from authcore.service.policy import Ability, PolicyEngine
from authcore.service.tokens import TokenService
from authcore.service.user_cache import UserCache
from authcore.storage.models import Principal

logger = get_logger(__name__)

Check = Tuple[str, str]


class AuthType(str, Enum):
    BEARER = "bearer"
    API_KEY = "api_key"
    NONE = "none"


@dataclass
class AuthRequest:
    """The parts of an inbound request the authenticators look at."""

    authorization: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "AuthRequest":
        return cls(authorization=headers.get("authorization"))

    def bearer_token(self) -> Optional[str]:
        if not self.authorization:
            return None
        scheme, _, credentials = self.authorization.partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            return None
        return credentials.strip()


@dataclass
class AuthRequirement:
    auth_types: Sequence[AuthType] = (AuthType.BEARER,)
    system_roles: Optional[Sequence[str]] = None
    checks: Sequence[Check] = ()

    def __post_init__(self) -> None:
        self.checks = tuple(
            (getattr(action, "value", action), getattr(subject, "value", subject))
            for action, subject in self.checks
        )

    @property
    def is_public(self) -> bool:
        return AuthType.NONE in self.auth_types


@dataclass
class AuthContext:
    principal: Principal
    ability: Ability


class Authenticator:
    """One way of turning a request into a Principal.

    ``authenticate`` returns ``None`` when the request does not carry this
    kind of credential and raises an ``AuthenticationError`` when it does but
    the credential is bad.
    """

    auth_type: AuthType

    async def authenticate(self, request: AuthRequest) -> Optional[Principal]:
        raise NotImplementedError


class JwtAuthenticator(Authenticator):
    auth_type = AuthType.BEARER

    def __init__(
        self, tokens: TokenService, user_cache: UserCache, api_key_prefix: str
    ) -> None:
        self.tokens = tokens
        self.user_cache = user_cache
        self.api_key_prefix = api_key_prefix

    async def authenticate(self, request: AuthRequest) -> Optional[Principal]:
        token = request.bearer_token()
        if not token or token.startswith(f"{self.api_key_prefix}_"):
            return None
        claims = self.tokens.verify_access_token(token)
        principal = self.tokens.principal_from_claims(claims)
        # A valid signature is not enough: the account must still exist
        user = await self.user_cache.get(principal.subject_id)
        if not user:
            logger.warning("jwt_subject_missing", user_id=principal.subject_id)
            raise UserNotFound()
        return principal


class ApiKeyAuthenticator(Authenticator):
    auth_type = AuthType.API_KEY

    def __init__(self, api_keys: ApiKeyService, user_cache: UserCache) -> None:
        self.api_keys = api_keys
        self.user_cache = user_cache

    async def authenticate(self, request: AuthRequest) -> Optional[Principal]:
        parsed = self.api_keys.parse(request.authorization)
        if parsed is None:
            return None
        api_key = await self.api_keys.verify(parsed.short_token, parsed.long_token)
        if not api_key:
            raise InvalidToken("invalid api key")
        user = await self.user_cache.get(api_key.user_id)
        if not user:
            raise UserNotFound()
        await self.api_keys.touch_last_used(api_key.id)
        return self.api_keys.principal_for(api_key, user)


class AuthPipeline:
    """authenticate, then build the ability once, then authorize."""

    def __init__(
        self, authenticators: Iterable[Authenticator], policy: PolicyEngine
    ) -> None:
        self.authenticators: Dict[AuthType, Authenticator] = {
            auth.auth_type: auth for auth in authenticators
        }
        self.policy = policy

    async def authenticate(
        self,
        request: AuthRequest,
        auth_types: Sequence[AuthType] = (AuthType.BEARER,),
    ) -> Principal:
        last_error: Optional[AuthenticationError] = None
        for auth_type in auth_types:
            authenticator = self.authenticators.get(auth_type)
            if authenticator is None:
                continue
            try:
                principal = await authenticator.authenticate(request)
            except AuthenticationError as exc:
                last_error = exc
                continue
            if principal is not None:
                return principal
        if last_error is not None:
            raise last_error
        raise AuthenticationError("authentication required")

    async def authorize(
        self,
        principal: Principal,
        required_system_roles: Optional[Sequence[str]] = None,
        required_checks: Sequence[Check] = (),
        *,
        ability: Optional[Ability] = None,
    ) -> bool:
        if required_system_roles and principal.system_role not in required_system_roles:
            return False
        if not required_checks:
            return True
        if ability is None:
            ability = await self.policy.build(principal)
        return all(ability.can(action, subject) for action, subject in required_checks)

    async def run(
        self, request: AuthRequest, requirement: AuthRequirement
    ) -> Optional[AuthContext]:
        if requirement.is_public:
            return None
        principal = await self.authenticate(request, requirement.auth_types)
        ability = await self.policy.build(principal)
        allowed = await self.authorize(
            principal,
            requirement.system_roles,
            requirement.checks,
            ability=ability,
        )
        if not allowed:
            logger.info(
                "authorization_denied",
                user_id=principal.subject_id,
                kind=principal.kind,
                system_roles=list(requirement.system_roles or []),
                checks=[f"{a}:{s}" for a, s in requirement.checks],
            )
            raise ForbiddenError("insufficient permissions")
        return AuthContext(principal=principal, ability=ability)


def requirement(
    *auth_types: AuthType,
    system_roles: Optional[Sequence[str]] = None,
    checks: Optional[List[Check]] = None,
) -> AuthRequirement:
    return AuthRequirement(
        auth_types=tuple(auth_types) or (AuthType.BEARER,),
        system_roles=system_roles,
        checks=tuple(checks or ()),
    )
