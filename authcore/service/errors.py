from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - business_rule_violation (422)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email, wrong password, or no password set.

    Always carries the same message so callers cannot probe for accounts.
    """

    GENERIC_MESSAGE = "invalid email or password"

    def __init__(self, message: str = GENERIC_MESSAGE, **kwargs) -> None:
        super().__init__(message, error_code="invalid_credentials", **kwargs)


class InvalidToken(AuthenticationError):
    """Signature, shape, or lookup failure for a token (401)."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, error_code="invalid_token", **kwargs)


class TokenExpired(InvalidToken):
    """Signed token is past its expiry (401)."""

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.error_code = "token_expired"


class SessionNotFound(InvalidToken):
    """No session row matches the presented refresh token (401)."""

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.error_code = "session_not_found"


class SessionExpired(AuthenticationError):
    """Refresh token found but past expiry; the session is deleted (401)."""

    def __init__(self, message: str = "refresh token expired", **kwargs) -> None:
        super().__init__(message, error_code="session_expired", **kwargs)


class UserNotFound(AuthenticationError):
    """Token verified but its subject no longer exists (401)."""

    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, error_code="user_not_found", **kwargs)


class Malformed(AuthenticationError):
    """API key string does not have the expected shape (401)."""

    def __init__(self, message: str = "malformed api key", **kwargs) -> None:
        super().__init__(message, error_code="malformed_api_key", **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotAMember(ForbiddenError):
    """Caller is not a member of the organization (403)."""

    def __init__(
        self, message: str = "you are not a member of this organization", **kwargs
    ) -> None:
        super().__init__(message, error_code="not_a_member", **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class BusinessRuleViolation(ServiceError):
    """Request is well-formed but breaks a domain rule (422)."""
    status_code = 422
    error_code = "business_rule_violation"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after_seconds": retry_after_seconds}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CacheLockTimeout(ServiceError):
    """Cache population lock stayed contended past the retry bound (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "TokenExpired",
    "SessionNotFound",
    "SessionExpired",
    "UserNotFound",
    "Malformed",
    "ForbiddenError",
    "NotAMember",
    "NotFoundError",
    "ConflictError",
    "BusinessRuleViolation",
    "RateLimitedError",
    "ServerError",
    "CacheLockTimeout",
]
