from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidToken, TokenExpired
from authcore.storage.models import Principal, PrincipalKind, utcnow

logger = get_logger(__name__)

REFRESH_SECRET_BYTES = 32


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest of a refresh or one-time token; only this is stored."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def new_refresh_secret() -> str:
    return secrets.token_hex(REFRESH_SECRET_BYTES)


class TokenService:
    """Signs and verifies HS256 access tokens; generates opaque refresh secrets."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    hash = staticmethod(hash_secret)
    new_refresh_secret = staticmethod(new_refresh_secret)

    def refresh_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_access_token(self, principal: Principal) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal.subject_id,
            "email": principal.email,
            "system_role": principal.system_role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.settings.access_token_ttl_minutes * 60,
        }
        if principal.organization_id and principal.acl_version is not None:
            payload["organization_id"] = principal.organization_id
            payload["acl_version"] = principal.acl_version
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidToken()
        return payload

    @staticmethod
    def principal_from_claims(claims: dict[str, Any]) -> Principal:
        acl_version = claims.get("acl_version")
        return Principal(
            subject_id=str(claims["sub"]),
            kind=PrincipalKind.PASSWORD.value,
            system_role=claims.get("system_role") or "USER",
            email=claims.get("email"),
            organization_id=claims.get("organization_id"),
            acl_version=int(acl_version) if acl_version is not None else None,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str) or not token.isascii():
            raise InvalidToken()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidToken()

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken()

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode()):
            raise InvalidToken()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken()
        if not isinstance(payload, dict):
            raise InvalidToken()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidToken()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidToken()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken()
        if exp_ts <= time.time() - self._leeway.total_seconds():
            raise TokenExpired()
        return payload
