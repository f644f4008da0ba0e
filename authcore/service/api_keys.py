from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Set

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import Malformed, NotFoundError, ValidationError
from authcore.storage.common import generate_uuid
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import ApiKey, Principal, PrincipalKind, User, utcnow

logger = get_logger(__name__)

SHORT_TOKEN_BYTES = 8
LONG_TOKEN_BYTES = 24
SALT_BYTES = 16
_SCOPE_RE = re.compile(r"^[A-Za-z]+:[A-Za-z]+$")


class ApiKeyStore(Protocol):
    def create_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def get_api_key_by_short_token(self, short_token: str) -> Optional[ApiKey]: ...

    def list_api_keys(self, user_id: str) -> List[ApiKey]: ...

    def delete_api_key(self, api_key_id: str, user_id: str) -> int: ...

    def touch_api_key(self, api_key_id: str, at: datetime) -> None: ...


class GateCache(Protocol):
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...


@dataclass
class IssuedApiKey:
    """Returned once at creation; ``key`` is never retrievable again."""

    id: str
    name: str
    key: str
    scopes: List[str]
    expires_at: Optional[datetime]
    created_at: datetime


@dataclass
class ParsedApiKey:
    prefix: str
    env: str
    short_token: str
    long_token: str


def _random_token(num_bytes: int) -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def hash_long_token(long_token: str, salt: str) -> str:
    return hashlib.sha256((long_token + salt).encode("utf-8")).hexdigest()


class ApiKeyService:
    """Issues ``prefix_env_short_long`` keys and verifies them by short-token lookup.

    Only the short token (a public index) and ``sha256(long + salt)`` are
    stored. Verification is one indexed lookup followed by a constant-time
    digest comparison.
    """

    def __init__(self, store: ApiKeyStore, cache: GateCache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.prefix = settings.api_key_prefix
        self.env = settings.api_key_env
        self.touch_interval_seconds = settings.api_key_touch_interval_seconds
        self._pending: Set[asyncio.Task] = set()

    def _generate(self) -> ParsedApiKey:
        # base64url may emit "_", which is the segment separator; redraw until clean
        while True:
            short_token = _random_token(SHORT_TOKEN_BYTES)
            long_token = _random_token(LONG_TOKEN_BYTES)
            if "_" not in short_token and "_" not in long_token:
                return ParsedApiKey(self.prefix, self.env, short_token, long_token)

    @staticmethod
    def format_key(parsed: ParsedApiKey) -> str:
        return f"{parsed.prefix}_{parsed.env}_{parsed.short_token}_{parsed.long_token}"

    @staticmethod
    def _validate_scopes(scopes: List[str]) -> List[str]:
        cleaned = [scope.strip() for scope in scopes if scope and scope.strip()]
        if not cleaned:
            raise ValidationError("at least one scope is required")
        invalid = [scope for scope in cleaned if not _SCOPE_RE.match(scope)]
        if invalid:
            raise ValidationError(
                "scopes must look like action:Subject", detail={"invalid": invalid}
            )
        return list(dict.fromkeys(cleaned))

    async def issue(
        self,
        user_id: str,
        name: str,
        scopes: List[str],
        expires_at: Optional[datetime] = None,
    ) -> IssuedApiKey:
        if not name or not name.strip():
            raise ValidationError("name is required")
        scopes = self._validate_scopes(scopes)
        if expires_at is not None and expires_at <= utcnow():
            raise ValidationError("expires_at must be in the future")

        for _ in range(3):
            parsed = self._generate()
            salt = secrets.token_hex(SALT_BYTES)
            record = ApiKey(
                id=generate_uuid(),
                user_id=user_id,
                name=name.strip(),
                short_token=parsed.short_token,
                key_hash=hash_long_token(parsed.long_token, salt),
                salt=salt,
                scopes=scopes,
                expires_at=expires_at,
            )
            try:
                self.store.create_api_key(record)
            except ConstraintViolation as exc:
                if exc.constraint == "api_key_short_token":
                    logger.warning("api_key_short_token_collision")
                    continue
                raise
            logger.info("api_key_created", user_id=user_id, api_key_id=record.id)
            return IssuedApiKey(
                id=record.id,
                name=record.name,
                key=self.format_key(parsed),
                scopes=list(record.scopes),
                expires_at=record.expires_at,
                created_at=record.created_at,
            )
        raise ConstraintViolation(
            "could not allocate a unique short token", constraint="api_key_short_token"
        )

    async def list(self, user_id: str) -> List[ApiKey]:
        return self.store.list_api_keys(user_id)

    async def revoke(self, api_key_id: str, user_id: str) -> None:
        if not self.store.delete_api_key(api_key_id, user_id):
            raise NotFoundError("API key not found")
        logger.info("api_key_revoked", user_id=user_id, api_key_id=api_key_id)

    def parse(self, authorization: Optional[str]) -> Optional[ParsedApiKey]:
        """Split a ``Bearer`` header into key parts.

        Returns ``None`` when the header is not an API key at all, raises
        ``Malformed`` when it claims to be one but has the wrong shape.
        """
        scheme = "Bearer "
        if not authorization or not authorization.startswith(f"{scheme}{self.prefix}_"):
            return None
        parts = authorization[len(scheme):].split("_")
        if len(parts) != 4 or not all(parts):
            raise Malformed()
        return ParsedApiKey(*parts)

    async def verify(self, short_token: str, long_token: str) -> Optional[ApiKey]:
        api_key = self.store.get_api_key_by_short_token(short_token)
        if not api_key:
            return None
        if api_key.is_expired():
            logger.info("api_key_expired", api_key_id=api_key.id)
            return None
        computed = hash_long_token(long_token, api_key.salt)
        if not hmac.compare_digest(computed, api_key.key_hash):
            logger.warning("api_key_hash_mismatch", api_key_id=api_key.id)
            return None
        return api_key

    @staticmethod
    def principal_for(api_key: ApiKey, user: User) -> Principal:
        return Principal(
            subject_id=api_key.user_id,
            kind=PrincipalKind.API_KEY.value,
            system_role=user.system_role,
            email=user.email,
            scopes=list(api_key.scopes),
            api_key_id=api_key.id,
        )

    async def touch_last_used(self, api_key_id: str) -> None:
        """Record usage at most once per interval without blocking the request."""
        gate = f"lastused:{api_key_id}"
        if not await self.cache.set_if_absent(gate, "1", self.touch_interval_seconds):
            return
        task = asyncio.create_task(
            asyncio.to_thread(self.store.touch_api_key, api_key_id, utcnow())
        )
        self._pending.add(task)
        task.add_done_callback(self._touch_done)

    def _touch_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("api_key_touch_failed", error=str(exc))

    async def drain(self) -> None:
        """Wait for outstanding last-used writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
