from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import InvalidToken
from authcore.service.tokens import hash_secret, new_refresh_secret
from authcore.storage.common import generate_uuid
from authcore.storage.models import OneTimeToken, TokenPurpose, utcnow

logger = get_logger(__name__)


class OneTimeTokenStore(Protocol):
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def get_one_time_token(self, purpose: str, token_hash: str) -> Optional[OneTimeToken]: ...

    def mark_one_time_token_used(self, token_id: str, at: datetime) -> bool: ...

    def invalidate_one_time_tokens(self, user_id: str, purpose: str) -> int: ...


class OneTimeTokenService:
    """Single-use secrets for password reset and email verification."""

    def __init__(
        self,
        store: OneTimeTokenStore,
        *,
        reset_ttl: timedelta = timedelta(minutes=15),
        verification_ttl: timedelta = timedelta(hours=48),
    ) -> None:
        self.store = store
        self._ttl = {
            TokenPurpose.PASSWORD_RESET.value: reset_ttl,
            TokenPurpose.EMAIL_VERIFICATION.value: verification_ttl,
        }

    async def generate(self, user_id: str, purpose: TokenPurpose) -> str:
        purpose_value = TokenPurpose(purpose).value
        # Only the newest token of a purpose stays usable
        self.store.invalidate_one_time_tokens(user_id, purpose_value)
        raw = new_refresh_secret()
        now = utcnow()
        self.store.create_one_time_token(
            OneTimeToken(
                id=generate_uuid(),
                user_id=user_id,
                purpose=purpose_value,
                token_hash=hash_secret(raw),
                expires_at=now + self._ttl[purpose_value],
                created_at=now,
            )
        )
        logger.info("one_time_token_issued", user_id=user_id, purpose=purpose_value)
        return raw

    async def consume(self, raw_token: str, purpose: TokenPurpose) -> OneTimeToken:
        """Validate and burn a token; returns the record so callers know the user."""
        purpose_value = TokenPurpose(purpose).value
        if not raw_token:
            raise InvalidToken("invalid or expired token")
        record = self.store.get_one_time_token(purpose_value, hash_secret(raw_token))
        now = utcnow()
        if record is None or record.used or record.expires_at < now:
            logger.warning(
                "one_time_token_rejected",
                purpose=purpose_value,
                reason="unknown" if record is None else ("used" if record.used else "expired"),
            )
            raise InvalidToken("invalid or expired token")
        if not self.store.mark_one_time_token_used(record.id, now):
            raise InvalidToken("invalid or expired token")
        record.used = True
        record.used_at = now
        return record
