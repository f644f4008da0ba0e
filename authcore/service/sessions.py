from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import NotFoundError, SessionExpired, SessionNotFound
from authcore.service.tokens import TokenService
from authcore.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def delete_session_by_hash(self, refresh_token_hash: str) -> int: ...

    def delete_session(self, session_id: str, user_id: str) -> int: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...

    def delete_user_sessions(
        self, user_id: str, except_hash: Optional[str] = None
    ) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class IssuedSession:
    """A freshly persisted session and its raw refresh token (returned once)."""

    refresh_token: str
    session: Session


@dataclass
class SessionView:
    id: str
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime
    current: bool


class SessionManager:
    """Stores one hashed refresh token per login and rotates it on refresh.

    Rotation deletes the old row before creating the new one. The two writes
    are not one transaction: if the create fails the caller ends up logged
    out, never holding two valid tokens for one session.
    """

    def __init__(self, store: SessionStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    async def create(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        device = device or DeviceInfo()
        raw = self.tokens.new_refresh_secret()
        session = Session.new(
            user_id=user_id,
            refresh_token_hash=self.tokens.hash(raw),
            expires_at=self.tokens.refresh_expiry(),
            user_agent=device.user_agent,
            ip_address=device.ip_address,
        )
        self.store.create_session(session)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return IssuedSession(refresh_token=raw, session=session)

    async def rotate(
        self, old_hash: str, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        existing = self.store.get_session_by_hash(old_hash)
        if not existing:
            raise SessionNotFound()
        if existing.is_expired():
            self.store.delete_session_by_hash(old_hash)
            logger.info("session_expired_on_refresh", session_id=existing.id)
            raise SessionExpired()
        device = device or DeviceInfo(
            user_agent=existing.user_agent, ip_address=existing.ip_address
        )
        deleted = self.store.delete_session_by_hash(old_hash)
        if not deleted:
            # Lost a race with a concurrent rotation or logout
            raise SessionNotFound()
        issued = await self.create(existing.user_id, device)
        logger.info(
            "session_rotated",
            user_id=existing.user_id,
            old_session_id=existing.id,
            session_id=issued.session.id,
        )
        return issued

    async def find_by_hash(self, refresh_token_hash: str) -> Optional[Session]:
        return self.store.get_session_by_hash(refresh_token_hash)

    async def revoke(self, refresh_token_hash: str) -> int:
        return self.store.delete_session_by_hash(refresh_token_hash)

    async def revoke_session(self, session_id: str, user_id: str) -> None:
        if not self.store.delete_session(session_id, user_id):
            raise NotFoundError("session not found")
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def list_sessions(
        self, user_id: str, current_hash: Optional[str] = None
    ) -> List[SessionView]:
        return [
            SessionView(
                id=sess.id,
                user_agent=sess.user_agent,
                ip_address=sess.ip_address,
                created_at=sess.created_at,
                expires_at=sess.expires_at,
                current=current_hash is not None
                and sess.refresh_token_hash == current_hash,
            )
            for sess in self.store.list_sessions(user_id)
        ]

    async def revoke_all_except_current(self, user_id: str, current_hash: str) -> int:
        count = self.store.delete_user_sessions(user_id, except_hash=current_hash)
        logger.info("sessions_revoked", user_id=user_id, count=count, kept_current=True)
        return count

    async def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=count, kept_current=False)
        return count

    async def sweep_expired(self) -> int:
        return self.store.delete_expired_sessions(utcnow())
