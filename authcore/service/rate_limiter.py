from __future__ import annotations

from typing import Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger, hash_for_log
from authcore.service.errors import RateLimitedError
from authcore.storage.common import normalize_email

logger = get_logger(__name__)


class CounterCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int: ...


class LoginRateLimiter:
    """Brute-force protection for password login.

    Two rolling counters (per IP, per identity+IP) and a block flag. ``check``
    runs before the password is looked at, so a tripped block holds even for
    the right password.
    """

    def __init__(self, cache: CounterCache, settings: Settings) -> None:
        self.cache = cache
        self.ip_max = settings.login_ip_max_attempts
        self.ip_window = settings.login_ip_window_seconds
        self.user_ip_max = settings.login_user_ip_max_attempts
        self.user_ip_window = settings.login_user_ip_window_seconds
        self.block_seconds = settings.login_block_seconds

    @staticmethod
    def ip_key(ip: str) -> str:
        return f"rate:login_ip:{ip}"

    @staticmethod
    def user_ip_key(identity: str, ip: str) -> str:
        return f"rate:login_user_ip:{normalize_email(identity)}:{ip}"

    @staticmethod
    def block_key(identity: str, ip: str) -> str:
        return f"rate:login_blocked:{normalize_email(identity)}:{ip}"

    async def check(self, identity: str, ip: str) -> None:
        if await self.cache.exists(self.block_key(identity, ip)):
            logger.warning(
                "login_blocked",
                identity_hash=hash_for_log(normalize_email(identity)),
                ip=ip,
            )
            raise RateLimitedError(
                "too many failed login attempts, try again later",
                retry_after_seconds=self.block_seconds,
            )
        ip_count = int(await self.cache.get(self.ip_key(ip)) or 0)
        if ip_count >= self.ip_max:
            logger.warning("login_ip_limited", ip=ip, count=ip_count)
            raise RateLimitedError(
                "too many login attempts from this address",
                retry_after_seconds=self.ip_window,
            )

    async def consume(self, identity: str, ip: str) -> int:
        """Count one failed attempt; returns the identity+IP count."""
        await self.cache.incr_with_ttl(self.ip_key(ip), self.ip_window)
        count = await self.cache.incr_with_ttl(
            self.user_ip_key(identity, ip), self.user_ip_window
        )
        if count >= self.user_ip_max:
            await self.cache.set(self.block_key(identity, ip), "1", self.block_seconds)
            logger.warning(
                "login_block_set",
                identity_hash=hash_for_log(normalize_email(identity)),
                ip=ip,
                attempts=count,
                block_seconds=self.block_seconds,
            )
        return count

    async def reset(self, identity: str, ip: str) -> None:
        await self.cache.delete(
            self.ip_key(ip),
            self.user_ip_key(identity, ip),
            self.block_key(identity, ip),
        )
