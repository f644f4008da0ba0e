from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.api_keys import ApiKeyService
from authcore.service.auth import AuthService
from authcore.service.cache_aside import CacheAside, MetricsRegistry
from authcore.service.cleanup import CleanupService
from authcore.service.one_time_tokens import OneTimeTokenService
from authcore.service.organizations import OrganizationService
from authcore.service.permissions import PermissionCache
from authcore.service.pipeline import ApiKeyAuthenticator, AuthPipeline, JwtAuthenticator
from authcore.service.policy import PolicyEngine
from authcore.service.rate_limiter import LoginRateLimiter
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenService
from authcore.service.user_cache import UserCache
from authcore.storage.memory import MemoryStore
from authcore.storage.memory_cache import MemoryCache
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL before logging it.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Cache = self._init_cache()
        self.metrics = MetricsRegistry()

        settings = self.settings
        self.tokens = TokenService(settings)
        self.sessions = SessionManager(self.store, self.tokens)
        self.user_cache = UserCache(
            self.store,
            self.cache,
            self._engine("user"),
            ttl_seconds=settings.user_cache_ttl_seconds,
            negative_ttl_seconds=settings.user_cache_negative_ttl_seconds,
        )
        self.permission_cache = PermissionCache(
            self.store,
            self._engine("permission"),
            ttl_seconds=settings.permission_cache_ttl_seconds,
        )
        self.policy = PolicyEngine(self.permission_cache)
        self.api_keys = ApiKeyService(self.store, self.cache, settings)
        self.rate_limiter = LoginRateLimiter(self.cache, settings)
        self.one_time_tokens = OneTimeTokenService(
            self.store,
            reset_ttl=timedelta(minutes=settings.password_reset_expiry_minutes),
            verification_ttl=timedelta(hours=settings.email_verification_expiry_hours),
        )
        self.organizations = OrganizationService(self.store)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.sessions,
            self.rate_limiter,
            self.one_time_tokens,
            self.user_cache,
            self.organizations,
            settings,
        )
        self.pipeline = AuthPipeline(
            [
                JwtAuthenticator(self.tokens, self.user_cache, settings.api_key_prefix),
                ApiKeyAuthenticator(self.api_keys, self.user_cache),
            ],
            self.policy,
        )
        self.cleanup = CleanupService(
            self.store, interval_seconds=settings.cleanup_interval_seconds
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
        )

    def _init_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding the pool to a
                # per-test event loop
                if self.settings.test_mode:
                    cache: Cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the user/permission caches and login rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; caches, locks and "
                "login counters are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    def _engine(self, name: str) -> CacheAside:
        return CacheAside(
            self.cache,
            name=name,
            metrics=self.metrics,
            lock_ttl_seconds=self.settings.cache_lock_ttl_seconds,
            retry_interval_seconds=self.settings.cache_lock_retry_interval_ms / 1000,
            max_attempts=self.settings.cache_lock_max_attempts,
            metrics_log_interval=self.settings.cache_metrics_log_interval,
        )

    async def close(self) -> None:
        await self.cleanup.stop()
        await self.api_keys.drain()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        # Close Redis connections so the next runtime does not inherit a
        # pool bound to a finished event loop
        if runtime is not None and isinstance(runtime.cache, (RedisCache, SyncRedisCache)):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
