from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class AppEnv(str, Enum):
    """Deployment environments recognised by the cookie and secret policies."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and ``.env``."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; permits an ephemeral JWT secret.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    api_key_prefix: str = env_field("amcore", "API_KEY_PREFIX")
    api_key_env: str = env_field("live", "API_KEY_ENV")
    api_key_touch_interval_seconds: int = env_field(
        3600, "API_KEY_TOUCH_INTERVAL_SECONDS"
    )

    password_reset_expiry_minutes: int = env_field(
        15, "PASSWORD_RESET_EXPIRY_MINUTES"
    )
    email_verification_expiry_hours: int = env_field(
        48, "EMAIL_VERIFICATION_EXPIRY_HOURS"
    )

    user_cache_ttl_seconds: int = env_field(600, "USER_CACHE_TTL_SECONDS")
    user_cache_negative_ttl_seconds: int = env_field(
        60, "USER_CACHE_NEGATIVE_TTL_SECONDS"
    )
    permission_cache_ttl_seconds: int = env_field(
        3600, "PERMISSION_CACHE_TTL_SECONDS"
    )
    cache_lock_ttl_seconds: int = env_field(5, "CACHE_LOCK_TTL_SECONDS")
    cache_lock_retry_interval_ms: int = env_field(100, "CACHE_LOCK_RETRY_INTERVAL_MS")
    cache_lock_max_attempts: int = env_field(20, "CACHE_LOCK_MAX_ATTEMPTS")
    cache_metrics_log_interval: int = env_field(
        100,
        "CACHE_METRICS_LOG_INTERVAL",
        description="Emit a cache_metrics log line every N lookups (0 disables)",
    )

    login_ip_max_attempts: int = env_field(100, "LOGIN_IP_MAX_ATTEMPTS")
    login_ip_window_seconds: int = env_field(24 * 60 * 60, "LOGIN_IP_WINDOW_SECONDS")
    login_user_ip_max_attempts: int = env_field(5, "LOGIN_USER_IP_MAX_ATTEMPTS")
    login_user_ip_window_seconds: int = env_field(60 * 60, "LOGIN_USER_IP_WINDOW_SECONDS")
    login_block_seconds: int = env_field(15 * 60, "LOGIN_BLOCK_SECONDS")

    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_app_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("api_key_prefix", "api_key_env")
    @classmethod
    def _no_underscore(cls, value: str) -> str:
        # Key strings are split on "_", so neither component may contain one
        if not value or "_" in value:
            raise ValueError("API key prefix and env must be non-empty and contain no '_'")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not (self.test_mode or self.app_env == AppEnv.TEST):
            raise ValueError("JWT_SECRET is required outside test mode")
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="test_mode_without_secret")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
