from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from antares.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service, read from the environment."""

    database_url: str = env_field(
        "postgresql://localhost:5432/antares", "DATABASE_URL"
    )
    database_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_TIMEOUT_SECONDS",
        description="Pool acquire timeout; statement timeout is derived from it",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(
        2.0, "REDIS_SOCKET_TIMEOUT_SECONDS"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: synchronous Redis client, resettable runtime",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("antares", "JWT_ISSUER")
    jwt_audience: str = env_field("antares-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(120, "JWT_CLOCK_SKEW_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of a refresh session; also the refresh cookie max-age",
    )

    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Send auth cookies with the Secure attribute; disable only for plain-http local dev",
    )

    gym_creation_token: str | None = env_field(
        None,
        "GYM_CREATION_TOKEN",
        description="Capability secret required to create a gym",
    )
    internal_secret: str | None = env_field(
        None,
        "INTERNAL_SECRET",
        description="Shared secret the edge injects on forwarded requests",
    )

    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lockout_seconds: int = env_field(15 * 60, "LOGIN_LOCKOUT_SECONDS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    refresh_rate_limit_per_minute: int = env_field(
        30, "REFRESH_RATE_LIMIT_PER_MINUTE"
    )
    join_rate_limit_per_minute: int = env_field(10, "JOIN_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to send credentials",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("redis_url", "gym_creation_token", "internal_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "login_max_attempts",
        "login_lockout_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not (self.test_mode or self.allow_redis_fallback_dev):
            raise ValueError("JWT_SECRET is required outside test and dev modes")
        # Tokens signed with an ephemeral secret die with the process
        logger.warning("jwt_secret_ephemeral", test_mode=self.test_mode)
        self.jwt_secret = secrets.token_urlsafe(64)
        return self


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
