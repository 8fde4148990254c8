from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from antares.config import get_settings, reset_settings_cache
from antares.logging import get_logger
from antares.service.auth import AuthService
from antares.service.authorization import AuthorizationEngine
from antares.service.gyms import GymService
from antares.service.memberships import MembershipService
from antares.service.rate_limit import RateGuard
from antares.service.tokens import TokenService
from antares.service.users import UserService
from antares.storage.memory import MemorySessionStore, MemoryStore
from antares.storage.postgres import PostgresStore
from antares.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Process-wide wiring of stores, guards and services."""

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
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.database_timeout_seconds,
                )
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under TEST_MODE avoids event loop binding
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh sessions, rate limits and login lockouts; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, rate limits and "
                    "lockouts are process-local."
                ),
                mode=fallback_mode,
            )

        self.sessions = self.cache if self.cache is not None else MemorySessionStore()
        self.rate_guard = RateGuard(self.cache)
        self.tokens = TokenService(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            session_store=self.sessions,
            clock_skew=timedelta(seconds=self.settings.jwt_clock_skew_seconds),
        )
        self.authz = AuthorizationEngine(self.store)
        self.auth = AuthService(self.store, self.tokens, self.rate_guard, self.settings)
        self.users = UserService(self.store, self.auth)
        self.gyms = GymService(self.store, self.authz, self.settings)
        self.memberships = MembershipService(self.store, self.authz)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            gym_creation_enabled=bool(self.settings.gym_creation_token),
            internal_secret_configured=bool(self.settings.internal_secret),
        )

    async def close(self) -> None:
        await self.sessions.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            try:
                asyncio.run(runtime.close())
            except Exception as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))
        runtime = Runtime()
        return runtime
