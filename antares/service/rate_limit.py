from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from antares.logging import get_logger
from antares.service.errors import AccountLockedError, RateLimitedError

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60
# Local updates between sweeps of expired counters
_SWEEP_INTERVAL = 256


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    count: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateGuard:
    """Fixed-window rate limiting and failed-login lockout.

    Counters live in Redis when a cache is configured, where each update is
    one Lua script. Without Redis the same semantics run against
    lock-protected dictionaries local to this process.

    A fixed window admits up to ``limit`` hits per window; a burst straddling
    a window boundary can therefore see up to twice the limit.
    """

    def __init__(
        self,
        cache=None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: int = _SWEEP_INTERVAL,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._lock = threading.Lock()
        self._sweep_interval = max(1, sweep_interval)
        self._ops_since_sweep = 0
        # key -> (count, window_expires_at)
        self._windows: Dict[str, Tuple[int, float]] = {}
        # key -> (attempts, attempts_expire_at)
        self._attempts: Dict[str, Tuple[int, float]] = {}
        # key -> locked_until
        self._locks: Dict[str, float] = {}

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        """Count one request against ``key``."""
        if limit <= 0:
            return RateDecision(allowed=True, limit=limit, count=0, retry_after=0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = _DEFAULT_WINDOW_SECONDS
        if self.cache is not None:
            allowed, count, ttl = await self.cache.hit_fixed_window(key, limit, window_seconds)
            return RateDecision(
                allowed=allowed, limit=limit, count=count, retry_after=ttl if not allowed else 0
            )
        return self._hit_local(key, limit, window_seconds)

    def _hit_local(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            count, expires_at = self._windows.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            if count >= limit:
                retry_after = max(1, math.ceil(expires_at - now))
                return RateDecision(
                    allowed=False, limit=limit, count=count, retry_after=retry_after
                )
            count += 1
            self._windows[key] = (count, expires_at)
        return RateDecision(allowed=True, limit=limit, count=count, retry_after=0)

    def _maybe_sweep(self, now: float) -> None:
        """Drop expired local counters; caller holds ``_lock``."""
        self._ops_since_sweep += 1
        if self._ops_since_sweep < self._sweep_interval:
            return
        self._ops_since_sweep = 0
        for table in (self._windows, self._attempts):
            for key in [k for k, (_, expires_at) in table.items() if expires_at <= now]:
                del table[key]
        for key in [k for k, locked_until in self._locks.items() if locked_until <= now]:
            del self._locks[key]

    async def allow(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        """Like :meth:`hit` but raises :class:`RateLimitedError` on rejection."""
        decision = await self.hit(key, limit, window_seconds)
        if not decision.allowed:
            logger.info("rate_limited", key=key, limit=limit, retry_after=decision.retry_after)
            raise RateLimitedError(
                retry_after=decision.retry_after,
                detail={"retry_after": decision.retry_after},
            )
        return decision

    # -- lockout -----------------------------------------------------------

    async def lockout_remaining(self, key: str) -> int:
        """Seconds until ``key`` unlocks; 0 when it is not locked."""
        if self.cache is not None:
            return await self.cache.lockout_ttl(key)
        now = self._clock()
        with self._lock:
            locked_until = self._locks.get(key)
            if locked_until is None:
                return 0
            if locked_until <= now:
                del self._locks[key]
                return 0
            return max(1, math.ceil(locked_until - now))

    async def ensure_not_locked(self, key: str) -> None:
        remaining = await self.lockout_remaining(key)
        if remaining > 0:
            raise AccountLockedError(retry_after=remaining)

    async def record_failure(
        self, key: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        """Record a failed attempt; returns ``(locked, attempts)``.

        The first failure starts the attempt window. Reaching
        ``max_attempts`` sets the lock for ``lockout_seconds`` and clears the
        counter.
        """
        if self.cache is not None:
            locked, attempts = await self.cache.record_login_failure(
                key, max_attempts, lockout_seconds
            )
        else:
            locked, attempts = self._record_failure_local(key, max_attempts, lockout_seconds)
        if locked:
            logger.warning("account_locked", key=key, lockout_seconds=lockout_seconds)
        return locked, attempts

    def _record_failure_local(
        self, key: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            locked_until = self._locks.get(key)
            if locked_until is not None and locked_until > now:
                return True, -1
            attempts, expires_at = self._attempts.get(key, (0, 0.0))
            if expires_at <= now:
                attempts, expires_at = 0, now + lockout_seconds
            attempts += 1
            if attempts >= max_attempts:
                self._locks[key] = now + lockout_seconds
                self._attempts.pop(key, None)
                return True, attempts
            self._attempts[key] = (attempts, expires_at)
            return False, attempts

    async def clear_failures(self, key: str) -> None:
        if self.cache is not None:
            await self.cache.clear_login_failures(key)
            return
        with self._lock:
            self._attempts.pop(key, None)
            self._locks.pop(key, None)


def client_key(operation: str, subject: Optional[str]) -> str:
    """Rate key for ``operation`` performed by ``subject`` (IP or user id)."""
    return f"{operation}:{subject or 'anonymous'}"
