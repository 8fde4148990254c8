from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

REFRESH_KEY_PREFIX = "auth:refresh:"
USER_REFRESH_KEY_PREFIX = "auth:user_refresh:"


class RedisCache:
    """Redis-backed refresh sessions, rate counters and login lockouts.

    Every check-then-act sequence runs as a single Lua script so concurrent
    requests across replicas observe one consistent counter.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Replace the user's previous session (if any) and index the new one
    _STORE_SESSION_SCRIPT = """
local previous = redis.call('GET', KEYS[2])
if previous then
  redis.call('DEL', ARGV[4] .. previous)
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[2])
return previous
"""

    # Get-and-delete: only one caller can ever observe the owner
    _CONSUME_SESSION_SCRIPT = """
local user_id = redis.call('GET', KEYS[1])
if not user_id then
  return false
end
redis.call('DEL', KEYS[1])
local index_key = ARGV[1] .. user_id
if redis.call('GET', index_key) == ARGV[2] then
  redis.call('DEL', index_key)
end
return user_id
"""

    _REVOKE_USER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
redis.call('DEL', ARGV[1] .. current)
redis.call('DEL', KEYS[1])
return 1
"""

    # Fixed window: never increments past the limit
    _FIXED_WINDOW_SCRIPT = """
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= limit then
  local ttl = redis.call('TTL', KEYS[1])
  if ttl < 0 then
    redis.call('EXPIRE', KEYS[1], window)
    ttl = window
  end
  return {0, current, ttl}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], window)
end
return {1, current, redis.call('TTL', KEYS[1])}
"""

    # KEYS[1] lock flag, KEYS[2] attempt counter
    _LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end
return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._store_session = self.client.register_script(self._STORE_SESSION_SCRIPT)
        self._consume_session = self.client.register_script(self._CONSUME_SESSION_SCRIPT)
        self._revoke_user = self.client.register_script(self._REVOKE_USER_SCRIPT)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    @staticmethod
    def _hashed(prefix: str, key: str) -> str:
        """Hash caller-supplied key material so it cannot collide with delimiters."""
        return f"{prefix}{hashlib.sha256(key.encode()).hexdigest()}"

    @classmethod
    def _rate_key(cls, key: str) -> str:
        return cls._hashed("rate:", key)

    @classmethod
    def _lockout_keys(cls, key: str) -> Tuple[str, str]:
        return (
            cls._hashed("lockout:locked:", key),
            cls._hashed("lockout:attempts:", key),
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_refresh_session(
        self, session_hash: str, user_id: str, ttl_seconds: int
    ) -> Optional[str]:
        """Persist a session and evict the user's previous one.

        Returns the hash of the evicted session, if there was one.
        """
        return await self._store_session(
            keys=[f"{REFRESH_KEY_PREFIX}{session_hash}", f"{USER_REFRESH_KEY_PREFIX}{user_id}"],
            args=[user_id, max(1, int(ttl_seconds)), session_hash, REFRESH_KEY_PREFIX],
        )

    async def consume_refresh_session(self, session_hash: str) -> Optional[str]:
        return await self._consume_session(
            keys=[f"{REFRESH_KEY_PREFIX}{session_hash}"],
            args=[USER_REFRESH_KEY_PREFIX, session_hash],
        )

    async def get_refresh_session_user(self, session_hash: str) -> Optional[str]:
        return await self.client.get(f"{REFRESH_KEY_PREFIX}{session_hash}")

    async def delete_user_refresh_sessions(self, user_id: str) -> int:
        revoked = await self._revoke_user(
            keys=[f"{USER_REFRESH_KEY_PREFIX}{user_id}"], args=[REFRESH_KEY_PREFIX]
        )
        return int(revoked or 0)

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit. Returns ``(allowed, count, seconds_until_reset)``."""
        allowed, count, ttl = await self._fixed_window(
            keys=[self._rate_key(key)], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), max(0, int(ttl))

    async def lockout_ttl(self, key: str) -> int:
        """Seconds left on an active lockout, 0 when not locked."""
        locked_key, _ = self._lockout_keys(key)
        ttl = await self.client.ttl(locked_key)
        return max(0, int(ttl or 0))

    async def record_login_failure(
        self, key: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        """Returns ``(locked, attempts)``; attempts is -1 when already locked."""
        locked_key, attempts_key = self._lockout_keys(key)
        locked, attempts = await self._login_failure(
            keys=[locked_key, attempts_key], args=[max_attempts, lockout_seconds]
        )
        return bool(int(locked)), int(attempts)

    async def clear_login_failures(self, key: str) -> None:
        await self.client.delete(*self._lockout_keys(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous twin of :class:`RedisCache` used under TEST_MODE.

    The sync client avoids binding a connection pool to whichever event loop
    the test client happens to run, while the coroutine signatures stay
    identical so callers always ``await``.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._store_session = self.client.register_script(RedisCache._STORE_SESSION_SCRIPT)
        self._consume_session = self.client.register_script(
            RedisCache._CONSUME_SESSION_SCRIPT
        )
        self._revoke_user = self.client.register_script(RedisCache._REVOKE_USER_SCRIPT)
        self._fixed_window = self.client.register_script(RedisCache._FIXED_WINDOW_SCRIPT)
        self._login_failure = self.client.register_script(
            RedisCache._LOGIN_FAILURE_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def store_refresh_session(
        self, session_hash: str, user_id: str, ttl_seconds: int
    ) -> Optional[str]:
        return self._store_session(
            keys=[f"{REFRESH_KEY_PREFIX}{session_hash}", f"{USER_REFRESH_KEY_PREFIX}{user_id}"],
            args=[user_id, max(1, int(ttl_seconds)), session_hash, REFRESH_KEY_PREFIX],
        )

    async def consume_refresh_session(self, session_hash: str) -> Optional[str]:
        return self._consume_session(
            keys=[f"{REFRESH_KEY_PREFIX}{session_hash}"],
            args=[USER_REFRESH_KEY_PREFIX, session_hash],
        )

    async def get_refresh_session_user(self, session_hash: str) -> Optional[str]:
        return self.client.get(f"{REFRESH_KEY_PREFIX}{session_hash}")

    async def delete_user_refresh_sessions(self, user_id: str) -> int:
        return int(
            self._revoke_user(
                keys=[f"{USER_REFRESH_KEY_PREFIX}{user_id}"], args=[REFRESH_KEY_PREFIX]
            )
            or 0
        )

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        allowed, count, ttl = self._fixed_window(
            keys=[RedisCache._rate_key(key)], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), max(0, int(ttl))

    async def lockout_ttl(self, key: str) -> int:
        locked_key, _ = RedisCache._lockout_keys(key)
        return max(0, int(self.client.ttl(locked_key) or 0))

    async def record_login_failure(
        self, key: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        locked_key, attempts_key = RedisCache._lockout_keys(key)
        locked, attempts = self._login_failure(
            keys=[locked_key, attempts_key], args=[max_attempts, lockout_seconds]
        )
        return bool(int(locked)), int(attempts)

    async def clear_login_failures(self, key: str) -> None:
        self.client.delete(*RedisCache._lockout_keys(key))

    async def close(self) -> None:
        self.client.close()
