from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - validation_error (400)
    - unauthorized, invalid_credentials, invalid_token (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited, account_locked (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialError(AuthenticationError):
    """Email/password pair rejected (401).

    The message never says which half was wrong.
    """
    error_code = "invalid_credentials"
    GENERIC_MESSAGE = "invalid email or password"

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__(self.GENERIC_MESSAGE, detail=detail)


class InvalidTokenError(AuthenticationError):
    """Access token or refresh session rejected (401)."""
    error_code = "invalid_token"
    GENERIC_MESSAGE = "invalid or expired token"

    def __init__(self) -> None:
        super().__init__(self.GENERIC_MESSAGE)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int = 0,
        detail: Optional[dict] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(0, int(retry_after))
        self.headers = dict(headers or {})


class AccountLockedError(RateLimitedError):
    """Too many failed logins; the account is temporarily locked (429)."""
    error_code = "account_locked"

    def __init__(self, *, retry_after: int = 0) -> None:
        super().__init__(
            "account temporarily locked after repeated failed logins",
            retry_after=retry_after,
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
]
