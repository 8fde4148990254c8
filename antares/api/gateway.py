"""Forward-trust contract between the edge and internal services.

The edge verifies the access token once and injects identity headers plus a
shared internal secret. Internal services trust those headers only when the
secret matches, and the public edge strips any copy a client tries to send.
"""

from __future__ import annotations

import hmac
from typing import Dict, Mapping, Optional

from fastapi import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from antares.logging import get_logger
from antares.service.authorization import VerifiedIdentity, allows_forwarded
from antares.service.errors import AuthenticationError, ForbiddenError
from antares.storage.models import GymRole, Permission, PlatformRole

logger = get_logger(__name__)

INTERNAL_SECRET_HEADER = "X-Internal-Secret"
USER_ID_HEADER = "X-Auth-User-Id"
USER_ROLE_HEADER = "X-Auth-User-Role"
USER_LOCALE_HEADER = "X-Auth-User-Locale"
GYM_ID_HEADER = "X-Auth-Gym-Id"
GYM_ROLE_HEADER = "X-Auth-Gym-Role"
PERMISSIONS_HEADER = "X-Auth-User-Permissions"
# Client-supplied: which gym the edge should resolve membership for
CONTEXT_GYM_HEADER = "X-Context-Gym-Id"

TRUST_HEADERS = frozenset(
    name.lower()
    for name in (
        INTERNAL_SECRET_HEADER,
        USER_ID_HEADER,
        USER_ROLE_HEADER,
        USER_LOCALE_HEADER,
        GYM_ID_HEADER,
        GYM_ROLE_HEADER,
        PERMISSIONS_HEADER,
    )
)
_TRUST_HEADERS_RAW = frozenset(name.encode("latin-1") for name in TRUST_HEADERS)


def strip_forward_trust_headers(scope: Scope) -> Scope:
    """Return ``scope`` without trust headers; unchanged when none were sent."""
    headers = scope.get("headers") or []
    kept = [(name, value) for name, value in headers if name.lower() not in _TRUST_HEADERS_RAW]
    if len(kept) == len(headers):
        return scope
    logger.warning(
        "forward_trust_headers_stripped",
        path=scope.get("path"),
        count=len(headers) - len(kept),
    )
    stripped = dict(scope)
    stripped["headers"] = kept
    return stripped


class ForwardTrustHeaderStripper:
    """Drop trust headers from every inbound request at the public edge."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            scope = strip_forward_trust_headers(scope)
        await self.app(scope, receive, send)


def identity_headers(identity: VerifiedIdentity) -> Dict[str, str]:
    """Headers describing ``identity`` for a downstream hop (no secret)."""
    headers = {
        USER_ID_HEADER: identity.user_id,
        USER_ROLE_HEADER: identity.platform_role.value,
    }
    if identity.locale:
        headers[USER_LOCALE_HEADER] = identity.locale
    if identity.gym_id is not None:
        headers[GYM_ID_HEADER] = identity.gym_id
        if identity.gym_role is not None:
            headers[GYM_ROLE_HEADER] = identity.gym_role.value
        headers[PERMISSIONS_HEADER] = ",".join(sorted(p.value for p in identity.permissions))
    return headers


def forward_headers(identity: VerifiedIdentity, internal_secret: str) -> Dict[str, str]:
    """Full header set an edge injects when forwarding to internal services."""
    headers = identity_headers(identity)
    headers[INTERNAL_SECRET_HEADER] = internal_secret
    return headers


def parse_forwarded_identity(headers: Mapping[str, str]) -> VerifiedIdentity:
    """Rebuild a :class:`VerifiedIdentity` from forwarded headers.

    Raises:
        AuthenticationError: a required header is missing or malformed.
    """
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        raise AuthenticationError("missing forwarded identity")
    try:
        platform_role = PlatformRole(headers.get(USER_ROLE_HEADER) or "")
        gym_id = (headers.get(GYM_ID_HEADER) or "").strip() or None
        gym_role_raw = (headers.get(GYM_ROLE_HEADER) or "").strip()
        gym_role = GymRole(gym_role_raw) if gym_role_raw else None
        permissions = frozenset(
            Permission(item.strip())
            for item in (headers.get(PERMISSIONS_HEADER) or "").split(",")
            if item.strip()
        )
    except ValueError as exc:
        raise AuthenticationError("malformed forwarded identity") from exc
    if gym_id is None and (gym_role is not None or permissions):
        raise AuthenticationError("malformed forwarded identity")
    return VerifiedIdentity(
        user_id=user_id,
        platform_role=platform_role,
        gym_id=gym_id,
        gym_role=gym_role,
        permissions=permissions,
        locale=(headers.get(USER_LOCALE_HEADER) or "").strip() or None,
    )


class ForwardedIdentity:
    """FastAPI dependency for internal services behind the edge.

    The shared secret is checked before any identity header is read; a
    service with no secret configured rejects every request.

        principal = ForwardedIdentity(settings.internal_secret)

        @router.post("/wods")
        async def create_wod(identity: VerifiedIdentity = Depends(principal)):
            ...
    """

    def __init__(self, internal_secret: Optional[str]) -> None:
        self._secret = internal_secret.encode("utf-8") if internal_secret else None

    def _secret_matches(self, presented: Optional[str]) -> bool:
        if self._secret is None or not presented:
            return False
        return hmac.compare_digest(self._secret, presented.encode("utf-8"))

    async def __call__(self, request: Request) -> VerifiedIdentity:
        if not self._secret_matches(request.headers.get(INTERNAL_SECRET_HEADER)):
            logger.warning(
                "internal_secret_rejected",
                path=request.url.path,
                client_ip=request.client.host if request.client else None,
            )
            raise ForbiddenError("access denied: invalid internal secret")
        return parse_forwarded_identity(request.headers)


def require_forwarded_permission(
    identity: VerifiedIdentity, permission: Permission, gym_id: Optional[str] = None
) -> None:
    if not allows_forwarded(identity, permission, gym_id):
        raise ForbiddenError(
            "insufficient permissions", detail={"permission": permission.value}
        )
