from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from antares.api.gateway import CONTEXT_GYM_HEADER, identity_headers
from antares.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForwardedIdentityResponse,
    GymRequest,
    GymResponse,
    GymSettingsRequest,
    GymSettingsResponse,
    JoinGymRequest,
    LoginRequest,
    MembershipResponse,
    MembershipSummary,
    MembershipUpdateRequest,
    PreferencesUpdateRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    UserResponse,
    UserSummary,
)
from antares.logging import get_logger
from antares.service.auth import AuthResult
from antares.service.authorization import VerifiedIdentity
from antares.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    RateLimitedError,
    ValidationError,
)
from antares.service.rate_limit import RateDecision, client_key
from antares.service.runtime import get_runtime
from antares.service.users import UserProfile
from antares.storage.models import Gym, GymStatus, Membership, MembershipStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_RATE_WINDOW_SECONDS = 60


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateDecision, window_seconds: int) -> "RateLimitInfo":
        reset = window_seconds if decision.allowed else decision.retry_after
        return cls(decision.limit, decision.remaining, reset)

    def as_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.as_headers())


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int = _RATE_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one hit against ``key`` and publish the limit headers.

    Raises:
        RateLimitedError: the window is exhausted (429 with Retry-After).
    """
    decision = await runtime.rate_guard.hit(key, limit, window_seconds)
    info = RateLimitInfo.from_decision(decision, window_seconds)
    if not decision.allowed:
        logger.info("rate_limited", key=key, limit=limit, retry_after=decision.retry_after)
        raise RateLimitedError(
            retry_after=decision.retry_after,
            detail={"retry_after": decision.retry_after},
            headers=info.as_headers(),
        )
    if response is not None and limit > 0:
        info.apply_headers(response)
    return info


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _access_token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Access cookie first, then an ``Authorization: Bearer`` header."""
    runtime = get_runtime()
    return request.cookies.get(runtime.settings.access_cookie_name) or _bearer_token(
        authorization
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> VerifiedIdentity:
    token = _access_token_from(request, authorization)
    if not token:
        raise AuthenticationError("authentication required")
    return get_runtime().auth.authenticate(token)


async def get_admin_user(
    identity: VerifiedIdentity = Depends(get_user),
) -> VerifiedIdentity:
    if not identity.is_admin:
        raise ForbiddenError("admin privileges required")
    return identity


def _apply_session_cookies(response: Response, result: AuthResult) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.access_cookie_name,
        result.tokens.access.token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        result.tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            name, path="/", secure=settings.cookie_secure, httponly=True, samesite="lax"
        )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        platform_role=result.user.platform_role,
        access_token=result.tokens.access.token,
        access_token_expires_at=result.tokens.access.expires_at,
        refresh_token=result.tokens.refresh_token,
        refresh_token_expires_at=result.tokens.refresh_expires_at,
    )


def _user_response(profile: UserProfile) -> UserResponse:
    user = profile.user
    return UserResponse(
        id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        platform_role=user.platform_role,
        memberships=[
            MembershipSummary(
                membership_id=membership.id,
                gym_id=gym.id,
                gym_name=gym.name,
                gym_status=gym.status,
                gym_role=membership.gym_role,
                status=membership.status,
            )
            for membership, gym in profile.memberships
        ],
        locale=user.locale,
        theme=user.theme,
        created_at=user.created_at,
    )


def _gym_response(gym: Gym) -> GymResponse:
    return GymResponse(
        id=gym.id,
        name=gym.name,
        description=gym.description,
        is_programming=gym.is_programming,
        is_auto_subscription=gym.is_auto_subscription,
        status=gym.status,
        created_at=gym.created_at,
    )


def _gym_settings_response(gym: Gym) -> GymSettingsResponse:
    return GymSettingsResponse(
        gym_id=gym.id,
        enrollment_code=gym.enrollment_code,
        is_auto_subscription=gym.is_auto_subscription,
    )


def _membership_response(runtime, membership: Membership) -> MembershipResponse:
    user = runtime.store.get_user(membership.user_id)
    return MembershipResponse(
        id=membership.id,
        gym_id=membership.gym_id,
        user=UserSummary(
            id=user.id, first_name=user.first_name, last_name=user.last_name, email=user.email
        )
        if user
        else None,
        gym_role=membership.gym_role,
        status=membership.status,
        permissions=sorted(membership.permissions, key=lambda p: p.value),
        created_at=membership.created_at,
    )


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a USER account and start its session.

    Raises:
        400: If the payload fails validation
        409: If the email is already registered
        429: If the per-client registration rate is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        client_key("register", _client_ip(request)),
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid (same answer for unknown emails)
        429: If the account is locked or the client rate is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        client_key("login", _client_ip(request)),
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    """Rotate the refresh session from the cookie or the request body.

    Raises:
        401: If the session is unknown, expired or already used
        429: If the client rate is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        client_key("refresh", _client_ip(request)),
        runtime.settings.refresh_rate_limit_per_minute,
        response=response,
    )
    presented = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    result = await runtime.auth.refresh(presented)
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """End the current session and clear auth cookies.

    With a valid access token every session of that user is revoked.
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    user_id = None
    access_token = _access_token_from(request, authorization)
    if access_token:
        try:
            user_id = runtime.auth.authenticate(access_token).user_id
        except InvalidTokenError:
            user_id = None
    await runtime.auth.logout(presented, user_id=user_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/impersonate/{user_id}", response_model=Envelope, tags=["auth"])
async def impersonate(
    user_id: str,
    response: Response,
    admin: VerifiedIdentity = Depends(get_admin_user),
):
    """Issue a session for another user (admin only).

    Raises:
        403: If the caller is not a platform admin or the target is disabled
        404: If the target user does not exist
    """
    runtime = get_runtime()
    result = await runtime.auth.impersonate(admin, user_id)
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/auth/verify/api", response_model=Envelope, tags=["auth"])
async def verify_api(
    response: Response,
    identity: VerifiedIdentity = Depends(get_user),
    context_gym_id: Optional[str] = Header(None, alias=CONTEXT_GYM_HEADER),
):
    """Forward-auth check for the reverse proxy.

    The identity is returned both as headers, which the proxy copies onto
    the upstream request, and in the body.

    Raises:
        400: If the gym context is not a valid id
        401: If no valid access token is presented
        403: If the caller has no usable membership in the requested gym
    """
    runtime = get_runtime()
    if context_gym_id is not None and context_gym_id.strip():
        gym_id = context_gym_id.strip()
        try:
            uuid.UUID(gym_id)
        except ValueError:
            raise ValidationError(
                "invalid gym id", detail={"field": CONTEXT_GYM_HEADER}
            ) from None
        identity = runtime.auth.with_gym_context(identity, gym_id)
    for name, value in identity_headers(identity).items():
        response.headers[name] = value
    return Envelope(
        status="ok",
        data=ForwardedIdentityResponse(
            user_id=identity.user_id,
            platform_role=identity.platform_role,
            gym_id=identity.gym_id,
            gym_role=identity.gym_role,
            permissions=sorted(identity.permissions, key=lambda p: p.value),
            locale=identity.locale,
        ),
    )


@router.get("/auth/verify/admin", response_model=Envelope, tags=["auth"])
async def verify_admin(
    response: Response, identity: VerifiedIdentity = Depends(get_admin_user)
):
    for name, value in identity_headers(identity).items():
        response.headers[name] = value
    return Envelope(status="ok", data={"user_id": identity.user_id, "admin": True})


# -- users ------------------------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(identity: VerifiedIdentity = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_response(runtime.users.get_profile(identity)))


@router.put("/users/me/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest, identity: VerifiedIdentity = Depends(get_user)
):
    """Update names and email.

    Raises:
        409: If the new email belongs to another account
    """
    runtime = get_runtime()
    profile = runtime.users.update_profile(
        identity,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
    )
    return Envelope(status="ok", data=_user_response(profile))


@router.patch("/users/me/preferences", response_model=Envelope, tags=["users"])
async def update_preferences(
    body: PreferencesUpdateRequest, identity: VerifiedIdentity = Depends(get_user)
):
    runtime = get_runtime()
    runtime.users.update_preferences(identity, locale=body.locale, theme=body.theme)
    return Envelope(status="ok", data=_user_response(runtime.users.get_profile(identity)))


@router.put("/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    identity: VerifiedIdentity = Depends(get_user),
):
    """Change the password; all other sessions are ended.

    Raises:
        400: If the current password is wrong or the confirmation differs
    """
    runtime = get_runtime()
    result = await runtime.users.change_password(
        identity, body.current_password, body.new_password, body.confirmation_password
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_me(response: Response, identity: VerifiedIdentity = Depends(get_user)):
    runtime = get_runtime()
    await runtime.users.delete_account(identity)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"deleted": True})


# -- gyms -------------------------------------------------------------------


@router.post("/gyms", response_model=Envelope, status_code=201, tags=["gyms"])
async def create_gym(body: GymRequest, identity: VerifiedIdentity = Depends(get_user)):
    """Create a gym pending admin approval.

    Raises:
        403: If the creation token is wrong
        409: If the name is taken
    """
    runtime = get_runtime()
    gym, _ = runtime.gyms.create_gym(
        identity,
        name=body.name,
        description=body.description,
        is_programming=body.is_programming,
        creation_token=body.creation_token,
    )
    return Envelope(status="ok", data=_gym_response(gym))


@router.get("/gyms", response_model=Envelope, tags=["gyms"])
async def list_gyms(
    status: Optional[GymStatus] = Query(None),
    identity: VerifiedIdentity = Depends(get_user),
):
    runtime = get_runtime()
    gyms = runtime.gyms.list_gyms(identity, status)
    return Envelope(status="ok", data=[_gym_response(gym) for gym in gyms])


@router.put("/gyms/{gym_id}/status", response_model=Envelope, tags=["gyms"])
async def update_gym_status(
    gym_id: str,
    status: GymStatus = Query(...),
    admin: VerifiedIdentity = Depends(get_admin_user),
):
    runtime = get_runtime()
    gym = runtime.gyms.update_status(admin, gym_id, status)
    return Envelope(status="ok", data=_gym_response(gym))


@router.post("/gyms/join", response_model=Envelope, tags=["gyms"])
async def join_gym(
    body: JoinGymRequest,
    response: Response,
    identity: VerifiedIdentity = Depends(get_user),
):
    """Join a gym with its enrollment code.

    Raises:
        403: If the code is wrong or the membership is banned
        404: If the gym does not exist
        409: If the caller is already a member
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        client_key("join", identity.user_id),
        runtime.settings.join_rate_limit_per_minute,
        response=response,
    )
    membership = runtime.memberships.join_gym(identity, body.gym_id, body.enrollment_code)
    return Envelope(status="ok", data=_membership_response(runtime, membership))


@router.get("/gyms/{gym_id}/settings", response_model=Envelope, tags=["gyms"])
async def get_gym_settings(gym_id: str, identity: VerifiedIdentity = Depends(get_user)):
    runtime = get_runtime()
    gym = runtime.gyms.get_settings(identity, gym_id)
    return Envelope(status="ok", data=_gym_settings_response(gym))


@router.put("/gyms/{gym_id}/settings", response_model=Envelope, tags=["gyms"])
async def update_gym_settings(
    gym_id: str,
    body: GymSettingsRequest,
    identity: VerifiedIdentity = Depends(get_user),
):
    runtime = get_runtime()
    gym = runtime.gyms.update_settings(
        identity,
        gym_id,
        enrollment_code=body.enrollment_code,
        is_auto_subscription=body.is_auto_subscription,
    )
    return Envelope(status="ok", data=_gym_settings_response(gym))


@router.delete("/gyms/{gym_id}", response_model=Envelope, tags=["gyms"])
async def delete_gym(gym_id: str, identity: VerifiedIdentity = Depends(get_user)):
    runtime = get_runtime()
    runtime.gyms.delete_gym(identity, gym_id)
    return Envelope(status="ok", data={"deleted": True, "gym_id": gym_id})


# -- memberships ------------------------------------------------------------


@router.get("/memberships", response_model=Envelope, tags=["memberships"])
async def list_memberships(
    gym_id: str = Query(...),
    status: Optional[MembershipStatus] = Query(None),
    identity: VerifiedIdentity = Depends(get_user),
):
    runtime = get_runtime()
    memberships = runtime.memberships.list_members(identity, gym_id, status)
    return Envelope(
        status="ok", data=[_membership_response(runtime, m) for m in memberships]
    )


@router.get("/memberships/me", response_model=Envelope, tags=["memberships"])
async def my_memberships(identity: VerifiedIdentity = Depends(get_user)):
    runtime = get_runtime()
    memberships = runtime.memberships.my_memberships(identity)
    return Envelope(
        status="ok", data=[_membership_response(runtime, m) for m in memberships]
    )


@router.put("/memberships/{membership_id}", response_model=Envelope, tags=["memberships"])
async def update_membership(
    membership_id: str,
    body: MembershipUpdateRequest,
    identity: VerifiedIdentity = Depends(get_user),
):
    """Change a member's status, role or permissions.

    Raises:
        403: If the caller lacks MANAGE_MEMBERSHIPS or outranks the rules
        404: If the membership does not exist
    """
    runtime = get_runtime()
    membership = runtime.memberships.update_membership(
        identity,
        membership_id,
        status=body.status,
        gym_role=body.gym_role,
        permissions=body.permissions,
    )
    return Envelope(status="ok", data=_membership_response(runtime, membership))


@router.delete("/memberships/{membership_id}", response_model=Envelope, tags=["memberships"])
async def remove_membership(
    membership_id: str, identity: VerifiedIdentity = Depends(get_user)
):
    runtime = get_runtime()
    membership = runtime.memberships.remove_membership(identity, membership_id)
    return Envelope(status="ok", data=_membership_response(runtime, membership))
