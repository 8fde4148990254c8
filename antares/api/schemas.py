from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from antares.storage.models import (
    GymRole,
    GymStatus,
    MembershipStatus,
    Permission,
    PlatformRole,
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters.

    Those characters render invisibly and would let two visually identical
    emails or names map to different accounts.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "forbidden",
    "not_found",
    "rate_limited",
    "account_locked",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("must not be blank")
    return normalized


# -- auth ------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    # Strength rules apply at registration only
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AuthResponse(BaseModel):
    user_id: str
    platform_role: PlatformRole
    token_type: str = "Bearer"
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime


class ForwardedIdentityResponse(BaseModel):
    user_id: str
    platform_role: PlatformRole
    gym_id: Optional[str] = None
    gym_role: Optional[GymRole] = None
    permissions: List[Permission] = Field(default_factory=list)
    locale: Optional[str] = None


# -- users -----------------------------------------------------------------


class UserSummary(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str


class MembershipSummary(BaseModel):
    membership_id: str
    gym_id: str
    gym_name: str
    gym_status: GymStatus
    gym_role: GymRole
    status: MembershipStatus


class UserResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    platform_role: PlatformRole
    memberships: List[MembershipSummary] = Field(default_factory=list)
    locale: str
    theme: str
    created_at: datetime


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class PreferencesUpdateRequest(BaseModel):
    locale: Optional[str] = Field(default=None, pattern=r"^[a-z]{2}(-[A-Z]{2})?$")
    theme: Optional[Literal["light", "dark", "system"]] = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str
    confirmation_password: str = Field(..., max_length=1024)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# -- gyms ------------------------------------------------------------------


class GymRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_programming: bool
    creation_token: str = Field(..., min_length=1, max_length=256)

    @field_validator("name")
    @classmethod
    def _validate_gym_name(cls, value: str) -> str:
        return _validate_name(value)


class GymResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_programming: bool
    is_auto_subscription: bool
    status: GymStatus
    created_at: datetime


class GymSettingsRequest(BaseModel):
    enrollment_code: Optional[str] = Field(
        default=None, min_length=4, max_length=32, pattern=r"^[A-Za-z0-9]+$"
    )
    is_auto_subscription: Optional[bool] = None

    @field_validator("enrollment_code")
    @classmethod
    def _upper_code(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class GymSettingsResponse(BaseModel):
    gym_id: str
    enrollment_code: Optional[str] = None
    is_auto_subscription: bool


class JoinGymRequest(BaseModel):
    gym_id: str = Field(..., min_length=1, max_length=64)
    enrollment_code: str = Field(..., min_length=1, max_length=32)


# -- memberships -----------------------------------------------------------


class MembershipResponse(BaseModel):
    id: str
    gym_id: str
    user: Optional[UserSummary] = None
    gym_role: GymRole
    status: MembershipStatus
    permissions: List[Permission] = Field(default_factory=list)
    created_at: datetime


class MembershipUpdateRequest(BaseModel):
    status: MembershipStatus
    gym_role: GymRole
    permissions: List[Permission]
