from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PlatformRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class GymRole(str, Enum):
    OWNER = "OWNER"
    PROGRAMMER = "PROGRAMMER"
    COACH = "COACH"
    ATHLETE = "ATHLETE"


class Permission(str, Enum):
    WOD_WRITE = "WOD_WRITE"
    SCORE_VERIFY = "SCORE_VERIFY"
    MANAGE_MEMBERSHIPS = "MANAGE_MEMBERSHIPS"
    MANAGE_SETTINGS = "MANAGE_SETTINGS"


class MembershipStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    BANNED = "BANNED"


class GymStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    platform_role: PlatformRole = PlatformRole.USER
    enabled: bool = True
    locale: str = "en"
    theme: str = "light"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_admin(self) -> bool:
        return self.platform_role == PlatformRole.ADMIN


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    last_updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Gym:
    id: str
    name: str
    description: Optional[str] = None
    is_programming: bool = False
    status: GymStatus = GymStatus.PENDING_APPROVAL
    enrollment_code: Optional[str] = None
    is_auto_subscription: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Membership:
    id: str
    user_id: str
    gym_id: str
    gym_role: GymRole = GymRole.ATHLETE
    status: MembershipStatus = MembershipStatus.PENDING
    permissions: FrozenSet[Permission] = frozenset()
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE
