from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from antares.logging import get_logger
from antares.storage.errors import ConstraintViolation
from antares.storage.models import (
    Gym,
    GymRole,
    GymStatus,
    Membership,
    MembershipStatus,
    Permission,
    PlatformRole,
    User,
    UserAuthCredential,
    new_id,
)


class MemoryStore:
    """In-process credential store used for tests and local development.

    Mirrors :class:`antares.storage.postgres.PostgresStore` method for method.
    All mutation happens under one re-entrant lock, so uniqueness checks and
    inserts are atomic with respect to each other. Returned objects are
    copies; mutating them never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.gyms: Dict[str, Gym] = {}
        self.memberships: Dict[str, Membership] = {}
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_user_id: Optional[str] = None) -> bool:
        return any(
            existing.email == email and existing.id != exclude_user_id
            for existing in self.users.values()
        )

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        platform_role: PlatformRole = PlatformRole.USER,
        locale: str = "en",
        theme: str = "light",
    ) -> User:
        email = email.lower()
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                first_name=first_name,
                last_name=last_name,
                platform_role=platform_role,
                locale=locale,
                theme=theme,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=datetime.now(timezone.utc), **changes)
            self.users[user_id] = updated
            return replace(updated)

    def update_user_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        changes = {}
        if first_name is not None:
            changes["first_name"] = first_name
        if last_name is not None:
            changes["last_name"] = last_name
        with self._data_lock:
            if email is not None:
                email = email.lower()
                if self._email_taken(email, exclude_user_id=user_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                changes["email"] = email
            return self._update_user(user_id, **changes)

    def update_user_preferences(
        self, user_id: str, *, locale: Optional[str] = None, theme: Optional[str] = None
    ) -> Optional[User]:
        changes = {}
        if locale is not None:
            changes["locale"] = locale
        if theme is not None:
            changes["theme"] = theme
        return self._update_user(user_id, **changes)

    def set_user_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        return self._update_user(user_id, enabled=enabled)

    def set_user_role(self, user_id: str, platform_role: PlatformRole) -> Optional[User]:
        return self._update_user(user_id, platform_role=platform_role)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    # -- gyms --------------------------------------------------------------

    def create_gym(
        self,
        name: str,
        *,
        description: Optional[str],
        is_programming: bool,
        enrollment_code: str,
        owner_user_id: str,
        owner_role: GymRole,
        owner_permissions: Iterable[Permission],
    ) -> Tuple[Gym, Membership]:
        """Create a gym together with its creator's ACTIVE membership."""
        with self._data_lock:
            if any(g.name.lower() == name.lower() for g in self.gyms.values()):
                raise ConstraintViolation("gym name already exists", {"field": "name"})
            gym = Gym(
                id=new_id(),
                name=name,
                description=description,
                is_programming=is_programming,
                enrollment_code=enrollment_code,
            )
            self.gyms[gym.id] = gym
            membership = self.create_membership(
                owner_user_id,
                gym.id,
                gym_role=owner_role,
                status=MembershipStatus.ACTIVE,
                permissions=owner_permissions,
            )
            return replace(gym), membership

    def get_gym(self, gym_id: str) -> Optional[Gym]:
        with self._data_lock:
            gym = self.gyms.get(gym_id)
            return replace(gym) if gym else None

    def list_gyms(self, status: Optional[GymStatus] = None) -> List[Gym]:
        with self._data_lock:
            gyms = [
                replace(g)
                for g in self.gyms.values()
                if status is None or g.status == status
            ]
        return sorted(gyms, key=lambda g: g.created_at)

    def _update_gym(self, gym_id: str, **changes) -> Optional[Gym]:
        with self._data_lock:
            gym = self.gyms.get(gym_id)
            if not gym:
                return None
            updated = replace(gym, **changes)
            self.gyms[gym_id] = updated
            return replace(updated)

    def update_gym_settings(
        self,
        gym_id: str,
        *,
        enrollment_code: Optional[str] = None,
        is_auto_subscription: Optional[bool] = None,
    ) -> Optional[Gym]:
        changes = {}
        if enrollment_code is not None:
            changes["enrollment_code"] = enrollment_code
        if is_auto_subscription is not None:
            changes["is_auto_subscription"] = is_auto_subscription
        return self._update_gym(gym_id, **changes)

    def update_gym_status(self, gym_id: str, status: GymStatus) -> Optional[Gym]:
        return self._update_gym(gym_id, status=status)

    def delete_gym(self, gym_id: str) -> bool:
        with self._data_lock:
            if self.gyms.pop(gym_id, None) is None:
                return False
            for membership_id in [
                m.id for m in self.memberships.values() if m.gym_id == gym_id
            ]:
                del self.memberships[membership_id]
            return True

    # -- memberships -------------------------------------------------------

    def create_membership(
        self,
        user_id: str,
        gym_id: str,
        *,
        gym_role: GymRole = GymRole.ATHLETE,
        status: MembershipStatus = MembershipStatus.PENDING,
        permissions: Iterable[Permission] = (),
    ) -> Membership:
        with self._data_lock:
            if self._find_membership(user_id, gym_id) is not None:
                raise ConstraintViolation(
                    "membership already exists", {"field": "membership"}
                )
            if gym_id not in self.gyms:
                raise ConstraintViolation("gym does not exist", {"gym_id": gym_id})
            membership = Membership(
                id=new_id(),
                user_id=user_id,
                gym_id=gym_id,
                gym_role=gym_role,
                status=status,
                permissions=frozenset(permissions),
            )
            self.memberships[membership.id] = membership
            return replace(membership)

    def _find_membership(self, user_id: str, gym_id: str) -> Optional[Membership]:
        for membership in self.memberships.values():
            if membership.user_id == user_id and membership.gym_id == gym_id:
                return membership
        return None

    def get_membership(self, membership_id: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            return replace(membership) if membership else None

    def get_membership_for(self, user_id: str, gym_id: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self._find_membership(user_id, gym_id)
            return replace(membership) if membership else None

    def list_memberships(
        self, gym_id: str, status: Optional[MembershipStatus] = None
    ) -> List[Membership]:
        with self._data_lock:
            found = [
                replace(m)
                for m in self.memberships.values()
                if m.gym_id == gym_id and (status is None or m.status == status)
            ]
        return sorted(found, key=lambda m: m.created_at)

    def list_user_memberships(self, user_id: str) -> List[Membership]:
        with self._data_lock:
            found = [replace(m) for m in self.memberships.values() if m.user_id == user_id]
        return sorted(found, key=lambda m: m.created_at)

    def update_membership(
        self,
        membership_id: str,
        *,
        status: Optional[MembershipStatus] = None,
        gym_role: Optional[GymRole] = None,
        permissions: Optional[Iterable[Permission]] = None,
    ) -> Optional[Membership]:
        changes = {}
        if status is not None:
            changes["status"] = status
        if gym_role is not None:
            changes["gym_role"] = gym_role
        if permissions is not None:
            changes["permissions"] = frozenset(permissions)
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if not membership:
                return None
            updated = replace(membership, **changes)
            self.memberships[membership_id] = updated
            return replace(updated)


class MemorySessionStore:
    """Refresh-session store for runs without Redis.

    Implements the session half of the :class:`RedisCache` interface with a
    lock-protected dictionary; expired entries are dropped lazily.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # session hash -> (user_id, expires_at)
        self._sessions: Dict[str, Tuple[str, float]] = {}
        # user_id -> current session hash
        self._by_user: Dict[str, str] = {}

    def _live_owner(self, session_hash: str) -> Optional[str]:
        entry = self._sessions.get(session_hash)
        if entry is None:
            return None
        user_id, expires_at = entry
        if expires_at <= self._clock():
            del self._sessions[session_hash]
            if self._by_user.get(user_id) == session_hash:
                del self._by_user[user_id]
            return None
        return user_id

    async def store_refresh_session(
        self, session_hash: str, user_id: str, ttl_seconds: int
    ) -> Optional[str]:
        with self._lock:
            previous = self._by_user.get(user_id)
            if previous is not None:
                self._sessions.pop(previous, None)
            self._sessions[session_hash] = (user_id, self._clock() + max(1, ttl_seconds))
            self._by_user[user_id] = session_hash
            return previous

    async def consume_refresh_session(self, session_hash: str) -> Optional[str]:
        with self._lock:
            user_id = self._live_owner(session_hash)
            if user_id is None:
                return None
            del self._sessions[session_hash]
            if self._by_user.get(user_id) == session_hash:
                del self._by_user[user_id]
            return user_id

    async def get_refresh_session_user(self, session_hash: str) -> Optional[str]:
        with self._lock:
            return self._live_owner(session_hash)

    async def delete_user_refresh_sessions(self, user_id: str) -> int:
        with self._lock:
            current = self._by_user.pop(user_id, None)
            if current is None:
                return 0
            self._sessions.pop(current, None)
            return 1

    async def close(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._by_user.clear()
