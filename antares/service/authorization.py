from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional, Protocol

from antares.logging import get_logger
from antares.service.errors import ForbiddenError
from antares.storage.models import (
    Gym,
    GymRole,
    GymStatus,
    Membership,
    MembershipStatus,
    Permission,
    PlatformRole,
)

logger = get_logger(__name__)

ALL_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)

# Permissions every member of a role holds regardless of explicit grants.
ROLE_DEFAULT_PERMISSIONS: Mapping[GymRole, FrozenSet[Permission]] = {
    GymRole.OWNER: ALL_PERMISSIONS,
    GymRole.PROGRAMMER: ALL_PERMISSIONS,
    GymRole.COACH: frozenset(),
    GymRole.ATHLETE: frozenset(),
}

_missing_roles = set(GymRole) - set(ROLE_DEFAULT_PERMISSIONS)
if _missing_roles:
    raise RuntimeError(f"gym roles without default permissions: {sorted(_missing_roles)}")

# Roles that keep access to a gym that is not (yet) ACTIVE
STAFF_ROLES: FrozenSet[GymRole] = frozenset({GymRole.OWNER, GymRole.PROGRAMMER})


@dataclass(frozen=True)
class VerifiedIdentity:
    """Principal established once per request from a verified token or
    from trusted forwarded headers. Never constructed from raw client input.
    """

    user_id: str
    platform_role: PlatformRole
    gym_id: Optional[str] = None
    gym_role: Optional[GymRole] = None
    permissions: FrozenSet[Permission] = field(default_factory=frozenset)
    locale: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.platform_role == PlatformRole.ADMIN


def effective_permissions(
    gym_role: Optional[GymRole], explicit: Iterable[Permission] = ()
) -> FrozenSet[Permission]:
    """Role defaults unioned with explicit grants; grants never remove."""
    defaults = ROLE_DEFAULT_PERMISSIONS.get(gym_role, frozenset()) if gym_role else frozenset()
    return defaults | frozenset(explicit)


def membership_grants(membership: Optional[Membership], permission: Permission) -> bool:
    if membership is None or not membership.is_active:
        return False
    return permission in effective_permissions(membership.gym_role, membership.permissions)


def gym_accessible(gym: Gym, membership: Membership) -> bool:
    """Whether a member may operate inside ``gym`` given its lifecycle state."""
    return gym.status == GymStatus.ACTIVE or membership.gym_role in STAFF_ROLES


class _MembershipLookup(Protocol):
    def get_gym(self, gym_id: str) -> Optional[Gym]: ...

    def get_membership(self, membership_id: str) -> Optional[Membership]: ...

    def get_membership_for(self, user_id: str, gym_id: str) -> Optional[Membership]: ...


class AuthorizationEngine:
    """Evaluate platform and tenant-scoped permissions.

    Decision order, first match wins: platform admin, resource owner outside
    any tenant, ACTIVE membership whose role defaults or explicit grants hold
    the permission, otherwise deny.
    """

    def __init__(self, store: _MembershipLookup) -> None:
        self.store = store

    def check(
        self,
        identity: VerifiedIdentity,
        permission: Optional[Permission] = None,
        *,
        gym_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> bool:
        if identity.is_admin:
            return True
        if gym_id is None:
            return owner_id is not None and owner_id == identity.user_id
        if permission is None:
            return False
        membership = self.store.get_membership_for(identity.user_id, gym_id)
        return membership_grants(membership, permission)

    def has_gym_permission(
        self, identity: VerifiedIdentity, gym_id: str, permission: Permission
    ) -> bool:
        """Tenant permission check that lets a missing gym fall through.

        Returning True for an unknown gym leaves the 404 to the caller, so
        authorization never reveals which ids exist.
        """
        if identity.is_admin:
            return True
        if self.store.get_gym(gym_id) is None:
            return True
        return self.check(identity, permission, gym_id=gym_id)

    def can_manage_membership(
        self, identity: VerifiedIdentity, membership_id: str, permission: Permission
    ) -> bool:
        """Resolve the target membership's gym, then check the caller there."""
        if identity.is_admin:
            return True
        target = self.store.get_membership(membership_id)
        if target is None:
            return True
        return self.check(identity, permission, gym_id=target.gym_id)

    def require_gym_permission(
        self, identity: VerifiedIdentity, gym_id: str, permission: Permission
    ) -> None:
        if not self.has_gym_permission(identity, gym_id, permission):
            logger.info(
                "authorization_denied",
                user_id=identity.user_id,
                gym_id=gym_id,
                permission=permission.value,
            )
            raise ForbiddenError("insufficient permissions for this gym")

    def require_membership_permission(
        self, identity: VerifiedIdentity, membership_id: str, permission: Permission
    ) -> None:
        if not self.can_manage_membership(identity, membership_id, permission):
            logger.info(
                "authorization_denied",
                user_id=identity.user_id,
                membership_id=membership_id,
                permission=permission.value,
            )
            raise ForbiddenError("insufficient permissions for this membership")

    def require_admin(self, identity: VerifiedIdentity) -> None:
        if not identity.is_admin:
            raise ForbiddenError("admin privileges required")


def allows_forwarded(
    identity: VerifiedIdentity, permission: Permission, gym_id: Optional[str] = None
) -> bool:
    """Decide from forwarded identity alone, for services without the store.

    The edge only forwards a gym context for ACTIVE memberships, so an
    identity carrying one is evaluated as an active member of that gym.
    """
    if identity.is_admin:
        return True
    if identity.gym_id is None or identity.gym_role is None:
        return False
    if gym_id is not None and gym_id != identity.gym_id:
        return False
    return permission in effective_permissions(identity.gym_role, identity.permissions)


__all__ = [
    "ALL_PERMISSIONS",
    "ROLE_DEFAULT_PERMISSIONS",
    "STAFF_ROLES",
    "AuthorizationEngine",
    "GymRole",
    "GymStatus",
    "MembershipStatus",
    "Permission",
    "PlatformRole",
    "VerifiedIdentity",
    "allows_forwarded",
    "effective_permissions",
    "gym_accessible",
    "membership_grants",
]
