from __future__ import annotations

import hmac
from typing import Iterable, List, Optional

from antares.logging import get_logger
from antares.service.authorization import (
    STAFF_ROLES,
    AuthorizationEngine,
    VerifiedIdentity,
)
from antares.service.errors import ConflictError, ForbiddenError, NotFoundError
from antares.storage.errors import ConstraintViolation
from antares.storage.models import (
    GymRole,
    Membership,
    MembershipStatus,
    Permission,
)

logger = get_logger(__name__)


class MembershipService:
    """Joining gyms and managing who holds which role inside them."""

    def __init__(self, store, authz: AuthorizationEngine) -> None:
        self.store = store
        self.authz = authz

    def join_gym(
        self, identity: VerifiedIdentity, gym_id: str, enrollment_code: str
    ) -> Membership:
        """Request membership using the gym's enrollment code.

        New members are ATHLETEs, ACTIVE straight away when the gym
        auto-subscribes and PENDING otherwise. A previously deactivated
        membership is reopened the same way; a banned one stays banned.
        """
        gym = self.store.get_gym(gym_id)
        if gym is None:
            raise NotFoundError("gym not found", detail={"gym_id": gym_id})
        if not gym.enrollment_code or not hmac.compare_digest(
            gym.enrollment_code.encode("utf-8"), enrollment_code.strip().upper().encode("utf-8")
        ):
            logger.info("enrollment_code_rejected", user_id=identity.user_id, gym_id=gym_id)
            raise ForbiddenError("invalid enrollment code")

        status = (
            MembershipStatus.ACTIVE if gym.is_auto_subscription else MembershipStatus.PENDING
        )
        existing = self.store.get_membership_for(identity.user_id, gym_id)
        if existing is not None:
            if existing.status == MembershipStatus.BANNED:
                raise ForbiddenError("membership has been banned")
            if existing.status != MembershipStatus.INACTIVE:
                raise ConflictError(
                    "already a member of this gym", detail={"membership_id": existing.id}
                )
            membership = self.store.update_membership(
                existing.id, status=status, gym_role=GymRole.ATHLETE, permissions=()
            )
            logger.info("membership_reopened", membership_id=existing.id, status=status.value)
            return membership

        try:
            membership = self.store.create_membership(
                identity.user_id, gym_id, gym_role=GymRole.ATHLETE, status=status
            )
        except ConstraintViolation as exc:
            raise ConflictError("already a member of this gym") from exc
        logger.info(
            "membership_created",
            membership_id=membership.id,
            gym_id=gym_id,
            user_id=identity.user_id,
            status=status.value,
        )
        return membership

    def list_members(
        self,
        identity: VerifiedIdentity,
        gym_id: str,
        status: Optional[MembershipStatus] = None,
    ) -> List[Membership]:
        self.authz.require_gym_permission(identity, gym_id, Permission.MANAGE_MEMBERSHIPS)
        if self.store.get_gym(gym_id) is None:
            raise NotFoundError("gym not found", detail={"gym_id": gym_id})
        return self.store.list_memberships(gym_id, status)

    def my_memberships(self, identity: VerifiedIdentity) -> List[Membership]:
        return self.store.list_user_memberships(identity.user_id)

    def _require_target(self, identity: VerifiedIdentity, membership_id: str) -> Membership:
        self.authz.require_membership_permission(
            identity, membership_id, Permission.MANAGE_MEMBERSHIPS
        )
        target = self.store.get_membership(membership_id)
        if target is None:
            raise NotFoundError("membership not found", detail={"membership_id": membership_id})
        return target

    def _check_hierarchy(
        self,
        identity: VerifiedIdentity,
        target: Membership,
        *,
        gym_role: Optional[GymRole] = None,
        permissions: Optional[Iterable[Permission]] = None,
    ) -> None:
        """Rank rules applied after the permission check.

        Staff roles (OWNER, PROGRAMMER) may change anything. Any other
        manager may only touch ATHLETE memberships, and only their status.
        Nobody but an admin edits a platform admin's membership.
        """
        if identity.is_admin:
            return
        actor = self.store.get_membership_for(identity.user_id, target.gym_id)
        if actor is None:
            raise ForbiddenError("not a member of this gym")
        target_user = self.store.get_user(target.user_id)
        if target_user is not None and target_user.is_admin:
            raise ForbiddenError("cannot modify a platform administrator")
        if actor.gym_role in STAFF_ROLES:
            return
        if target.gym_role != GymRole.ATHLETE:
            raise ForbiddenError("only athlete memberships can be managed by this role")
        if gym_role is not None and gym_role != target.gym_role:
            raise ForbiddenError("this role may only change membership status")
        if permissions is not None and frozenset(permissions) != target.permissions:
            raise ForbiddenError("this role may only change membership status")

    def update_membership(
        self,
        identity: VerifiedIdentity,
        membership_id: str,
        *,
        status: MembershipStatus,
        gym_role: GymRole,
        permissions: Iterable[Permission],
    ) -> Membership:
        permissions = frozenset(permissions)
        target = self._require_target(identity, membership_id)
        self._check_hierarchy(identity, target, gym_role=gym_role, permissions=permissions)
        updated = self.store.update_membership(
            membership_id, status=status, gym_role=gym_role, permissions=permissions
        )
        logger.info(
            "membership_updated",
            membership_id=membership_id,
            actor_id=identity.user_id,
            status=status.value,
            gym_role=gym_role.value,
        )
        return updated

    def remove_membership(self, identity: VerifiedIdentity, membership_id: str) -> Membership:
        """Deactivate a membership; history is kept."""
        target = self._require_target(identity, membership_id)
        self._check_hierarchy(identity, target)
        updated = self.store.update_membership(membership_id, status=MembershipStatus.INACTIVE)
        logger.info("membership_removed", membership_id=membership_id, actor_id=identity.user_id)
        return updated
