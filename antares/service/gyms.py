from __future__ import annotations

import hmac
import uuid
from typing import List, Optional

from antares.config import Settings
from antares.logging import get_logger
from antares.service.authorization import (
    ALL_PERMISSIONS,
    AuthorizationEngine,
    VerifiedIdentity,
)
from antares.service.errors import ConflictError, ForbiddenError, NotFoundError
from antares.storage.errors import ConstraintViolation
from antares.storage.models import Gym, GymRole, GymStatus, Membership, Permission

logger = get_logger(__name__)


def generate_enrollment_code() -> str:
    return uuid.uuid4().hex[:8].upper()


class GymService:
    """Tenant lifecycle: creation, approval, settings and deletion."""

    def __init__(self, store, authz: AuthorizationEngine, settings: Settings) -> None:
        self.store = store
        self.authz = authz
        self.settings = settings

    def _require_gym(self, gym_id: str) -> Gym:
        gym = self.store.get_gym(gym_id)
        if gym is None:
            raise NotFoundError("gym not found", detail={"gym_id": gym_id})
        return gym

    def create_gym(
        self,
        identity: VerifiedIdentity,
        *,
        name: str,
        description: Optional[str],
        is_programming: bool,
        creation_token: str,
    ) -> tuple[Gym, Membership]:
        """Create a gym awaiting approval, with the caller as its owner.

        Programming gyms make the creator a PROGRAMMER instead of an OWNER.
        Either role receives every permission.
        """
        expected = self.settings.gym_creation_token
        if not expected or not hmac.compare_digest(
            expected.encode("utf-8"), creation_token.encode("utf-8")
        ):
            logger.warning("gym_creation_token_rejected", user_id=identity.user_id)
            raise ForbiddenError("invalid gym creation token")
        owner_role = GymRole.PROGRAMMER if is_programming else GymRole.OWNER
        try:
            gym, membership = self.store.create_gym(
                name.strip(),
                description=description,
                is_programming=is_programming,
                enrollment_code=generate_enrollment_code(),
                owner_user_id=identity.user_id,
                owner_role=owner_role,
                owner_permissions=ALL_PERMISSIONS,
            )
        except ConstraintViolation as exc:
            raise ConflictError("gym name already taken", detail={"field": "name"}) from exc
        logger.info("gym_created", gym_id=gym.id, owner_id=identity.user_id, role=owner_role.value)
        return gym, membership

    def list_gyms(
        self, identity: VerifiedIdentity, status: Optional[GymStatus] = None
    ) -> List[Gym]:
        """Admins may filter by any status; everyone else sees ACTIVE gyms."""
        if identity.is_admin:
            return self.store.list_gyms(status)
        return self.store.list_gyms(GymStatus.ACTIVE)

    def update_status(
        self, identity: VerifiedIdentity, gym_id: str, status: GymStatus
    ) -> Gym:
        self.authz.require_admin(identity)
        self._require_gym(gym_id)
        gym = self.store.update_gym_status(gym_id, status)
        logger.info("gym_status_updated", gym_id=gym_id, status=status.value, admin_id=identity.user_id)
        return gym

    def get_settings(self, identity: VerifiedIdentity, gym_id: str) -> Gym:
        self.authz.require_gym_permission(identity, gym_id, Permission.MANAGE_SETTINGS)
        return self._require_gym(gym_id)

    def update_settings(
        self,
        identity: VerifiedIdentity,
        gym_id: str,
        *,
        enrollment_code: Optional[str] = None,
        is_auto_subscription: Optional[bool] = None,
    ) -> Gym:
        self.authz.require_gym_permission(identity, gym_id, Permission.MANAGE_SETTINGS)
        self._require_gym(gym_id)
        gym = self.store.update_gym_settings(
            gym_id,
            enrollment_code=enrollment_code,
            is_auto_subscription=is_auto_subscription,
        )
        logger.info("gym_settings_updated", gym_id=gym_id, user_id=identity.user_id)
        return gym

    def delete_gym(self, identity: VerifiedIdentity, gym_id: str) -> None:
        self.authz.require_gym_permission(identity, gym_id, Permission.MANAGE_SETTINGS)
        if not self.store.delete_gym(gym_id):
            raise NotFoundError("gym not found", detail={"gym_id": gym_id})
        logger.warning("gym_deleted", gym_id=gym_id, user_id=identity.user_id)
