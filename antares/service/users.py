from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from antares.logging import get_logger
from antares.service.auth import AuthResult, AuthService
from antares.service.authorization import VerifiedIdentity
from antares.service.errors import ConflictError, NotFoundError, ValidationError
from antares.storage.errors import ConstraintViolation
from antares.storage.models import Gym, Membership, User

logger = get_logger(__name__)


@dataclass
class UserProfile:
    user: User
    memberships: List[Tuple[Membership, Gym]] = field(default_factory=list)


class UserService:
    """Self-service account operations for the authenticated user."""

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def get_profile(self, identity: VerifiedIdentity) -> UserProfile:
        user = self._require_user(identity.user_id)
        memberships: List[Tuple[Membership, Gym]] = []
        for membership in self.store.list_user_memberships(user.id):
            gym = self.store.get_gym(membership.gym_id)
            if gym is not None:
                memberships.append((membership, gym))
        return UserProfile(user=user, memberships=memberships)

    def update_profile(
        self,
        identity: VerifiedIdentity,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> UserProfile:
        self._require_user(identity.user_id)
        try:
            self.store.update_user_profile(
                identity.user_id,
                first_name=first_name,
                last_name=last_name,
                email=email.strip().lower() if email else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        logger.info("profile_updated", user_id=identity.user_id)
        return self.get_profile(identity)

    def update_preferences(
        self,
        identity: VerifiedIdentity,
        *,
        locale: Optional[str] = None,
        theme: Optional[str] = None,
    ) -> User:
        user = self.store.update_user_preferences(identity.user_id, locale=locale, theme=theme)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": identity.user_id})
        return user

    async def change_password(
        self,
        identity: VerifiedIdentity,
        current_password: str,
        new_password: str,
        confirmation_password: str,
    ) -> AuthResult:
        """Replace the password and restart the session.

        Every existing session is revoked; the caller receives a new pair.
        """
        user = self._require_user(identity.user_id)
        if not self.auth.verify_password(user.id, current_password):
            raise ValidationError(
                "current password is incorrect", detail={"field": "current_password"}
            )
        if new_password != confirmation_password:
            raise ValidationError(
                "password confirmation does not match",
                detail={"field": "confirmation_password"},
            )
        self.auth.save_password(user.id, new_password)
        await self.auth.tokens.revoke_all_for_user(user.id)
        tokens = await self.auth.issue_tokens(user)
        logger.info("password_changed", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def delete_account(self, identity: VerifiedIdentity) -> None:
        """Disable the account and end its sessions; the row is kept."""
        self._require_user(identity.user_id)
        self.store.set_user_enabled(identity.user_id, False)
        await self.auth.tokens.revoke_all_for_user(identity.user_id)
        logger.info("account_deleted", user_id=identity.user_id)
