from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from antares.config import Settings
from antares.logging import get_logger
from antares.service.authorization import (
    VerifiedIdentity,
    effective_permissions,
    gym_accessible,
)
from antares.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    InvalidTokenError,
    NotFoundError,
)
from antares.service.rate_limit import RateGuard
from antares.service.tokens import TokenPair, TokenService
from antares.storage.errors import ConstraintViolation
from antares.storage.models import Membership, PlatformRole, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Registration, login, session rotation and request authentication."""

    def __init__(
        self,
        store,
        tokens: TokenService,
        rate_guard: RateGuard,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.rate_guard = rate_guard
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        if record.password_algo != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch", user_id=user_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def _burn_dummy_verification(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost as much as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    # -- session issuance --------------------------------------------------

    @staticmethod
    def _claims_for_user(user: User) -> Dict[str, Any]:
        return {"role": user.platform_role.value}

    async def _claims_for_user_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self.store.get_user(user_id)
        if not user or not user.enabled:
            return None
        return self._claims_for_user(user)

    async def issue_tokens(self, user: User) -> TokenPair:
        return await self.tokens.issue_pair(
            user.id,
            access_ttl=self.access_ttl,
            refresh_ttl=self.refresh_ttl,
            claims=self._claims_for_user(user),
        )

    # -- flows -------------------------------------------------------------

    async def register(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> AuthResult:
        email = email.strip().lower()
        try:
            user = self.store.create_user(email, first_name, last_name)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self.save_password(user.id, password)
        tokens = await self.issue_tokens(user)
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    @staticmethod
    def _lockout_key(email: str) -> str:
        return f"login:{email}"

    async def login(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password.

        The lockout is consulted before the credentials, so a locked
        account answers the same whether or not the password is right.
        """
        email = email.strip().lower()
        lockout_key = self._lockout_key(email)
        await self.rate_guard.ensure_not_locked(lockout_key)

        user = self.store.get_user_by_email(email)
        if user is None or not user.enabled:
            self._burn_dummy_verification(password)
            await self._login_failed(lockout_key, user_id=user.id if user else None)
        elif not self.verify_password(user.id, password):
            await self._login_failed(lockout_key, user_id=user.id)

        await self.rate_guard.clear_failures(lockout_key)
        tokens = await self.issue_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def _login_failed(self, lockout_key: str, *, user_id: Optional[str]) -> None:
        locked, attempts = await self.rate_guard.record_failure(
            lockout_key,
            self.settings.login_max_attempts,
            self.settings.login_lockout_seconds,
        )
        self.logger.info(
            "login_failed", user_id=user_id, attempts=attempts, locked=locked
        )
        raise InvalidCredentialError()

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        tokens = await self.tokens.rotate(
            refresh_token,
            access_ttl=self.access_ttl,
            refresh_ttl=self.refresh_ttl,
            claims_for=self._claims_for_user_id,
        )
        user = self.store.get_user(tokens.user_id)
        if user is None:
            raise InvalidTokenError()
        return AuthResult(user=user, tokens=tokens)

    async def logout(
        self, refresh_token: Optional[str], *, user_id: Optional[str] = None
    ) -> None:
        """Revoke the presented session, and every session of ``user_id``."""
        await self.tokens.revoke(refresh_token)
        if user_id:
            await self.tokens.revoke_all_for_user(user_id)
        self.logger.info("logout", user_id=user_id)

    async def impersonate(self, admin: VerifiedIdentity, target_user_id: str) -> AuthResult:
        if not admin.is_admin:
            raise ForbiddenError("admin privileges required")
        target = self.store.get_user(target_user_id)
        if target is None:
            raise NotFoundError("user not found", detail={"user_id": target_user_id})
        if not target.enabled:
            raise ForbiddenError("cannot impersonate a disabled account")
        tokens = await self.issue_tokens(target)
        self.logger.warning(
            "impersonation_started", admin_id=admin.user_id, target_user_id=target.id
        )
        return AuthResult(user=target, tokens=tokens)

    # -- request authentication --------------------------------------------

    def authenticate(self, access_token: Optional[str]) -> VerifiedIdentity:
        """Turn an access token into the request principal.

        Raises:
            InvalidTokenError: token invalid, or its subject no longer active.
        """
        if not access_token:
            raise InvalidTokenError()
        claims = self.tokens.verify(access_token)
        user = self.store.get_user(str(claims["sub"]))
        if user is None or not user.enabled:
            self.logger.info("access_token_subject_inactive", user_id=claims.get("sub"))
            raise InvalidTokenError()
        return VerifiedIdentity(
            user_id=user.id,
            platform_role=user.platform_role,
            locale=user.locale,
        )

    def with_gym_context(self, identity: VerifiedIdentity, gym_id: str) -> VerifiedIdentity:
        """Attach the caller's role and permissions inside ``gym_id``.

        Only ACTIVE memberships qualify, and gyms that are not ACTIVE stay
        reachable for staff roles only. Platform admins bypass both rules and
        carry their own membership role, if they hold an active one.

        Raises:
            NotFoundError: an admin named a gym that does not exist.
            ForbiddenError: no usable membership in the gym.
        """
        membership = self.store.get_membership_for(identity.user_id, gym_id)
        if identity.is_admin:
            return self._admin_gym_context(identity, gym_id, membership)
        if membership is None or not membership.is_active:
            self.logger.info(
                "gym_context_denied", user_id=identity.user_id, gym_id=gym_id, reason="membership"
            )
            raise ForbiddenError("no active membership in this gym")
        gym = self.store.get_gym(gym_id)
        if gym is None:
            raise ForbiddenError("no active membership in this gym")
        if not gym_accessible(gym, membership):
            self.logger.info(
                "gym_context_denied", user_id=identity.user_id, gym_id=gym_id, reason="gym_status"
            )
            raise ForbiddenError("gym is not active")
        return VerifiedIdentity(
            user_id=identity.user_id,
            platform_role=identity.platform_role,
            gym_id=gym_id,
            gym_role=membership.gym_role,
            permissions=effective_permissions(membership.gym_role, membership.permissions),
            locale=identity.locale,
        )

    def _admin_gym_context(
        self, identity: VerifiedIdentity, gym_id: str, membership: Optional[Membership]
    ) -> VerifiedIdentity:
        if self.store.get_gym(gym_id) is None:
            raise NotFoundError("gym not found", detail={"gym_id": gym_id})
        gym_role = membership.gym_role if membership and membership.is_active else None
        explicit = membership.permissions if gym_role is not None else ()
        self.logger.info("gym_context_admin", user_id=identity.user_id, gym_id=gym_id)
        return VerifiedIdentity(
            user_id=identity.user_id,
            platform_role=identity.platform_role,
            gym_id=gym_id,
            gym_role=gym_role,
            permissions=effective_permissions(gym_role, explicit),
            locale=identity.locale,
        )


def bootstrap_admin(
    store, auth: AuthService, email: str, password: str, first_name: str, last_name: str
) -> User:
    """Create a platform admin, or promote and re-key an existing account."""
    user = store.get_user_by_email(email)
    if user is None:
        user = store.create_user(
            email, first_name, last_name, platform_role=PlatformRole.ADMIN
        )
    else:
        user = store.set_user_role(user.id, PlatformRole.ADMIN)
        store.set_user_enabled(user.id, True)
    auth.save_password(user.id, password)
    logger.info("admin_bootstrapped", user_id=user.id)
    return user
