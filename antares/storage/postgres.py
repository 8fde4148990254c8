from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


_USER_COLUMNS = (
    "id, email, first_name, last_name, platform_role, enabled, locale, theme, "
    "created_at, updated_at"
)
_GYM_COLUMNS = (
    "id, name, description, is_programming, status, enrollment_code, "
    "is_auto_subscription, created_at"
)
_MEMBERSHIP_COLUMNS = "id, user_id, gym_id, gym_role, status, permissions, created_at"


def _valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store for users, gyms and memberships."""

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    platform_role TEXT NOT NULL DEFAULT 'USER',
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    locale TEXT NOT NULL DEFAULT 'en',
                    theme TEXT NOT NULL DEFAULT 'light',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_auth_credential (
                    user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL,
                    last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gym (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    is_programming BOOLEAN NOT NULL DEFAULT FALSE,
                    status TEXT NOT NULL DEFAULT 'PENDING_APPROVAL',
                    enrollment_code TEXT,
                    is_auto_subscription BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS gym_name_lower_idx ON gym (lower(name))"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gym_membership (
                    id UUID PRIMARY KEY,
                    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
                    gym_id UUID NOT NULL REFERENCES gym(id) ON DELETE CASCADE,
                    gym_role TEXT NOT NULL,
                    status TEXT NOT NULL,
                    permissions TEXT[] NOT NULL DEFAULT '{}',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (user_id, gym_id)
                )
                """
            )

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            platform_role=PlatformRole(row["platform_role"]),
            enabled=row["enabled"],
            locale=row["locale"],
            theme=row["theme"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _gym_from_row(row: Dict[str, Any]) -> Gym:
        return Gym(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            is_programming=row["is_programming"],
            status=GymStatus(row["status"]),
            enrollment_code=row.get("enrollment_code"),
            is_auto_subscription=row["is_auto_subscription"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _membership_from_row(row: Dict[str, Any]) -> Membership:
        return Membership(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            gym_id=str(row["gym_id"]),
            gym_role=GymRole(row["gym_role"]),
            status=MembershipStatus(row["status"]),
            permissions=frozenset(Permission(p) for p in row.get("permissions") or []),
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, first_name, last_name, platform_role, locale, theme)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        new_id(),
                        email.lower(),
                        first_name,
                        last_name,
                        platform_role.value,
                        locale,
                        theme,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _valid_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s", (email.lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        if not changes:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {assignments}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (*changes.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        changes: Dict[str, Any] = {}
        if first_name is not None:
            changes["first_name"] = first_name
        if last_name is not None:
            changes["last_name"] = last_name
        if email is not None:
            changes["email"] = email.lower()
        return self._update_user(user_id, changes)

    def update_user_preferences(
        self, user_id: str, *, locale: Optional[str] = None, theme: Optional[str] = None
    ) -> Optional[User]:
        changes: Dict[str, Any] = {}
        if locale is not None:
            changes["locale"] = locale
        if theme is not None:
            changes["theme"] = theme
        return self._update_user(user_id, changes)

    def set_user_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        return self._update_user(user_id, {"enabled": enabled})

    def set_user_role(self, user_id: str, platform_role: PlatformRole) -> Optional[User]:
        return self._update_user(user_id, {"platform_role": platform_role.value})

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, password_hash, password_algo, last_updated_at
                FROM user_auth_credential WHERE user_id = %s
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserAuthCredential(
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            last_updated_at=row["last_updated_at"],
        )

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
        """Create a gym together with its creator's ACTIVE membership.

        Both rows are written in one transaction.
        """
        try:
            with self._connect() as conn:
                gym_row = conn.execute(
                    f"""
                    INSERT INTO gym (id, name, description, is_programming, enrollment_code)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_GYM_COLUMNS}
                    """,
                    (new_id(), name, description, is_programming, enrollment_code),
                ).fetchone()
                membership_row = conn.execute(
                    f"""
                    INSERT INTO gym_membership (id, user_id, gym_id, gym_role, status, permissions)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_MEMBERSHIP_COLUMNS}
                    """,
                    (
                        new_id(),
                        owner_user_id,
                        gym_row["id"],
                        owner_role.value,
                        MembershipStatus.ACTIVE.value,
                        sorted(p.value for p in owner_permissions),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("gym name already exists", {"field": "name"})
        return self._gym_from_row(gym_row), self._membership_from_row(membership_row)

    def get_gym(self, gym_id: str) -> Optional[Gym]:
        if not _valid_uuid(gym_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_GYM_COLUMNS} FROM gym WHERE id = %s", (gym_id,)
            ).fetchone()
        return self._gym_from_row(row) if row else None

    def list_gyms(self, status: Optional[GymStatus] = None) -> List[Gym]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    f"SELECT {_GYM_COLUMNS} FROM gym ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_GYM_COLUMNS} FROM gym WHERE status = %s ORDER BY created_at",
                    (status.value,),
                ).fetchall()
        return [self._gym_from_row(row) for row in rows]

    def _update_gym(self, gym_id: str, changes: Dict[str, Any]) -> Optional[Gym]:
        if not changes:
            return self.get_gym(gym_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE gym SET {assignments} WHERE id = %s RETURNING {_GYM_COLUMNS}",
                (*changes.values(), gym_id),
            ).fetchone()
        return self._gym_from_row(row) if row else None

    def update_gym_settings(
        self,
        gym_id: str,
        *,
        enrollment_code: Optional[str] = None,
        is_auto_subscription: Optional[bool] = None,
    ) -> Optional[Gym]:
        changes: Dict[str, Any] = {}
        if enrollment_code is not None:
            changes["enrollment_code"] = enrollment_code
        if is_auto_subscription is not None:
            changes["is_auto_subscription"] = is_auto_subscription
        return self._update_gym(gym_id, changes)

    def update_gym_status(self, gym_id: str, status: GymStatus) -> Optional[Gym]:
        return self._update_gym(gym_id, {"status": status.value})

    def delete_gym(self, gym_id: str) -> bool:
        if not _valid_uuid(gym_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM gym WHERE id = %s", (gym_id,))
            return cur.rowcount > 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO gym_membership (id, user_id, gym_id, gym_role, status, permissions)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_MEMBERSHIP_COLUMNS}
                    """,
                    (
                        new_id(),
                        user_id,
                        gym_id,
                        gym_role.value,
                        status.value,
                        sorted(p.value for p in permissions),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("membership already exists", {"field": "membership"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("gym does not exist", {"gym_id": gym_id})
        return self._membership_from_row(row)

    def get_membership(self, membership_id: str) -> Optional[Membership]:
        if not _valid_uuid(membership_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_MEMBERSHIP_COLUMNS} FROM gym_membership WHERE id = %s",
                (membership_id,),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def get_membership_for(self, user_id: str, gym_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_MEMBERSHIP_COLUMNS} FROM gym_membership
                WHERE user_id = %s AND gym_id = %s
                """,
                (user_id, gym_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def list_memberships(
        self, gym_id: str, status: Optional[MembershipStatus] = None
    ) -> List[Membership]:
        query = f"SELECT {_MEMBERSHIP_COLUMNS} FROM gym_membership WHERE gym_id = %s"
        params: list[Any] = [gym_id]
        if status is not None:
            query += " AND status = %s"
            params.append(status.value)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def list_user_memberships(self, user_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MEMBERSHIP_COLUMNS} FROM gym_membership
                WHERE user_id = %s ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def update_membership(
        self,
        membership_id: str,
        *,
        status: Optional[MembershipStatus] = None,
        gym_role: Optional[GymRole] = None,
        permissions: Optional[Iterable[Permission]] = None,
    ) -> Optional[Membership]:
        changes: Dict[str, Any] = {}
        if status is not None:
            changes["status"] = status.value
        if gym_role is not None:
            changes["gym_role"] = gym_role.value
        if permissions is not None:
            changes["permissions"] = sorted(p.value for p in permissions)
        if not changes:
            return self.get_membership(membership_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE gym_membership SET {assignments}
                WHERE id = %s
                RETURNING {_MEMBERSHIP_COLUMNS}
                """,
                (*changes.values(), membership_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None
