"""Tests for joining gyms and the membership management hierarchy."""

import pytest

from antares.service.authorization import ALL_PERMISSIONS, VerifiedIdentity
from antares.service.errors import ConflictError, ForbiddenError, NotFoundError
from antares.service.runtime import get_runtime
from antares.storage.models import (
    GymRole,
    GymStatus,
    MembershipStatus,
    Permission,
    PlatformRole,
)


def _identity(user):
    return VerifiedIdentity(user_id=user.id, platform_role=user.platform_role)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def gym_setup(runtime):
    store = runtime.store
    owner = store.create_user("owner@example.com", "Olive", "Owner")
    gym, _ = store.create_gym(
        "Hierarchy Gym",
        description=None,
        is_programming=False,
        enrollment_code="ENROLL42",
        owner_user_id=owner.id,
        owner_role=GymRole.OWNER,
        owner_permissions=ALL_PERMISSIONS,
    )
    store.update_gym_status(gym.id, GymStatus.ACTIVE)
    return store, gym, owner


def _add(store, gym, email, role, *, status=MembershipStatus.ACTIVE, permissions=(), admin=False):
    user = store.create_user(
        email,
        "First",
        "Last",
        platform_role=PlatformRole.ADMIN if admin else PlatformRole.USER,
    )
    membership = store.create_membership(
        user.id, gym.id, gym_role=role, status=status, permissions=permissions
    )
    return user, membership


class TestJoinGym:
    def test_join_creates_pending_athlete(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        user = store.create_user("new@example.com", "New", "Member")

        membership = runtime.memberships.join_gym(_identity(user), gym.id, "enroll42")

        assert membership.gym_role == GymRole.ATHLETE
        assert membership.status == MembershipStatus.PENDING
        assert membership.permissions == frozenset()

    def test_auto_subscription_activates(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        store.update_gym_settings(gym.id, is_auto_subscription=True)
        user = store.create_user("new@example.com", "New", "Member")

        membership = runtime.memberships.join_gym(_identity(user), gym.id, "ENROLL42")

        assert membership.status == MembershipStatus.ACTIVE

    def test_wrong_code_forbidden(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        user = store.create_user("new@example.com", "New", "Member")
        with pytest.raises(ForbiddenError):
            runtime.memberships.join_gym(_identity(user), gym.id, "WRONG")
        assert store.get_membership_for(user.id, gym.id) is None

    def test_unknown_gym(self, runtime, gym_setup):
        store, _, _ = gym_setup
        user = store.create_user("new@example.com", "New", "Member")
        with pytest.raises(NotFoundError):
            runtime.memberships.join_gym(_identity(user), "missing", "ENROLL42")

    def test_second_join_conflicts(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        user = store.create_user("new@example.com", "New", "Member")
        runtime.memberships.join_gym(_identity(user), gym.id, "ENROLL42")
        with pytest.raises(ConflictError):
            runtime.memberships.join_gym(_identity(user), gym.id, "ENROLL42")

    def test_banned_member_cannot_rejoin(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        user, _ = _add(store, gym, "banned@example.com", GymRole.ATHLETE, status=MembershipStatus.BANNED)
        with pytest.raises(ForbiddenError):
            runtime.memberships.join_gym(_identity(user), gym.id, "ENROLL42")

    def test_inactive_membership_reopens(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        user, old = _add(
            store,
            gym,
            "former@example.com",
            GymRole.COACH,
            status=MembershipStatus.INACTIVE,
            permissions=[Permission.SCORE_VERIFY],
        )

        reopened = runtime.memberships.join_gym(_identity(user), gym.id, "ENROLL42")

        assert reopened.id == old.id
        assert reopened.status == MembershipStatus.PENDING
        assert reopened.gym_role == GymRole.ATHLETE
        assert reopened.permissions == frozenset()


class TestListMembers:
    def test_owner_lists_and_filters(self, runtime, gym_setup):
        store, gym, owner = gym_setup
        _add(store, gym, "pending@example.com", GymRole.ATHLETE, status=MembershipStatus.PENDING)

        everyone = runtime.memberships.list_members(_identity(owner), gym.id)
        pending = runtime.memberships.list_members(
            _identity(owner), gym.id, MembershipStatus.PENDING
        )

        assert len(everyone) == 2
        assert [m.status for m in pending] == [MembershipStatus.PENDING]

    def test_athlete_cannot_list(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        athlete, _ = _add(store, gym, "ath@example.com", GymRole.ATHLETE)
        with pytest.raises(ForbiddenError):
            runtime.memberships.list_members(_identity(athlete), gym.id)

    def test_missing_gym(self, runtime, gym_setup):
        _, _, owner = gym_setup
        with pytest.raises(NotFoundError):
            runtime.memberships.list_members(_identity(owner), "missing")

    def test_my_memberships(self, runtime, gym_setup):
        _, gym, owner = gym_setup
        mine = runtime.memberships.my_memberships(_identity(owner))
        assert [m.gym_id for m in mine] == [gym.id]


class TestHierarchy:
    def test_owner_promotes_athlete(self, runtime, gym_setup):
        store, gym, owner = gym_setup
        _, target = _add(store, gym, "ath@example.com", GymRole.ATHLETE)

        updated = runtime.memberships.update_membership(
            _identity(owner),
            target.id,
            status=MembershipStatus.ACTIVE,
            gym_role=GymRole.COACH,
            permissions=[Permission.SCORE_VERIFY],
        )

        assert updated.gym_role == GymRole.COACH
        assert updated.permissions == frozenset({Permission.SCORE_VERIFY})

    def test_coach_manager_may_change_athlete_status_only(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        coach, _ = _add(
            store, gym, "coach@example.com", GymRole.COACH, permissions=[Permission.MANAGE_MEMBERSHIPS]
        )
        _, target = _add(store, gym, "ath@example.com", GymRole.ATHLETE, status=MembershipStatus.PENDING)

        updated = runtime.memberships.update_membership(
            _identity(coach),
            target.id,
            status=MembershipStatus.ACTIVE,
            gym_role=GymRole.ATHLETE,
            permissions=[],
        )
        assert updated.status == MembershipStatus.ACTIVE

        with pytest.raises(ForbiddenError):
            runtime.memberships.update_membership(
                _identity(coach),
                target.id,
                status=MembershipStatus.ACTIVE,
                gym_role=GymRole.COACH,
                permissions=[],
            )
        with pytest.raises(ForbiddenError):
            runtime.memberships.update_membership(
                _identity(coach),
                target.id,
                status=MembershipStatus.ACTIVE,
                gym_role=GymRole.ATHLETE,
                permissions=[Permission.WOD_WRITE],
            )

    def test_coach_manager_cannot_touch_other_coaches(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        coach, _ = _add(
            store, gym, "coach@example.com", GymRole.COACH, permissions=[Permission.MANAGE_MEMBERSHIPS]
        )
        _, other_coach = _add(store, gym, "coach2@example.com", GymRole.COACH)

        with pytest.raises(ForbiddenError):
            runtime.memberships.update_membership(
                _identity(coach),
                other_coach.id,
                status=MembershipStatus.BANNED,
                gym_role=GymRole.COACH,
                permissions=[],
            )
        with pytest.raises(ForbiddenError):
            runtime.memberships.remove_membership(_identity(coach), other_coach.id)

    def test_coach_without_grant_cannot_manage(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        coach, _ = _add(store, gym, "coach@example.com", GymRole.COACH)
        _, target = _add(store, gym, "ath@example.com", GymRole.ATHLETE)
        with pytest.raises(ForbiddenError):
            runtime.memberships.remove_membership(_identity(coach), target.id)

    def test_platform_admin_membership_protected(self, runtime, gym_setup):
        store, gym, owner = gym_setup
        _, admin_membership = _add(store, gym, "admin@example.com", GymRole.ATHLETE, admin=True)

        with pytest.raises(ForbiddenError):
            runtime.memberships.update_membership(
                _identity(owner),
                admin_membership.id,
                status=MembershipStatus.BANNED,
                gym_role=GymRole.ATHLETE,
                permissions=[],
            )

    def test_admin_bypasses_hierarchy(self, runtime, gym_setup):
        store, gym, owner = gym_setup
        admin = store.create_user(
            "root@example.com", "Root", "Admin", platform_role=PlatformRole.ADMIN
        )
        owner_membership = store.get_membership_for(owner.id, gym.id)

        updated = runtime.memberships.update_membership(
            _identity(admin),
            owner_membership.id,
            status=MembershipStatus.ACTIVE,
            gym_role=GymRole.PROGRAMMER,
            permissions=list(ALL_PERMISSIONS),
        )
        assert updated.gym_role == GymRole.PROGRAMMER

    def test_remove_deactivates(self, runtime, gym_setup):
        store, gym, owner = gym_setup
        _, target = _add(store, gym, "ath@example.com", GymRole.ATHLETE)

        removed = runtime.memberships.remove_membership(_identity(owner), target.id)

        assert removed.status == MembershipStatus.INACTIVE
        assert store.get_membership(target.id).status == MembershipStatus.INACTIVE

    def test_missing_membership(self, runtime, gym_setup):
        _, _, owner = gym_setup
        with pytest.raises(NotFoundError):
            runtime.memberships.remove_membership(_identity(owner), "missing")

    def test_manager_from_other_gym_denied(self, runtime, gym_setup):
        store, gym, _ = gym_setup
        _, target = _add(store, gym, "ath@example.com", GymRole.ATHLETE)
        outsider = store.create_user("outsider@example.com", "Out", "Sider")
        store.create_gym(
            "Another Gym",
            description=None,
            is_programming=False,
            enrollment_code="ANOTHER1",
            owner_user_id=outsider.id,
            owner_role=GymRole.OWNER,
            owner_permissions=ALL_PERMISSIONS,
        )
        with pytest.raises(ForbiddenError):
            runtime.memberships.remove_membership(_identity(outsider), target.id)
