import pytest

from antares.service.authorization import ALL_PERMISSIONS, VerifiedIdentity
from antares.service.errors import ConflictError, InvalidTokenError, ValidationError
from antares.service.runtime import get_runtime
from antares.storage.models import GymRole, PlatformRole

PASSWORD = "Original-Pass-1"


@pytest.fixture
def runtime():
    return get_runtime()


async def _registered(runtime, email="member@example.com"):
    result = await runtime.auth.register(email, PASSWORD, "Mia", "Member")
    identity = VerifiedIdentity(user_id=result.user.id, platform_role=PlatformRole.USER)
    return result, identity


class TestProfile:
    async def test_profile_lists_memberships_with_gyms(self, runtime):
        _, identity = await _registered(runtime)
        gym, _ = runtime.store.create_gym(
            "Profile Gym",
            description=None,
            is_programming=False,
            enrollment_code="PROFILE1",
            owner_user_id=identity.user_id,
            owner_role=GymRole.OWNER,
            owner_permissions=ALL_PERMISSIONS,
        )

        profile = runtime.users.get_profile(identity)

        assert profile.user.email == "member@example.com"
        assert [(m.gym_role, g.name) for m, g in profile.memberships] == [
            (GymRole.OWNER, "Profile Gym")
        ]

    async def test_update_profile(self, runtime):
        _, identity = await _registered(runtime)
        profile = runtime.users.update_profile(
            identity, first_name="Maya", email="Maya@Example.com"
        )
        assert profile.user.first_name == "Maya"
        assert profile.user.last_name == "Member"
        assert profile.user.email == "maya@example.com"

    async def test_update_profile_email_conflict(self, runtime):
        await _registered(runtime, "taken@example.com")
        _, identity = await _registered(runtime)
        with pytest.raises(ConflictError):
            runtime.users.update_profile(identity, email="taken@example.com")

    async def test_update_preferences(self, runtime):
        _, identity = await _registered(runtime)
        user = runtime.users.update_preferences(identity, locale="fr", theme="dark")
        assert (user.locale, user.theme) == ("fr", "dark")


class TestChangePassword:
    async def test_change_password_restarts_sessions(self, runtime):
        registered, identity = await _registered(runtime)

        result = await runtime.users.change_password(
            identity, PASSWORD, "Brand-New-Pass-2", "Brand-New-Pass-2"
        )

        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh(registered.tokens.refresh_token)
        await runtime.auth.refresh(result.tokens.refresh_token)
        await runtime.auth.login("member@example.com", "Brand-New-Pass-2")

    async def test_wrong_current_password(self, runtime):
        _, identity = await _registered(runtime)
        with pytest.raises(ValidationError) as excinfo:
            await runtime.users.change_password(identity, "nope", "Brand-New-Pass-2", "Brand-New-Pass-2")
        assert excinfo.value.detail == {"field": "current_password"}

    async def test_confirmation_mismatch(self, runtime):
        _, identity = await _registered(runtime)
        with pytest.raises(ValidationError) as excinfo:
            await runtime.users.change_password(identity, PASSWORD, "Brand-New-Pass-2", "Different-Pass-3")
        assert excinfo.value.detail == {"field": "confirmation_password"}
        assert runtime.auth.verify_password(identity.user_id, PASSWORD)


class TestDeleteAccount:
    async def test_delete_disables_and_revokes(self, runtime):
        registered, identity = await _registered(runtime)

        await runtime.users.delete_account(identity)

        assert runtime.store.get_user(identity.user_id).enabled is False
        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh(registered.tokens.refresh_token)
        with pytest.raises(InvalidTokenError):
            runtime.auth.authenticate(registered.tokens.access.token)
