"""Tests for the forward-trust contract used by internal services."""

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from antares.api.error_handling import register_exception_handlers
from antares.api.gateway import (
    INTERNAL_SECRET_HEADER,
    ForwardedIdentity,
    ForwardTrustHeaderStripper,
    forward_headers,
    identity_headers,
    parse_forwarded_identity,
    require_forwarded_permission,
    strip_forward_trust_headers,
)
from antares.service.authorization import ALL_PERMISSIONS, VerifiedIdentity
from antares.service.errors import AuthenticationError, ForbiddenError
from antares.storage.models import GymRole, Permission, PlatformRole

SECRET = "downstream-shared-secret"

OWNER = VerifiedIdentity(
    user_id="user-1",
    platform_role=PlatformRole.USER,
    gym_id="gym-1",
    gym_role=GymRole.OWNER,
    permissions=ALL_PERMISSIONS,
    locale="en",
)


def _downstream_app(secret=SECRET):
    """A stand-in internal service that trusts the edge."""
    app = FastAPI()
    register_exception_handlers(app)
    principal = ForwardedIdentity(secret)

    @app.get("/wods")
    async def list_wods(identity: VerifiedIdentity = Depends(principal)):
        return {"user_id": identity.user_id, "gym_role": identity.gym_role}

    @app.post("/wods")
    async def create_wod(identity: VerifiedIdentity = Depends(principal)):
        require_forwarded_permission(identity, Permission.WOD_WRITE, "gym-1")
        return {"created": True}

    return app


class TestHeaders:
    def test_identity_headers_never_include_secret(self):
        headers = identity_headers(OWNER)
        assert INTERNAL_SECRET_HEADER not in headers
        assert headers["X-Auth-Gym-Role"] == "OWNER"

    def test_forward_round_trip(self):
        parsed = parse_forwarded_identity(forward_headers(OWNER, SECRET))
        assert parsed == OWNER

    def test_user_only_identity_round_trip(self):
        identity = VerifiedIdentity(user_id="u", platform_role=PlatformRole.ADMIN)
        headers = identity_headers(identity)
        assert "X-Auth-Gym-Id" not in headers
        assert "X-Auth-User-Permissions" not in headers
        assert parse_forwarded_identity(headers) == identity

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"X-Auth-User-Id": "u"},
            {"X-Auth-User-Id": "u", "X-Auth-User-Role": "ROOT"},
            {
                "X-Auth-User-Id": "u",
                "X-Auth-User-Role": "USER",
                "X-Auth-Gym-Id": "g",
                "X-Auth-Gym-Role": "CAPTAIN",
            },
            {
                "X-Auth-User-Id": "u",
                "X-Auth-User-Role": "USER",
                "X-Auth-User-Permissions": "WOD_WRITE",
            },
        ],
    )
    def test_malformed_headers_rejected(self, headers):
        with pytest.raises(AuthenticationError):
            parse_forwarded_identity(headers)

    def test_require_forwarded_permission(self):
        require_forwarded_permission(OWNER, Permission.WOD_WRITE, "gym-1")
        athlete = VerifiedIdentity(
            user_id="u", platform_role=PlatformRole.USER, gym_id="gym-1", gym_role=GymRole.ATHLETE
        )
        with pytest.raises(ForbiddenError):
            require_forwarded_permission(athlete, Permission.WOD_WRITE, "gym-1")


class TestForwardedIdentityDependency:
    def test_valid_secret_yields_identity(self):
        client = TestClient(_downstream_app())
        response = client.get("/wods", headers=forward_headers(OWNER, SECRET))
        assert response.status_code == 200
        assert response.json() == {"user_id": "user-1", "gym_role": "OWNER"}

    def test_missing_secret_forbidden(self):
        client = TestClient(_downstream_app())
        response = client.get("/wods", headers=identity_headers(OWNER))
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "access denied: invalid internal secret"

    def test_wrong_secret_forbidden(self):
        client = TestClient(_downstream_app())
        response = client.get("/wods", headers=forward_headers(OWNER, "guessed"))
        assert response.status_code == 403

    def test_secret_checked_before_identity(self):
        client = TestClient(_downstream_app())
        response = client.get("/wods", headers={INTERNAL_SECRET_HEADER: "guessed"})
        assert response.status_code == 403

    def test_unconfigured_secret_rejects_everything(self):
        client = TestClient(_downstream_app(secret=None))
        response = client.get("/wods", headers=forward_headers(OWNER, ""))
        assert response.status_code == 403

    def test_valid_secret_without_identity(self):
        client = TestClient(_downstream_app())
        response = client.get("/wods", headers={INTERNAL_SECRET_HEADER: SECRET})
        assert response.status_code == 401

    def test_permission_enforced_downstream(self):
        client = TestClient(_downstream_app())
        athlete = VerifiedIdentity(
            user_id="u", platform_role=PlatformRole.USER, gym_id="gym-1", gym_role=GymRole.ATHLETE
        )
        assert client.post("/wods", headers=forward_headers(OWNER, SECRET)).status_code == 200
        assert client.post("/wods", headers=forward_headers(athlete, SECRET)).status_code == 403


class TestHeaderStripper:
    def _echo_app(self):
        app = FastAPI()

        @app.get("/echo")
        async def echo(request: Request):
            return {name: value for name, value in request.headers.items() if name.startswith("x-")}

        app.add_middleware(ForwardTrustHeaderStripper)
        return app

    def test_trust_headers_removed(self):
        client = TestClient(self._echo_app())
        response = client.get(
            "/echo",
            headers={**forward_headers(OWNER, SECRET), "X-Context-Gym-Id": "gym-1", "X-Other": "kept"},
        )
        assert response.json() == {"x-context-gym-id": "gym-1", "x-other": "kept"}

    def test_requests_without_trust_headers_untouched(self):
        client = TestClient(self._echo_app())
        response = client.get("/echo", headers={"X-Other": "kept"})
        assert response.json() == {"x-other": "kept"}

    def test_strip_function_on_raw_scope(self):
        scope = {
            "type": "http",
            "path": "/v1/users/me",
            "headers": [(b"x-auth-user-id", b"spoofed"), (b"accept", b"*/*")],
        }
        stripped = strip_forward_trust_headers(scope)
        assert stripped["headers"] == [(b"accept", b"*/*")]
        assert scope["headers"][0] == (b"x-auth-user-id", b"spoofed")

        clean = {"type": "http", "headers": [(b"accept", b"*/*")]}
        assert strip_forward_trust_headers(clean) is clean
