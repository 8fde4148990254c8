"""Integration tests for the authentication flow.

Tests the complete flow over HTTP:
- Registration
- Login, failed-login lockout and localized errors
- Refresh rotation from cookie or body
- Logout
- Edge verification and impersonation
"""

import pytest
from fastapi.testclient import TestClient

from antares import app as app_module
from antares.service.auth import bootstrap_admin
from antares.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="athlete@example.com", password=PASSWORD):
    response = client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "first_name": "Alex", "last_name": "Athlete"},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _admin_client():
    runtime = get_runtime()
    bootstrap_admin(runtime.store, runtime.auth, "admin@example.com", "Admin-Password-1", "Ada", "Admin")
    admin = TestClient(app_module.app)
    response = admin.post(
        "/v1/auth/login", json={"email": "admin@example.com", "password": "Admin-Password-1"}
    )
    assert response.status_code == 200, response.text
    return admin


class TestRegister:
    def test_register_returns_tokens_and_cookies(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "Athlete@Example.com",
                "password": PASSWORD,
                "first_name": "Alex",
                "last_name": "Athlete",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["platform_role"] == "USER"
        assert body["data"]["token_type"] == "Bearer"
        assert client.cookies.get("access_token") == body["data"]["access_token"]
        assert client.cookies.get("refresh_token") == body["data"]["refresh_token"]
        set_cookie = ";".join(response.headers.get_list("set-cookie")).lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_register_rejects_duplicate_email(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "ATHLETE@example.com",
                "password": PASSWORD,
                "first_name": "Alex",
                "last_name": "Again",
            },
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_validates_email(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "not-an-email", "password": PASSWORD, "first_name": "A", "last_name": "B"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "email"

    def test_register_validates_password_length(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "a@example.com", "password": "short", "first_name": "A", "last_name": "B"},
        )
        assert response.status_code == 400

    def test_register_is_rate_limited(self, client):
        limit = get_runtime().settings.register_rate_limit_per_minute
        for index in range(limit):
            response = client.post(
                "/v1/auth/register",
                json={
                    "email": f"user{index}@example.com",
                    "password": PASSWORD,
                    "first_name": "U",
                    "last_name": "Ser",
                },
            )
            assert response.status_code == 201
            assert response.headers["X-RateLimit-Limit"] == str(limit)

        response = client.post(
            "/v1/auth/register",
            json={"email": "late@example.com", "password": PASSWORD, "first_name": "L", "last_name": "Ate"},
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Limit"] == str(limit)
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == response.headers["Retry-After"]


class TestLogin:
    def test_login_sets_cookies_for_later_requests(self, client):
        _register(client)
        fresh = TestClient(app_module.app)

        response = fresh.post("/v1/auth/login", json={"email": "athlete@example.com", "password": PASSWORD})

        assert response.status_code == 200
        me = fresh.get("/v1/users/me")
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "athlete@example.com"

    def test_bearer_header_accepted(self, client):
        data = _register(client)
        fresh = TestClient(app_module.app)

        response = fresh.get(
            "/v1/users/me", headers={"Authorization": f"Bearer {data['access_token']}"}
        )

        assert response.status_code == 200

    def test_wrong_password_and_unknown_email_identical(self, client):
        _register(client)

        wrong = client.post("/v1/auth/login", json={"email": "athlete@example.com", "password": "nope"})
        unknown = client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": "nope"})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["code"] == unknown.json()["error"]["code"] == "invalid_credentials"
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_error_message_follows_accept_language(self, client):
        response = client.post(
            "/v1/auth/login",
            json={"email": "ghost@example.com", "password": "nope"},
            headers={"Accept-Language": "fr-FR,fr;q=0.9"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "adresse e-mail ou mot de passe invalide"

    def test_lockout_after_repeated_failures(self, client):
        _register(client)
        max_attempts = get_runtime().settings.login_max_attempts

        for _ in range(max_attempts):
            response = client.post(
                "/v1/auth/login", json={"email": "athlete@example.com", "password": "wrong-password"}
            )
            assert response.status_code == 401

        response = client.post("/v1/auth/login", json={"email": "athlete@example.com", "password": PASSWORD})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "account_locked"
        assert int(response.headers["Retry-After"]) > 0

    def test_login_publishes_rate_limit_headers(self, client):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": "athlete@example.com", "password": PASSWORD})
        assert response.headers["X-RateLimit-Limit"] == str(
            get_runtime().settings.login_rate_limit_per_minute
        )
        assert "X-RateLimit-Remaining" in response.headers


class TestRefreshAndLogout:
    def test_refresh_from_cookie_rotates(self, client):
        first = _register(client)

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        second = response.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]
        assert client.cookies.get("refresh_token") == second["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_refresh_without_token(self):
        response = TestClient(app_module.app).post("/v1/auth/refresh")
        assert response.status_code == 401

    def test_logout_revokes_and_clears_cookies(self, client):
        data = _register(client)

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert client.cookies.get("access_token") is None
        assert client.cookies.get("refresh_token") is None
        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401

    def test_me_requires_authentication(self, client):
        response = client.get("/v1/users/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_token_is_invalid_token(self, client):
        response = client.get("/v1/users/me", headers={"Authorization": "Bearer not.a.token"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestVerifyApi:
    def test_identity_headers_without_gym(self, client):
        data = _register(client)

        response = client.get("/v1/auth/verify/api")

        assert response.status_code == 200
        assert response.headers["X-Auth-User-Id"] == data["user_id"]
        assert response.headers["X-Auth-User-Role"] == "USER"
        assert "X-Auth-Gym-Id" not in response.headers
        assert "X-Internal-Secret" not in response.headers

    def test_gym_context_headers(self, client):
        _register(client)
        gym = client.post(
            "/v1/gyms",
            json={
                "name": "Verify Gym",
                "is_programming": False,
                "creation_token": get_runtime().settings.gym_creation_token,
            },
        ).json()["data"]

        response = client.get("/v1/auth/verify/api", headers={"X-Context-Gym-Id": gym["id"]})

        assert response.status_code == 200
        assert response.headers["X-Auth-Gym-Id"] == gym["id"]
        assert response.headers["X-Auth-Gym-Role"] == "OWNER"
        assert response.headers["X-Auth-User-Permissions"] == (
            "MANAGE_MEMBERSHIPS,MANAGE_SETTINGS,SCORE_VERIFY,WOD_WRITE"
        )

    def test_malformed_gym_id(self, client):
        _register(client)
        response = client.get("/v1/auth/verify/api", headers={"X-Context-Gym-Id": "not-a-uuid"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_gym_without_membership(self, client):
        _register(client)
        response = client.get(
            "/v1/auth/verify/api",
            headers={"X-Context-Gym-Id": "00000000-0000-4000-8000-000000000000"},
        )
        assert response.status_code == 403

    def test_forged_identity_headers_ignored(self, client):
        data = _register(client)
        response = client.get(
            "/v1/auth/verify/api",
            headers={"X-Auth-User-Id": "forged", "X-Auth-User-Role": "ADMIN"},
        )
        assert response.headers["X-Auth-User-Id"] == data["user_id"]
        assert response.headers["X-Auth-User-Role"] == "USER"

    def test_unauthenticated(self, client):
        assert client.get("/v1/auth/verify/api").status_code == 401

    def test_admin_gym_context_without_membership(self, client):
        _register(client)
        gym = client.post(
            "/v1/gyms",
            json={
                "name": "Admin Context Gym",
                "is_programming": False,
                "creation_token": get_runtime().settings.gym_creation_token,
            },
        ).json()["data"]
        admin = _admin_client()

        response = admin.get("/v1/auth/verify/api", headers={"X-Context-Gym-Id": gym["id"]})

        assert response.status_code == 200
        assert response.headers["X-Auth-User-Role"] == "ADMIN"
        assert response.headers["X-Auth-Gym-Id"] == gym["id"]
        assert "X-Auth-Gym-Role" not in response.headers
        assert response.json()["data"]["gym_role"] is None

    def test_admin_unknown_gym_context(self):
        admin = _admin_client()
        response = admin.get(
            "/v1/auth/verify/api",
            headers={"X-Context-Gym-Id": "00000000-0000-4000-8000-000000000000"},
        )
        assert response.status_code == 404


class TestAdminEndpoints:
    def test_verify_admin(self, client):
        _register(client)
        assert client.get("/v1/auth/verify/admin").status_code == 403

        admin = _admin_client()
        response = admin.get("/v1/auth/verify/admin")
        assert response.status_code == 200
        assert response.headers["X-Auth-User-Role"] == "ADMIN"

    def test_impersonation(self, client):
        target = _register(client)
        admin = _admin_client()

        response = admin.post(f"/v1/auth/impersonate/{target['user_id']}")

        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == target["user_id"]
        me = admin.get("/v1/users/me")
        assert me.json()["data"]["id"] == target["user_id"]

    def test_impersonation_requires_admin(self, client):
        target = _register(client)
        response = client.post(f"/v1/auth/impersonate/{target['user_id']}")
        assert response.status_code == 403

    def test_impersonating_unknown_user(self):
        admin = _admin_client()
        response = admin.post("/v1/auth/impersonate/missing")
        assert response.status_code == 404
