"""Tests for the error envelope and exception handlers.

Every failure leaves the API in the same shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from antares import app as app_module
from antares.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    localized_message,
    register_exception_handlers,
)
from antares.api.schemas import Envelope, ErrorBody
from antares.service.errors import (
    AccountLockedError,
    InvalidCredentialError,
    RateLimitedError,
    ServerError,
)
from antares.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="authentication required")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize("code", ["invalid_credentials", "invalid_token", "account_locked"])
    def test_auth_specific_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_codes_are_valid_error_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_response_shape(self):
        response = _error_response(409, "email already registered", {"field": "email"})
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "email already registered",
            "details": {"field": "email"},
        }
        assert body["data"] is None

    def test_explicit_code_and_headers(self):
        response = _error_response(
            429, "slow down", code="account_locked", headers={"Retry-After": "30"}
        )
        assert json.loads(response.body)["error"]["code"] == "account_locked"
        assert response.headers["Retry-After"] == "30"


class TestLocalization:
    def test_known_locale(self):
        assert localized_message("invalid_token", "fr") == "jeton invalide ou expiré"

    def test_unknown_locale_falls_back_to_english(self):
        assert localized_message("invalid_token", "de") == "invalid or expired token"

    def test_unknown_code_uses_fallback(self):
        assert localized_message("made_up", "en", "fallback text") == "fallback text"


def _failing_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(retry_after=120)

    @app.get("/limited")
    async def limited():
        raise RateLimitedError(retry_after=7)

    @app.get("/limited-with-headers")
    async def limited_with_headers():
        raise RateLimitedError(retry_after=5, headers={"X-RateLimit-Limit": "3"})

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialError()

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate row", {"field": "name"})

    @app.get("/server")
    async def server():
        raise ServerError("database exploded with secrets inside")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return app


class TestHandlers:
    @pytest.fixture
    def client(self):
        return TestClient(_failing_app(), raise_server_exceptions=False)

    def test_account_locked(self, client):
        response = client.get("/locked")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert response.json()["error"]["code"] == "account_locked"

    def test_rate_limited(self, client):
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"
        assert response.json()["error"]["message"] == "too many requests, retry later"

    def test_rate_limited_carries_extra_headers(self, client):
        response = client.get("/limited-with-headers")
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["Retry-After"] == "5"

    def test_invalid_credentials_localized(self, client):
        response = client.get("/credentials", headers={"Accept-Language": "fr"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert response.json()["error"]["message"] == "adresse e-mail ou mot de passe invalide"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "name"}

    def test_server_error_message_not_leaked(self, client):
        response = client.get("/server")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

    def test_unhandled_exception(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"


class TestApplicationErrors:
    def test_unknown_route_uses_envelope(self):
        response = TestClient(app_module.app).get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_json_is_validation_error(self):
        response = TestClient(app_module.app).post(
            "/v1/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
