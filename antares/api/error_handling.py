from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from antares.api.schemas import Envelope, ErrorBody
from antares.logging import get_logger
from antares.service.errors import RateLimitedError, ServiceError
from antares.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

DEFAULT_LOCALE = "en"

# Client-facing messages for codes whose wording never depends on context
_MESSAGES = {
    "en": {
        "unauthorized": "authentication required",
        "invalid_credentials": "invalid email or password",
        "invalid_token": "invalid or expired token",
        "account_locked": "account temporarily locked after repeated failed logins",
        "rate_limited": "too many requests, retry later",
        "server_error": "internal server error",
        "validation_error": "invalid request",
    },
    "fr": {
        "unauthorized": "authentification requise",
        "invalid_credentials": "adresse e-mail ou mot de passe invalide",
        "invalid_token": "jeton invalide ou expiré",
        "account_locked": "compte temporairement verrouillé après plusieurs échecs de connexion",
        "rate_limited": "trop de requêtes, réessayez plus tard",
        "server_error": "erreur interne du serveur",
        "validation_error": "requête invalide",
    },
}


# Codes answered with the catalog text instead of the exception message
_LOCALIZED_CODES = frozenset(
    {"invalid_credentials", "invalid_token", "account_locked", "rate_limited", "server_error"}
)


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def request_locale(request: Request) -> str:
    """Pick the first supported language from ``Accept-Language``."""
    header = request.headers.get("accept-language") or ""
    for part in header.split(","):
        tag = part.split(";", 1)[0].strip().lower()
        language = tag.split("-", 1)[0]
        if language in _MESSAGES:
            return language
    return DEFAULT_LOCALE


def localized_message(code: str, locale: str, fallback: Optional[str] = None) -> str:
    catalog = _MESSAGES.get(locale, _MESSAGES[DEFAULT_LOCALE])
    if code in catalog:
        return catalog[code]
    return fallback or _MESSAGES[DEFAULT_LOCALE].get(code, "error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _field_errors(exc: RequestValidationError) -> list[dict]:
    fields = []
    for error in exc.errors():
        location = [
            str(part)
            for part in error.get("loc", ())
            if part not in ("body", "query", "path", "header", "cookie")
        ]
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        fields.append({"field": ".".join(location) or "body", "message": message})
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that turn every failure into an error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = dict(exc.headers)
            if exc.retry_after:
                headers["Retry-After"] = str(exc.retry_after)
            headers = headers or None
        message = exc.message
        if error_code in _LOCALIZED_CODES:
            message = localized_message(error_code, request_locale(request), exc.message)
        return _error_response(
            exc.status_code, message, exc.detail or None, code=error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = _field_errors(exc)
        message = "; ".join(f"{f['field']}: {f['message']}" for f in fields)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[f["field"] for f in fields],
        )
        return _error_response(
            400,
            message or localized_message("validation_error", request_locale(request)),
            fields,
            code="validation_error",
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
            return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            500,
            localized_message("server_error", request_locale(request)),
            code="server_error",
        )
