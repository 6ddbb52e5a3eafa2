"""
api/errors.py -- Translate domain errors into the HTTP error envelope.

Every error response uses the same shape:
    {"error": {"code": "<stable_code>", "message": "<public message>", "detail": null}}

The public message comes from the table below, never from the exception, so
internal causes (SQL errors, which check failed) stay in the logs. Each log
line carries method, path, client IP and the caller's identity when known.

register_exception_handlers(app) is called once from api/main.py.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from api.models import ErrorDetail, ErrorResponse
from auth import errors as auth_errors

logger = logging.getLogger("restauth.api")

# Checked in order, so subclasses come before their bases.
_ERROR_TABLE: tuple[tuple[type[auth_errors.AuthError], int, str, str], ...] = (
    (auth_errors.ValidationFailed, 400, "validation_error", "Request is not valid."),
    (auth_errors.InvalidOTP, 400, "invalid_otp", "Invalid or expired OTP."),
    (auth_errors.InvalidCredentials, 401, "invalid_credentials", "Invalid email or password."),
    (auth_errors.MissingToken, 401, "missing_token", "Authentication required."),
    (auth_errors.ExpiredToken, 401, "token_expired", "Token has expired."),
    (auth_errors.InvalidToken, 401, "invalid_token", "Invalid authentication token."),
    (auth_errors.InvalidSession, 401, "invalid_session", "Invalid session."),
    (auth_errors.UserBlocked, 401, "user_blocked", "User account is blocked or inactive."),
    (auth_errors.AccountDisabled, 403, "account_disabled", "User account is blocked or inactive."),
    (auth_errors.NotSessionOwner, 403, "forbidden", "Insufficient permissions."),
    (auth_errors.Forbidden, 403, "forbidden", "Insufficient permissions."),
    (auth_errors.SessionNotFound, 404, "session_not_found", "Session not found."),
    (auth_errors.UserNotFound, 404, "user_not_found", "User not found."),
    (auth_errors.EmailAlreadyExists, 409, "email_exists", "Email already exists."),
    (auth_errors.StoreError, 500, "internal_error", "An unexpected error occurred."),
    (auth_errors.CacheError, 500, "internal_error", "An unexpected error occurred."),
)

# Messages that are safe to show verbatim because the service wrote them for users.
_PASSTHROUGH = (auth_errors.ValidationFailed,)


def classify(exc: auth_errors.AuthError) -> tuple[int, str, str]:
    """Return (status, code, public message) for a domain error."""
    for error_type, status, code, message in _ERROR_TABLE:
        if isinstance(exc, error_type):
            if isinstance(exc, _PASSTHROUGH):
                message = exc.message
            return status, code, message
    return 500, "internal_error", "An unexpected error occurred."


def error_response(status: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


def _request_context(request: Request) -> str:
    identity = getattr(request.state, "identity", None)
    client = request.client.host if request.client else "unknown"
    who = f"user={identity.user_id} session={identity.session_id}" if identity else "anonymous"
    return f"{request.method} {request.url.path} ip={client} {who}"


async def auth_error_handler(request: Request, exc: auth_errors.AuthError) -> JSONResponse:
    status, code, message = classify(exc)
    if status >= 500:
        logger.error("%s -> %s: %s", _request_context(request), code, exc.message, exc_info=exc)
    else:
        logger.info("%s -> %d %s: %s", _request_context(request), status, code, exc.message)
    return error_response(status, code, message)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60) or 60)
    logger.warning("%s -> rate limited (%s)", _request_context(request), exc.detail)
    response = error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 listing failing fields. Submitted values are left out: they may be passwords."""
    problems = [
        "{}: {}".format(".".join(str(p) for p in err.get("loc", ())), err.get("msg", "invalid"))
        for err in exc.errors()
    ]
    return error_response(422, "validation_error", "Request validation failed.", "; ".join(problems))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405 methods)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s", _request_context(request))
    return error_response(500, "internal_error", "An unexpected error occurred.")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(auth_errors.AuthError, auth_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
