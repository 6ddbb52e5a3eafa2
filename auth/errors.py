"""
auth/errors.py -- Typed domain errors raised by the auth core.

These carry no HTTP knowledge. api/errors.py owns the translation into a
stable {code, message} pair and a status code, so the same service can sit
behind any transport.

The message passed to the constructor is internal detail for logs. It is
never rendered to clients: the boundary always uses its own public message.

Layer rule: no imports from api/, core/ or cache/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the auth core raises on purpose."""

    default_message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationFailed(AuthError):
    default_message = "Request is not valid."


class InvalidOTP(AuthError):
    default_message = "Invalid or expired OTP."


# ---------------------------------------------------------------------------
# Authentication (401)
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    """Unknown email, wrong password, inactive or blocked account at login.

    All four collapse into this one error so the response never reveals which.
    """

    default_message = "Invalid email or password."


class MissingToken(AuthError):
    default_message = "Missing authentication token."


class InvalidToken(AuthError):
    """Bad signature, wrong issuer/audience/type or malformed claims. Re-login required."""

    default_message = "Invalid authentication token."


class ExpiredToken(AuthError):
    """Token signature is fine but exp has passed. The client should refresh."""

    default_message = "Token has expired."


class InvalidSession(AuthError):
    default_message = "Invalid session."


class SessionNotFound(AuthError):
    default_message = "Session not found."


class UserBlocked(AuthError):
    """Refresh attempted for a user that is blocked or inactive."""

    default_message = "User account is blocked or inactive."


# ---------------------------------------------------------------------------
# Authorization (403)
# ---------------------------------------------------------------------------


class AccountDisabled(AuthError):
    """Valid credential, but the account is blocked or inactive."""

    default_message = "User account is blocked or inactive."


class Forbidden(AuthError):
    default_message = "Insufficient permissions."


class NotSessionOwner(Forbidden):
    default_message = "Session belongs to another user."


# ---------------------------------------------------------------------------
# Not found / conflict
# ---------------------------------------------------------------------------


class UserNotFound(AuthError):
    default_message = "User not found."


class EmailAlreadyExists(AuthError):
    default_message = "Email already exists."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class StoreError(AuthError):
    """The relational store failed. The cause is chained, never rendered."""

    default_message = "Persistence failure."


class CacheError(AuthError):
    """The optional cache failed. Callers log it and fall back to the store."""

    default_message = "Cache failure."
