"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). The store maps rows
into these; the service and middleware pass them around; the API layer maps
them onto its Pydantic response models.

Layer rule: no imports from api/, core/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Fixed role set. The string value is what tokens and the roles table carry."""

    owner = "owner"
    admin = "admin"
    system = "system"
    customer = "customer"


ADMIN_ROLES: tuple[Role, ...] = (Role.owner, Role.admin, Role.system)


@dataclass
class User:
    """Auth-relevant projection of a user record.

    password_hash never leaves the service layer: API responses are built from
    an explicit field list that excludes it.
    """

    email: str
    first_name: str
    last_name: str
    role: str = Role.customer.value
    id: str | None = None
    password_hash: str | None = None
    is_active: bool = True
    is_blocked: bool = False
    blocked_at: datetime | None = None
    blocked_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass(frozen=True)
class DeviceInfo:
    """What we know about the client that opened a session.

    Built by auth.devices.parse_device_info() from the User-Agent header.
    "Unknown" is the explicit fallback for both fields.
    """

    device_class: str = "Unknown"
    browser: str = "Unknown"
    user_agent: str = ""


@dataclass
class Session:
    """One authenticated login on one device. Soft-invalidated, never deleted."""

    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    id: str | None = None
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: str = ""
    user_agent: str = ""
    is_active: bool = True
    last_activity_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class PasswordResetToken:
    """An outstanding (or consumed) password reset request.

    token_hash is SHA-256 of a 256-bit random value; the raw value is never
    persisted. The OTP is the short code delivered to the user.
    """

    user_id: str
    token_hash: str
    otp: str
    expires_at: datetime
    id: str | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    email: str
    role: str
    session_id: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str


@dataclass(frozen=True)
class RefreshTokenClaims:
    # email/role deliberately absent: refresh looks the user up fresh
    user_id: str
    session_id: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str


@dataclass(frozen=True)
class CachedSession:
    user_id: str
    is_active: bool
    expires_at: datetime


@dataclass(frozen=True)
class CachedUser:
    email: str
    role: str
    is_active: bool
    is_blocked: bool


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, as seen by downstream handlers."""

    user_id: str
    email: str
    role: str
    session_id: str


@dataclass(frozen=True)
class RequestMetadata:
    """Client details captured at login and stored on the session."""

    ip_address: str = ""
    user_agent: str = ""


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    user: User
    session_id: str
    tokens: TokenPair


@dataclass(frozen=True)
class SessionSummary:
    """A session as listed to its owner on GET /auth/sessions."""

    id: str
    device_name: str
    device_info: DeviceInfo
    ip_address: str
    last_activity_at: datetime | None
    expires_at: datetime
    created_at: datetime | None
    is_current: bool
