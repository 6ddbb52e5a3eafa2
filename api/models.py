"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
password_hash has no field here, so it cannot leak into a response.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints

from auth.models import SessionSummary, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", something on both sides, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Email = Annotated[
    str, StringConstraints(strip_whitespace=True), Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
]

_Name = Annotated[str, StringConstraints(strip_whitespace=True), Field(min_length=1, max_length=100)]

BCRYPT_MAX_BYTES = 72


def _fits_bcrypt(value: str) -> str:
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


# Passwords are never stripped: the exact string typed is the one hashed and later compared.
_Password = Annotated[str, Field(min_length=8, max_length=72), AfterValidator(_fits_bcrypt)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: _Email
    # Existing passwords are checked as-is; length rules apply only when setting one.
    password: str = Field(min_length=1, max_length=72)
    stay_signed_in: bool = False


class RegisterRequest(BaseModel):
    first_name: _Name
    last_name: _Name
    email: _Email
    password: _Password


class PasswordResetRequest(BaseModel):
    email: _Email


class PasswordResetVerify(BaseModel):
    email: _Email
    otp: str = Field(pattern=r"^\d{6}$")
    new_password: _Password


class RefreshRequest(BaseModel):
    """Optional body for POST /auth/refresh. The refresh_token cookie wins when present."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=72)
    new_password: _Password


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public projection of a user account."""

    model_config = ConfigDict(frozen=True)

    id: str
    first_name: str
    last_name: str
    email: str
    role: str
    is_active: bool
    is_blocked: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> UserResponse:
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            is_blocked=user.is_blocked,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    refresh_token: str


class UserEnvelope(BaseModel):
    """{user: ...} wrapper used by register and me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Tokens refreshed successfully"
    access_token: str
    refresh_token: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class DeviceInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_class: str
    browser: str
    user_agent: str


class SessionResponse(BaseModel):
    """One entry of GET /auth/sessions."""

    model_config = ConfigDict(frozen=True)

    id: str
    device_name: str
    device_info: DeviceInfoResponse
    ip_address: str
    last_activity_at: Optional[datetime] = None
    expires_at: datetime
    created_at: Optional[datetime] = None
    is_current: bool

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> SessionResponse:
        return cls(
            id=summary.id,
            device_name=summary.device_name,
            device_info=DeviceInfoResponse(
                device_class=summary.device_info.device_class,
                browser=summary.device_info.browser,
                user_agent=summary.device_info.user_agent,
            ),
            ip_address=summary.ip_address,
            last_activity_at=summary.last_activity_at,
            expires_at=summary.expires_at,
            created_at=summary.created_at,
            is_current=summary.is_current,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
