"""
api/routes/auth.py -- Authentication and session management REST endpoints.

Routes:
  POST   /auth/login                          -- password login; sets token cookies
  POST   /auth/register                       -- self-registration (role: customer)
  POST   /auth/reset-password                 -- request a reset OTP (always 200)
  POST   /auth/reset-password/verify          -- consume OTP, set new password
  POST   /auth/refresh                        -- rotate refresh token (cookie or body)
  POST   /auth/logout                         -- end the current session
  POST   /auth/logout-all                     -- end every session of the caller
  GET    /auth/me                             -- current user
  POST   /auth/change-password                -- change own password
  GET    /auth/sessions                       -- list own active sessions
  DELETE /auth/sessions/{session_id}          -- end one own session
  POST   /auth/block-user/{user_id}           -- admin: block + end sessions
  POST   /auth/unblock-user/{user_id}         -- admin: clear block flag
  POST   /auth/logout-all-user-sessions/{id}  -- admin: end all sessions of a user

Security:
  POST /login and POST /reset-password are rate-limited per IP (LOGIN_RATE_LIMIT).
  Token cookies are HttpOnly, SameSite=Strict, Secure in production. The
  refresh cookie is scoped to /auth so it is not sent with other requests.
  Cache-Control: no-store on every response that carries tokens.
  Reset requests answer identically whether the email exists or not.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetRequest,
    PasswordResetVerify,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SessionResponse,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import ACCESS_COOKIE, REFRESH_COOKIE, get_identity, require_admin
from auth.errors import InvalidSession, MissingToken, SessionNotFound
from auth.models import Identity, RequestMetadata
from auth.service import AuthService

logger = logging.getLogger("restauth.api")

# Auth policy:
# - login, register, reset-password, reset-password/verify, refresh: public
#   (refresh must work with an expired access token)
# - logout, logout-all, me, change-password, sessions: requires auth (get_identity)
# - block-user, unblock-user, logout-all-user-sessions: requires owner|admin|system (require_admin)
router = APIRouter()

REFRESH_COOKIE_PATH = "/auth"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_token_cookies(
    request: Request, response: JSONResponse, access_token: str, refresh_token: str, refresh_max_age: int
) -> None:
    """Write both token cookies. max_age matches each token's lifetime."""
    config = request.app.state.auth_config
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="strict",
        secure=config.secure_cookies,
        max_age=config.access_token_lifetime,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh_token,
        httponly=True,
        samesite="strict",
        secure=config.secure_cookies,
        max_age=max(0, refresh_max_age),
        path=REFRESH_COOKIE_PATH,
    )
    response.headers["Cache-Control"] = "no-store"


def _clear_token_cookies(request: Request, response: JSONResponse) -> None:
    secure = request.app.state.auth_config.secure_cookies
    response.delete_cookie(ACCESS_COOKIE, path="/", httponly=True, samesite="strict", secure=secure)
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, httponly=True, samesite="strict", secure=secure)


def _message(text: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=MessageResponse(message=text).model_dump())


def _request_metadata(request: Request) -> RequestMetadata:
    return RequestMetadata(
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("User-Agent", ""),
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
async def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password; open a session and set token cookies.

    Unknown email, wrong password, blocked and inactive accounts all get the
    same 401 invalid_credentials.
    """
    result = await service.login(body.email, body.password, body.stay_signed_in, _request_metadata(request))
    config = request.app.state.auth_config
    lifetime = config.stay_signed_in_lifetime if body.stay_signed_in else config.refresh_token_lifetime

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ).model_dump(mode="json"),
    )
    _set_token_cookies(request, resp, result.tokens.access_token, result.tokens.refresh_token, lifetime)
    return resp


@router.post("/auth/register", response_model=UserEnvelope, status_code=201)
async def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> UserEnvelope:
    user = await service.register(body.first_name, body.last_name, body.email, body.password)
    return UserEnvelope(user=UserResponse.from_user(user))


@limiter.limit(login_rate_limit)
@router.post("/auth/reset-password", response_model=MessageResponse)
async def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Send a reset OTP if the account exists. The answer never says whether it does."""
    await service.request_password_reset(body.email)
    return _message("If the email exists, a password reset OTP has been sent")


@router.post("/auth/reset-password/verify", response_model=MessageResponse)
async def verify_password_reset(
    body: PasswordResetVerify, service: AuthService = Depends(get_auth_service)
) -> JSONResponse:
    await service.verify_password_reset(body.email, body.otp, body.new_password)
    return _message("Password reset successfully")


@router.post("/auth/refresh", response_model=RefreshResponse)
async def refresh(
    request: Request,
    body: Optional[RefreshRequest] = None,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Exchange a refresh token for a new pair. The old refresh token stops working.

    The refresh_token cookie is used when present, otherwise the JSON body.
    """
    raw = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    if not raw:
        raise MissingToken("Refresh token is required")

    try:
        pair = await service.refresh(raw)
    except SessionNotFound as exc:
        # Unknown or already-rotated refresh token: a credential problem, not a missing resource.
        raise InvalidSession(exc.message) from exc

    resp = JSONResponse(
        status_code=200,
        content=RefreshResponse(access_token=pair.access_token, refresh_token=pair.refresh_token).model_dump(),
    )
    remaining = int((pair.refresh_expires_at - datetime.now(timezone.utc)).total_seconds())
    _set_token_cookies(request, resp, pair.access_token, pair.refresh_token, remaining)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    await service.logout(identity.session_id)
    resp = _message("Logged out successfully")
    _clear_token_cookies(request, resp)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
async def logout_all(
    request: Request,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    await service.logout_all(identity.user_id)
    resp = _message("Logged out from all devices successfully")
    _clear_token_cookies(request, resp)
    return resp


@router.get("/auth/me", response_model=UserEnvelope)
async def me(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> UserEnvelope:
    user = await service.get_me(identity.user_id)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/auth/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    await service.change_password(identity.user_id, body.current_password, body.new_password)
    return _message("Password changed successfully")


@router.get("/auth/sessions", response_model=list[SessionResponse])
async def list_sessions(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    summaries = await service.get_user_sessions(identity.user_id, identity.session_id)
    return [SessionResponse.from_summary(s) for s in summaries]


@router.delete("/auth/sessions/{session_id}", response_model=MessageResponse)
async def delete_session(
    session_id: str,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """End one of the caller's own sessions. Another user's session -> 403, unchanged."""
    await service.delete_session(session_id, identity.user_id)
    return _message("Session deleted successfully")


# ---------------------------------------------------------------------------
# Admin endpoints (owner | admin | system)
# ---------------------------------------------------------------------------


@router.post("/auth/block-user/{user_id}", response_model=MessageResponse)
async def block_user(
    user_id: str,
    identity: Identity = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    await service.block_user(user_id, identity.user_id)
    return _message("User blocked successfully")


@router.post("/auth/unblock-user/{user_id}", response_model=MessageResponse)
async def unblock_user(
    user_id: str,
    identity: Identity = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    await service.unblock_user(user_id)
    logger.info("Unblock of %s requested by %s", user_id, identity.user_id)
    return _message("User unblocked successfully")


@router.post("/auth/logout-all-user-sessions/{user_id}", response_model=MessageResponse)
async def logout_all_user_sessions(
    user_id: str,
    identity: Identity = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    count = await service.logout_all(user_id)
    logger.info("Admin %s ended %d sessions of user %s", identity.user_id, count, user_id)
    return _message("All user sessions logged out successfully")
