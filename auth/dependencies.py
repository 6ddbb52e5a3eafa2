"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from two places, in priority order:
  1. "access_token" cookie -- set by POST /auth/login for browser clients.
  2. Authorization: Bearer <token> header -- API clients.

Authenticator turns that credential into an Identity:
  token -> claims -> session (cache, then store) -> user (cache, then store)

Failure modes are typed (auth.errors) and rendered by api/errors.py:
  no credential                        -> MissingToken    (401)
  bad signature / claims / user gone   -> InvalidToken    (401)
  exp passed                           -> ExpiredToken    (401)
  session absent / inactive / expired  -> InvalidSession  (401)
  user blocked or inactive             -> AccountDisabled (403)
  role not allowed                     -> Forbidden       (403)

A cache failure is logged and the store is read instead. A store failure
propagates as StoreError (500).

get_identity() is the dependency route handlers declare. It also stores the
Identity on request.state.identity for middleware and logging.
require_roles() builds a role gate on top of it.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from fastapi import Depends, Request

from auth.errors import (
    AccountDisabled,
    CacheError,
    Forbidden,
    InvalidSession,
    InvalidToken,
    MissingToken,
)
from auth.interfaces import AuthCache
from auth.models import ADMIN_ROLES, CachedSession, CachedUser, Identity, Role
from auth.tokens import TokenCodec
from cache.auth_cache import clamp_ttl

logger = logging.getLogger("restauth.auth")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def extract_access_token(request: Request) -> str | None:
    """Return the raw access token from the cookie or Bearer header, if any."""
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


class Authenticator:
    """Per-request authentication gate.

    One instance is built at startup and kept on app.state.authenticator.

    Usage:
        identity = await authenticator(request)
    """

    def __init__(self, codec: TokenCodec, store, cache: AuthCache | None = None, cache_ttl: int = 3600) -> None:
        self.codec = codec
        self.store = store
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def __call__(self, request: Request) -> Identity:
        token = extract_access_token(request)
        if not token:
            raise MissingToken()

        claims = self.codec.validate_access_token(token)
        session = await self._resolve_session(claims.session_id)
        if session.user_id != claims.user_id:
            logger.warning(
                "Session %s belongs to %s but token claims %s", claims.session_id, session.user_id, claims.user_id
            )
            raise InvalidToken("session owner mismatch")

        user = await self._resolve_user(claims.user_id)
        if not user.is_active or user.is_blocked:
            raise AccountDisabled()

        # Email and role come from current user state, so a role change applies
        # without waiting for the access token to expire.
        identity = Identity(
            user_id=claims.user_id,
            email=user.email,
            role=user.role,
            session_id=claims.session_id,
        )
        request.state.identity = identity
        return identity

    async def _resolve_session(self, session_id: str) -> CachedSession:
        now = datetime.now(timezone.utc)
        cached = await self._cached_session(session_id)
        if cached is not None:
            if cached.is_active and cached.expires_at > now:
                return cached
            await self._drop_session(session_id)
            raise InvalidSession()

        session = await asyncio.to_thread(self.store.get_session, session_id)
        if session is None or not session.is_active or session.expires_at <= now:
            raise InvalidSession()

        projection = CachedSession(session.user_id, session.is_active, session.expires_at)
        if self.cache is not None:
            try:
                await self.cache.set_session(session_id, projection, clamp_ttl(self.cache_ttl, session.expires_at))
            except CacheError as exc:
                logger.warning("Cache write failed for session %s: %s", session_id, exc.message)
        return projection

    async def _resolve_user(self, user_id: str) -> CachedUser:
        if self.cache is not None:
            try:
                cached = await self.cache.get_user(user_id)
            except CacheError as exc:
                logger.warning("Cache read failed for user %s: %s", user_id, exc.message)
                cached = None
            if cached is not None:
                return cached

        user = await asyncio.to_thread(self.store.get_user_by_id, user_id)
        if user is None:
            raise InvalidToken("user no longer exists")

        projection = CachedUser(user.email, user.role, user.is_active, user.is_blocked)
        if self.cache is not None:
            try:
                await self.cache.set_user(user_id, projection, self.cache_ttl)
            except CacheError as exc:
                logger.warning("Cache write failed for user %s: %s", user_id, exc.message)
        return projection

    async def _cached_session(self, session_id: str) -> CachedSession | None:
        if self.cache is None:
            return None
        try:
            return await self.cache.get_session(session_id)
        except CacheError as exc:
            logger.warning("Cache read failed for session %s: %s", session_id, exc.message)
            return None

    async def _drop_session(self, session_id: str) -> None:
        try:
            await self.cache.del_session(session_id)
        except CacheError as exc:
            logger.warning("Cache delete failed for session %s: %s", session_id, exc.message)


async def get_identity(request: Request) -> Identity:
    """Require authentication. Raises an AuthError subclass if not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_identity)): ...
    """
    return await request.app.state.authenticator(request)


def require_roles(*roles: Role | str) -> Callable[..., Awaitable[Identity]]:
    """Build a dependency that authenticates, then checks the caller's role.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(identity: Identity = Depends(require_roles(Role.owner))): ...
    """
    allowed = frozenset(Role(r).value for r in roles)

    async def role_gate(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
        if getattr(request.state, "identity", None) is None:
            raise MissingToken()
        if identity.role not in allowed:
            logger.warning("User %s with role %s denied (needs one of %s)", identity.user_id, identity.role, sorted(allowed))
            raise Forbidden()
        return identity

    return role_gate


require_admin = require_roles(*ADMIN_ROLES)
