"""
auth/service.py -- Session and account lifecycle orchestration.

AuthService is the only writer of session and auth-related user state. Route
handlers call it; it calls the store, the token codec, the optional cache and
the OTP notifier.

Session state machine (one row per login):
    Active --refresh--> Rotated (same row, new refresh hash)
    Active | Rotated --logout / logout-all / block / reset / expiry seen--> Invalidated

Invalidated is terminal. Nothing flips is_active back to true.

Threading model:
    Store calls and bcrypt are blocking, so they run via asyncio.to_thread().
    Each store call is a single atomic statement. A request cancelled between
    awaits leaves either the old or the new state, never half of one, and
    invalidation plus cache deletion are both idempotent.

Cache policy:
    The store is the source of truth. Cache writes and deletes happen after
    the store mutation and never fail the operation: errors are logged.

Logging:
    Security events (login, refresh, logout, block, reset) are logged with
    user and session ids. Passwords, hashes, tokens and OTPs never are.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from auth.devices import format_device_name, parse_device_info
from auth.errors import (
    CacheError,
    EmailAlreadyExists,
    InvalidCredentials,
    InvalidOTP,
    InvalidSession,
    NotSessionOwner,
    SessionNotFound,
    StoreError,
    UserBlocked,
    UserNotFound,
    ValidationFailed,
)
from auth.interfaces import AuthCache, OTPNotifier
from auth.models import (
    CachedSession,
    CachedUser,
    LoginResult,
    PasswordResetToken,
    RequestMetadata,
    Role,
    Session,
    SessionSummary,
    TokenPair,
    User,
)
from auth.notifier import LogOTPNotifier
from auth.tokens import (
    TokenCodec,
    equalize_timing,
    generate_otp,
    generate_secure_token,
    hash_password,
    hash_token,
    verify_password,
)
from cache.auth_cache import clamp_ttl
from core.config import AuthConfig

logger = logging.getLogger("restauth.auth.service")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Login, refresh, logout, password reset, blocking and session listing.

    Usage:
        service = AuthService(store, TokenCodec(cfg), cfg, cache=cache)
        result = await service.login("a@example.com", "secret", False, RequestMetadata("1.2.3.4", ua))
        pair = await service.refresh(result.tokens.refresh_token)
    """

    def __init__(
        self,
        store,
        codec: TokenCodec,
        config: AuthConfig,
        cache: AuthCache | None = None,
        notifier: OTPNotifier | None = None,
        cache_ttl: int = 3600,
    ) -> None:
        # store satisfies both SessionStore and UserStore
        self.store = store
        self.codec = codec
        self.config = config
        self.cache = cache
        self.notifier = notifier or LogOTPNotifier()
        self.cache_ttl = cache_ttl

    # ------------------------------------------------------------------
    # Login / registration
    # ------------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        stay_signed_in: bool = False,
        metadata: RequestMetadata | None = None,
    ) -> LoginResult:
        """Verify credentials and open a new session.

        Unknown email, wrong password, inactive and blocked all raise the same
        InvalidCredentials. The unknown-email branch still pays one bcrypt
        comparison so timing does not tell them apart.
        """
        metadata = metadata or RequestMetadata()
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if user is None:
            await asyncio.to_thread(equalize_timing, password, self.config.bcrypt_rounds)
            logger.info("Login failed: unknown email (ip=%s)", metadata.ip_address)
            raise InvalidCredentials()

        matches = await asyncio.to_thread(verify_password, password, user.password_hash or "")
        if not matches or not user.is_active or user.is_blocked:
            logger.info(
                "Login failed for user %s (ip=%s, password_ok=%s, active=%s, blocked=%s)",
                user.id,
                metadata.ip_address,
                matches,
                user.is_active,
                user.is_blocked,
            )
            raise InvalidCredentials()

        lifetime = self.config.stay_signed_in_lifetime if stay_signed_in else self.config.refresh_token_lifetime
        now = _now()
        expires_at = now + timedelta(seconds=lifetime)
        session_id = str(uuid.uuid4())

        access_token = self.codec.generate_access_token(user.id, user.email, user.role, session_id)
        refresh_token = self.codec.generate_refresh_token(user.id, session_id, lifetime)

        session = Session(
            id=session_id,
            user_id=user.id,
            refresh_token_hash=hash_token(refresh_token),
            expires_at=expires_at,
            device_info=parse_device_info(metadata.user_agent),
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            last_activity_at=now,
            created_at=now,
        )
        await asyncio.to_thread(self.store.create_session, session)

        await self._remember_session(session_id, CachedSession(user.id, True, expires_at))
        await self._remember_user(user)

        logger.info("User %s logged in (session=%s, ip=%s)", user.id, session_id, metadata.ip_address)
        return LoginResult(
            user=user,
            session_id=session_id,
            tokens=TokenPair(access_token, refresh_token, expires_at),
        )

    async def register(self, first_name: str, last_name: str, email: str, password: str) -> User:
        """Create a customer account. EmailAlreadyExists if the email is taken."""
        existing = await asyncio.to_thread(self.store.get_user_by_email, email)
        if existing is not None:
            raise EmailAlreadyExists()

        password_hash = await asyncio.to_thread(hash_password, password, self.config.bcrypt_rounds)
        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=Role.customer.value,
            password_hash=password_hash,
        )
        user_id = await asyncio.to_thread(self.store.create_user, user)
        created = await asyncio.to_thread(self.store.get_user_by_id, user_id)
        logger.info("Registered user %s", user_id)
        return created or user

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token and mint a new access token.

        The new refresh token keeps the session's absolute expiry. Exactly one
        of two concurrent refreshes with the same token wins; the other gets
        SessionNotFound.
        """
        claims = self.codec.validate_refresh_token(refresh_token)
        token_hash = hash_token(refresh_token)

        session = await asyncio.to_thread(self.store.get_session_by_refresh_hash, token_hash)
        if session is None:
            logger.warning("Refresh with unknown or rotated token (session=%s)", claims.session_id)
            raise SessionNotFound()
        if not session.is_active:
            raise InvalidSession("session is no longer active")
        if session.id != claims.session_id:
            raise InvalidSession("session id mismatch")

        now = _now()
        if session.expires_at <= now:
            await self._invalidate_session(session.id)
            raise InvalidSession("session expired")

        user = await asyncio.to_thread(self.store.get_user_by_id, claims.user_id)
        if user is None or session.user_id != user.id or not user.is_active or user.is_blocked:
            logger.warning("Refresh refused for user %s; invalidating session %s", claims.user_id, session.id)
            await self._invalidate_session(session.id)
            raise UserBlocked()

        remaining = session.expires_at - now
        access_token = self.codec.generate_access_token(user.id, user.email, user.role, session.id)
        new_refresh = self.codec.generate_refresh_token(user.id, session.id, remaining)

        rotated = await asyncio.to_thread(
            self.store.rotate_refresh_token, session.id, token_hash, hash_token(new_refresh)
        )
        if not rotated:
            logger.warning("Refresh lost rotation race (session=%s)", session.id)
            raise SessionNotFound()

        logger.info("Tokens refreshed for user %s (session=%s)", user.id, session.id)
        return TokenPair(access_token, new_refresh, session.expires_at)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(self, session_id: str) -> None:
        """Invalidate one session. Calling it twice is not an error."""
        await self._invalidate_session(session_id)
        logger.info("Session %s logged out", session_id)

    async def logout_all(self, user_id: str) -> int:
        """Invalidate every session of a user. Returns the number invalidated."""
        session_ids = await self._active_session_ids(user_id)
        count = await asyncio.to_thread(self.store.invalidate_user_sessions, user_id)
        await self._forget_sessions(session_ids)
        await self._forget_user(user_id)
        logger.info("All sessions (%d) logged out for user %s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Password reset / change
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """Issue an OTP if the email belongs to a user. Silent otherwise."""
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return

        now = _now()
        lifetime = self.config.password_reset_otp_lifetime
        otp = generate_otp()
        token = PasswordResetToken(
            user_id=user.id,
            token_hash=hash_token(generate_secure_token()),
            otp=otp,
            expires_at=now + timedelta(seconds=lifetime),
            created_at=now,
        )
        await asyncio.to_thread(self.store.create_reset_token, token)
        logger.info("Password reset token issued for user %s", user.id)

        try:
            await self.notifier.send_password_reset_otp(user.email, otp, lifetime)
        except Exception:
            # A delivery failure must look the same as an unknown email to the caller.
            logger.exception("OTP delivery failed for user %s", user.id)

    async def verify_password_reset(self, email: str, otp: str, new_password: str) -> None:
        """Consume a reset OTP, set the new password, end every session."""
        token = await asyncio.to_thread(self.store.find_reset_token, email, otp, _now())
        if token is None:
            logger.info("Password reset verification failed (no matching OTP)")
            raise InvalidOTP()

        session_ids = await self._active_session_ids(token.user_id)
        password_hash = await asyncio.to_thread(hash_password, new_password, self.config.bcrypt_rounds)

        # Consume first: of two concurrent verifications only one may change the password.
        if not await asyncio.to_thread(self.store.mark_reset_token_used, token.id):
            raise InvalidOTP()
        await asyncio.to_thread(self.store.update_password, token.user_id, password_hash)
        count = await asyncio.to_thread(self.store.invalidate_user_sessions, token.user_id)

        await self._forget_sessions(session_ids)
        await self._forget_user(token.user_id)
        logger.info("Password reset for user %s; %d sessions invalidated", token.user_id, count)

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Change a password after re-checking the current one. Sessions stay open."""
        user = await asyncio.to_thread(self.store.get_user_by_id, user_id)
        if user is None:
            raise UserNotFound()
        matches = await asyncio.to_thread(verify_password, current_password, user.password_hash or "")
        if not matches:
            logger.info("Password change refused for user %s: current password mismatch", user_id)
            raise InvalidCredentials("Current password is incorrect.")

        password_hash = await asyncio.to_thread(hash_password, new_password, self.config.bcrypt_rounds)
        await asyncio.to_thread(self.store.update_password, user_id, password_hash)
        await self._forget_user(user_id)
        logger.info("Password changed for user %s", user_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def block_user(self, target_id: str, actor_id: str) -> None:
        """Block an account and end all its sessions immediately."""
        if target_id == actor_id:
            raise ValidationFailed("You cannot block your own account.")
        target = await asyncio.to_thread(self.store.get_user_by_id, target_id)
        if target is None:
            raise UserNotFound()

        session_ids = await self._active_session_ids(target_id)
        await asyncio.to_thread(self.store.block_user, target_id, actor_id)
        count = await asyncio.to_thread(self.store.invalidate_user_sessions, target_id)
        await self._forget_sessions(session_ids)
        await self._forget_user(target_id)
        logger.info("User %s blocked by %s; %d sessions invalidated", target_id, actor_id, count)

    async def unblock_user(self, target_id: str) -> None:
        """Clear the blocked flag. Previously invalidated sessions stay invalidated."""
        if not await asyncio.to_thread(self.store.unblock_user, target_id):
            raise UserNotFound()
        await self._forget_user(target_id)
        logger.info("User %s unblocked", target_id)

    # ------------------------------------------------------------------
    # Self-service queries
    # ------------------------------------------------------------------

    async def get_me(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.get_user_by_id, user_id)
        if user is None:
            raise UserNotFound()
        return user

    async def get_user_sessions(self, user_id: str, current_session_id: str) -> list[SessionSummary]:
        sessions = await asyncio.to_thread(self.store.list_active_sessions, user_id)
        return [
            SessionSummary(
                id=s.id,
                device_name=format_device_name(s.device_info),
                device_info=s.device_info,
                ip_address=s.ip_address,
                last_activity_at=s.last_activity_at,
                expires_at=s.expires_at,
                created_at=s.created_at,
                is_current=s.id == current_session_id,
            )
            for s in sessions
        ]

    async def delete_session(self, session_id: str, requesting_user_id: str) -> None:
        """Invalidate one of the caller's own sessions."""
        session = await asyncio.to_thread(self.store.get_session, session_id)
        if session is None:
            raise SessionNotFound()
        if session.user_id != requesting_user_id:
            logger.warning(
                "User %s tried to delete session %s owned by another user", requesting_user_id, session_id
            )
            raise NotSessionOwner()
        await self._invalidate_session(session_id)
        logger.info("Session %s deleted by its owner %s", session_id, requesting_user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _invalidate_session(self, session_id: str) -> None:
        await asyncio.to_thread(self.store.invalidate_session, session_id)
        await self._forget_sessions([session_id])

    async def _active_session_ids(self, user_id: str) -> list[str]:
        """Session ids for cache fan-out. A store failure here only widens the staleness window."""
        try:
            return await asyncio.to_thread(self.store.list_active_session_ids, user_id)
        except StoreError:
            logger.warning("Could not enumerate sessions of user %s for cache cleanup", user_id)
            return []

    async def _remember_session(self, session_id: str, cached: CachedSession) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_session(session_id, cached, clamp_ttl(self.cache_ttl, cached.expires_at))
        except CacheError as exc:
            logger.warning("Cache write failed for session %s: %s", session_id, exc.message)

    async def _remember_user(self, user: User) -> None:
        if self.cache is None:
            return
        cached = CachedUser(user.email, user.role, user.is_active, user.is_blocked)
        try:
            await self.cache.set_user(user.id, cached, self.cache_ttl)
        except CacheError as exc:
            logger.warning("Cache write failed for user %s: %s", user.id, exc.message)

    async def _forget_sessions(self, session_ids: list[str]) -> None:
        if self.cache is None:
            return
        for session_id in session_ids:
            try:
                await self.cache.del_session(session_id)
            except CacheError as exc:
                logger.warning("Cache delete failed for session %s: %s", session_id, exc.message)

    async def _forget_user(self, user_id: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.del_user(user_id)
        except CacheError as exc:
            logger.warning("Cache delete failed for user %s: %s", user_id, exc.message)
