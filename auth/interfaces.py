"""
auth/interfaces.py -- Capability protocols injected into the service and middleware.

AuthService and Authenticator depend on these shapes, not on concrete
classes. auth/store.py (SQLAlchemy) satisfies SessionStore and UserStore,
cache/auth_cache.py (Redis) satisfies AuthCache, auth/notifier.py satisfies
OTPNotifier. Tests substitute in-memory fakes.

Store methods are synchronous (SQLAlchemy Core, pooled connections); the
service runs them in worker threads. Cache and notifier methods are
coroutines.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from auth.models import CachedSession, CachedUser, PasswordResetToken, Session, User


class SessionStore(Protocol):
    def create_session(self, session: Session) -> str: ...

    def get_session(self, session_id: str) -> Session | None: ...

    def get_session_by_refresh_hash(self, token_hash: str) -> Session | None: ...

    def list_active_sessions(self, user_id: str) -> list[Session]: ...

    def list_active_session_ids(self, user_id: str) -> list[str]: ...

    def rotate_refresh_token(self, session_id: str, old_hash: str, new_hash: str) -> bool: ...

    def invalidate_session(self, session_id: str) -> bool: ...

    def invalidate_user_sessions(self, user_id: str) -> int: ...

    def create_reset_token(self, token: PasswordResetToken) -> str: ...

    def find_reset_token(self, email: str, otp: str, now: datetime) -> PasswordResetToken | None: ...

    def mark_reset_token_used(self, token_id: str) -> bool: ...


class UserStore(Protocol):
    def get_user_by_email(self, email: str) -> User | None: ...

    def get_user_by_id(self, user_id: str) -> User | None: ...

    def create_user(self, user: User) -> str: ...

    def update_password(self, user_id: str, password_hash: str) -> bool: ...

    def block_user(self, user_id: str, blocked_by: str) -> bool: ...

    def unblock_user(self, user_id: str) -> bool: ...


class AuthCache(Protocol):
    """Best-effort projection cache. Never the source of truth.

    get_* return None on a miss. Implementations raise CacheError on
    transport failure; callers log and fall back to the store.
    """

    async def get_session(self, session_id: str) -> CachedSession | None: ...

    async def set_session(self, session_id: str, session: CachedSession, ttl: int) -> None: ...

    async def del_session(self, session_id: str) -> None: ...

    async def get_user(self, user_id: str) -> CachedUser | None: ...

    async def set_user(self, user_id: str, user: CachedUser, ttl: int) -> None: ...

    async def del_user(self, user_id: str) -> None: ...


class OTPNotifier(Protocol):
    async def send_password_reset_otp(self, email: str, otp: str, expires_in: int) -> None: ...
