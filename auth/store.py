"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. SQLAuthStore is the repository; the
_row_to_* functions are the mappers. Service and middleware code never
touches SQL directly -- they see the SessionStore / UserStore protocols.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Every SQLAlchemyError is re-raised as StoreError with a generic message.
  The driver error is chained for logs and never reaches a client.

Consistency:
  refresh_token_hash is UNIQUE. rotate_refresh_token() is a compare-and-swap
  (UPDATE ... WHERE id AND old hash AND active), so two concurrent refreshes
  of the same token cannot both win.
  Sessions and reset tokens are never deleted, only flagged.

Timestamps are stored as UTC. SQLite hands back naive datetimes; _utc()
re-attaches the zone on the way out.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import EmailAlreadyExists, StoreError
from auth.models import DeviceInfo, PasswordResetToken, Role, Session, User

logger = logging.getLogger("restauth.auth.store")

_DEFAULT_DB_URL = "sqlite:///restauth.db"

# Fixed role ids so seeds and foreign keys are stable across databases.
ROLE_IDS: dict[Role, str] = {
    Role.owner: "00000000-0000-0000-0000-000000000001",
    Role.admin: "00000000-0000-0000-0000-000000000002",
    Role.system: "00000000-0000-0000-0000-000000000003",
    Role.customer: "00000000-0000-0000-0000-000000000004",
}

_ROLE_DESCRIPTIONS: dict[Role, str] = {
    Role.owner: "Super user with full system access",
    Role.admin: "Administrator with limited access (cannot modify owner)",
    Role.system: "System user for automated tasks",
    Role.customer: "Regular customer user",
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("role_id", String(36), ForeignKey("roles.id"), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_blocked", Boolean, nullable=False, default=False),
    Column("blocked_at", DateTime(timezone=True)),
    Column("blocked_by", String(36)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("deleted_at", DateTime(timezone=True)),
    Index("idx_users_active", "is_active", "is_blocked"),
)

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("device_info", JSON),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_activity_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_user_sessions_active", "user_id", "is_active", "expires_at"),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("otp", String(6), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("used_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_password_reset_user", "user_id"),
    Index("idx_password_reset_otp", "otp", "expires_at"),
)

_USER_COLUMNS = (
    _users.c.id,
    _users.c.first_name,
    _users.c.last_name,
    _users.c.email,
    _users.c.password_hash,
    _users.c.is_active,
    _users.c.is_blocked,
    _users.c.blocked_at,
    _users.c.blocked_by,
    _users.c.created_at,
    _users.c.updated_at,
    _users.c.deleted_at,
    _roles.c.name.label("role"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate driver failures into StoreError. Domain errors pass through."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("auth store: %s failed (%s: %s)", action, type(exc).__name__, exc)
        raise StoreError(f"{action} failed") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLAuthStore:
    """Repository for users, sessions and password reset tokens.

    Usage:
        store = SQLAuthStore("sqlite:///restauth.db")
        user_id = store.create_user(User(email="a@example.com", first_name="A", last_name="B",
                                         password_hash=hash_password("secret")))
        session = store.get_session(session_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        with _store_errors("schema setup"):
            _metadata.create_all(self.engine)
            self._ensure_roles()

    def _ensure_roles(self) -> None:
        """Insert the four fixed roles if missing. Safe to call on every startup."""
        with self.engine.connect() as conn:
            existing = set(conn.execute(select(_roles.c.id)).scalars())
            missing = [r for r in Role if ROLE_IDS[r] not in existing]
            for role in missing:
                conn.execute(
                    _roles.insert().values(
                        id=ROLE_IDS[role],
                        name=role.value,
                        description=_ROLE_DESCRIPTIONS[role],
                        created_at=_now(),
                    )
                )
            conn.commit()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Never raises."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with _store_errors("count users"), self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises EmailAlreadyExists on the UNIQUE(email) constraint, which also
        covers two registrations racing past the service's pre-check.
        """
        user_id = user.id or _new_id()
        now = _now()
        try:
            with _store_errors("create user"), self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        first_name=user.first_name,
                        last_name=user.last_name,
                        email=user.email,
                        password_hash=user.password_hash,
                        role_id=ROLE_IDS[Role(user.role)],
                        is_active=user.is_active,
                        is_blocked=user.is_blocked,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except StoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise EmailAlreadyExists(user.email) from exc.__cause__
            raise
        return user_id

    def get_user_by_email(self, email: str) -> User | None:
        """Exact-match lookup (case sensitivity follows the column collation)."""
        with _store_errors("get user by email"), self.engine.connect() as conn:
            row = conn.execute(
                select(*_USER_COLUMNS)
                .join(_roles, _users.c.role_id == _roles.c.id)
                .where(_users.c.email == email, _users.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: str) -> User | None:
        with _store_errors("get user by id"), self.engine.connect() as conn:
            row = conn.execute(
                select(*_USER_COLUMNS)
                .join(_roles, _users.c.role_id == _roles.c.id)
                .where(_users.c.id == user_id, _users.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with _store_errors("update password"), self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id, _users.c.deleted_at.is_(None))
                .values(password_hash=password_hash, updated_at=_now())
            )
            conn.commit()
        return result.rowcount > 0

    def block_user(self, user_id: str, blocked_by: str) -> bool:
        with _store_errors("block user"), self.engine.connect() as conn:
            now = _now()
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id, _users.c.deleted_at.is_(None))
                .values(is_blocked=True, blocked_at=now, blocked_by=blocked_by, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def unblock_user(self, user_id: str) -> bool:
        with _store_errors("unblock user"), self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id, _users.c.deleted_at.is_(None))
                .values(is_blocked=False, blocked_at=None, blocked_by=None, updated_at=_now())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> str:
        """Insert a session row. Uses session.id when the caller pre-allocated one."""
        session_id = session.id or _new_id()
        now = _now()
        with _store_errors("create session"), self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session_id,
                    user_id=session.user_id,
                    refresh_token_hash=session.refresh_token_hash,
                    device_info=asdict(session.device_info),
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    is_active=session.is_active,
                    last_activity_at=session.last_activity_at or now,
                    expires_at=session.expires_at,
                    created_at=session.created_at or now,
                )
            )
            conn.commit()
        return session_id

    def get_session(self, session_id: str) -> Session | None:
        with _store_errors("get session"), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Session | None:
        """O(1) via the UNIQUE index on refresh_token_hash."""
        with _store_errors("get session by refresh hash"), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active_sessions(self, user_id: str) -> list[Session]:
        """Active, unexpired sessions for a user, most recent activity first."""
        with _store_errors("list sessions"), self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    _sessions.c.user_id == user_id,
                    _sessions.c.is_active.is_(True),
                    _sessions.c.expires_at > _now(),
                )
                .order_by(_sessions.c.last_activity_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_active_session_ids(self, user_id: str) -> list[str]:
        """Ids of active sessions, used for cache invalidation fan-out."""
        with _store_errors("list session ids"), self.engine.connect() as conn:
            ids = conn.execute(
                select(_sessions.c.id).where(_sessions.c.user_id == user_id, _sessions.c.is_active.is_(True))
            ).scalars()
            return list(ids)

    def rotate_refresh_token(self, session_id: str, old_hash: str, new_hash: str) -> bool:
        """Swap the refresh hash only if the row still holds old_hash and is active.

        Returns False when another rotation or an invalidation got there first.
        """
        with _store_errors("rotate refresh token"), self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    _sessions.c.id == session_id,
                    _sessions.c.refresh_token_hash == old_hash,
                    _sessions.c.is_active.is_(True),
                )
                .values(refresh_token_hash=new_hash, last_activity_at=_now())
            )
            conn.commit()
        return result.rowcount == 1

    def invalidate_session(self, session_id: str) -> bool:
        """Mark one session inactive. Returns False if it was already inactive or absent."""
        with _store_errors("invalidate session"), self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id, _sessions.c.is_active.is_(True))
                .values(is_active=False)
            )
            conn.commit()
        return result.rowcount > 0

    def invalidate_user_sessions(self, user_id: str) -> int:
        """Mark every active session of a user inactive in one statement."""
        with _store_errors("invalidate user sessions"), self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.user_id == user_id, _sessions.c.is_active.is_(True))
                .values(is_active=False)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> str:
        token_id = token.id or _new_id()
        with _store_errors("create reset token"), self.engine.connect() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    id=token_id,
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    otp=token.otp,
                    expires_at=token.expires_at,
                    created_at=token.created_at or _now(),
                )
            )
            conn.commit()
        return token_id

    def find_reset_token(self, email: str, otp: str, now: datetime) -> PasswordResetToken | None:
        """Newest unused, unexpired token matching the user's email and the OTP."""
        with _store_errors("find reset token"), self.engine.connect() as conn:
            row = conn.execute(
                select(_reset_tokens)
                .join(_users, _reset_tokens.c.user_id == _users.c.id)
                .where(
                    _users.c.email == email,
                    _users.c.deleted_at.is_(None),
                    _reset_tokens.c.otp == otp,
                    _reset_tokens.c.used_at.is_(None),
                    _reset_tokens.c.expires_at > now,
                )
                .order_by(_reset_tokens.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def get_reset_tokens_for_user(self, user_id: str) -> list[PasswordResetToken]:
        """All reset tokens for a user, newest first. Not used on any request path."""
        with _store_errors("list reset tokens"), self.engine.connect() as conn:
            rows = conn.execute(
                _reset_tokens.select()
                .where(_reset_tokens.c.user_id == user_id)
                .order_by(_reset_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_reset_token(r) for r in rows]

    def mark_reset_token_used(self, token_id: str) -> bool:
        """Consume a token. False if it was already used (lost race)."""
        with _store_errors("mark reset token used"), self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where(_reset_tokens.c.id == token_id, _reset_tokens.c.used_at.is_(None))
                .values(used_at=_now())
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        is_blocked=bool(row.is_blocked),
        blocked_at=_utc(row.blocked_at),
        blocked_by=row.blocked_by,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        deleted_at=_utc(row.deleted_at),
    )


def _row_to_session(row) -> Session:
    raw_device = row.device_info or {}
    device = DeviceInfo(
        device_class=raw_device.get("device_class", "Unknown"),
        browser=raw_device.get("browser", "Unknown"),
        user_agent=raw_device.get("user_agent", ""),
    )
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        device_info=device,
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        is_active=bool(row.is_active),
        last_activity_at=_utc(row.last_activity_at),
        expires_at=_utc(row.expires_at),
        created_at=_utc(row.created_at),
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        otp=row.otp,
        expires_at=_utc(row.expires_at),
        used_at=_utc(row.used_at),
        created_at=_utc(row.created_at),
    )
