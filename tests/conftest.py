"""
tests/conftest.py -- Shared fixtures for the auth test suite.

This module provides:
  - store:        SQLAuthStore over an isolated named shared-memory SQLite DB
  - seeded_users: the four development accounts (owner/admin/system/customer)
  - service:      AuthService wired to the store, no cache, recording notifier
  - FakeCache:    in-memory AuthCache with call recording and failure injection
  - api:          TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the service runs store calls in worker threads. Plain :memory: DBs
are per-connection and would present a blank schema to each thread. The
named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any app import so get_settings()
auto-generates JWT_SECRET and hashing stays fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENABLE_CACHE", "false")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.dependencies import Authenticator
from auth.errors import CacheError
from auth.models import CachedSession, CachedUser, Role, User
from auth.service import AuthService
from auth.store import SQLAuthStore
from auth.tokens import TokenCodec, hash_password
from core.config import AuthConfig

# Login and reset endpoints are rate-limited; the suite makes many calls from one IP.
limiter.enabled = False

PASSWORD = "password123"

TEST_CONFIG = AuthConfig(
    jwt_secret="test-secret-key-that-is-long-enough-for-hs256",
    jwt_issuer="rest-api-auth",
    jwt_audience=("rest-api-auth", "legacy-clients"),
    access_token_lifetime=15 * 60,
    refresh_token_lifetime=168 * 3600,
    stay_signed_in_lifetime=720 * 3600,
    password_reset_otp_lifetime=15 * 60,
    bcrypt_rounds=4,
)

SEED = (
    ("owner@example.com", Role.owner),
    ("admin@example.com", Role.admin),
    ("system@example.com", Role.system),
    ("customer@example.com", Role.customer),
)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """OTPNotifier that keeps every message instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, int]] = []

    async def send_password_reset_otp(self, email: str, otp: str, expires_in: int) -> None:
        self.sent.append((email, otp, expires_in))

    def last_otp_for(self, email: str) -> str:
        return [otp for addr, otp, _ in self.sent if addr == email][-1]


class FakeCache:
    """In-memory AuthCache. Set fail=True to make every call raise CacheError."""

    def __init__(self) -> None:
        self.sessions: dict[str, CachedSession] = {}
        self.users: dict[str, CachedUser] = {}
        self.ttls: dict[str, int] = {}
        self.deleted: list[str] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise CacheError("cache unavailable")

    async def verify(self) -> bool:
        return not self.fail

    async def get_session(self, session_id: str) -> CachedSession | None:
        self._check()
        return self.sessions.get(session_id)

    async def set_session(self, session_id: str, session: CachedSession, ttl: int) -> None:
        self._check()
        if ttl <= 0:
            return
        self.sessions[session_id] = session
        self.ttls[f"session:{session_id}"] = ttl

    async def del_session(self, session_id: str) -> None:
        self._check()
        self.sessions.pop(session_id, None)
        self.deleted.append(f"session:{session_id}")

    async def get_user(self, user_id: str) -> CachedUser | None:
        self._check()
        return self.users.get(user_id)

    async def set_user(self, user_id: str, user: CachedUser, ttl: int) -> None:
        self._check()
        if ttl <= 0:
            return
        self.users[user_id] = user
        self.ttls[f"user:{user_id}"] = ttl

    async def del_user(self, user_id: str) -> None:
        self._check()
        self.users.pop(user_id, None)
        self.deleted.append(f"user:{user_id}")

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Store / service fixtures
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def create_user(store: SQLAuthStore, email: str, role: Role = Role.customer, password: str = PASSWORD) -> str:
    return store.create_user(
        User(
            email=email,
            first_name=email.split("@")[0].title(),
            last_name="Test",
            role=role.value,
            password_hash=hash_password(password, rounds=4),
        )
    )


@pytest.fixture
def store() -> Generator[SQLAuthStore, None, None]:
    s = SQLAuthStore(_memory_url("test_auth"))
    yield s
    s.close()


@pytest.fixture
def seeded_users(store: SQLAuthStore) -> dict[str, str]:
    """email -> user id for the four development accounts."""
    return {email: create_user(store, email, role) for email, role in SEED}


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TEST_CONFIG)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def service(store: SQLAuthStore, codec: TokenCodec, notifier: RecordingNotifier) -> AuthService:
    return AuthService(store, codec, TEST_CONFIG, cache=None, notifier=notifier)


@pytest.fixture
def cached_service(store: SQLAuthStore, codec: TokenCodec, notifier: RecordingNotifier, fake_cache: FakeCache):
    return AuthService(store, codec, TEST_CONFIG, cache=fake_cache, notifier=notifier)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: SQLAuthStore
    notifier: RecordingNotifier
    users: dict[str, str] = field(default_factory=dict)

    def login(self, email: str, password: str = PASSWORD, stay_signed_in: bool = False, user_agent: str = "pytest"):
        """POST /auth/login and return the JSON body. Cookies are dropped so calls choose their token."""
        resp = self.client.post(
            "/auth/login",
            json={"email": email, "password": password, "stay_signed_in": stay_signed_in},
            headers={"User-Agent": user_agent},
        )
        assert resp.status_code == 200, resp.text
        self.client.cookies.clear()
        return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(store: SQLAuthStore, notifier: RecordingNotifier, cache=None):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, fake cache and recording notifier into app.state so
    TestClient routes run against an isolated database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        codec = TokenCodec(TEST_CONFIG)
        app.state.auth_config = TEST_CONFIG
        app.state.store = store
        app.state.cache = cache
        app.state.auth_service = AuthService(store, codec, TEST_CONFIG, cache=cache, notifier=notifier)
        app.state.authenticator = Authenticator(codec, store, cache)
        yield

    return test_lifespan


@pytest.fixture
def api(store: SQLAuthStore, seeded_users: dict[str, str], notifier: RecordingNotifier):
    """Yield an ApiHarness over the real app with seeded users and no cache."""
    app.router.lifespan_context = _patch_lifespan(store, notifier)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, notifier=notifier, users=seeded_users)


@pytest.fixture
def cached_api(store: SQLAuthStore, seeded_users: dict[str, str], notifier: RecordingNotifier, fake_cache: FakeCache):
    """Same as api, with the in-memory FakeCache wired in."""
    app.router.lifespan_context = _patch_lifespan(store, notifier, fake_cache)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, notifier=notifier, users=seeded_users), fake_cache
