"""
tests/test_auth_service.py -- AuthService against a real in-memory store.

Covers the session state machine (login -> rotate -> invalidate), the
password reset flow, blocking, session listing/deletion and the cache
invalidation side effects. Async tests use pytest-asyncio.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from auth.errors import (
    EmailAlreadyExists,
    InvalidCredentials,
    InvalidOTP,
    InvalidSession,
    InvalidToken,
    NotSessionOwner,
    SessionNotFound,
    StoreError,
    UserBlocked,
    UserNotFound,
    ValidationFailed,
)
from auth.models import CachedSession, RequestMetadata, Role
from auth.service import AuthService
from auth.tokens import hash_token
from tests.conftest import PASSWORD, TEST_CONFIG, create_user

FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148 Safari/604.1"


def _hours_from_now(dt: datetime) -> float:
    return (dt - datetime.now(timezone.utc)).total_seconds() / 3600


# ---------------------------------------------------------------------------
# Login / register
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_login_creates_exactly_one_session(service: AuthService, store, seeded_users) -> None:
    uid = seeded_users["owner@example.com"]
    result = await service.login("owner@example.com", PASSWORD, False, RequestMetadata("10.0.0.5", FIREFOX))

    sessions = store.list_active_sessions(uid)
    assert len(sessions) == 1
    session = sessions[0]
    assert session.id == result.session_id
    assert session.refresh_token_hash == hash_token(result.tokens.refresh_token)
    assert session.ip_address == "10.0.0.5"
    assert session.device_info.browser == "Firefox"

    claims = service.codec.validate_access_token(result.tokens.access_token)
    assert claims.session_id == result.session_id
    assert claims.user_id == uid
    assert claims.role == "owner"


@pytest.mark.asyncio
async def test_login_refresh_lifetime_standard_vs_stay_signed_in(service: AuthService, seeded_users) -> None:
    standard = await service.login("owner@example.com", PASSWORD, stay_signed_in=False)
    extended = await service.login("owner@example.com", PASSWORD, stay_signed_in=True)

    assert _hours_from_now(standard.tokens.refresh_expires_at) == pytest.approx(168, abs=0.05)
    assert _hours_from_now(extended.tokens.refresh_expires_at) == pytest.approx(720, abs=0.05)

    claims = service.codec.validate_refresh_token(extended.tokens.refresh_token)
    assert claims.expires_at - claims.issued_at == 720 * 3600


@pytest.mark.asyncio
async def test_each_login_gets_a_unique_refresh_hash(service: AuthService, store, seeded_users) -> None:
    for _ in range(3):
        await service.login("customer@example.com", PASSWORD)
    hashes = [s.refresh_token_hash for s in store.list_active_sessions(seeded_users["customer@example.com"])]
    assert len(hashes) == 3
    assert len(set(hashes)) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("email,password", [("nobody@example.com", PASSWORD), ("owner@example.com", "wrong-pass")])
async def test_login_bad_credentials(service: AuthService, seeded_users, email: str, password: str) -> None:
    with pytest.raises(InvalidCredentials):
        await service.login(email, password)


@pytest.mark.asyncio
async def test_blocked_user_cannot_login(service: AuthService, store, seeded_users) -> None:
    store.block_user(seeded_users["customer@example.com"], seeded_users["owner@example.com"])
    with pytest.raises(InvalidCredentials):
        await service.login("customer@example.com", PASSWORD)


@pytest.mark.asyncio
async def test_register_creates_customer(service: AuthService) -> None:
    user = await service.register("Ada", "Lovelace", "ada@example.com", "analytical-engine")
    assert user.id
    assert user.role == Role.customer.value
    assert user.password_hash != "analytical-engine"
    result = await service.login("ada@example.com", "analytical-engine")
    assert result.user.id == user.id


@pytest.mark.asyncio
async def test_register_duplicate_email(service: AuthService, seeded_users) -> None:
    with pytest.raises(EmailAlreadyExists):
        await service.register("Dup", "User", "owner@example.com", "whatever-123")


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_rotates_and_old_token_dies(service: AuthService, store, seeded_users) -> None:
    login = await service.login("owner@example.com", PASSWORD)
    pair = await service.refresh(login.tokens.refresh_token)

    assert pair.refresh_token != login.tokens.refresh_token
    assert store.get_session(login.session_id).refresh_token_hash == hash_token(pair.refresh_token)
    assert service.codec.validate_access_token(pair.access_token).session_id == login.session_id

    with pytest.raises((SessionNotFound, InvalidSession)):
        await service.refresh(login.tokens.refresh_token)

    # The rotated token still works exactly once.
    await service.refresh(pair.refresh_token)


@pytest.mark.asyncio
async def test_refresh_preserves_absolute_expiry(service: AuthService, seeded_users) -> None:
    login = await service.login("owner@example.com", PASSWORD)
    pair = await service.refresh(login.tokens.refresh_token)
    assert abs((pair.refresh_expires_at - login.tokens.refresh_expires_at).total_seconds()) < 1

    original = service.codec.validate_refresh_token(login.tokens.refresh_token)
    rotated = service.codec.validate_refresh_token(pair.refresh_token)
    assert abs(rotated.expires_at - original.expires_at) <= 1


@pytest.mark.asyncio
async def test_refresh_with_access_token_is_invalid(service: AuthService, seeded_users) -> None:
    login = await service.login("owner@example.com", PASSWORD)
    with pytest.raises(InvalidToken):
        await service.refresh(login.tokens.access_token)


@pytest.mark.asyncio
async def test_refresh_on_logged_out_session(service: AuthService, seeded_users) -> None:
    login = await service.login("owner@example.com", PASSWORD)
    await service.logout(login.session_id)
    with pytest.raises(InvalidSession):
        await service.refresh(login.tokens.refresh_token)


@pytest.mark.asyncio
async def test_refresh_for_blocked_user_invalidates_session(service: AuthService, store, seeded_users) -> None:
    login = await service.login("customer@example.com", PASSWORD)
    store.block_user(seeded_users["customer@example.com"], seeded_users["owner@example.com"])

    with pytest.raises(UserBlocked):
        await service.refresh(login.tokens.refresh_token)
    assert store.get_session(login.session_id).is_active is False


@pytest.mark.asyncio
async def test_refresh_of_expired_session_invalidates_it(service: AuthService, store, seeded_users) -> None:
    # The session row has expired while the refresh JWT itself is still valid.
    login = await service.login("owner@example.com", PASSWORD)
    forged = service.codec.generate_refresh_token(seeded_users["owner@example.com"], login.session_id, 3600)
    with store.engine.connect() as conn:
        conn.execute(
            text("UPDATE user_sessions SET refresh_token_hash = :h, expires_at = :e WHERE id = :id"),
            {"h": hash_token(forged), "e": "2000-01-01 00:00:00.000000", "id": login.session_id},
        )
        conn.commit()

    with pytest.raises(InvalidSession):
        await service.refresh(forged)
    assert store.get_session(login.session_id).is_active is False


@pytest.mark.asyncio
async def test_concurrent_refresh_loser_gets_session_not_found(
    service: AuthService, store, seeded_users, monkeypatch
) -> None:
    login = await service.login("owner@example.com", PASSWORD)
    old_hash = hash_token(login.tokens.refresh_token)
    # Another request rotated the row between our lookup and our swap.
    original_lookup = store.get_session_by_refresh_hash

    def lookup_then_lose_race(token_hash: str):
        found = original_lookup(token_hash)
        store.rotate_refresh_token(login.session_id, old_hash, "rotated-elsewhere")
        return found

    monkeypatch.setattr(store, "get_session_by_refresh_hash", lookup_then_lose_race)
    with pytest.raises(SessionNotFound):
        await service.refresh(login.tokens.refresh_token)
    assert store.get_session(login.session_id).refresh_token_hash == "rotated-elsewhere"


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_logout_is_idempotent(service: AuthService, store, seeded_users) -> None:
    login = await service.login("owner@example.com", PASSWORD)
    await service.logout(login.session_id)
    await service.logout(login.session_id)
    assert store.get_session(login.session_id).is_active is False


@pytest.mark.asyncio
async def test_logout_all_ends_every_session(service: AuthService, store, seeded_users) -> None:
    uid = seeded_users["owner@example.com"]
    await service.login("owner@example.com", PASSWORD)
    await service.login("owner@example.com", PASSWORD)
    assert await service.logout_all(uid) == 2
    assert store.list_active_sessions(uid) == []


# ---------------------------------------------------------------------------
# Password reset / change
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reset_for_unknown_email_is_silent(service: AuthService, store, notifier, seeded_users) -> None:
    await service.request_password_reset("ghost@example.com")
    assert notifier.sent == []
    with store.engine.connect() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM password_reset_tokens")).scalar() == 0


@pytest.mark.asyncio
async def test_reset_flow_invalidates_sessions_and_old_password(service: AuthService, store, notifier, seeded_users) -> None:
    uid = seeded_users["customer@example.com"]
    first = await service.login("customer@example.com", PASSWORD)
    await service.login("customer@example.com", PASSWORD)

    await service.request_password_reset("customer@example.com")
    email, otp, expires_in = notifier.sent[-1]
    assert email == "customer@example.com"
    assert expires_in == TEST_CONFIG.password_reset_otp_lifetime
    token = store.get_reset_tokens_for_user(uid)[0]
    assert token.otp == otp
    assert len(token.token_hash) == 64

    await service.verify_password_reset("customer@example.com", otp, "brand-new-pass")

    assert store.list_active_sessions(uid) == []
    with pytest.raises(InvalidSession):
        await service.refresh(first.tokens.refresh_token)
    with pytest.raises(InvalidCredentials):
        await service.login("customer@example.com", PASSWORD)
    await service.login("customer@example.com", "brand-new-pass")


@pytest.mark.asyncio
async def test_reset_otp_cannot_be_reused(service: AuthService, notifier, seeded_users) -> None:
    await service.request_password_reset("customer@example.com")
    otp = notifier.last_otp_for("customer@example.com")
    await service.verify_password_reset("customer@example.com", otp, "first-new-pass")
    with pytest.raises(InvalidOTP):
        await service.verify_password_reset("customer@example.com", otp, "second-new-pass")


@pytest.mark.asyncio
async def test_reset_with_wrong_otp(service: AuthService, notifier, seeded_users) -> None:
    await service.request_password_reset("customer@example.com")
    otp = notifier.last_otp_for("customer@example.com")
    wrong = "100000" if otp != "100000" else "100001"
    with pytest.raises(InvalidOTP):
        await service.verify_password_reset("customer@example.com", wrong, "brand-new-pass")


@pytest.mark.asyncio
async def test_change_password_keeps_sessions(service: AuthService, store, seeded_users) -> None:
    uid = seeded_users["admin@example.com"]
    login = await service.login("admin@example.com", PASSWORD)

    with pytest.raises(InvalidCredentials):
        await service.change_password(uid, "not-the-password", "whatever-new")

    await service.change_password(uid, PASSWORD, "changed-pass-1")
    assert store.get_session(login.session_id).is_active is True
    await service.login("admin@example.com", "changed-pass-1")


# ---------------------------------------------------------------------------
# Block / unblock
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_block_invalidates_sessions_and_unblock_does_not_restore(service: AuthService, store, seeded_users) -> None:
    target = seeded_users["customer@example.com"]
    actor = seeded_users["admin@example.com"]
    login = await service.login("customer@example.com", PASSWORD)

    await service.block_user(target, actor)
    user = store.get_user_by_id(target)
    assert user.is_blocked and user.blocked_by == actor
    assert store.get_session(login.session_id).is_active is False

    await service.unblock_user(target)
    assert store.get_user_by_id(target).is_blocked is False
    assert store.get_session(login.session_id).is_active is False


@pytest.mark.asyncio
async def test_block_unknown_user_and_self(service: AuthService, seeded_users) -> None:
    actor = seeded_users["admin@example.com"]
    with pytest.raises(UserNotFound):
        await service.block_user("00000000-0000-0000-0000-00000000beef", actor)
    with pytest.raises(ValidationFailed):
        await service.block_user(actor, actor)
    with pytest.raises(UserNotFound):
        await service.unblock_user("00000000-0000-0000-0000-00000000beef")


# ---------------------------------------------------------------------------
# Sessions listing / deletion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_user_sessions_flags_current(service: AuthService, seeded_users) -> None:
    uid = seeded_users["owner@example.com"]
    desktop = await service.login("owner@example.com", PASSWORD, metadata=RequestMetadata("1.1.1.1", FIREFOX))
    phone = await service.login("owner@example.com", PASSWORD, metadata=RequestMetadata("2.2.2.2", IPHONE))

    summaries = await service.get_user_sessions(uid, phone.session_id)
    assert len(summaries) == 2
    current = [s for s in summaries if s.is_current]
    assert len(current) == 1 and current[0].id == phone.session_id
    labels = {s.id: s.device_name for s in summaries}
    assert labels[desktop.session_id] == "Firefox on Desktop"
    assert labels[phone.session_id] == "Safari on Mobile"


@pytest.mark.asyncio
async def test_delete_session_owner_only(service: AuthService, store, seeded_users) -> None:
    victim = await service.login("customer@example.com", PASSWORD)

    with pytest.raises(NotSessionOwner):
        await service.delete_session(victim.session_id, seeded_users["admin@example.com"])
    assert store.get_session(victim.session_id).is_active is True

    with pytest.raises(SessionNotFound):
        await service.delete_session("no-such-session", seeded_users["customer@example.com"])

    await service.delete_session(victim.session_id, seeded_users["customer@example.com"])
    assert store.get_session(victim.session_id).is_active is False


@pytest.mark.asyncio
async def test_get_me(service: AuthService, seeded_users) -> None:
    me = await service.get_me(seeded_users["system@example.com"])
    assert me.email == "system@example.com"
    with pytest.raises(UserNotFound):
        await service.get_me("missing")


# ---------------------------------------------------------------------------
# Cache side effects
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_login_populates_cache_with_clamped_ttl(cached_service: AuthService, fake_cache, seeded_users) -> None:
    login = await cached_service.login("owner@example.com", PASSWORD)
    cached = fake_cache.sessions[login.session_id]
    assert cached == CachedSession(seeded_users["owner@example.com"], True, login.tokens.refresh_expires_at)
    assert fake_cache.ttls[f"session:{login.session_id}"] <= cached_service.cache_ttl
    assert seeded_users["owner@example.com"] in fake_cache.users


@pytest.mark.asyncio
async def test_block_clears_cached_state(cached_service: AuthService, fake_cache, seeded_users) -> None:
    target = seeded_users["customer@example.com"]
    login = await cached_service.login("customer@example.com", PASSWORD)
    assert login.session_id in fake_cache.sessions

    await cached_service.block_user(target, seeded_users["owner@example.com"])
    assert login.session_id not in fake_cache.sessions
    assert target not in fake_cache.users
    assert f"session:{login.session_id}" in fake_cache.deleted


@pytest.mark.asyncio
async def test_change_password_drops_user_cache(cached_service: AuthService, fake_cache, seeded_users) -> None:
    uid = seeded_users["admin@example.com"]
    await cached_service.login("admin@example.com", PASSWORD)
    await cached_service.change_password(uid, PASSWORD, "changed-pass-2")
    assert f"user:{uid}" in fake_cache.deleted


@pytest.mark.asyncio
async def test_cache_failures_never_fail_operations(cached_service: AuthService, fake_cache, store, seeded_users) -> None:
    fake_cache.fail = True
    login = await cached_service.login("owner@example.com", PASSWORD)
    pair = await cached_service.refresh(login.tokens.refresh_token)
    assert pair.access_token
    await cached_service.logout_all(seeded_users["owner@example.com"])
    assert store.list_active_sessions(seeded_users["owner@example.com"]) == []


@pytest.mark.asyncio
async def test_session_list_failure_does_not_block_mutation(
    cached_service: AuthService, store, seeded_users, monkeypatch
) -> None:
    uid = seeded_users["customer@example.com"]
    await cached_service.login("customer@example.com", PASSWORD)

    def broken(user_id: str):
        raise StoreError("list failed")

    monkeypatch.setattr(store, "list_active_session_ids", broken)
    await cached_service.block_user(uid, seeded_users["owner@example.com"])
    assert store.list_active_sessions(uid) == []


@pytest.mark.asyncio
async def test_created_user_without_seed(service: AuthService, store) -> None:
    create_user(store, "solo@example.com", Role.system)
    result = await service.login("solo@example.com", PASSWORD)
    assert result.user.role == "system"
