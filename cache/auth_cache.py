"""
cache/auth_cache.py -- Optional Redis read-through cache for auth projections.

Holds CachedSession and CachedUser as JSON under:
    auth:session:{session_id}
    auth:user:{user_id}

Never a source of truth. Entries expire on their own (Redis key TTL), there
is no sweep task. Transport failures surface as CacheError; callers log them
and read the store instead. A corrupt entry is deleted and reported as a miss.

Usage:
    cache = build_auth_cache(settings.cache_config())   # None when disabled
    if cache and not await cache.verify():
        cache = None
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from auth.errors import CacheError
from auth.models import CachedSession, CachedUser
from core.config import CacheConfig

logger = logging.getLogger("restauth.cache")

_SESSION_PREFIX = "auth:session:"
_USER_PREFIX = "auth:user:"


def clamp_ttl(ttl: int, expires_at: datetime | None) -> int:
    """Cap a cache TTL so a session entry never outlives the session itself.

    Returns 0 (meaning "do not cache") once the session has already expired.
    """
    if expires_at is None:
        return ttl
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = int((expires_at - datetime.now(timezone.utc)).total_seconds())
    return max(0, min(ttl, remaining))


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    if not host:
        return address, 6379
    return host, int(port)


class RedisAuthCache:
    """AuthCache implementation over redis.asyncio."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @classmethod
    def from_config(cls, config: CacheConfig, *, socket_timeout: float = 2.0) -> RedisAuthCache:
        host, port = _split_address(config.address)
        client = aioredis.Redis(
            host=host,
            port=port,
            password=config.password or None,
            db=config.db,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def verify(self) -> bool:
        """Ping once. False means the caller should run without a cache."""
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("Redis ping failed (%s) -- continuing without cache", exc)
            return False

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> CachedSession | None:
        data = await self._get_json(_SESSION_PREFIX + session_id)
        if data is None:
            return None
        try:
            return CachedSession(
                user_id=data["user_id"],
                is_active=bool(data["is_active"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (KeyError, TypeError, ValueError):
            await self._discard(_SESSION_PREFIX + session_id)
            return None

    async def set_session(self, session_id: str, session: CachedSession, ttl: int) -> None:
        payload = {
            "user_id": session.user_id,
            "is_active": session.is_active,
            "expires_at": session.expires_at.isoformat(),
        }
        await self._set_json(_SESSION_PREFIX + session_id, payload, ttl)

    async def del_session(self, session_id: str) -> None:
        await self._delete(_SESSION_PREFIX + session_id)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> CachedUser | None:
        data = await self._get_json(_USER_PREFIX + user_id)
        if data is None:
            return None
        try:
            return CachedUser(
                email=data["email"],
                role=data["role"],
                is_active=bool(data["is_active"]),
                is_blocked=bool(data["is_blocked"]),
            )
        except (KeyError, TypeError):
            await self._discard(_USER_PREFIX + user_id)
            return None

    async def set_user(self, user_id: str, user: CachedUser, ttl: int) -> None:
        payload = {
            "email": user.email,
            "role": user.role,
            "is_active": user.is_active,
            "is_blocked": user.is_blocked,
        }
        await self._set_json(_USER_PREFIX + user_id, payload, ttl)

    async def del_user(self, user_id: str) -> None:
        await self._delete(_USER_PREFIX + user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_json(self, key: str) -> dict | None:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            raise CacheError(f"get {key}: {exc}") from exc
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            await self._discard(key)
            return None
        if not isinstance(data, dict):
            await self._discard(key)
            return None
        return data

    async def _set_json(self, key: str, payload: dict, ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            await self.client.set(key, json.dumps(payload), ex=ttl)
        except RedisError as exc:
            raise CacheError(f"set {key}: {exc}") from exc

    async def _delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise CacheError(f"delete {key}: {exc}") from exc

    async def _discard(self, key: str) -> None:
        logger.warning("Discarding corrupt cache entry %s", key)
        try:
            await self.client.delete(key)
        except RedisError as exc:
            logger.warning("Could not delete corrupt cache entry %s: %s", key, exc)


def build_auth_cache(config: CacheConfig) -> RedisAuthCache | None:
    """Return a RedisAuthCache, or None when caching is disabled."""
    if not config.enabled:
        return None
    return RedisAuthCache.from_config(config)
