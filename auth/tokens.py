"""
auth/tokens.py -- Password hashing, one-time secrets, and JWT issue/verify.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry user_id, email, role and
       session_id; refresh tokens carry only user_id and session_id so the
       refresh path has to look the user up fresh. A "typ" claim separates
       the two so a refresh token can never be replayed as an access token.
       Verification raises ExpiredToken or InvalidToken -- callers treat
       them differently (expired -> refresh, invalid -> re-login).

  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes
       from AuthConfig.bcrypt_rounds. _dummy_hash() enables timing
       equalization at login so response time does not reveal whether an
       email exists.

  Reset tokens / refresh tokens at rest: SHA-256 hex digest. Both are long
       random values, so a fast deterministic hash is enough and enables an
       indexed lookup by digest.

  Secret key: never read at module level. TokenCodec receives the frozen
       AuthConfig at construction time.

Layer rule: no imports from api/ or cache/. core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import ExpiredToken, InvalidToken
from auth.models import AccessTokenClaims, RefreshTokenClaims
from core.config import AuthConfig

logger = logging.getLogger("restauth.auth")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"

DEFAULT_BCRYPT_ROUNDS = 12

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt 5.x raises ValueError for input over 72 bytes (4.x silently
    truncated). The API models reject such passwords by UTF-8 byte length
    before they reach this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed or empty hash compares False instead of raising.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    # Same cost as real hashes so a miss spends the same bcrypt time as a hit.
    return hash_password("restauth_timing_dummy", rounds)


def equalize_timing(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
    """Burn one bcrypt comparison against a dummy hash. Result is discarded."""
    verify_password(plain, _dummy_hash(rounds))


# ---------------------------------------------------------------------------
# One-time secrets
# ---------------------------------------------------------------------------


def generate_otp() -> str:
    """Return a 6-digit OTP, uniform over 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


def generate_secure_token() -> str:
    """Return 32 random bytes as 64 hex characters (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_token(raw: str) -> str:
    """Return the SHA-256 hex digest used to store refresh and reset tokens."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenCodec:
    """Signs and verifies access and refresh tokens for one AuthConfig.

    Usage:
        codec = TokenCodec(settings.auth_config())
        token = codec.generate_access_token(user_id, email, role, session_id)
        claims = codec.validate_access_token(token)
    """

    def __init__(self, config: AuthConfig) -> None:
        self._config = config

    @property
    def access_token_lifetime(self) -> int:
        return self._config.access_token_lifetime

    def generate_access_token(self, user_id: str, email: str, role: str, session_id: str) -> str:
        """Sign a short-lived access token (AuthConfig.access_token_lifetime seconds)."""
        return self._encode(
            {
                "user_id": user_id,
                "email": email,
                "role": role,
                "session_id": session_id,
            },
            _ACCESS,
            self._config.access_token_lifetime,
        )

    def generate_refresh_token(self, user_id: str, session_id: str, lifetime: int | float | timedelta) -> str:
        """Sign a refresh token with a caller-supplied lifetime.

        Login passes the standard or stay-signed-in lifetime; refresh passes
        the session's remaining time so rotation never extends a session.
        """
        if isinstance(lifetime, timedelta):
            lifetime = lifetime.total_seconds()
        return self._encode({"user_id": user_id, "session_id": session_id}, _REFRESH, int(lifetime))

    def validate_access_token(self, token: str) -> AccessTokenClaims:
        payload = self._decode(token, _ACCESS)
        return AccessTokenClaims(
            user_id=_str_claim(payload, "user_id"),
            email=_str_claim(payload, "email"),
            role=_str_claim(payload, "role"),
            session_id=_str_claim(payload, "session_id"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            issuer=payload["iss"],
            audience=payload["aud"],
        )

    def validate_refresh_token(self, token: str) -> RefreshTokenClaims:
        payload = self._decode(token, _REFRESH)
        return RefreshTokenClaims(
            user_id=_str_claim(payload, "user_id"),
            session_id=_str_claim(payload, "session_id"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            issuer=payload["iss"],
            audience=payload["aud"],
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _encode(self, claims: dict, token_type: str, lifetime: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "typ": token_type,
            # Unique per token: two mints in the same second must still differ.
            "jti": secrets.token_hex(8),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
            "iss": self._config.jwt_issuer,
            "aud": self._config.primary_audience,
        }
        return jwt.encode(payload, self._config.jwt_secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, token_type: str) -> dict:
        """Verify signature, algorithm, expiry, issuer, audience and type.

        Expiry is classified separately from every other failure.
        """
        try:
            payload = jwt.decode(
                token,
                self._config.jwt_secret,
                algorithms=[_ALGORITHM],
                issuer=self._config.jwt_issuer,
                # Audience is checked below against the whole configured list.
                options={"verify_aud": False, "require_exp": True, "require_iat": True},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredToken() from exc
        except JWTError as exc:
            raise InvalidToken(str(exc)) from exc

        if payload.get("aud") not in self._config.jwt_audience:
            raise InvalidToken("audience not accepted")
        if payload.get("typ") != token_type:
            raise InvalidToken(f"expected {token_type} token")
        if not payload.get("user_id") or not payload.get("session_id"):
            raise InvalidToken("missing subject claims")
        return payload


def _str_claim(payload: dict, key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""
