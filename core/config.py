"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Immutable runtime config: Settings is the mutable, env-facing layer. The
      auth codec, service and middleware never read Settings themselves; they
      receive the frozen AuthConfig / CacheConfig built by auth_config() and
      cache_config() at construction time. Nothing holds the signing secret
      at module level.

  @model_validator(mode="after"): DEBUG-conditional JWT_SECRET policy. Dev
      mode generates a key with a warning, production refuses to start
      without one.

Security notes:
  JWT_SECRET shorter than 32 chars is rejected outright. HS256 signing relies
  on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or cache/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("restauth.config")


@dataclass(frozen=True)
class AuthConfig:
    """Immutable auth configuration handed to the token codec and service."""

    jwt_secret: str
    jwt_issuer: str
    jwt_audience: tuple[str, ...]
    access_token_lifetime: int
    refresh_token_lifetime: int
    stay_signed_in_lifetime: int
    password_reset_otp_lifetime: int
    bcrypt_rounds: int = 12
    secure_cookies: bool = False

    @property
    def primary_audience(self) -> str:
        return self.jwt_audience[0]


@dataclass(frozen=True)
class CacheConfig:
    """Immutable Redis cache configuration. enabled=False means no cache at all."""

    enabled: bool
    address: str = "localhost:6379"
    password: str = ""
    db: int = 0
    ttl: int = 3600


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true supplies the secret).
    Durations are plain integer seconds.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    env: str = "development"
    debug: bool = False
    database_url: str = "sqlite:///restauth.db"
    cors_origins: str = "http://localhost,http://localhost:3000,http://127.0.0.1"
    allowed_hosts: str = "*"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_issuer: str = "rest-api-auth"
    # Comma-separated. Tokens are issued for the first entry; any entry is
    # accepted on validation so an audience can be rotated without downtime.
    jwt_audience: str = "rest-api-auth"

    access_token_lifetime_seconds: int = 15 * 60
    refresh_token_lifetime_seconds: int = 168 * 3600  # 7 days
    stay_signed_in_lifetime_seconds: int = 720 * 3600  # 30 days
    password_reset_otp_lifetime_seconds: int = 15 * 60

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Cache (optional)
    # ------------------------------------------------------------------

    enable_cache: bool = False
    redis_address: str = "localhost:6379"
    redis_password: str = ""
    redis_db: int = 0
    redis_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        # bcrypt itself accepts 4..31
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the JWT_SECRET policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            JWT_SECRET is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        if not self.audience_list:
            raise ValueError("JWT_AUDIENCE must name at least one audience.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    @property
    def audience_list(self) -> list[str]:
        return [a.strip() for a in self.jwt_audience.split(",") if a.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    def auth_config(self) -> AuthConfig:
        """Build the frozen AuthConfig consumed by auth/."""
        return AuthConfig(
            jwt_secret=self.jwt_secret,
            jwt_issuer=self.jwt_issuer,
            jwt_audience=tuple(self.audience_list),
            access_token_lifetime=self.access_token_lifetime_seconds,
            refresh_token_lifetime=self.refresh_token_lifetime_seconds,
            stay_signed_in_lifetime=self.stay_signed_in_lifetime_seconds,
            password_reset_otp_lifetime=self.password_reset_otp_lifetime_seconds,
            bcrypt_rounds=self.bcrypt_rounds,
            secure_cookies=self.is_production,
        )

    def cache_config(self) -> CacheConfig:
        """Build the frozen CacheConfig consumed by cache/."""
        return CacheConfig(
            enabled=self.enable_cache,
            address=self.redis_address,
            password=self.redis_password,
            db=self.redis_db,
            ttl=self.redis_ttl_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
