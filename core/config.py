"""
core/config.py -- TenantAuth settings (pydantic-settings), read once per process.

All environment variable reads happen here. No module should call
os.getenv() or os.environ.get() directly.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call. api/main.py calls it when the app is built and the lifespan hands
      the same instance to TokenService, MailSender, SessionCache and
      AuthService. Request handlers reach settings through those objects,
      never through a global.

  BaseSettings (pydantic-settings): every field maps to an upper-case env var
      (jwt_audience -> JWT_AUDIENCE) or a .env entry; values are coerced to
      the declared types.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing and
       the HMAC token digests both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  Settings are never serialized into a response. There is no diagnostic
  endpoint that echoes configuration.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantauth.config")


class Settings(BaseSettings):
    """Token lifetimes, signing key, store and cache URLs, SMTP and OAuth credentials.

    Every field has a default. An empty signing key is filled in (debug) or
    rejected (production) by the validator below.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///tenantauth.db"
    redis_url: str = "redis://localhost:6379/0"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "tenantauth"
    jwt_audience: str = "tenantauth-clients"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    password_reset_expire_minutes: int = 60
    session_cache_ttl_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Mail (SMTP). Empty smtp_host means "log instead of send".
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""
    mail_from_name: str = "TenantAuth"
    app_base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    # Shared secret for POST /auth/oauth/login (trusted upstream hand-off).
    # Empty disables the route.
    oauth_handoff_secret: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Call this once at process start and pass the instance down. In tests,
    construct Settings(...) directly or call get_settings.cache_clear().
    """
    return Settings()
