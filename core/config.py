"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the back office happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved. Implements the DEBUG-conditional signing key policy: dev mode
      generates keys with a warning, production refuses to start without them.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright. HMAC-SHA256
       and JWT signing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       REFRESH_SECRET_KEY is a hard startup failure.

The site_* / allow_registration / ... fields are only the seed values for the
app_settings row. Once the row exists, admins edit it through /api/settings and
the database is authoritative.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, audit/, or commerce/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("backoffice.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'backoffice.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the "not configured" sentinel, resolved by the validator.
    secret_key: str = ""
    refresh_secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Fallback access-token lifetime; the session_timeout app setting wins
    # once the settings row exists.
    access_token_expire_seconds: int = 3600
    refresh_token_expire_days: int = 30
    otp_expire_minutes: int = 10
    email_verification_expire_hours: int = 24

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    apple_client_id: str = ""
    apple_client_secret: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    rate_limit_storage_uri: str = "memory://"
    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Site settings seed values
    # ------------------------------------------------------------------

    site_name: str = "BackOffice App"
    site_description: str = "Secure SSR BackOffice Application"
    contact_email: str = "admin@example.com"
    contact_phone: str = ""
    maintenance_mode: bool = False
    allow_registration: bool = True
    require_email_verification: bool = True
    require_phone_verification: bool = False
    max_login_attempts: int = 5
    session_timeout: int = 60  # minutes

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate random keys with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        for field_name in ("secret_key", "refresh_secret_key"):
            value = getattr(self, field_name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, field_name, value)
                logger.warning(
                    "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                    field_name.upper(),
                )
            if len(value) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("REFRESH_SECRET_KEY must differ from SECRET_KEY.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
