"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccountCore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode (DEBUG=true) generates missing secrets with a
      warning; production mode refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.
  [M7] In production mode a missing secret or encryption key is a hard
       startup failure.
  [M8] The access and refresh signing secrets must differ, otherwise a
       refresh token would verify as an access token signature.
  [M9] Production mode requires SMTP_HOST; links carrying live tokens are
       only written to the log in dev mode.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accountcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'accountcore.db'}"


class ConfigurationError(ValueError):
    """Deployment misconfiguration. Fatal at startup, never retried.

    Subclasses ValueError so pydantic validators can raise it directly and
    have it reported as a validation failure.
    """


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    # 7 days. Set ACCESS_TOKEN_EXPIRE_SECONDS=900 for the hardened profile.
    access_token_expire_seconds: int = 7 * 24 * 3600
    refresh_token_expire_seconds: int = 30 * 24 * 3600

    # ------------------------------------------------------------------
    # Field encryption
    # ------------------------------------------------------------------

    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_min_length: int = 8
    password_max_length: int = 128
    password_require_special: bool = True

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_max_attempts: int = 5
    lockout_seconds: int = 2 * 3600

    # ------------------------------------------------------------------
    # Single-use tokens
    # ------------------------------------------------------------------

    email_verification_ttl_seconds: int = 24 * 3600
    password_reset_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Outbound email (empty smtp_host logs links, DEBUG=true only)
    # ------------------------------------------------------------------

    client_url: str = "http://localhost:3000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "AccountCore <noreply@localhost>"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    auth_rate_limit: str = "5/15minute"
    cors_allow_origins: str = "http://localhost:3000"

    @property
    def cors_allow_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate each missing secret with a
            warning. Tokens and encrypted fields will not survive a restart.

        Production mode: refuse to start if any secret is missing.
        """
        for name in ("access_token_secret", "refresh_token_secret", "encryption_key"):
            if getattr(self, name):
                continue
            if not self.debug:
                raise ConfigurationError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Values will not persist across restarts.", name.upper())

        for name in ("access_token_secret", "refresh_token_secret"):
            if len(getattr(self, name)) < 32:
                raise ConfigurationError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ConfigurationError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        if not self.debug and not self.smtp_host:
            raise ConfigurationError(
                "SMTP_HOST is required in production mode. "
                "Without it verification and reset links would only be logged."
            )
        if self.password_min_length < 8:
            raise ConfigurationError("PASSWORD_MIN_LENGTH may not be lowered below 8.")
        if self.lockout_max_attempts < 1:
            raise ConfigurationError("LOCKOUT_MAX_ATTEMPTS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
