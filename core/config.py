"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Portcullis happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session tokens
       are HS256-signed with this key -- a short key weakens every session.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently sign every user out
       on each restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("portcullis.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'portcullis.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # Public base URL used to build links in outgoing email.
    app_url: str = "http://localhost:8000"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Deployments that manage schema externally set this to false; the store
    # then reports SCHEMA_MISSING failures instead of creating tables.
    auto_create_schema: bool = True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_max_age: int = 30 * 24 * 60 * 60  # 30 days
    session_update_age: int = 24 * 60 * 60  # re-sign at most once per day

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Post-signin settle period before reading authoritative identity state.
    # Capped at 200ms by SessionTokenBuilder.
    oauth_settle_ms: int = 100
    # True: mark OAuth emails verified before the session token is built.
    # False: schedule it as a background task and rely on settle + self-heal.
    auto_verify_inline: bool = True

    # ------------------------------------------------------------------
    # Email (Resend HTTP API)
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    email_from: str = "onboarding@resend.dev"
    email_max_attempts: int = 3
    email_retry_base_ms: int = 1000

    # ------------------------------------------------------------------
    # Circuit breakers
    # ------------------------------------------------------------------

    db_breaker_threshold: int = 5
    db_breaker_timeout: float = 60.0
    email_breaker_threshold: int = 3
    email_breaker_timeout: float = 30.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Empty means in-memory counters (single process only).
    redis_url: str = ""
    login_rate_limit: str = "10/minute"

    signup_rate_limit: int = 5
    signup_rate_window_ms: int = 60_000
    forgot_password_rate_limit: int = 3
    forgot_password_rate_window_ms: int = 60 * 60 * 1000
    reset_password_rate_limit: int = 5
    reset_password_rate_window_ms: int = 15 * 60 * 1000
    resend_verification_rate_limit: int = 3
    resend_verification_rate_window_ms: int = 60 * 60 * 1000
    magic_link_rate_limit: int = 5
    magic_link_rate_window_ms: int = 15 * 60 * 1000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def email_configured(self) -> bool:
        return bool(self.resend_api_key and self.email_from)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
