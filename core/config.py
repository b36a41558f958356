"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for hubgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_cookie_password -> SECRET_COOKIE_PASSWORD).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used to enforce the session key policy at startup.

Security notes:
  [K1] SECRET_COOKIE_PASSWORD shorter than 32 chars is rejected outright. The
       session cookie is encrypted with a key derived from it; a short
       password weakens that encryption.

  [K2] Outside development, a missing SECRET_COOKIE_PASSWORD is a hard startup
       failure. A random per-process key would silently log every user out on
       restart.

  [K3] The Secure cookie flag is forced on in every environment except
       development and test, whatever SECURE_COOKIES says.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("hubgate.config")

MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Only SECRET_COOKIE_PASSWORD lacks a usable default; every other field can
    be left unset in tests and local development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: Literal["development", "test", "production"] = "production"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator
    # below either generates a dev key or raises, so callers never see "".
    secret_cookie_password: str = ""
    session_cookie_name: str = "github-ui-session"
    session_max_age: Optional[int] = 30 * 24 * 3600
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Upstream (GitHub REST API)
    # ------------------------------------------------------------------

    github_api_url: str = "https://api.github.com"
    github_api_version: str = "2022-11-28"
    user_agent: str = "hubgate"
    upstream_timeout: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    flight_wait_timeout: float = Field(default=10.0, gt=0)
    refresh_workers: int = Field(default=4, ge=1)
    cache_lock_stripes: int = Field(default=64, ge=1)

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    cors_allow_origins: list[str] = ["*"]
    login_rate_limit: str = "10/minute"

    @property
    def is_development(self) -> bool:
        return self.environment in ("development", "test")

    @property
    def cookie_secure(self) -> bool:
        """Secure flag for the session cookie [K3]."""
        return self.secure_cookies or not self.is_development

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_cookie_password(self) -> "Settings":
        """Enforce the session key policy [K1] [K2].

        Development/test: a missing key is replaced with a random one and a
            warning is logged. Sessions will not survive a restart.

        Production: refuse to start without a key.

        All environments: reject keys shorter than 32 characters.
        """
        if not self.secret_cookie_password:
            if self.is_development:
                self.secret_cookie_password = secrets.token_hex(32)
                logger.warning(
                    "Using auto-generated SECRET_COOKIE_PASSWORD. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_COOKIE_PASSWORD is required outside development. "
                    "Set it in your environment or .env file."
                )
        if len(self.secret_cookie_password) < MIN_KEY_LENGTH:
            raise ValueError(f"SECRET_COOKIE_PASSWORD must be at least {MIN_KEY_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
