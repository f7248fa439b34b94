"""
core/config.py -- Centralized client configuration via pydantic-settings.

All environment variable reads for the portal auth client happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. api_base_url -> API_BASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Rejects settings the verification flow and
      dispatcher cannot work with (non-http origin, zero-length codes).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("jobportal.config")

_DEFAULT_SESSION_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'portal_session.db'}"


class Settings(BaseSettings):
    """Client settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    api_base_url: str = "http://localhost:5000"
    request_timeout: float = 10.0
    # Known backend, 3 hops is generous.
    max_redirects: int = 3

    # ------------------------------------------------------------------
    # Durable session store
    # ------------------------------------------------------------------

    session_db_url: str = _DEFAULT_SESSION_DB_URL
    # One scope == one logical browser tab. Keys never leak across scopes.
    session_scope: str = "default"

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    otp_length: int = 6
    resend_cooldown_seconds: int = 60

    # ------------------------------------------------------------------
    # Auth policy
    # ------------------------------------------------------------------

    # A 401 under the "throw" policy also drops the held credential.
    clear_credential_on_unauthorized: bool = True

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_client_settings(self) -> "Settings":
        """Reject values that would make every request or verification attempt fail."""
        if not self.api_base_url.startswith(("http://", "https://")):
            raise ValueError("API_BASE_URL must be an http:// or https:// origin.")
        self.api_base_url = self.api_base_url.rstrip("/")
        if self.otp_length < 1:
            raise ValueError("OTP_LENGTH must be at least 1.")
        if self.resend_cooldown_seconds < 0:
            raise ValueError("RESEND_COOLDOWN_SECONDS must not be negative.")
        if not self.session_scope:
            logger.warning("Empty SESSION_SCOPE; falling back to 'default'")
            self.session_scope = "default"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
