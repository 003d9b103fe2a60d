"""
core/config.py -- SponsorLink settings, read once from the environment.

Every environment variable the service understands is a field on Settings.
Nothing else calls os.getenv(); modules ask get_settings() instead, which
builds Settings on first use and hands back the same instance afterwards
(lru_cache).

pydantic-settings maps field names to env vars case-insensitively
(session_ttl_seconds <- SESSION_TTL_SECONDS) and also reads a local .env.
Cross-field rules live in one model_validator so a bad combination stops the
process at startup instead of surfacing on the first login.

Security notes:
  [M6] SECRET_KEY signs both the session JWT and the client session cookie;
       anything under 32 characters is refused.

  [M7] Without DEBUG=true a missing SECRET_KEY is fatal. With DEBUG=true a
       throwaway key is generated, so sessions die with the process.

Layer rule: core/ is the kernel. This module may not import from api/, web/
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sponsorlink.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sponsorlink_auth.db'}"


class Settings(BaseSettings):
    """Environment-driven configuration. Every field has a dev-friendly default."""

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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions and credentials
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Apple posts its callback cross-site (form_post); browsers only send the
    # client session cookie on that POST with SameSite=None + Secure.
    client_session_same_site: Literal["lax", "strict", "none"] = "lax"
    session_ttl_seconds: int = 3600
    min_password_length: int = 8

    # ------------------------------------------------------------------
    # Navigation targets
    # ------------------------------------------------------------------

    default_redirect_path: str = "/dashboard"
    login_path: str = "/login"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    # Apple expects a pre-signed client secret JWT here.
    apple_client_id: str = ""
    apple_client_secret: str = ""
    # Applies to the code exchange and profile fetch only.
    oauth_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting and HTTP hardening
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def check_startup_rules(self) -> "Settings":
        """Refuse unsafe combinations before the app starts serving [M6][M7]."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError("SECRET_KEY must be set unless DEBUG=true.")
            self.secret_key = secrets.token_hex(32)
            logger.warning("DEBUG: generated a temporary SECRET_KEY; sessions end when the process exits.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.client_session_same_site == "none" and not self.secure_cookies:
            raise ValueError("CLIENT_SESSION_SAME_SITE=none requires SECURE_COOKIES=true.")
        if self.min_password_length < 8:
            raise ValueError("MIN_PASSWORD_LENGTH cannot be lowered below 8.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings. Tests that change env vars call get_settings.cache_clear()."""
    return Settings()
