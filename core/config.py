"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the credential service happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the recovery-code HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key per process would silently log every
       user out on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("toolcraft.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'toolcraft_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `access_token_ttl` reads from ACCESS_TOKEN_TTL.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions (seconds)
    # ------------------------------------------------------------------

    access_token_ttl: int = 300
    # Roughly six months. Each successful rotation slides the expiry forward.
    refresh_token_ttl: int = 15778463
    pending_token_ttl: int = 300

    # ------------------------------------------------------------------
    # Password login and registration
    # ------------------------------------------------------------------

    enable_password_login: bool = True
    # Self-service account creation via POST /api/v1/user/create.
    enable_user_registration: bool = True

    # ------------------------------------------------------------------
    # Passkeys (WebAuthn relying party)
    # ------------------------------------------------------------------

    webauthn_rp_name: str = "Toolcraft"
    webauthn_rp_id: str = "localhost"
    webauthn_rp_origin: str = "http://localhost:8080"
    webauthn_challenge_ttl: int = 300

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    # Number of 30-second steps tolerated on either side of "now".
    totp_valid_window: int = 1
    recovery_code_count: int = 10

    # ------------------------------------------------------------------
    # SSO providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    sso_github_client_id: str = ""
    sso_github_client_secret: str = ""
    sso_github_redirect_url: str = ""
    sso_google_client_id: str = ""
    sso_google_client_secret: str = ""
    sso_google_redirect_url: str = ""
    # Deadline for every outbound identity-provider call.
    sso_request_timeout: float = 10.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:8080", "http://127.0.0.1:8080"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

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


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. Services accept an explicit Settings instance so tests can pass
    their own without clearing this cache.
    """
    return Settings()
