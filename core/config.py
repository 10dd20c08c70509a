"""
core/config.py -- Settings for the identity service, read once from the environment.

Nothing outside this module reads os.environ; callers go through get_settings().

How it is put together:
  get_settings() is wrapped in lru_cache, so the first call builds Settings and
      every later call gets that same object back.

  Settings extends pydantic-settings BaseSettings. Each field is filled from the
      env var of the same name upper-cased (secret_key <- SECRET_KEY) or from
      .env, with pydantic doing the type coercion.

  Two after-validators check cross-field rules once every field is resolved:
      the signing key policy, then token lifetimes and the rate-limit horizon.

Signing key rules:
  [M6] Keys under 32 characters are refused. Every token's integrity rests on
       the key, so a short one weakens all of them.

  [M7] Outside DEBUG mode a missing SECRET_KEY stops startup. A key generated
       per process would orphan every token on restart and disagree between
       instances.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identity.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'identity.db'}"


class Settings(BaseSettings):
    """Every tunable of the identity service.

    Each field carries a default, so tests can build Settings() with no .env
    present; only SECRET_KEY has to be supplied outside DEBUG mode.
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
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Backing store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound on any wait for the store (SQLite busy timeout / pool timeout).
    store_timeout_seconds: float = 3.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "reride-app"
    jwt_audience: str = "reride-users"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 30 * 24 * 3600
    # Clients should refresh once an access token enters its last N seconds.
    refresh_buffer_seconds: int = 120
    # Absolute cap on a chain of rotated refresh tokens, counted from login.
    max_session_seconds: int = 90 * 24 * 3600
    strict_refresh_rotation: bool = True

    # ------------------------------------------------------------------
    # Rate limiting (fixed windows, milliseconds)
    # ------------------------------------------------------------------

    register_max_attempts: int = 5
    register_window_ms: int = 60_000
    login_max_attempts: int = 5
    login_window_ms: int = 15 * 60 * 1000
    oauth_max_attempts: int = 10
    oauth_window_ms: int = 60_000
    # Physical eviction horizon for rate-limit rows, independent of windows.
    rate_limit_ttl_seconds: int = 3600
    purge_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_min_length: int = 8
    # Characters; UTF-8 input is separately capped at 72 bytes, bcrypt's input ceiling.
    password_max_length: int = 72
    password_require_mixed: bool = True
    # Accept untagged plaintext hashes from the pre-bcrypt era, migrating on login.
    legacy_plaintext_passwords: bool = False

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    allowed_roles: list[str] = ["customer", "seller"]
    default_role: str = "customer"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # External sign-in providers (a provider stays off until both credentials are set)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Any OIDC issuer with a discovery document
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Apply the signing key rules [M6] [M7].

        DEBUG=true with no key: generate one and warn; tokens die with the process.
        Otherwise a missing key is fatal. Short keys are fatal either way.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "DEBUG is on and SECRET_KEY is unset; using a random key. "
                    "Tokens will not verify across restarts or instances."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is not set. Provide it via the environment or .env, "
                    "or set DEBUG=true to run with a throwaway key."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Reject token and rate-limit settings that break the lifecycle invariants.

        Access tokens must expire strictly before refresh tokens, and the refresh
        buffer must fit inside an access token's life. The rate-limit eviction
        horizon must outlast every window, or a live window could be physically
        deleted mid-flight and reset its counter early.
        """
        if self.access_token_expire_seconds >= self.refresh_token_expire_seconds:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be less than REFRESH_TOKEN_EXPIRE_SECONDS.")
        if not 0 <= self.refresh_buffer_seconds < self.access_token_expire_seconds:
            raise ValueError("REFRESH_BUFFER_SECONDS must be between 0 and ACCESS_TOKEN_EXPIRE_SECONDS.")
        longest_window_ms = max(self.register_window_ms, self.login_window_ms, self.oauth_window_ms)
        if self.rate_limit_ttl_seconds * 1000 < longest_window_ms:
            raise ValueError("RATE_LIMIT_TTL_SECONDS must be at least as long as every rate-limit window.")
        if not 0 < self.password_min_length <= self.password_max_length <= 72:
            raise ValueError("PASSWORD_MAX_LENGTH must be between PASSWORD_MIN_LENGTH and 72.")
        if self.default_role not in self.allowed_roles:
            raise ValueError("DEFAULT_ROLE must be one of ALLOWED_ROLES.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, building it on first use.

    Tests that change the environment must call get_settings.cache_clear().
    """
    return Settings()
