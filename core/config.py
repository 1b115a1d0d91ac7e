"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tokenward happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. token_ttl -> TOKEN_TTL). Type coercion and validation are built in.

  Immutable domain policy: Settings is the process boundary only. api/main.py
      turns it into a frozen PrincipalPolicy + TokenLookup (auth/models.py) and
      hands those to the service at construction. The auth/ layer never reads
      Settings, so tests can build any policy without touching the environment.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       access_token cookie; a short key makes cookie forgery cheaper.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenward.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokenward.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true is still required for
    the secret key to be auto-generated).
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
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    access_token_id_length: int = 64
    token_ttl: int = 1209600  # 2 weeks
    max_token_ttl: int = 31556926  # 1 year
    allow_eternal_tokens: bool = False
    reset_password_token_ttl: int = 900

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    salt_work_factor: int = 10
    realm_required: bool = False
    realm_delimiter: Optional[str] = None
    case_sensitive_email: bool = True
    email_verification_required: bool = False

    # ------------------------------------------------------------------
    # Token lookup on inbound requests
    # ------------------------------------------------------------------

    token_params: list[str] = []
    token_headers: list[str] = []
    token_cookies: list[str] = []
    search_default_token_keys: bool = True
    bearer_token_base64_encoded: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Signed cookies will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Signed cookies will not persist across restarts."
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

    @model_validator(mode="after")
    def validate_token_settings(self) -> "Settings":
        """Reject token and hashing parameters that would break the auth invariants.

        A token id shorter than 16 chars is guessable; TOKEN_TTL=0 would mint
        tokens that fail validation as malformed; bcrypt only accepts a cost
        factor between 4 and 31.
        """
        if self.access_token_id_length < 16:
            raise ValueError("ACCESS_TOKEN_ID_LENGTH must be at least 16.")
        if self.token_ttl == 0 or self.token_ttl < -1:
            raise ValueError("TOKEN_TTL must be positive, or -1 for eternal tokens.")
        if self.max_token_ttl <= 0:
            raise ValueError("MAX_TOKEN_TTL must be positive.")
        if not 4 <= self.salt_work_factor <= 31:
            raise ValueError("SALT_WORK_FACTOR must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
