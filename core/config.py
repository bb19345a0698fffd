"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Authgate happen here. No module should
call os.getenv() or os.environ.get() directly. The Settings object is built
once (get_settings) and handed to the services that need it; services keep a
reference and never re-read the environment at call time.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Immutable value object: model_config sets frozen=True, so the instance
      passed into TokenService, OAuthFlowCoordinator, Mailer and AuthService
      cannot be mutated by any of them.

  @model_validator(mode="before"): fills in development defaults (random
      secrets, random API id) before field validation. Because the model is
      frozen, defaults cannot be patched in after construction.

Security notes:
  [M6] Every signing secret shorter than 32 chars is rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing secret or API id
       is a hard startup failure.

  [M8] The four token secrets must be pairwise distinct. Leaking the
       confirmation secret must not allow forging refresh or access tokens.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
import uuid
from functools import lru_cache
from typing import Any

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_SECRET_FIELDS = ("access_secret", "confirmation_secret", "reset_secret", "refresh_secret")


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Validators enforce the
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `access_secret` reads from ACCESS_SECRET, `debug` reads from DEBUG.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Issuer claim for every token. Must be a UUID.
    api_id: str = ""
    backend_url: str = "http://localhost:5000"
    frontend_url: str = "http://localhost:3000"
    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///authgate.db"
    # Shared store for denylist, access codes and CSRF states. Empty string
    # means "use database_url".
    cache_url: str = ""

    # ------------------------------------------------------------------
    # Tokens -- one secret per purpose, lifetimes in seconds
    # ------------------------------------------------------------------

    access_secret: str = ""
    confirmation_secret: str = ""
    reset_secret: str = ""
    refresh_secret: str = ""

    access_expiration: int = 600
    confirmation_expiration: int = 86400
    reset_expiration: int = 1800
    refresh_expiration: int = 259200

    refresh_cookie_name: str = "refresh_token"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # OAuth providers (empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""

    # ------------------------------------------------------------------
    # Mail (empty host means "log instead of send")
    # ------------------------------------------------------------------

    email_host: str = ""
    email_port: int = 587
    email_user: str = ""
    email_password: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    sign_in_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="before")
    @classmethod
    def fill_development_defaults(cls, data: Any) -> Any:
        """Generate throwaway secrets and an API id in dev mode [M7].

        Dev mode (DEBUG=true): every missing secret gets a random value and a
            warning is logged. Tokens will not survive a restart.

        Production mode: values are left alone; validate_secrets() rejects
            anything missing.
        """
        if not isinstance(data, dict) or not _truthy(data.get("debug", False)):
            return data
        generated = []
        for name in _SECRET_FIELDS:
            if not data.get(name):
                data[name] = secrets.token_hex(32)
                generated.append(name)
        if not data.get("api_id"):
            data["api_id"] = str(uuid.uuid4())
        if generated:
            logger.warning(
                "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                ", ".join(generated),
            )
        return data

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy [M6][M7][M8]."""
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            if not value:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if len({getattr(self, name) for name in _SECRET_FIELDS}) != len(_SECRET_FIELDS):
            raise ValueError("Token secrets must be distinct from one another.")
        if not self.api_id:
            raise ValueError("API_ID is required in production mode.")
        try:
            uuid.UUID(self.api_id)
        except ValueError as exc:
            raise ValueError("API_ID must be a UUID.") from exc
        return self

    @property
    def shared_cache_url(self) -> str:
        return self.cache_url or self.database_url


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    The lifespan in api/main.py calls this once and injects the result into
    every service.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
