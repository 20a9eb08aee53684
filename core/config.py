"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance in the constructor. The components in
auth/ never call get_settings() themselves; api/main.py and main.py build the
Settings once and hand it to each component.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Enforces the signing secret policy from core.secret_policy.

Security notes:
  [M6] In strict environments (production, staging) a weak, short, or
       placeholder SECRET_KEY is a hard startup failure.

  [M7] A missing SECRET_KEY in a strict environment refuses to start. In any
       other environment a random key is generated with a warning; tokens will
       not survive a restart.

  [M8] A missing CSRF_SECRET falls back to a key derived from SECRET_KEY.
       Strict environments log a warning so operators set a dedicated one.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import hashlib
import hmac
import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.secret_policy import GENERATION_HINT, is_strict, validate_secret

logger = logging.getLogger("authcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'authcore.db'}"


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

    environment: str = "development"
    app_name: str = "authcore"
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    token_ttl_seconds: int = 7 * 24 * 60 * 60
    secure_cookies: bool = False
    store_timeout_seconds: float = 5.0
    # False = fail-closed: an unreachable revocation store rejects the token.
    revocation_fail_open: bool = False
    # 0 disables the in-process watermark cache (read-your-writes).
    revocation_cache_seconds: int = 0

    # ------------------------------------------------------------------
    # Account lockout
    # ------------------------------------------------------------------

    lockout_enabled: bool = True
    lockout_threshold: int = 5
    lockout_duration_minutes: int = 15

    # ------------------------------------------------------------------
    # CSRF
    # ------------------------------------------------------------------

    csrf_secret: str = ""
    csrf_token_size: int = 64
    csrf_ignored_methods: list[str] = ["GET", "HEAD", "OPTIONS"]
    csrf_header_name: str = "X-CSRF-Token"

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 8

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"
    # Empty string disables the admin endpoints entirely.
    admin_api_key: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("token_ttl_seconds", "lockout_threshold", "lockout_duration_minutes", "csrf_token_size")
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("csrf_ignored_methods")
    @classmethod
    def normalize_methods(cls, value: list[str]) -> list[str]:
        return [m.strip().upper() for m in value if m.strip()]

    @property
    def is_production(self) -> bool:
        return is_strict(self.environment)

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY / CSRF_SECRET policy [M6][M7][M8].

        Development: a missing SECRET_KEY is generated with a warning and weak
            keys only produce warnings.

        Strict (production, staging): missing or weak keys raise ValueError so
            the process refuses to start. Secure cookies are forced on.
        """
        if not self.secret_key:
            if self.is_production:
                raise ValueError(
                    f"SECRET_KEY is required when ENVIRONMENT={self.environment}. "
                    "Set SECRET_KEY in your environment or .env file. " + GENERATION_HINT
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")

        report = validate_secret(self.secret_key, "SECRET_KEY", self.environment)
        if not report.valid:
            raise ValueError("; ".join(report.errors) + ". " + GENERATION_HINT)
        for warning in report.warnings:
            logger.warning(warning)

        if not self.csrf_secret:
            self.csrf_secret = hmac.new(self.secret_key.encode(), b"authcore.csrf", hashlib.sha256).hexdigest()
            if self.is_production:
                logger.warning("CSRF_SECRET is not set; deriving it from SECRET_KEY. Set a dedicated CSRF_SECRET.")
        else:
            csrf_report = validate_secret(self.csrf_secret, "CSRF_SECRET", "development")
            for problem in csrf_report.errors + csrf_report.warnings:
                if self.is_production:
                    logger.warning(problem)

        if self.is_production:
            self.secure_cookies = True
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to the component under test.
    """
    return Settings()
