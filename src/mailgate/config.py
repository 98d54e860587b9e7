"""Centralized, typed configuration using pydantic-settings.

Provides a single ``Settings`` class backed by ``.env`` file and environment
variables, a cached ``get_settings()`` accessor, and a ``validate_settings()``
startup gate that enforces required settings in production mode.

IMPORTANT: This module has ZERO imports from the ``mailgate`` package to
prevent circular imports.  Only stdlib, pydantic, pydantic_settings, and
structlog are used.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path

import structlog
from pydantic import SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()

PACKAGED_AGENTS_PATH = Path(__file__).resolve().parent / "security" / "agents.yaml"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and ``.env`` file.

    ``SecretStr`` fields prevent accidental leaks in logs or error output.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- General ---------------------------------------------------------------
    production: bool = False
    admin_port: int = 8000
    service_domain: str = "inboxleap.com"
    service_email: str = ""

    # -- Storage ---------------------------------------------------------------
    agents_config_path: Path = PACKAGED_AGENTS_PATH
    audit_db_path: Path = Path("data/audit.db")
    config_db_path: Path | None = None

    # -- Security policies -----------------------------------------------------
    rate_limit_window_seconds: int = 3600
    trust_lookup_timeout_seconds: float = 2.0
    trust_store_url: str = ""

    # -- Secrets ---------------------------------------------------------------
    admin_token: SecretStr = SecretStr("")

    # -- Observability ---------------------------------------------------------
    sentry_dsn: str = ""

    @field_validator("rate_limit_window_seconds")
    @classmethod
    def window_must_be_positive(cls, v: int) -> int:
        """Ensure the rate-limit window is at least one second."""
        if v < 1:
            raise ValueError("rate_limit_window_seconds must be at least 1")
        return v

    @field_validator("trust_lookup_timeout_seconds")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        """Ensure the trust lookup bound is positive."""
        if v <= 0:
            raise ValueError("trust_lookup_timeout_seconds must be positive")
        return v

    @property
    def resolved_service_email(self) -> str:
        """Return ``service_email``, defaulting to ``agent@<service_domain>``."""
        return self.service_email or f"agent@{self.service_domain}"


@lru_cache
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance.

    The ``@lru_cache`` decorator ensures environment variables are parsed
    exactly once.  Call ``get_settings.cache_clear()`` in tests to reset.

    Returns:
        The application ``Settings``.
    """
    try:
        return Settings()
    except ValidationError as exc:
        # Log only the structured errors list -- never the full exception
        # which may contain raw SecretStr values.
        logger.error("settings_validation_failed", errors=exc.errors())
        sys.exit(1)


def validate_settings(settings: Settings) -> None:
    """Enforce required settings at startup.

    In **production** mode (``settings.production is True``), the application
    exits with a clear error block if anything required is missing.

    In **development** mode, each problem is logged as a warning but the
    application continues to start.

    Args:
        settings: The loaded application settings.
    """
    errors: list[str] = []

    if not settings.agents_config_path.exists():
        errors.append(f"Agents config file not found: {settings.agents_config_path}")

    if not settings.admin_token.get_secret_value():
        errors.append("ADMIN_TOKEN is empty or not set")

    if not settings.service_domain.strip():
        errors.append("SERVICE_DOMAIN is empty or not set")

    if not errors:
        logger.info("settings_validation_passed")
        return

    if settings.production:
        for err in errors:
            logger.error("setting_missing", detail=err)
        print("\n=== STARTUP FAILED ===", file=sys.stderr)
        print("Missing required settings for production mode:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        print("======================\n", file=sys.stderr)
        sys.exit(1)
    else:
        for err in errors:
            logger.warning("setting_missing_dev", detail=err)
