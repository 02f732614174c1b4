"""Configuration utilities for environment-based settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "JWT_SECRET",
    "EMAIL_HOST",
    "EMAIL_USER",
    "EMAIL_PASS",
    "FRONTEND_URL",
)

DEFAULT_DATABASE_URL = "sqlite:///./staya.db"
PAYSTACK_BASE_URL = "https://api.paystack.co"


def load_env(dotenv_path: Optional[str] = None) -> None:
    """Load environment variables from a .env file without overriding existing values."""
    path = Path(dotenv_path or ".env")
    load_dotenv(dotenv_path=str(path), override=False)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name, "")
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class Settings:
    """Structured configuration values for the STAYA API."""

    environment: str
    port: int
    api_version: str
    database_url: str
    jwt_secret: str
    jwt_expire_minutes: int
    jwt_refresh_secret: str
    jwt_refresh_expire_minutes: int
    email_host: str
    email_port: int
    email_user: str
    email_pass: str
    email_from: str
    frontend_url: str
    paystack_secret_key: str = ""
    paystack_public_key: str = ""
    paystack_base_url: str = PAYSTACK_BASE_URL
    payment_http_timeout: float = 30.0
    log_level: str = "INFO"
    rate_limit_window_seconds: int = 900
    rate_limit_max_operations: int = 5

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def api_prefix(self) -> str:
        return f"/api/{self.api_version}"

    @property
    def has_paystack_credentials(self) -> bool:
        return bool(self.paystack_secret_key)


def missing_required_env_vars() -> List[str]:
    """Names of required variables that are unset or empty in the environment."""
    return [name for name in REQUIRED_ENV_VARS if not os.getenv(name)]


@lru_cache(maxsize=1)
def get_settings(dotenv_path: Optional[str] = None) -> Settings:
    """Return cached settings, ensuring environment variables are loaded once."""
    load_env(dotenv_path)
    jwt_secret = os.getenv("JWT_SECRET", "")
    return Settings(
        environment=os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development",
        port=_int_env("PORT", 5000),
        api_version=os.getenv("API_VERSION", "v1"),
        database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
        jwt_secret=jwt_secret,
        jwt_expire_minutes=_int_env("JWT_EXPIRE_MINUTES", 7 * 24 * 60),
        jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET") or jwt_secret,
        jwt_refresh_expire_minutes=_int_env("JWT_REFRESH_EXPIRE_MINUTES", 30 * 24 * 60),
        email_host=os.getenv("EMAIL_HOST", ""),
        email_port=_int_env("EMAIL_PORT", 587),
        email_user=os.getenv("EMAIL_USER", ""),
        email_pass=os.getenv("EMAIL_PASS", ""),
        email_from=os.getenv("EMAIL_FROM", "STAYA Bookings <noreply@staya.com>"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
        paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
        paystack_public_key=os.getenv("PAYSTACK_PUBLIC_KEY", ""),
        paystack_base_url=os.getenv("PAYSTACK_BASE_URL", PAYSTACK_BASE_URL),
        payment_http_timeout=_float_env("PAYMENT_HTTP_TIMEOUT", 30.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        rate_limit_window_seconds=_int_env("RATE_LIMIT_WINDOW_SECONDS", 900),
        rate_limit_max_operations=_int_env("RATE_LIMIT_MAX_OPERATIONS", 5),
    )


def validate_environment() -> None:
    """Exit the process when a required environment variable is missing."""
    missing = missing_required_env_vars()
    if missing:
        logger.error("Missing required environment variables: %s", ", ".join(missing))
        raise SystemExit(1)
