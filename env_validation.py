"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises ConfigurationError if validation fails.
    """
    # Every collaborator has a degraded mode (fallback questions, in-memory
    # state, text markers instead of images), so nothing is strictly required.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LLM_URL": "Chat-completions endpoint for question and hint generation",
        "MANYCHAT_API_TOKEN": "Bearer token for the chat-platform image upload API",
        "OCR_API_KEY": "API key for the OCR text-detection endpoint",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"LLM_URL", "OCR_URL", "MANYCHAT_API_BASE"}
    for var in sorted(url_vars):
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise ConfigurationError(f"Invalid URL format for {var}: {value}")

    for endpoint in get_env_list("MANYCHAT_IMAGE_ENDPOINTS"):
        if not (endpoint.startswith("http://") or endpoint.startswith("https://")):
            raise ConfigurationError(f"Invalid URL in MANYCHAT_IMAGE_ENDPOINTS: {endpoint}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def get_env_list(name: str) -> list[str]:
    """Split a comma-separated variable into trimmed, non-empty entries."""
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]
