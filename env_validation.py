"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": "signal.db",
        "LLM_URL": "https://api.openai.com/v1/chat/completions",
        "MODEL_ID": "gpt-4o-mini",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "LLM_API_KEY": "Bearer token for the completions endpoint",
        "LLM_TIMEOUT": "Timeout in seconds for completion requests",
    }

    url_vars = {"LLM_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in ("LLM_TIMEOUT", "ADMIN_LOG_LIMIT", "ADMIN_COURSE_LIMIT"):
        value = os.getenv(var)
        if value is None:
            continue
        try:
            if float(value) <= 0:
                raise ValueError(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be a positive number, got: {value}")

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
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(float(value))
    except ValueError:
        logger.warning("Invalid integer for %s: %r; using %d", name, value, default)
        return default
