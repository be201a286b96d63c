"""Environment variable validation and management."""

import os
import logging
from typing import Dict

from errors import ConfigurationMissing

logger = logging.getLogger(__name__)

CACHE_BACKENDS = {"memory", "redis", "none"}


def validate_environment() -> None:
    """Apply defaults and validate the service configuration.

    Raises ConfigurationMissing when a setting is present but unusable.
    """
    defaults = {
        "DB_PATH": "data.db",
        "PHOTOS_DIR": "photos",
        "STATS_CACHE_BACKEND": "memory",
        "STATS_CACHE_TTL": "300",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if os.getenv(var) is None:
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    backend = os.getenv("STATS_CACHE_BACKEND", "memory").strip().lower()
    if backend not in CACHE_BACKENDS:
        raise ConfigurationMissing(
            f"STATS_CACHE_BACKEND must be one of {', '.join(sorted(CACHE_BACKENDS))}: {backend}"
        )
    if backend == "redis":
        redis_url = os.getenv("REDIS_URL", "")
        if not redis_url:
            raise ConfigurationMissing("REDIS_URL is required when STATS_CACHE_BACKEND=redis")
        if not redis_url.startswith(("redis://", "rediss://")):
            raise ConfigurationMissing(f"Invalid URL format for REDIS_URL: {redis_url}")

    if get_env_int("STATS_CACHE_TTL", 300) <= 0:
        raise ConfigurationMissing("STATS_CACHE_TTL must be a positive number of seconds")

    feedback_url = os.getenv("FEEDBACK_LLM_URL")
    if feedback_url and not feedback_url.startswith(("http://", "https://")):
        raise ConfigurationMissing(f"Invalid URL format for FEEDBACK_LLM_URL: {feedback_url}")

    optional_vars: Dict[str, str] = {
        "ADMIN_TOKEN": "Shared secret for deletes and goal changes",
        "FEEDBACK_LLM_URL": "Chat completions endpoint for homework feedback",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


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
