"""Configuration loading from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Valid log levels
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation.
    """

    # Worker configuration
    workers: int = 2
    shutdown_timeout: float = 30.0  # seconds

    # Requeue timing
    token_poll_interval: float = 60.0  # seconds
    conflict_retry_delay: float = 5.0  # seconds

    # Per-key exponential backoff
    backoff_base: float = 0.005  # seconds
    backoff_max: float = 1000.0  # seconds

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    diagnostic_tags: str = ""

    # GitHub REST API (empty means https://api.github.com)
    github_api_url: str = ""


def _parse_positive_int(value: str, name: str, default: int) -> int:
    """Parse a string as a positive integer with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed positive integer, or the default if invalid.

    Logs a warning if the value is invalid.
    """
    try:
        parsed = int(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %d is not positive, using default %d",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _parse_positive_float(value: str, name: str, default: float) -> float:
    """Parse a string as a strictly positive float.

    Logs a warning and returns ``default`` if the value is invalid.
    """
    try:
        parsed = float(value)
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %s",
            name,
            value,
            default,
        )
        return default
    if parsed <= 0:
        logging.warning(
            "Invalid %s: %s is not positive, using default %s",
            name,
            parsed,
            default,
        )
        return default
    return parsed


def _parse_non_negative_float(value: str, name: str, default: float) -> float:
    """Parse a string as a non-negative float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed non-negative float, or the default if invalid.

    Logs a warning if the value is invalid.
    """
    try:
        parsed = float(value)
        if parsed < 0:
            logging.warning(
                "Invalid %s: %f is negative, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Args:
        value: The log level string to validate.
        default: The default value to use if invalid.

    Returns:
        The validated log level (uppercase), or the default if invalid.

    Logs a warning if the value is invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid OPERATOR_LOG_LEVEL: '%s' is not valid, using default '%s'. Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _parse_bool(value: str) -> bool:
    """Parse a string as a boolean.

    Args:
        value: The string value to parse.

    Returns:
        True if value is "true", "1", or "yes" (case-insensitive), False otherwise.
    """
    return value.lower() in ("true", "1", "yes")


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values.

    Values are validated and defaults are used for invalid inputs:
    - OPERATOR_WORKERS must be a positive integer
    - Delays must be positive numbers (the backoff cap must also be at
      least the backoff base)
    - OPERATOR_LOG_LEVEL must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL

    Circuit breaker settings (OPERATOR_CIRCUIT_BREAKER_*) are read by
    ``CircuitBreakerConfig.from_env`` when the breaker is created.
    """
    # Load .env file if it exists
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    workers = _parse_positive_int(
        os.getenv("OPERATOR_WORKERS", "2"),
        "OPERATOR_WORKERS",
        2,
    )

    shutdown_timeout = _parse_non_negative_float(
        os.getenv("OPERATOR_SHUTDOWN_TIMEOUT", "30"),
        "OPERATOR_SHUTDOWN_TIMEOUT",
        30.0,
    )

    token_poll_interval = _parse_positive_float(
        os.getenv("OPERATOR_TOKEN_POLL_INTERVAL", "60"),
        "OPERATOR_TOKEN_POLL_INTERVAL",
        60.0,
    )

    conflict_retry_delay = _parse_positive_float(
        os.getenv("OPERATOR_CONFLICT_RETRY_DELAY", "5"),
        "OPERATOR_CONFLICT_RETRY_DELAY",
        5.0,
    )

    backoff_base = _parse_positive_float(
        os.getenv("OPERATOR_BACKOFF_BASE", "0.005"),
        "OPERATOR_BACKOFF_BASE",
        0.005,
    )

    backoff_max = _parse_positive_float(
        os.getenv("OPERATOR_BACKOFF_MAX", "1000"),
        "OPERATOR_BACKOFF_MAX",
        1000.0,
    )
    if backoff_max < backoff_base:
        logging.warning(
            "Invalid OPERATOR_BACKOFF_MAX: %s is below OPERATOR_BACKOFF_BASE %s, using %s",
            backoff_max,
            backoff_base,
            backoff_base,
        )
        backoff_max = backoff_base

    log_level = _validate_log_level(
        os.getenv("OPERATOR_LOG_LEVEL", "INFO"),
    )

    log_json = _parse_bool(os.getenv("OPERATOR_LOG_JSON", ""))

    return Config(
        workers=workers,
        shutdown_timeout=shutdown_timeout,
        token_poll_interval=token_poll_interval,
        conflict_retry_delay=conflict_retry_delay,
        backoff_base=backoff_base,
        backoff_max=backoff_max,
        log_level=log_level,
        log_json=log_json,
        diagnostic_tags=os.getenv("OPERATOR_DIAGNOSTIC_TAGS", ""),
        github_api_url=os.getenv("GITHUB_API_URL", "").strip(),
    )
