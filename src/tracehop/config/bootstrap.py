"""Logging options needed before AppConfig exists.

The logger is configured on first use, which can happen while settings are
still being imported. These readers go straight to the environment and must
not import tracehop.telemetry.
"""

import os
from collections.abc import Callable

from tracehop.config.validators import validate_log_format, validate_log_level


def _read(name: str, default: str, validate: Callable[[str], str]) -> str:
    try:
        return validate(os.getenv(name, default))
    except ValueError:
        return validate(default)


def get_bootstrap_log_level(default: str = "INFO") -> str:
    """APP_LOG_LEVEL, upper-cased; default when unset or invalid."""
    return _read("APP_LOG_LEVEL", default, validate_log_level)


def get_bootstrap_log_format(default: str = "json") -> str:
    """APP_LOG_FORMAT ("json" or "console"); default when unset or invalid."""
    return _read("APP_LOG_FORMAT", default, validate_log_format)
