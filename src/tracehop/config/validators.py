"""Validators shared by AppConfig and the bootstrap readers.

Each validator returns the normalized value or raises ValueError, which
pydantic reports as a validation error of the field.
"""

from pathlib import Path
from urllib.parse import urlsplit

LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
LOG_FORMATS = frozenset({"json", "console"})
SAMPLER_NAMES = frozenset({"always_on", "always_off", "ratio"})
SPAN_EXPORTER_NAMES = frozenset({"log", "memory", "none"})

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def validate_log_level(value: str) -> str:
    """Upper-case a standard logging level name."""
    level = value.strip().upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of {sorted(LOG_LEVELS)}, got {value}")
    return level


def validate_log_format(value: str) -> str:
    """Console log format: "json" or "console"."""
    return validate_choice(value, LOG_FORMATS, "log_format")


def validate_choice(value: str, choices: frozenset[str], name: str) -> str:
    """Validate a lowercase option against a fixed set of names.

    Raises:
        ValueError: If value is not one of choices.
    """
    normalized = value.strip().lower()
    if normalized not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}, got {value}")
    return normalized


def validate_endpoint_url(value: str, schemes: frozenset[str]) -> str:
    """Validate an endpoint URL is present and well-formed.

    Endpoints are supplied by the deployment layer and otherwise treated as
    opaque; only the scheme and the presence of a location are checked.

    Args:
        value: URL string.
        schemes: Accepted URL schemes.

    Returns:
        The URL without surrounding whitespace or a trailing slash.

    Raises:
        ValueError: If the URL is empty, has another scheme, or has no host/path.
    """
    url = value.strip()
    if not url:
        raise ValueError("endpoint URL must not be empty")

    parts = urlsplit(url)
    if parts.scheme not in schemes:
        raise ValueError(f"endpoint URL scheme must be one of {sorted(schemes)}, got {value}")
    if not (parts.netloc or parts.path.strip("/")):
        raise ValueError(f"endpoint URL has no location: {value}")
    return url.rstrip("/")


def resolve_path(value: Path | str) -> Path:
    """Make a path absolute; relative paths are taken from the repository root."""
    path = Path(value)
    if not path.is_absolute():
        path = _PROJECT_ROOT / path
    return path.resolve()
