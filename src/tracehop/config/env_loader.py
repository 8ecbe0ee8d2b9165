"""Deployment environment detection and .env file loading.

Runs before AppConfig is built, so it reads ``os.environ`` directly and logs
through structlog without importing tracehop.telemetry.
"""

import os
from enum import Enum
from pathlib import Path

import structlog
from dotenv import load_dotenv

log = structlog.get_logger(__name__)

# src/tracehop/config -> repository root
_DEFAULT_ROOT = Path(__file__).resolve().parents[3]


class Environment(str, Enum):
    """Deployment environment of the service."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


_ENV_ALIASES: dict[str, Environment] = {
    "production": Environment.PRODUCTION,
    "prod": Environment.PRODUCTION,
    "staging": Environment.STAGING,
    "stage": Environment.STAGING,
    "test": Environment.TEST,
}


def get_environment() -> Environment:
    """Read the environment from APP_ENV.

    Unknown or empty values mean development.
    """
    return _ENV_ALIASES.get(os.getenv("APP_ENV", "").strip().lower(), Environment.DEVELOPMENT)


def env_file_candidates(project_root: Path, environment: Environment) -> list[Path]:
    """List the .env files of an environment, most specific first."""
    name = environment.value
    return [
        project_root / f".env.{name}.local",
        project_root / f".env.{name}",
        project_root / ".env.local",
        project_root / ".env",
    ]


def load_env_files(project_root: Path | None = None) -> list[str]:
    """Export the variables of every existing .env file into the process environment.

    Files are loaded most specific first without overriding, so a variable
    already set (in the shell or by a more specific file) always wins.

    Args:
        project_root: Directory holding the .env files; the repository root by default.

    Returns:
        Names of the loaded files relative to project_root, in load order.
    """
    root = project_root if project_root is not None else _DEFAULT_ROOT
    environment = get_environment()

    loaded: list[str] = []
    for candidate in env_file_candidates(root, environment):
        if not candidate.is_file():
            continue
        load_dotenv(candidate, override=False)
        loaded.append(candidate.name)

    log.debug(
        "env_files_loaded" if loaded else "no_env_files_found",
        environment=environment.value,
        files=loaded,
        project_root=str(root),
    )
    return loaded
