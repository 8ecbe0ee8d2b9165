"""Configuration for tracehop services.

Usage:
    from tracehop.config import get_settings

    settings = get_settings()
    settings.downstream_url
"""

from tracehop.config.env_loader import Environment, get_environment
from tracehop.config.settings import AppConfig, get_settings, load_app_config

__all__ = [
    "AppConfig",
    "Environment",
    "get_environment",
    "get_settings",
    "load_app_config",
]
