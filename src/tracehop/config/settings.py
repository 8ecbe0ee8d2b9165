"""tracehop settings.

Every option can be set through a TRACEHOP_-prefixed environment variable or
a .env file. The logging and environment options keep the APP_ names shared
with bootstrap.py.
"""

from pathlib import Path

import structlog
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracehop.config.env_loader import Environment, get_environment, load_env_files
from tracehop.config.validators import (
    SAMPLER_NAMES,
    SPAN_EXPORTER_NAMES,
    resolve_path,
    validate_choice,
    validate_endpoint_url,
    validate_log_format,
    validate_log_level,
)

log = structlog.get_logger(__name__)


class AppConfig(BaseSettings):
    """Configuration of the ingress, query and change processor services.

    Endpoints (downstream_url, queue_url) are provided by the deployment; they
    are only checked for being present and well-formed.
    """

    model_config = SettingsConfigDict(
        # .env files are exported by load_env_files() before construction
        env_prefix="TRACEHOP_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    environment: Environment = Field(
        default_factory=get_environment, description="Current environment"
    )
    debug: bool = Field(default=False, alias="APP_DEBUG", description="Debug mode flag")

    # Application
    service_name: str = Field(default="tracehop", description="Service name stamped on spans")
    version: str = Field(default="0.1.0", description="Application version")

    # Telemetry
    log_dir: Path = Field(default=Path("telemetry/logs"), description="Log directory path")
    log_level: str = Field(
        default="INFO",
        alias="APP_LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="json", alias="APP_LOG_FORMAT", description="Log format (json or console)"
    )
    span_exporter: str = Field(
        default="log", description="Span exporter: 'log', 'memory' or 'none'"
    )

    # Sampling
    sampler: str = Field(
        default="always_on", description="Sampling policy: 'always_on', 'always_off' or 'ratio'"
    )
    sample_ratio: float = Field(
        default=1.0, ge=0.0, le=1.0, description="Fraction of traces sampled by 'ratio'"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        return validate_log_level(v)

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        return validate_log_format(v)

    @field_validator("sampler")
    @classmethod
    def validate_sampler(cls, v: str) -> str:
        """Validate sampler name."""
        return validate_choice(v, SAMPLER_NAMES, "sampler")

    @field_validator("span_exporter")
    @classmethod
    def validate_span_exporter(cls, v: str) -> str:
        """Validate span exporter name."""
        return validate_choice(v, SPAN_EXPORTER_NAMES, "span_exporter")

    @field_validator("log_dir", mode="before")
    @classmethod
    def resolve_paths(cls, v: Path | str) -> Path:
        """Resolve relative paths to absolute."""
        return resolve_path(v)

    # Downstream Query Service
    downstream_url: str = Field(
        default="http://localhost:9000", description="Base URL of the downstream query service"
    )
    downstream_timeout_seconds: float = Field(
        default=5.0, gt=0, le=300, description="Timeout for the synchronous downstream call"
    )

    # Queue
    queue_url: str = Field(
        default="memory://change-queue", description="Queue endpoint supplied by deployment"
    )
    queue_batch_size: int = Field(
        default=10, ge=1, le=10000, description="Maximum records per delivered batch"
    )
    queue_max_receive_count: int = Field(
        default=3, ge=1, description="Deliveries before a failing record is dead-lettered"
    )
    queue_max_message_bytes: int = Field(
        default=262_144, ge=1, description="Largest accepted envelope on the wire (256 KiB)"
    )

    @field_validator("downstream_url")
    @classmethod
    def validate_downstream_url(cls, v: str) -> str:
        """Validate downstream URL is present and well-formed."""
        return validate_endpoint_url(v, frozenset({"http", "https"}))

    @field_validator("queue_url")
    @classmethod
    def validate_queue_url(cls, v: str) -> str:
        """Validate queue URL is present and well-formed."""
        return validate_endpoint_url(v, frozenset({"memory"}))

    # Change Processor
    processor_enabled: bool = Field(
        default=True, description="Run the change processor inside the service process"
    )
    processor_poll_interval_seconds: float = Field(
        default=1.0, gt=0, description="Sleep between polls of an empty queue"
    )
    processor_concurrency: int = Field(
        default=1, ge=1, le=100, description="Records processed in parallel within one batch"
    )
    idempotency_cache_size: int = Field(
        default=10_000, ge=1, description="Processed message ids remembered for deduplication"
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host address")
    service_port: int = Field(default=9000, description="Service port number")


_settings: AppConfig | None = None


def load_app_config() -> AppConfig:
    """Export the .env files into the environment, then build AppConfig.

    Raises:
        ValidationError: If a value is missing or out of range.
    """
    loaded_files = load_env_files()

    try:
        config = AppConfig()
        log.info(
            "app_config_loaded",
            environment=config.environment.value,
            env_files=loaded_files,
            downstream_url=config.downstream_url,
            queue_url=config.queue_url,
            log_level=config.log_level,
            sampler=config.sampler,
            queue_batch_size=config.queue_batch_size,
            queue_max_receive_count=config.queue_max_receive_count,
        )
        return config
    except ValidationError as e:
        log.error("app_config_load_failed", errors=e.error_count(), error=str(e))
        raise


def get_settings() -> AppConfig:
    """Return the process-wide AppConfig, loading it on first call."""
    global _settings
    if _settings is None:
        _settings = load_app_config()
    return _settings
