"""structlog setup shared by every tracehop service.

All output goes through the stdlib root logger with two handlers:
- ``<log_dir>/current.jsonl``: JSON lines, INFO and above, rotated at 100 MB
- stderr: JSON or pretty console output at the configured level

structlog loggers and plain ``logging`` loggers (httpx, uvicorn, ...) are
rendered by the same formatter, so both carry ``timestamp`` (UTC),
``level``, ``logger`` and ``component`` (last part of the logger name).
"""

import logging
import logging.handlers
import pathlib
import sys
from typing import Any

import structlog
from pydantic import ValidationError

_LOG_FILE = "current.jsonl"
_MAX_LOG_BYTES = 100 * 1024 * 1024
_LOG_BACKUPS = 5
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _get_log_level() -> str:
    # Read from the environment: settings may still be importing
    from tracehop.config.bootstrap import get_bootstrap_log_level  # noqa: PLC0415

    return get_bootstrap_log_level()


def _get_log_format() -> str:
    from tracehop.config.bootstrap import get_bootstrap_log_format  # noqa: PLC0415

    return get_bootstrap_log_format()


def _get_log_dir() -> pathlib.Path:
    """Directory of the JSON-lines log file.

    Falls back to ``telemetry/logs`` under the repository root when the
    settings are invalid, so a configuration error can still be logged.
    """
    from tracehop.config.settings import get_settings  # noqa: PLC0415

    try:
        return pathlib.Path(get_settings().log_dir)
    except ValidationError:
        return pathlib.Path(__file__).resolve().parents[3] / "telemetry" / "logs"


def _add_component(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Derive ``component`` from the logger name.

    Runs after add_logger_name. ProcessorFormatter calls foreign processors
    with ``logger=None``, so the name is read from the event dict first.
    """
    name = event_dict.get("logger") or getattr(logger, "name", "") or ""
    event_dict["component"] = name.rsplit(".", 1)[-1] or "unknown"
    return event_dict


_SHARED_PROCESSORS: list[Any] = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    _add_component,
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
]


def _handler(handler: logging.Handler, renderer: Any, level: int) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=_SHARED_PROCESSORS,
        )
    )
    handler.setLevel(level)
    return handler


def configure_logging() -> None:
    """Install the file and console handlers and configure structlog.

    Called by get_logger() on first use; calling it again replaces the
    handlers, which tests rely on.
    """
    log_dir = _get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    console_level = getattr(logging, _get_log_level(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # The file keeps span and delivery events whatever the console level is
    root.addHandler(
        _handler(
            logging.handlers.RotatingFileHandler(
                log_dir / _LOG_FILE,
                maxBytes=_MAX_LOG_BYTES,
                backupCount=_LOG_BACKUPS,
                encoding="utf-8",
            ),
            structlog.processors.JSONRenderer(),
            logging.INFO,
        )
    )
    console_renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if _get_log_format() == "console"
        else structlog.processors.JSONRenderer()
    )
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_renderer, console_level))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:  # Returns structlog.stdlib.BoundLogger
    """Get a structured logger, configuring logging on first use.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("record_processed", message_id="123", **ctx.as_log_fields())
    """
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(name)
