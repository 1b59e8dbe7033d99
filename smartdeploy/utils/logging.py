"""Logging configuration using structlog.

Every module logs through ``get_logger``. Deployment and request context
bound with ``structlog.contextvars`` is merged into each event, and values
under secret-looking keys are masked before rendering.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from smartdeploy.config import settings

SECRET_KEYS = ("password", "token", "secret", "env_vars", "database_url")
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer", "httpx", "httpcore")


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask values whose key names a credential."""
    for key in event_dict:
        if any(marker in key.lower() for marker in SECRET_KEYS):
            event_dict[key] = "***"
    return event_dict


def _log_file() -> Path:
    directory = Path(settings.log_directory)
    if not directory.is_absolute():
        directory = Path(__file__).resolve().parents[2] / directory
    directory.mkdir(parents=True, exist_ok=True)
    return directory / settings.log_file_name


def configure_logging() -> None:
    """Route structlog through stdlib handlers for stdout and the log file."""
    level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        level=level,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(_log_file(), encoding="utf-8"),
        ],
        force=True,
    )
    # AWS SDK and HTTP clients log every request at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
