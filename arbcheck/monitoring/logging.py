"""Structured JSON logging for the reconciler."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys

import structlog

from arbcheck.config.settings import MonitoringConfig

# Exchange requests are signed in headers; wire-level traces stay out of the logs.
QUIET_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "aiohttp.client", "uvicorn.access")


def error_log_handler(
    logs_path: str | Path,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> RotatingFileHandler:
    """Rotating ``errors.log`` that only keeps ERROR and above."""
    log_dir = Path(logs_path)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / "errors.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.ERROR)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
    service: str = "arbcheck",
) -> None:
    """Route structlog through stdlib logging as one JSON object per line.

    Every line carries ``service`` and any context bound with
    ``structlog.contextvars`` (the scheduler binds ``cycle``).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    if logs_path:
        if monitoring is not None:
            handler = error_log_handler(
                logs_path, monitoring.error_log_max_bytes, monitoring.error_log_backup_count
            )
        else:
            handler = error_log_handler(logs_path)
        logging.getLogger().addHandler(handler)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
