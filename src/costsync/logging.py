"""Structured logging for costsync, built on structlog.

Every line carries the service name and the replica it came from, plus any
other static fields passed to setup_logging (the ledger timezone, so window
boundaries in the logs can be read correctly). Per-run fields such as the
scheduler's run_id travel through structlog.contextvars.
"""

import logging
import os
import socket
from collections.abc import Mapping
from typing import Any

import structlog

SERVICE_NAME = "costsync"

# Redis and aiosqlite both log every command at DEBUG
_QUIET_LOGGERS = ("aiosqlite", "redis")


def _add_static_fields(fields: Mapping[str, Any]) -> structlog.types.Processor:
    """Processor that stamps ``fields`` onto events that don't set them already."""

    def processor(
        logger: Any, method_name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def setup_logging(log_level: str = "INFO", **static_fields: Any) -> None:
    """Configure structlog with JSON or console rendering.

    LOG_FORMAT selects the renderer: "json" for production, "console"
    (default) for development. ``static_fields`` are added to every event
    next to ``service`` and ``replica``.
    """
    log_format = os.environ.get("LOG_FORMAT", "console").lower()
    fields = {"service": SERVICE_NAME, "replica": socket.gethostname(), **static_fields}

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_static_fields(fields),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
