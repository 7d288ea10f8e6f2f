"""
Structured logging for shiftwork processes.

Workers, processors and the API server each call :func:`configure_logging`
once at startup with their role; engine code then logs key/value events
through :func:`get_logger`:

    >>> from shiftwork.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True, service="shiftwork-worker")
    >>> get_logger(__name__).info("execution_claimed", execution_id=12, queue="@default")

Output (JSON format)::

    {
      "@timestamp": "2026-10-19T10:00:00Z",
      "log.level": "info",
      "service.name": "shiftwork-worker",
      "host.name": "batch-03",
      "process.pid": 4242,
      "event": "execution_claimed",
      "execution_id": 12,
      "queue": "@default"
    }

Signals are addressed by ``(hostname, pid)``, so every JSON line carries both
to let operators match a log line to a ``process_signals`` row.  Ids of the
instance or execution being worked on are bound with :class:`LogContext`.
"""

from __future__ import annotations

import logging
import os
import socket
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# stdlib loggers that are too chatty at INFO for a polling loop
NOISY_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "httpx")


def _process_metadata(service: str) -> Processor:
    host = socket.gethostname()

    def add(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        event_dict.setdefault("host.name", host)
        event_dict.setdefault("process.pid", os.getpid())
        return event_dict

    return add


def _ecs_field_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "shiftwork",
    echo_sql: bool = False,
) -> None:
    """Configure structlog and the stdlib root logger for this process.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR).
        json_format: JSON lines when true, colored console when false; by
            default JSON unless stdout is a tty.
        service: ``service.name`` of every event, e.g. ``shiftwork-worker``.
        echo_sql: Keep SQLAlchemy statement logging at *level*.
    """
    numeric_level = getattr(logging, level.upper())
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if json_format:
        processors += [
            _process_metadata(service),
            structlog.processors.format_exc_info,
            _ecs_field_names,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in NOISY_LOGGERS:
        if name == "sqlalchemy.engine" and echo_sql:
            continue
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind keys to every later event of this thread."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Bind keys for the duration of a block, restoring outer values on exit.

    The processor binds ``job_instance_id`` per instance while a worker may
    already have bound ``execution_id``; nesting keeps both intact::

        with LogContext(job_instance_id=7):
            with LogContext(execution_id=12):
                logger.info("execution_started")
            logger.info("instance_advanced")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = [
    "NOISY_LOGGERS",
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "LogContext",
]
