"""
Structured logging for imagegate.

Every component logs dotted event names with key/value fields through a
structlog logger obtained from :func:`get_logger`. The CLI calls
:func:`configure_logging` once at startup.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="imagegate")

            structlog processor chain:
              1. TimeStamper (iso)
              2. merge_contextvars (run_id, service bound via LogContext)
              3. add_log_level
              4. add_service_metadata
              5. JSONRenderer (non-TTY) or ConsoleRenderer (TTY)

        logger = get_logger(__name__)
        logger.info("verify.healthy", service="play", elapsed=4.1, status=200)

Log output goes to stderr so that ``--json`` results on stdout stay
machine-readable.

Tags:
    logging, structlog, observability, imagegate
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "imagegate"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp every event with the application name."""
    event_dict.setdefault("app", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "imagegate",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Minimum level name (DEBUG .. CRITICAL)
        json_format: JSON lines when True, console when False; None picks
            JSON unless stderr is a terminal
        service: Application name stamped on every event as ``app``
        add_timestamp: Prepend an ISO-8601 ``timestamp`` field
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level!r}")

    if json_format is None:
        json_format = not sys.stderr.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind keys onto every later event in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Unbind the given keys."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Drop every bound key (run_id, service, ...)."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind keys for the duration of a ``with`` block.

    Example:
        with LogContext(run_id=run.run_id, service="play"):
            logger.info("build.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
