"""
Structured logging for the automation core.

Manifesto:
    Scheduled runs execute with nobody watching. When a run fails at 3am
    the log line is the only witness, so every component logs events with
    the run, schedule and workflow identifiers bound as fields.

    - **Structured:** JSON output for log aggregation
    - **Correlated:** run_id / schedule_id / workflow_id via contextvars
    - **Flexible:** Colored console in development, JSON in production

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="autorun")
            │
            ▼
        structlog processor chain:
          1. TimeStamper(iso)
          2. merge_contextvars   (LogContext / bind_context)
          3. add_log_level, add_logger_name
          4. service metadata
          5. ECS field names      (JSON only)
          6. JSONRenderer | ConsoleRenderer

Examples:
    >>> from autorun.core.logging import configure_logging, get_logger, LogContext
    >>> configure_logging(level="DEBUG", service="autorun-worker")
    >>> logger = get_logger(__name__)
    >>> async with LogContext(run_id="run_1"):
    ...     logger.info("executor.run.started", agent_id="agent_1")

Tags:
    logging, structlog, observability, ecs, json-logging, autorun

Doc-Types:
    - API Reference
    - Observability Guide
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "autorun"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "autorun",
    add_timestamp: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
        stream: Output stream, stdout when None
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stdout.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(_elasticsearch_compatible)
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Rendered events and third-party libraries (redis, uvicorn) share the stdlib handler
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, level.upper()),
        force=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs of this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Contextvars are copied per asyncio task, so a LogContext entered inside
    a worker task never leaks into sibling workers.

    Example:
        async with LogContext(run_id="run_1", schedule_id="sch_1"):
            logger.info("executor.run.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = {k: v for k, v in kwargs.items() if v is not None}

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args) -> None:
        unbind_context(*self._context.keys())

    async def __aenter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    async def __aexit__(self, *args) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
