"""
Structured logging for queue processes.

Modules keep logging through ``logging.getLogger(__name__)``; records are
rendered by structlog, so ``extra={...}`` fields and bound context come out
as structured keys. Context layers as follows:

- process: node name and consumer version, bound by setup_logging()
- task: channel or connector name, bound at the top of each loop
- item: item id while a channel processes it, via item_context()
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from docqueue.config import get_settings

# Libraries that log every statement or poll at INFO/DEBUG
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    raise ValueError(f"Unknown log format: {log_format!r} (expected 'json' or 'console')")


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Route all stdlib logging through structlog on stdout.

    Args:
        level: Log level name, defaults to the configured one.
        log_format: "json" or "console", defaults to the configured one.

    Raises:
        ValueError: If the log format is unknown.
    """
    settings = get_settings()
    renderer = _renderer(log_format or settings.log_format)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    bind_context(node=settings.node_name, consumer_version=settings.consumer_version)


def bind_context(**kwargs: Any) -> None:
    """
    Bind keys to every later log record in the current task.

    Each asyncio task copies the context when it is created, so a channel
    binding its name does not leak into its siblings.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


@contextmanager
def item_context(item_id: str | None, **kwargs: Any) -> Iterator[None]:
    """Bind the item being processed for the duration of the block."""
    with structlog.contextvars.bound_contextvars(item_id=item_id, **kwargs):
        yield


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
