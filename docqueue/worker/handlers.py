"""
Handler registry and built-in handlers.

Handlers must be idempotent - delivery is at-least-once, so an item may be
processed again after a worker crash or a stale lease reclamation.

A handler receives the claimed QueueItem; returning means success and
raising means the attempt failed and will be retried.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from docqueue.errors import HandlerError
from docqueue.types.item import QueueItem

logger = logging.getLogger(__name__)

ItemHandler = Callable[[QueueItem], Awaitable[None]]

# Handler registry
_handlers: dict[str, ItemHandler] = {}


def register_handler(job_type: str) -> Callable[[ItemHandler], ItemHandler]:
    """
    Decorator to register a handler for a job type.

    Example:
        @register_handler("send_email")
        async def handle_send_email(item: QueueItem) -> None:
            ...
    """
    def decorator(handler: ItemHandler) -> ItemHandler:
        _handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")
        return handler
    return decorator


def get_handler(job_type: str) -> ItemHandler | None:
    """Get the handler for a job type, or None if not registered."""
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


def _data(item: QueueItem) -> dict[str, Any]:
    if isinstance(item.payload, dict):
        return item.payload.get("data") or {}
    return {}


async def dispatch(item: QueueItem) -> None:
    """
    Route an item to the handler registered for ``payload["job_type"]``.

    Payloads that are not dicts, or carry no job_type, go to "echo".

    Raises:
        HandlerError: If no handler is registered for the job type.
    """
    job_type = "echo"
    if isinstance(item.payload, dict):
        job_type = item.payload.get("job_type", "echo")

    handler = get_handler(job_type)
    if handler is None:
        raise HandlerError(f"No handler registered for job type: {job_type}")

    await handler(item)


# ============================================================================
# Built-in handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(item: QueueItem) -> None:
    """Log the payload and succeed."""
    logger.info(
        "Echo item",
        extra={"item_id": item.id, "payload": item.payload},
    )


@register_handler("sleep")
async def handle_sleep(item: QueueItem) -> None:
    """
    Sleep, then succeed.

    Payload data:
    - duration_seconds: How long to sleep
    """
    duration = _data(item).get("duration_seconds", 1)
    await asyncio.sleep(duration)


@register_handler("failing_job")
async def handle_failing_job(item: QueueItem) -> None:
    """Always fail - for exercising the retry path."""
    raise HandlerError(f"Intentional failure after {len(item.log)} previous failures")


@register_handler("random_failure")
async def handle_random_failure(item: QueueItem) -> None:
    """
    Fail at random.

    Payload data:
    - failure_rate: Probability of failure (0.0 to 1.0)
    """
    failure_rate = _data(item).get("failure_rate", 0.5)

    if random.random() < failure_rate:
        raise HandlerError("Random failure")
