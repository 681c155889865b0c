"""
Document-store Job Queue

A competing-consumers job queue built on a shared store: items are claimed
through atomic conditional updates, processed by a bounded channel pool,
retried with a capped failure log, and reclaimed from crashed or superseded
workers by periodic stale-lease passes.
"""

__version__ = "1.0.0"

from docqueue.errors import HandlerError, InitializationError, QueueError, StoreError
from docqueue.queue.engine import QueueEngine
from docqueue.types.item import QueueItem

__all__ = [
    "QueueEngine",
    "QueueItem",
    "QueueError",
    "StoreError",
    "InitializationError",
    "HandlerError",
]
