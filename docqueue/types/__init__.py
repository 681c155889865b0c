"""
Type definitions for the queue engine.
"""

from docqueue.types.item import Handler, QueueItem, utcnow

__all__ = [
    "QueueItem",
    "Handler",
    "utcnow",
]
