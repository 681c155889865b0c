"""
Exception hierarchy for the queue engine.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class StoreError(QueueError):
    """
    A store operation failed.

    Wraps the backend exception (available as ``__cause__``) together with
    the operation and collection it happened on.
    """

    def __init__(self, operation: str, collection: str, message: str | None = None):
        self.operation = operation
        self.collection = collection
        detail = f": {message}" if message else ""
        super().__init__(f"{operation} on '{collection}' failed{detail}")


class InitializationError(QueueError):
    """The engine was used before init() completed."""


class HandlerError(QueueError):
    """A handler reported that it could not process an item."""
