"""
Queue item type definitions.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field

from docqueue.constants import NONE


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored time uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QueueItem(BaseModel):
    """
    A unit of work persisted in the pending or history collection.

    ``owner`` is ``NONE`` while the item is claimable and
    ``"<connector-name>/<channel-name>"`` while a channel holds it.
    ``log`` keeps the most recent failure messages, oldest first.
    """

    id: str | None = None
    payload: Any = None
    keys: list[str] | None = None
    owner: str = NONE
    consumer_version: str | None = None
    process_time_ms: int | None = None
    created_time: datetime | None = None
    last_updated_time: datetime | None = None
    last_failure_time: datetime | None = None
    log: list[str] = Field(default_factory=list)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "QueueItem":
        """Build an item from a stored document."""
        data = dict(document)
        if data.get("log") is None:
            data["log"] = []
        return cls.model_validate(data)

    def to_document(self) -> dict[str, Any]:
        """
        Document to insert for this item.

        The id and ``last_updated_time`` are left to the store, and unset
        optional fields are dropped so the store defaults apply.
        """
        data = self.model_dump(exclude={"id", "last_updated_time"})
        return {k: v for k, v in data.items() if v is not None}

    @property
    def is_claimed(self) -> bool:
        """Check if a channel currently holds this item."""
        return self.owner != NONE

    def failed_recently(self, window_seconds: float, now: datetime | None = None) -> bool:
        """Check if the last failure happened within the given window."""
        if self.last_failure_time is None:
            return False
        now = now or utcnow()
        return now - self.last_failure_time < timedelta(seconds=window_seconds)

    def record_failure(self, message: str, limit: int, now: datetime | None = None) -> None:
        """Append a failure message, keeping only the ``limit`` newest."""
        self.log = [*self.log, message][-limit:]
        self.last_failure_time = now or utcnow()


# A handler either returns (success) or raises (failure).
Handler = Callable[[QueueItem], Awaitable[None]] | Callable[[QueueItem], None]
