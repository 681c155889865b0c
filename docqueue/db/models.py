"""
SQLAlchemy table definitions.
Defines the document shape shared by the pending and history collections.
"""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.dialects.postgresql import JSONB

from docqueue.constants import NONE
from docqueue.types.item import utcnow

# JSONB on PostgreSQL, plain JSON text elsewhere
Document = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def new_item_id() -> str:
    """Store-assigned item identifier."""
    return uuid4().hex


def build_queue_table(metadata: MetaData, name: str) -> Table:
    """
    Build the table backing one queue collection.

    Both the pending collection and its ``_consumed`` history share this
    shape, so ops tooling can read either with the same code.

    Key columns:
    - owner is NONE while claimable, else "<connector>/<channel>"
    - last_updated_time is refreshed on every write; stale lease
      reclamation and history expiry key off it
    - log holds at most the few most recent failure messages

    Indexes are not declared here; the engine creates them through
    Collection.create_index() so each collection gets only what it needs.
    """
    return Table(
        name,
        metadata,
        Column("id", String(32), primary_key=True, default=new_item_id),
        Column("payload", Document, nullable=True),
        Column("keys", Document, nullable=True),
        Column("owner", String(255), nullable=False, default=NONE),
        Column("consumer_version", String(255), nullable=True),
        Column("process_time_ms", Integer, nullable=True),
        Column("created_time", DateTime, nullable=False, default=utcnow),
        Column(
            "last_updated_time",
            DateTime,
            nullable=False,
            default=utcnow,
            onupdate=utcnow,
        ),
        Column("last_failure_time", DateTime, nullable=True),
        Column("log", Document, nullable=True),
    )
