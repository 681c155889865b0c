"""
Database module.
Contains database connection, table definitions, and the collection store.
"""

from docqueue.db.collection import Collection
from docqueue.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
)
from docqueue.db.models import build_queue_table

__all__ = [
    "get_session_context",
    "get_session_factory",
    "get_engine",
    "init_db",
    "close_db",
    "Collection",
    "build_queue_table",
]
