"""
Document collection over a SQL table.

Implements the store operations the queue engine depends on: insert,
atomic claim, batch update, delete, and index creation with optional TTL
expiry. The only correctness-critical guarantee is claim_one(): two
concurrent callers never claim the same row.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import (
    JSON,
    ColumnElement,
    Index,
    delete,
    func,
    insert,
    select,
    type_coerce,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from docqueue.db.connection import get_session_context
from docqueue.errors import StoreError
from docqueue.types.item import utcnow

logger = logging.getLogger(__name__)


class Collection:
    """
    A named collection of queue documents.

    Filters are SQLAlchemy expressions built from ``collection.c``; updates
    are plain ``{column: value}`` dicts. Every write refreshes
    ``last_updated_time`` through the column's onupdate hook.

    Every backend failure is raised as StoreError with the original
    exception chained.
    """

    def __init__(self, table: Any, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the collection.

        Args:
            table: The table built by build_queue_table().
            session_factory: Session factory bound to the shared store.
        """
        self._table = table
        self._sessions = session_factory
        self._indexes: dict[str, Index] = {}
        self._ttl_column: str | None = None
        self._ttl_seconds: int | None = None

    @property
    def name(self) -> str:
        return self._table.name

    @property
    def table(self) -> Any:
        return self._table

    @property
    def c(self) -> Any:
        """Column accessor used to build filters."""
        return self._table.c

    @property
    def ttl_seconds(self) -> int | None:
        return self._ttl_seconds

    @property
    def _engine(self) -> AsyncEngine:
        return self._sessions.kw["bind"]

    @asynccontextmanager
    async def _operation(self, operation: str) -> AsyncGenerator[AsyncSession]:
        """Run one store operation in its own transaction."""
        try:
            async with get_session_context(self._sessions) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(
                f"Store operation failed: {operation}",
                extra={"collection": self.name, "error": str(e)},
            )
            raise StoreError(operation, self.name, str(e)) from e

    async def ensure_created(self) -> None:
        """Create the backing table if it does not exist yet."""
        async with self._operation("create_collection") as session:
            conn = await session.connection()
            await conn.run_sync(self._table.create, checkfirst=True)

    async def create_index(
        self,
        *fields: str,
        background: bool = True,
        expire_after_seconds: int | None = None,
    ) -> None:
        """
        Create an index on the given fields if it does not exist.

        Args:
            fields: Column names to index.
            background: Build without blocking writers where the backend
                supports it (CREATE INDEX CONCURRENTLY on PostgreSQL).
            expire_after_seconds: Make this a TTL index: documents whose
                indexed timestamp is older than this are removed by
                purge_expired(). Only valid on a single field.
        """
        if not fields:
            raise ValueError("create_index() needs at least one field")
        if expire_after_seconds is not None and len(fields) != 1:
            raise ValueError("A TTL index must cover exactly one field")

        index_name = f"ix_{self.name}_{'_'.join(fields)}"
        index = self._indexes.get(index_name)
        if index is None:
            columns = [self._table.c[field] for field in fields]
            options: dict[str, Any] = {"postgresql_concurrently": background}
            if isinstance(columns[0].type, JSON):
                options["postgresql_using"] = "gin"
            index = Index(index_name, *columns, **options)
            self._indexes[index_name] = index

        try:
            if self._engine.dialect.name == "postgresql":
                # CONCURRENTLY cannot run inside a transaction block
                async with self._engine.connect() as conn:
                    conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                    await conn.run_sync(index.create, checkfirst=True)
            else:
                async with self._engine.begin() as conn:
                    await conn.run_sync(index.create, checkfirst=True)
        except SQLAlchemyError as e:
            raise StoreError("create_index", self.name, str(e)) from e

        if expire_after_seconds is not None:
            self._ttl_column = fields[0]
            self._ttl_seconds = expire_after_seconds

        logger.info(
            f"Ensured index {index_name}",
            extra={"collection": self.name, "ttl_seconds": expire_after_seconds},
        )

    async def insert(self, document: dict[str, Any]) -> str:
        """
        Insert a document.

        Args:
            document: Column values; the id is assigned by the store.

        Returns:
            The new document id.
        """
        values = {k: v for k, v in document.items() if k != "id"}
        stmt = insert(self._table).values(**values).returning(self._table.c.id)

        async with self._operation("insert") as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def claim_one(
        self,
        where: ColumnElement[bool],
        values: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Atomically update one document matching ``where``.

        The candidate row is picked with FOR UPDATE SKIP LOCKED and the
        filter is re-checked by the UPDATE itself, so a row claimed by a
        concurrent caller in the meantime no longer matches.

        Returns:
            The updated document, or None if nothing matched.
        """
        candidate = (
            select(self._table.c.id)
            .where(where)
            .limit(1)
            .with_for_update(skip_locked=True)
            .correlate(None)
        )
        stmt = (
            update(self._table)
            .where(self._table.c.id.in_(candidate), where)
            .values(**values)
            .returning(*self._table.c)
        )

        async with self._operation("claim_one") as session:
            result = await session.execute(stmt)
            row = result.mappings().first()
            return dict(row) if row is not None else None

    async def update_many(
        self,
        where: ColumnElement[bool],
        values: dict[str, Any],
    ) -> int:
        """
        Apply ``values`` to every document matching ``where``.

        Returns:
            Number of matched documents.
        """
        stmt = update(self._table).where(where).values(**values)

        async with self._operation("update_many") as session:
            result = await session.execute(stmt)
            return result.rowcount

    async def delete(self, where: ColumnElement[bool]) -> int:
        """
        Delete every document matching ``where``.

        Returns:
            Number of deleted documents.
        """
        stmt = delete(self._table).where(where)

        async with self._operation("delete") as session:
            result = await session.execute(stmt)
            return result.rowcount

    async def get(self, item_id: str) -> dict[str, Any] | None:
        """Get a document by id."""
        stmt = select(self._table).where(self._table.c.id == item_id)

        async with self._operation("get") as session:
            result = await session.execute(stmt)
            row = result.mappings().first()
            return dict(row) if row is not None else None

    async def find(
        self,
        where: ColumnElement[bool] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        List documents, oldest first.

        Args:
            where: Optional filter.
            limit: Maximum number of documents to return.
        """
        stmt = select(self._table).order_by(self._table.c.created_time)
        if where is not None:
            stmt = stmt.where(where)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._operation("find") as session:
            result = await session.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

    async def count(self, where: ColumnElement[bool] | None = None) -> int:
        """Count documents, optionally filtered."""
        stmt = select(func.count()).select_from(self._table)
        if where is not None:
            stmt = stmt.where(where)

        async with self._operation("count") as session:
            result = await session.execute(stmt)
            return result.scalar() or 0

    def has_key(self, key: str) -> ColumnElement[bool]:
        """Filter matching documents whose ``keys`` list contains ``key``."""
        keys = self._table.c["keys"]
        if self._engine.dialect.name == "postgresql":
            return type_coerce(keys, JSONB).contains([key])

        elements = func.json_each(keys).table_valued("value")
        return select(elements.c.value).where(elements.c.value == key).exists()

    async def find_by_key(self, key: str, limit: int | None = None) -> list[dict[str, Any]]:
        """List documents tagged with ``key``."""
        return await self.find(self.has_key(key), limit=limit)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """
        Delete documents past the TTL registered by create_index().

        Returns:
            Number of deleted documents, 0 when no TTL index exists.
        """
        if self._ttl_column is None or self._ttl_seconds is None:
            return 0

        cutoff = (now or utcnow()) - timedelta(seconds=self._ttl_seconds)
        return await self.delete(self._table.c[self._ttl_column] < cutoff)
