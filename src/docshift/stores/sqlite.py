"""
SQLite document store implementation.

Lightweight document store using SQLite with async support via aiosqlite.
Each document is one row of the ``documents`` table with its field map
stored as JSON; queries use SQLite's JSON1 functions.

This implementation is suitable for:
- Development and staging databases
- Local rehearsal of a production migration against an export
- Tests that need real atomic batch semantics
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from docshift._paths import json_path
from docshift.exceptions import ConnectivityError
from docshift.observability import (
    ATTR_COLLECTION,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENT_COUNT,
    Tracer,
    create_tracer,
)
from docshift.schemas import get_schema
from docshift.stores.interface import (
    Document,
    DocumentPage,
    DocumentStore,
    FilterOperator,
    QueryFilter,
)

logger = logging.getLogger(__name__)


class SQLiteDocumentStore(DocumentStore):
    """
    SQLite implementation of DocumentStore.

    The database identity (``database_id``) is written to ``docshift_meta``
    when the database is first initialized and read back on every later
    connection, so a file copied between environments keeps its original
    identity.

    Example:
        >>> async with SQLiteDocumentStore("staging.db", database_id="tradeya-staging") as store:
        ...     await store.initialize()
        ...     page = await store.read_page("trades", limit=50)
    """

    def __init__(
        self,
        database: str,
        *,
        database_id: str | None = None,
        wal_mode: bool = True,
        busy_timeout: int = 5000,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the SQLite document store.

        Args:
            database: Path to SQLite database file or ':memory:'
            database_id: Identity recorded on first initialization
            wal_mode: If True, enable WAL mode for better concurrency (default: True)
            busy_timeout: Timeout in milliseconds when database is locked (default: 5000)
            tracer: Optional custom Tracer instance
            enable_tracing: If True, emit OpenTelemetry spans (default: True)
        """
        self._database = database
        self._requested_id = database_id
        self._identity: str | None = None
        self._wal_mode = wal_mode
        self._busy_timeout = busy_timeout
        self._connection: aiosqlite.Connection | None = None
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def __aenter__(self) -> SQLiteDocumentStore:
        await self._connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def _connect(self) -> None:
        """
        Open the database connection and configure settings.

        This is called automatically by __aenter__ but can also be
        called directly if not using the context manager.
        """
        if self._connection is not None:
            return

        try:
            self._connection = await aiosqlite.connect(self._database)
        except aiosqlite.OperationalError as e:
            raise ConnectivityError(f"Cannot open SQLite database {self._database}: {e}") from e

        await self._connection.execute(f"PRAGMA busy_timeout = {self._busy_timeout}")
        if self._wal_mode:
            await self._connection.execute("PRAGMA journal_mode = WAL")
        self._connection.row_factory = aiosqlite.Row

        logger.debug(
            "Connected to SQLite database: %s (wal_mode=%s, busy_timeout=%d)",
            self._database,
            self._wal_mode,
            self._busy_timeout,
        )

    async def close(self) -> None:
        """Close the database connection. Safe to call multiple times."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.debug("Closed SQLite database connection: %s", self._database)

    async def initialize(self) -> None:
        """
        Create the schema and load (or record) the database identity.

        This method is idempotent - safe to call multiple times.
        """
        if self._connection is None:
            await self._connect()
        conn = self.connection

        await conn.executescript(get_schema("all", backend="sqlite"))
        if self._requested_id is not None:
            await conn.execute(
                "INSERT OR IGNORE INTO docshift_meta (key, value) VALUES ('database_id', ?)",
                (self._requested_id,),
            )
        await conn.commit()

        cursor = await conn.execute("SELECT value FROM docshift_meta WHERE key = 'database_id'")
        row = await cursor.fetchone()
        self._identity = row[0] if row else None
        logger.info(
            "Initialized SQLite document store %s (database_id=%s)",
            self._database,
            self._identity,
        )

    @property
    def connection(self) -> aiosqlite.Connection:
        """
        The active connection, shared with the SQLite index admin and control plane.

        Raises:
            RuntimeError: If not connected
        """
        if self._connection is None:
            raise RuntimeError(
                "Not connected to database. Use 'async with store:' or call 'initialize()' first."
            )
        return self._connection

    @property
    def database(self) -> str:
        return self._database

    @property
    def database_id(self) -> str:
        return self._identity or ""

    def _span_attrs(self, operation: str, collection: str) -> dict[str, Any]:
        return {
            ATTR_DB_SYSTEM: "sqlite",
            ATTR_DB_NAME: self._database,
            ATTR_DB_OPERATION: operation,
            ATTR_COLLECTION: collection,
        }

    async def get(self, collection: str, doc_id: str) -> Document | None:
        with self._tracer.span("docshift.store.get", self._span_attrs("get", collection)):
            try:
                cursor = await self.connection.execute(
                    "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                row = await cursor.fetchone()
            except aiosqlite.OperationalError as e:
                raise ConnectivityError(f"Read failed for {collection}/{doc_id}: {e}") from e
            if row is None:
                return None
            return Document(id=doc_id, data=json.loads(row["data"]))

    async def read_page(
        self,
        collection: str,
        *,
        after: str | None = None,
        limit: int = 50,
    ) -> DocumentPage:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        with self._tracer.span(
            "docshift.store.read_page", self._span_attrs("read_page", collection)
        ):
            try:
                cursor = await self.connection.execute(
                    """
                    SELECT doc_id, data
                    FROM documents
                    WHERE collection = ? AND (? IS NULL OR doc_id > ?)
                    ORDER BY doc_id
                    LIMIT ?
                    """,
                    (collection, after, after, limit),
                )
                rows = await cursor.fetchall()
            except aiosqlite.OperationalError as e:
                raise ConnectivityError(f"Page read failed for {collection}: {e}") from e

            documents = tuple(
                Document(id=row["doc_id"], data=json.loads(row["data"])) for row in rows
            )
            next_cursor = documents[-1].id if len(documents) == limit else None
            return DocumentPage(documents=documents, next_cursor=next_cursor)

    async def commit_batch(self, collection: str, documents: Sequence[Document]) -> None:
        attrs = self._span_attrs("commit_batch", collection)
        attrs[ATTR_DOCUMENT_COUNT] = len(documents)
        with self._tracer.span("docshift.store.commit_batch", attrs):
            now = datetime.now(UTC).isoformat()
            rows = [(collection, doc.id, json.dumps(dict(doc.data)), now) for doc in documents]
            conn = self.connection
            try:
                await conn.executemany(
                    """
                    INSERT INTO documents (collection, doc_id, data, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (collection, doc_id) DO UPDATE
                    SET data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
                await conn.commit()
            except aiosqlite.OperationalError as e:
                await conn.rollback()
                raise ConnectivityError(
                    f"Batch write of {len(rows)} documents to {collection} failed: {e}"
                ) from e

    async def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter],
        *,
        limit: int | None = None,
    ) -> list[Document]:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for f in filters:
            path = json_path(f.field_path)
            if f.operator is FilterOperator.ARRAY_CONTAINS:
                clauses.append(
                    "EXISTS (SELECT 1 FROM json_each(documents.data, ?) WHERE json_each.value = ?)"
                )
                params.extend([path, f.value])
            elif f.value is None:
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(path)
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([path, f.value])

        where = " AND ".join(clauses)
        sql = f"SELECT doc_id, data FROM documents WHERE {where} ORDER BY doc_id"  # nosec B608
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._tracer.span("docshift.store.query", self._span_attrs("query", collection)):
            try:
                cursor = await self.connection.execute(sql, params)
                rows = await cursor.fetchall()
            except aiosqlite.OperationalError as e:
                raise ConnectivityError(f"Query on {collection} failed: {e}") from e
            return [Document(id=row["doc_id"], data=json.loads(row["data"])) for row in rows]

    async def count(self, collection: str) -> int:
        cursor = await self.connection.execute(
            "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def replace_collection(self, collection: str, documents: Sequence[Document]) -> None:
        attrs = self._span_attrs("replace_collection", collection)
        attrs[ATTR_DOCUMENT_COUNT] = len(documents)
        with self._tracer.span("docshift.store.replace_collection", attrs):
            now = datetime.now(UTC).isoformat()
            conn = self.connection
            try:
                await conn.execute("DELETE FROM documents WHERE collection = ?", (collection,))
                await conn.executemany(
                    "INSERT INTO documents (collection, doc_id, data, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    [(collection, doc.id, json.dumps(dict(doc.data)), now) for doc in documents],
                )
                await conn.commit()
            except aiosqlite.OperationalError as e:
                await conn.rollback()
                raise ConnectivityError(f"Restore of {collection} failed: {e}") from e
            logger.info("Replaced collection %s with %d documents", collection, len(documents))

    async def ping(self) -> None:
        try:
            cursor = await self.connection.execute("SELECT 1")
            await cursor.fetchone()
        except aiosqlite.OperationalError as e:
            raise ConnectivityError(f"SQLite database {self._database} unreachable: {e}") from e

    async def list_collections(self) -> list[str]:
        cursor = await self.connection.execute(
            "SELECT DISTINCT collection FROM documents ORDER BY collection"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]


__all__ = ["SQLiteDocumentStore"]
