"""
Control-plane repository for the migration registry.

The registry persists its mode and performance baselines as a single record
so that a restarted process (or a second operator terminal) sees the same
migration state.

Implementations:
- InMemoryControlPlaneRepository: For tests
- SQLiteControlPlaneRepository: Shares an aiosqlite connection
- SQLAlchemyControlPlaneRepository: Any SQLAlchemy async engine (PostgreSQL)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from docshift.models import MigrationMode, PerformanceBaseline
from docshift.observability import ATTR_MIGRATION_MODE, Tracer, create_tracer
from docshift.schemas import BackendName, get_schema

if TYPE_CHECKING:
    import aiosqlite


@dataclass(frozen=True)
class ControlPlaneRecord:
    """Persisted registry state."""

    mode: MigrationMode
    updated_at: datetime
    reason: str | None = None
    pre_baseline: PerformanceBaseline | None = None
    post_baseline: PerformanceBaseline | None = None

    @classmethod
    def initial(cls) -> ControlPlaneRecord:
        return cls(mode=MigrationMode.IDLE, updated_at=datetime.now(UTC))

    def with_mode(self, mode: MigrationMode, reason: str | None) -> ControlPlaneRecord:
        return replace(self, mode=mode, reason=reason, updated_at=datetime.now(UTC))

    def _row(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "reason": self.reason,
            "updated_at": self.updated_at.isoformat(),
            "pre_baseline": _dump_baseline(self.pre_baseline),
            "post_baseline": _dump_baseline(self.post_baseline),
        }

    @classmethod
    def _from_row(cls, row: Any) -> ControlPlaneRecord:
        mode, reason, updated_at, pre, post = row
        return cls(
            mode=MigrationMode(mode),
            reason=reason,
            updated_at=datetime.fromisoformat(updated_at),
            pre_baseline=_load_baseline(pre),
            post_baseline=_load_baseline(post),
        )


def _dump_baseline(baseline: PerformanceBaseline | None) -> str | None:
    return json.dumps(baseline.to_dict()) if baseline is not None else None


def _load_baseline(raw: str | None) -> PerformanceBaseline | None:
    return PerformanceBaseline.from_dict(json.loads(raw)) if raw else None


@runtime_checkable
class ControlPlaneRepository(Protocol):
    """Protocol for persisting the single registry record."""

    async def load(self) -> ControlPlaneRecord | None:
        """Return the stored record, or None if nothing was saved yet."""
        ...

    async def save(self, record: ControlPlaneRecord) -> None:
        """Replace the stored record."""
        ...


class InMemoryControlPlaneRepository:
    """
    In-memory implementation of the control-plane repository for testing.

    Example:
        >>> repo = InMemoryControlPlaneRepository()
        >>> await repo.save(ControlPlaneRecord.initial())
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._record: ControlPlaneRecord | None = None
        self._lock = asyncio.Lock()
        self.saves = 0

    async def load(self) -> ControlPlaneRecord | None:
        async with self._lock:
            return self._record

    async def save(self, record: ControlPlaneRecord) -> None:
        with self._tracer.span(
            "docshift.control_plane.save", {ATTR_MIGRATION_MODE: record.mode.value}
        ):
            async with self._lock:
                self._record = record
                self.saves += 1


_UPSERT_SQLITE = """
    INSERT INTO docshift_control_plane
        (id, mode, reason, updated_at, pre_baseline, post_baseline)
    VALUES (1, ?, ?, ?, ?, ?)
    ON CONFLICT (id) DO UPDATE
    SET mode = excluded.mode,
        reason = excluded.reason,
        updated_at = excluded.updated_at,
        pre_baseline = excluded.pre_baseline,
        post_baseline = excluded.post_baseline
"""


class SQLiteControlPlaneRepository:
    """
    SQLite implementation of the control-plane repository.

    Stores the record in the ``docshift_control_plane`` table (one row, id 1).

    Example:
        >>> async with SQLiteDocumentStore("prod.db") as store:
        ...     await store.initialize()
        ...     repo = SQLiteControlPlaneRepository(store.connection)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection

    async def load(self) -> ControlPlaneRecord | None:
        with self._tracer.span("docshift.control_plane.load"):
            cursor = await self._connection.execute(
                """
                SELECT mode, reason, updated_at, pre_baseline, post_baseline
                FROM docshift_control_plane
                WHERE id = 1
                """
            )
            row = await cursor.fetchone()
            return ControlPlaneRecord._from_row(tuple(row)) if row else None

    async def save(self, record: ControlPlaneRecord) -> None:
        with self._tracer.span(
            "docshift.control_plane.save", {ATTR_MIGRATION_MODE: record.mode.value}
        ):
            row = record._row()
            await self._connection.execute(
                _UPSERT_SQLITE,
                (
                    row["mode"],
                    row["reason"],
                    row["updated_at"],
                    row["pre_baseline"],
                    row["post_baseline"],
                ),
            )
            await self._connection.commit()


class SQLAlchemyControlPlaneRepository:
    """
    SQLAlchemy implementation of the control-plane repository.

    Works with any async engine whose dialect supports
    ``INSERT ... ON CONFLICT``, notably PostgreSQL (asyncpg) and SQLite
    (aiosqlite).

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/ops")
        >>> repo = SQLAlchemyControlPlaneRepository(engine)
        >>> await repo.initialize(backend="postgresql")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    @asynccontextmanager
    async def _connect(self, write: bool) -> AsyncIterator[AsyncConnection]:
        # A caller-supplied connection keeps its own transaction.
        if isinstance(self.conn, AsyncConnection):
            yield self.conn
        elif write:
            async with self.conn.begin() as conn:
                yield conn
        else:
            async with self.conn.connect() as conn:
                yield conn

    async def initialize(self, backend: BackendName = "postgresql") -> None:
        """Create the control-plane table if it does not exist."""
        async with self._connect(write=True) as conn:
            await conn.execute(text(get_schema("control_plane", backend=backend)))

    async def load(self) -> ControlPlaneRecord | None:
        with self._tracer.span("docshift.control_plane.load"):
            query = text("""
                SELECT mode, reason, updated_at, pre_baseline, post_baseline
                FROM docshift_control_plane
                WHERE id = 1
            """)
            async with self._connect(write=False) as conn:
                result = await conn.execute(query)
                row = result.fetchone()
                return ControlPlaneRecord._from_row(tuple(row)) if row else None

    async def save(self, record: ControlPlaneRecord) -> None:
        with self._tracer.span(
            "docshift.control_plane.save", {ATTR_MIGRATION_MODE: record.mode.value}
        ):
            query = text("""
                INSERT INTO docshift_control_plane
                    (id, mode, reason, updated_at, pre_baseline, post_baseline)
                VALUES (1, :mode, :reason, :updated_at, :pre_baseline, :post_baseline)
                ON CONFLICT (id) DO UPDATE
                SET mode = EXCLUDED.mode,
                    reason = EXCLUDED.reason,
                    updated_at = EXCLUDED.updated_at,
                    pre_baseline = EXCLUDED.pre_baseline,
                    post_baseline = EXCLUDED.post_baseline
            """)
            async with self._connect(write=True) as conn:
                await conn.execute(query, record._row())


__all__ = [
    "ControlPlaneRecord",
    "ControlPlaneRepository",
    "InMemoryControlPlaneRepository",
    "SQLAlchemyControlPlaneRepository",
    "SQLiteControlPlaneRepository",
]
