"""
Index administration backends.

An index admin lists the indexes deployed to one database and deploys new
definitions. Builds are asynchronous on real databases: a freshly deployed
index reports CREATING until it is READY.

Implementations:
- InMemoryIndexAdmin: Simulated builds that finish after a number of polls
- SQLiteIndexAdmin: Records definitions next to a SQLiteDocumentStore and
  creates matching JSON expression indexes
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

import aiosqlite

from docshift._paths import json_path
from docshift.exceptions import ConnectivityError, IndexDeploymentError
from docshift.indexes.definitions import (
    ArrayConfig,
    FieldOrder,
    IndexDefinition,
    IndexField,
    QueryScope,
)
from docshift.observability import ATTR_INDEX_COUNT, Tracer, create_tracer

if TYPE_CHECKING:
    from docshift.stores.sqlite import SQLiteDocumentStore

logger = logging.getLogger(__name__)


class IndexState(Enum):
    """Build state reported for a deployed index."""

    CREATING = "CREATING"
    READY = "READY"
    NEEDS_REPAIR = "NEEDS_REPAIR"


@dataclass(frozen=True)
class DeployedIndex:
    """An index as reported by the database."""

    name: str
    definition: IndexDefinition
    state: IndexState = IndexState.READY


def index_name(definition: IndexDefinition) -> str:
    """Stable name derived from a definition's identity."""
    digest = hashlib.sha1(  # nosec B324 - naming only
        json.dumps(definition.to_dict(), sort_keys=True).encode()
    ).hexdigest()
    return f"ix_{definition.collection_group}_{digest[:12]}"


class IndexAdmin(ABC):
    """
    Abstract base class for index administration.

    Example:
        >>> await admin.deploy(definitions)
        >>> deployed = await admin.list_indexes()
    """

    @abstractmethod
    async def list_indexes(self) -> list[DeployedIndex]:
        """
        Return every index deployed to the database.

        Raises:
            ConnectivityError: If the database cannot be reached
        """
        pass

    @abstractmethod
    async def deploy(self, definitions: Sequence[IndexDefinition]) -> None:
        """
        Deploy definitions that are not yet deployed.

        Already-deployed definitions are left untouched, and indexes that are
        not in ``definitions`` are never deleted.

        Raises:
            IndexDeploymentError: If the database rejects a definition
        """
        pass


class InMemoryIndexAdmin(IndexAdmin):
    """
    In-memory index admin with simulated asynchronous builds.

    Each deployed index reports CREATING for ``build_polls`` calls to
    list_indexes() and READY afterwards.

    Example:
        >>> admin = InMemoryIndexAdmin(build_polls=2)
        >>> await admin.deploy([definition])
        >>> (await admin.list_indexes())[0].state
        <IndexState.CREATING: 'CREATING'>
    """

    def __init__(
        self,
        deployed: Sequence[DeployedIndex] = (),
        *,
        build_polls: int = 0,
        fail_with: Exception | None = None,
    ) -> None:
        self._indexes: dict[str, DeployedIndex] = {d.name: d for d in deployed}
        self._pending_polls: dict[str, int] = {}
        self._build_polls = build_polls
        self._fail_with = fail_with
        self._lock = asyncio.Lock()
        self.deploy_calls = 0

    def add_deployed(
        self,
        definition: IndexDefinition,
        state: IndexState = IndexState.READY,
        name: str | None = None,
    ) -> DeployedIndex:
        """Register an index as already deployed (test setup helper)."""
        index = DeployedIndex(
            name=name or index_name(definition), definition=definition, state=state
        )
        self._indexes[index.name] = index
        return index

    async def list_indexes(self) -> list[DeployedIndex]:
        async with self._lock:
            for name in list(self._pending_polls):
                if self._pending_polls[name] <= 0:
                    del self._pending_polls[name]
                    index = self._indexes[name]
                    self._indexes[name] = DeployedIndex(
                        index.name, index.definition, IndexState.READY
                    )
                else:
                    self._pending_polls[name] -= 1
            return list(self._indexes.values())

    async def deploy(self, definitions: Sequence[IndexDefinition]) -> None:
        self.deploy_calls += 1
        if self._fail_with is not None:
            raise self._fail_with
        async with self._lock:
            known = {d.definition.key for d in self._indexes.values()}
            for definition in definitions:
                if definition.key in known:
                    continue
                name = index_name(definition)
                if self._build_polls > 0:
                    self._indexes[name] = DeployedIndex(name, definition, IndexState.CREATING)
                    self._pending_polls[name] = self._build_polls
                else:
                    self._indexes[name] = DeployedIndex(name, definition, IndexState.READY)
                known.add(definition.key)


class SQLiteIndexAdmin(IndexAdmin):
    """
    SQLite index admin sharing the connection of a SQLiteDocumentStore.

    Deployed definitions are recorded in ``docshift_indexes``. For every
    definition an expression index over the ordered fields is created on the
    ``documents`` table; array-contains fields have no SQLite equivalent and
    are recorded only. Builds are synchronous, so indexes are READY as soon
    as deploy() returns.
    """

    def __init__(
        self,
        store: SQLiteDocumentStore,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def list_indexes(self) -> list[DeployedIndex]:
        with self._tracer.span("docshift.index_admin.list_indexes"):
            try:
                cursor = await self._store.connection.execute(
                    """
                    SELECT name, collection_group, query_scope, fields, state
                    FROM docshift_indexes
                    ORDER BY created_at, name
                    """
                )
                rows = await cursor.fetchall()
            except aiosqlite.OperationalError as e:
                raise ConnectivityError(f"Cannot list indexes: {e}") from e

            return [
                DeployedIndex(
                    name=row["name"],
                    definition=IndexDefinition(
                        collection_group=row["collection_group"],
                        query_scope=QueryScope(row["query_scope"]),
                        fields=tuple(_field_from_dict(f) for f in json.loads(row["fields"])),
                    ),
                    state=IndexState(row["state"]),
                )
                for row in rows
            ]

    async def deploy(self, definitions: Sequence[IndexDefinition]) -> None:
        with self._tracer.span(
            "docshift.index_admin.deploy", {ATTR_INDEX_COUNT: len(definitions)}
        ):
            existing = {d.definition.key for d in await self.list_indexes()}
            conn = self._store.connection
            now = datetime.now(UTC).isoformat()
            try:
                for definition in definitions:
                    if definition.key in existing:
                        continue
                    name = index_name(definition)
                    await conn.execute(
                        """
                        INSERT INTO docshift_indexes
                            (name, collection_group, query_scope, fields, state, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            name,
                            definition.collection_group,
                            definition.query_scope.value,
                            json.dumps([f.to_dict() for f in definition.fields]),
                            IndexState.CREATING.value,
                            now,
                        ),
                    )
                    ddl = _expression_index_ddl(name, definition)
                    if ddl is not None:
                        await conn.execute(ddl)
                    await conn.execute(
                        "UPDATE docshift_indexes SET state = ? WHERE name = ?",
                        (IndexState.READY.value, name),
                    )
                    existing.add(definition.key)
                    logger.info("Deployed index %s: %s", name, definition.describe())
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise IndexDeploymentError(f"SQLite rejected index deployment: {e}") from e


def _field_from_dict(data: dict[str, str]) -> IndexField:
    return IndexField(
        data["fieldPath"],
        order=FieldOrder(data["order"]) if "order" in data else None,
        array_config=ArrayConfig(data["arrayConfig"]) if "arrayConfig" in data else None,
    )


def _expression_index_ddl(name: str, definition: IndexDefinition) -> str | None:
    columns = []
    for f in definition.fields:
        if f.order is None:
            continue
        direction = "ASC" if f.order is FieldOrder.ASCENDING else "DESC"
        # Field paths are validated identifiers, safe to inline.
        columns.append(f"json_extract(data, '{json_path(f.field_path)}') {direction}")
    if not columns:
        return None
    return f'CREATE INDEX IF NOT EXISTS "{name}" ON documents (collection, {", ".join(columns)})'


__all__ = [
    "DeployedIndex",
    "IndexAdmin",
    "IndexState",
    "InMemoryIndexAdmin",
    "SQLiteIndexAdmin",
    "index_name",
]
