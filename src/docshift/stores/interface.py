"""
Document store interface and core data structures.

The document store is the database being migrated. The migration toolkit
only needs a small surface: cursor-paged reads ordered by document id,
atomic batched writes, simple equality/array-contains queries and a
connectivity check.

This module provides:
- Document: A document id with its field data
- DocumentPage: One page of a cursor-paged read
- FilterOperator / QueryFilter: Query predicates
- DocumentStore: Abstract base class for store implementations
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from docshift._paths import get_path, validate_field_path


@dataclass(frozen=True)
class Document:
    """
    A stored document.

    Attributes:
        id: Document identifier, unique within its collection
        data: Field data (nested mappings and lists allowed)
    """

    id: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def copy_data(self) -> dict[str, Any]:
        """Return a deep copy of the field data that callers may mutate."""
        return copy.deepcopy(dict(self.data))


@dataclass(frozen=True)
class DocumentPage:
    """
    One page of a cursor-paged read.

    Pages are ordered by document id. ``next_cursor`` is the id of the last
    document on the page, or None when the collection is exhausted.
    """

    documents: tuple[Document, ...]
    next_cursor: str | None

    def __len__(self) -> int:
        return len(self.documents)

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class FilterOperator(Enum):
    """Query predicate operators supported by every store."""

    EQUAL = "=="
    ARRAY_CONTAINS = "array-contains"


@dataclass(frozen=True)
class QueryFilter:
    """
    A single query predicate.

    Attributes:
        field_path: Dotted field path (e.g. "participants.creator")
        operator: Comparison operator
        value: Scalar value to compare against
    """

    field_path: str
    operator: FilterOperator
    value: Any

    def __post_init__(self) -> None:
        validate_field_path(self.field_path)
        if isinstance(self.value, (Mapping, list, tuple)):
            raise ValueError("Query filter values must be scalars")

    def matches(self, data: Mapping[str, Any]) -> bool:
        """Evaluate the predicate against a document's data."""
        actual = get_path(data, self.field_path)
        if self.operator is FilterOperator.EQUAL:
            return actual == self.value
        return isinstance(actual, list) and self.value in actual


class DocumentStore(ABC):
    """
    Abstract base class for document stores.

    Implementations must guarantee that:
    - read_page returns documents ordered by id, strictly after the cursor
    - commit_batch is atomic: either every document is written or none is
    - database_id identifies the physical database, not the environment name

    Concrete implementations:
    - InMemoryDocumentStore: For testing and development
    - SQLiteDocumentStore: File-backed store using aiosqlite

    Example:
        >>> page = await store.read_page("trades", after=None, limit=50)
        >>> while True:
        ...     handle(page.documents)
        ...     if page.is_last:
        ...         break
        ...     page = await store.read_page("trades", after=page.next_cursor, limit=50)
    """

    @property
    @abstractmethod
    def database_id(self) -> str:
        """Identifier of the connected database (project id)."""
        pass

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Get a single document by id, or None if it does not exist."""
        pass

    @abstractmethod
    async def read_page(
        self,
        collection: str,
        *,
        after: str | None = None,
        limit: int = 50,
    ) -> DocumentPage:
        """
        Read one page of documents ordered by id.

        Args:
            collection: Collection name
            after: Return only documents whose id sorts after this cursor
            limit: Maximum number of documents in the page

        Returns:
            DocumentPage with up to ``limit`` documents

        Raises:
            ConnectivityError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def commit_batch(self, collection: str, documents: Sequence[Document]) -> None:
        """
        Write documents atomically, replacing existing documents with the same id.

        Raises:
            ConnectivityError: If the store cannot be reached; nothing was written
        """
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter],
        *,
        limit: int | None = None,
    ) -> list[Document]:
        """Return documents matching every filter, ordered by id."""
        pass

    @abstractmethod
    async def count(self, collection: str) -> int:
        pass

    @abstractmethod
    async def replace_collection(self, collection: str, documents: Sequence[Document]) -> None:
        """Atomically replace the whole content of a collection (used by restore)."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """
        Cheap round trip to the store.

        Raises:
            ConnectivityError: If the store cannot be reached
        """
        pass

    async def iter_documents(self, collection: str, *, page_size: int = 200) -> list[Document]:
        """Read an entire collection page by page."""
        documents: list[Document] = []
        cursor: str | None = None
        while True:
            page = await self.read_page(collection, after=cursor, limit=page_size)
            documents.extend(page.documents)
            if page.is_last:
                return documents
            cursor = page.next_cursor


__all__ = [
    "Document",
    "DocumentPage",
    "DocumentStore",
    "FilterOperator",
    "QueryFilter",
]
