"""
In-memory document store implementation.

Suitable for unit tests and dry runs against fixture data. Every document is
deep-copied on the way in and out so callers cannot mutate stored state.
"""

from __future__ import annotations

import asyncio
import bisect
import copy
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from docshift.observability import (
    ATTR_COLLECTION,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENT_COUNT,
    Tracer,
    create_tracer,
)
from docshift.stores.interface import Document, DocumentPage, DocumentStore, QueryFilter

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """
    In-memory implementation of DocumentStore.

    Example:
        >>> store = InMemoryDocumentStore(database_id="tradeya-dev")
        >>> await store.seed("trades", {"t1": {"creatorId": "u1"}})
        >>> page = await store.read_page("trades", limit=10)
    """

    def __init__(
        self,
        database_id: str = "memory",
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database_id = database_id
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def database_id(self) -> str:
        return self._database_id

    def _span_attrs(self, operation: str, collection: str) -> dict[str, Any]:
        return {
            ATTR_DB_SYSTEM: "memory",
            ATTR_DB_OPERATION: operation,
            ATTR_COLLECTION: collection,
        }

    async def seed(self, collection: str, documents: Mapping[str, Mapping[str, Any]]) -> None:
        """Insert fixture documents keyed by id."""
        await self.commit_batch(
            collection,
            [Document(id=doc_id, data=data) for doc_id, data in documents.items()],
        )

    async def get(self, collection: str, doc_id: str) -> Document | None:
        async with self._lock:
            data = self._collections.get(collection, {}).get(doc_id)
            if data is None:
                return None
            return Document(id=doc_id, data=copy.deepcopy(data))

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
            async with self._lock:
                docs = self._collections.get(collection, {})
                ids = sorted(docs)
                start = bisect.bisect_right(ids, after) if after is not None else 0
                selected = ids[start : start + limit]
                page = tuple(Document(id=i, data=copy.deepcopy(docs[i])) for i in selected)
            next_cursor = selected[-1] if len(selected) == limit else None
            return DocumentPage(documents=page, next_cursor=next_cursor)

    async def commit_batch(self, collection: str, documents: Sequence[Document]) -> None:
        attrs = self._span_attrs("commit_batch", collection)
        attrs[ATTR_DOCUMENT_COUNT] = len(documents)
        with self._tracer.span("docshift.store.commit_batch", attrs):
            staged = {doc.id: copy.deepcopy(dict(doc.data)) for doc in documents}
            async with self._lock:
                self._collections.setdefault(collection, {}).update(staged)

    async def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter],
        *,
        limit: int | None = None,
    ) -> list[Document]:
        with self._tracer.span("docshift.store.query", self._span_attrs("query", collection)):
            async with self._lock:
                docs = self._collections.get(collection, {})
                results = [
                    Document(id=doc_id, data=copy.deepcopy(docs[doc_id]))
                    for doc_id in sorted(docs)
                    if all(f.matches(docs[doc_id]) for f in filters)
                ]
            return results[:limit] if limit is not None else results

    async def count(self, collection: str) -> int:
        async with self._lock:
            return len(self._collections.get(collection, {}))

    async def replace_collection(self, collection: str, documents: Sequence[Document]) -> None:
        attrs = self._span_attrs("replace_collection", collection)
        attrs[ATTR_DOCUMENT_COUNT] = len(documents)
        with self._tracer.span("docshift.store.replace_collection", attrs):
            staged = {doc.id: copy.deepcopy(dict(doc.data)) for doc in documents}
            async with self._lock:
                self._collections[collection] = staged
            logger.info("Replaced collection %s with %d documents", collection, len(staged))

    async def ping(self) -> None:
        return None

    async def list_collections(self) -> list[str]:
        async with self._lock:
            return sorted(self._collections)

    async def clear(self) -> None:
        async with self._lock:
            self._collections.clear()


__all__ = ["InMemoryDocumentStore"]
