"""
Document store implementations.

- InMemoryDocumentStore: For testing and dry runs against fixtures
- SQLiteDocumentStore: aiosqlite-backed store with JSON documents
"""

from docshift.stores.in_memory import InMemoryDocumentStore
from docshift.stores.interface import (
    Document,
    DocumentPage,
    DocumentStore,
    FilterOperator,
    QueryFilter,
)
from docshift.stores.sqlite import SQLiteDocumentStore

__all__ = [
    "Document",
    "DocumentPage",
    "DocumentStore",
    "FilterOperator",
    "InMemoryDocumentStore",
    "QueryFilter",
    "SQLiteDocumentStore",
]
