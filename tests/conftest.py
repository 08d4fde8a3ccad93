"""
Shared pytest fixtures for the docshift tests.

This module provides:
- Registry and store fixtures (registry, store, sqlite_store)
- Compatibility layer fixtures (readiness, layers)
- Backup fixtures (backups)
- Document factories (legacy_trade, seed_trades)
- A no-op sleep so retry and inter-page delays never block

Tracing is disabled everywhere except where a test passes a MockTracer.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from docshift.compat import CompatibilityLayer, create_layers
from docshift.indexes.readiness import IndexReadinessTracker
from docshift.registry import MigrationRegistry
from docshift.repositories.backups import InMemoryBackupStore
from docshift.stores.in_memory import InMemoryDocumentStore
from docshift.stores.sqlite import SQLiteDocumentStore

DATABASE_ID = "tradeya-staging"


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def registry() -> MigrationRegistry:
    """Registry persisting to an in-memory control plane, starting IDLE."""
    return MigrationRegistry(enable_tracing=False)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Empty in-memory store whose identity matches the staging environment."""
    return InMemoryDocumentStore(DATABASE_ID, enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_store() -> AsyncGenerator[SQLiteDocumentStore, None]:
    """Initialized SQLite store backed by an in-memory database."""
    async with SQLiteDocumentStore(
        ":memory:", database_id=DATABASE_ID, wal_mode=False, enable_tracing=False
    ) as sqlite:
        await sqlite.initialize()
        yield sqlite


@pytest.fixture
def readiness() -> IndexReadinessTracker:
    return IndexReadinessTracker()


@pytest.fixture
def layers(
    registry: MigrationRegistry,
    store: InMemoryDocumentStore,
    readiness: IndexReadinessTracker,
) -> dict[str, CompatibilityLayer]:
    """Every entity layer sharing the registry, store and readiness tracker."""
    return create_layers(registry, store, readiness=readiness, enable_tracing=False)


@pytest.fixture
def backups() -> InMemoryBackupStore:
    return InMemoryBackupStore(enable_tracing=False)


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Awaitable sleep replacement recording the requested delays."""
    return AsyncMock(return_value=None)


# =============================================================================
# Document Factories
# =============================================================================


@pytest.fixture
def legacy_trade() -> Callable[..., dict[str, Any]]:
    """
    Factory for legacy-shape trade documents.

    Usage:
        def test_something(legacy_trade):
            data = legacy_trade(creator="user-1", participant=None)
    """

    def factory(
        creator: str | None = "user-a",
        participant: str | None = "user-b",
        offered: list[Any] | None = None,
        requested: list[Any] | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "title": "Logo for tutoring",
            "status": "open",
            "offeredSkills": ["python"] if offered is None else offered,
            "requestedSkills": [{"id": "design", "name": "Logo Design"}]
            if requested is None
            else requested,
            "createdAt": "2024-01-01T00:00:00+00:00",
        }
        if creator is not None:
            data["creatorId"] = creator
        if participant is not None:
            data["participantId"] = participant
        data.update(extra)
        return data

    return factory


@pytest.fixture
def seed_trades(
    store: InMemoryDocumentStore,
    legacy_trade: Callable[..., dict[str, Any]],
) -> Callable[[int], Awaitable[list[str]]]:
    """
    Seed ``count`` legacy trades with ids ``trade-0000``... and return the ids.

    Ids are zero-padded so cursor order matches numeric order.
    """

    async def seed(count: int) -> list[str]:
        documents = {f"trade-{i:04d}": legacy_trade(creator=f"user-{i % 7}") for i in range(count)}
        await store.seed("trades", documents)
        return sorted(documents)

    return seed
