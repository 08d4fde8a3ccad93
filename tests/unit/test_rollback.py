"""
Unit tests for the RollbackManager.

Tests cover:
- Restoring collections from the latest verified backup
- Stamping restored documents with the rollback time and reason
- Registry lease handling (fresh and interrupted rollbacks)
- Missing backups leaving the registry in ROLLING_BACK
"""

from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio

from docshift.exceptions import NoBackupAvailableError
from docshift.executor import BatchMigrationExecutor, ExecutorConfig
from docshift.models import MigrationMode
from docshift.observability import MockTracer
from docshift.rollback import FIELD_ROLLBACK_REASON, FIELD_ROLLED_BACK_AT, RollbackManager
from docshift.stores.interface import Document


def make_manager(
    registry: Any, store: Any, backups: Any, layers: dict[str, Any], **kw: Any
) -> RollbackManager:
    kw.setdefault("enable_tracing", False)
    return RollbackManager(registry, store, backups, layers.values(), **kw)


@pytest_asyncio.fixture
async def migrated(
    registry: Any,
    store: Any,
    layers: dict[str, Any],
    backups: Any,
    seed_trades: Any,
    no_sleep: Any,
) -> list[str]:
    """Five trades backed up, then migrated to the dual shape."""
    ids = await seed_trades(5)
    await backups.create_backup(
        store, ["trades", "conversations", "messages"], environment="staging"
    )
    await registry.enable_migration_mode()
    executor = BatchMigrationExecutor(
        store, layers, registry=registry, sleep=no_sleep, enable_tracing=False
    )
    await executor.migrate_collection("trades", ExecutorConfig(page_size=2))
    return ids


class TestRollback:
    """Tests for RollbackManager.rollback."""

    @pytest.mark.asyncio
    async def test_restores_legacy_documents(
        self,
        registry: Any,
        store: Any,
        backups: Any,
        layers: dict[str, Any],
        migrated: list[str],
    ) -> None:
        await store.commit_batch("trades", [Document("trade-new", {"creatorId": "late"})])
        manager = make_manager(registry, store, backups, layers, environment="staging")

        result = await manager.rollback("latency regression")

        assert registry.mode is MigrationMode.IDLE
        assert result.previous_mode is MigrationMode.MIGRATING
        assert result.restored_counts == {"trades": 5, "conversations": 0, "messages": 0}
        assert result.total_restored == 5
        assert result.layers_reverted == ("trades", "conversations", "messages")

        documents = await store.iter_documents("trades")
        assert [d.id for d in documents] == migrated
        for document in documents:
            assert "schemaVersion" not in document.data
            assert document.data[FIELD_ROLLBACK_REASON] == "latency regression"
            assert document.data[FIELD_ROLLED_BACK_AT] == result.started_at.isoformat()
        assert all(layer.legacy_only for layer in layers.values())

    @pytest.mark.asyncio
    async def test_selected_collections(
        self,
        registry: Any,
        store: Any,
        backups: Any,
        layers: dict[str, Any],
        migrated: list[str],
    ) -> None:
        result = await make_manager(registry, store, backups, layers).rollback(
            "trades only", collections=["trades"]
        )
        assert result.collections == ("trades",)
        assert result.restored_counts == {"trades": 5}

    @pytest.mark.asyncio
    async def test_resumes_interrupted_rollback(
        self,
        registry: Any,
        store: Any,
        backups: Any,
        layers: dict[str, Any],
        migrated: list[str],
    ) -> None:
        await registry.enter_rollback("process crashed mid-restore")

        result = await make_manager(registry, store, backups, layers).rollback("resume")

        assert result.previous_mode is MigrationMode.ROLLING_BACK
        assert registry.mode is MigrationMode.IDLE

    @pytest.mark.asyncio
    async def test_no_backup_leaves_registry_rolling_back(
        self, registry: Any, store: Any, backups: Any, layers: dict[str, Any], seed_trades: Any
    ) -> None:
        await seed_trades(3)
        await registry.enable_migration_mode()

        with pytest.raises(NoBackupAvailableError) as exc_info:
            await make_manager(registry, store, backups, layers).rollback("abort")

        assert "within the last 24h" in str(exc_info.value)
        assert registry.mode is MigrationMode.ROLLING_BACK
        assert await store.count("trades") == 3
        assert all(layer.legacy_only for layer in layers.values())

    @pytest.mark.asyncio
    async def test_backup_outside_window_is_ignored(
        self,
        registry: Any,
        store: Any,
        backups: Any,
        layers: dict[str, Any],
        migrated: list[str],
    ) -> None:
        manager = make_manager(
            registry, store, backups, layers, rollback_window=timedelta(microseconds=1)
        )
        with pytest.raises(NoBackupAvailableError):
            await manager.rollback("too late")

    @pytest.mark.asyncio
    async def test_backup_from_other_environment_is_ignored(
        self,
        registry: Any,
        store: Any,
        backups: Any,
        layers: dict[str, Any],
        migrated: list[str],
    ) -> None:
        manager = make_manager(registry, store, backups, layers, environment="production")
        with pytest.raises(NoBackupAvailableError):
            await manager.rollback("wrong environment")

    @pytest.mark.asyncio
    async def test_nothing_to_roll_back(self, registry: Any, store: Any, backups: Any) -> None:
        manager = RollbackManager(registry, store, backups, enable_tracing=False)
        with pytest.raises(ValueError, match="No collections"):
            await manager.rollback("empty")
        assert registry.mode is MigrationMode.IDLE

    @pytest.mark.asyncio
    async def test_spans(
        self,
        registry: Any,
        store: Any,
        backups: Any,
        layers: dict[str, Any],
        migrated: list[str],
    ) -> None:
        tracer = MockTracer()
        await make_manager(registry, store, backups, layers, tracer=tracer).rollback("traced")

        assert "docshift.rollback.rollback" in tracer.span_names
        assert tracer.span_names.count("docshift.rollback.restore_collection") == 3
