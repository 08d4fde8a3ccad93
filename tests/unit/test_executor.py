"""
Unit tests for BatchMigrationExecutor.

Tests cover:
- Paging a collection and writing dual-shape documents
- Idempotent reruns skipping migrated documents
- Containment of a failed page commit
- Validation failures recorded per document
- DRY_RUN and VALIDATE_ONLY never writing
- Cancellation, registry rollback and resuming from last_cursor
- Capping a run at max_documents
- Concurrent workers
- Tracing and progress reporting
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from docshift.compat import create_layers
from docshift.exceptions import ConnectivityError
from docshift.executor import (
    BatchMigrationExecutor,
    ExecutorConfig,
    MigrationProgress,
    MigrationResult,
    PerformanceTimings,
)
from docshift.models import ExecutionMode
from docshift.observability import MockTracer
from docshift.retry import RetryConfig
from docshift.stores.in_memory import InMemoryDocumentStore
from docshift.stores.interface import Document

FAST_RETRY = RetryConfig(max_retries=1, initial_delay=0.0)


class FlakyStore(InMemoryDocumentStore):
    """Store whose commit fails for the batch starting at ``fail_batch_at``."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fail_batch_at: str | None = None
        self.failed_commits = 0

    async def commit_batch(self, collection: str, documents: Sequence[Document]) -> None:
        if documents and documents[0].id == self.fail_batch_at:
            self.failed_commits += 1
            raise ConnectivityError("write quota exceeded")
        await super().commit_batch(collection, documents)


def make_executor(
    store: Any, layers: dict[str, Any], sleep: AsyncMock, **kwargs: Any
) -> BatchMigrationExecutor:
    kwargs.setdefault("enable_tracing", False)
    return BatchMigrationExecutor(store, layers, sleep=sleep, **kwargs)


class TestExecutorConfig:
    """Tests for ExecutorConfig validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"page_size": 0},
            {"page_size": 501},
            {"inter_page_delay_seconds": -0.1},
            {"workers": 0},
            {"max_documents": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            ExecutorConfig(**kwargs)

    def test_defaults(self) -> None:
        config = ExecutorConfig()
        assert config.page_size == 50
        assert config.mode is ExecutionMode.EXECUTE
        assert config.workers == 1
        assert config.max_documents is None


class TestMigrationResult:
    """Tests for the MigrationResult count invariant."""

    def test_counts_must_add_up(self) -> None:
        now = datetime.now(UTC)
        with pytest.raises(ValueError, match="!= total"):
            MigrationResult(
                entity_type="trades",
                collection="trades",
                mode=ExecutionMode.EXECUTE,
                total=10,
                migrated=5,
                failed=1,
                skipped=1,
                errors=(),
                performance=PerformanceTimings(now, now),
            )


class TestMigrateCollection:
    """Tests for BatchMigrationExecutor.migrate_collection."""

    @pytest.mark.asyncio
    async def test_migrates_every_page(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        """130 documents at page size 50 migrate in 3 pages with a pause after each."""
        await seed_trades(130)
        executor = make_executor(store, layers, no_sleep)
        processed: list[int] = []

        result = await executor.migrate_collection(
            "trades",
            ExecutorConfig(page_size=50, batch_id="batch-1"),
            progress_callback=lambda progress: processed.append(progress.processed),
        )

        assert (result.total, result.migrated, result.failed, result.skipped) == (130, 130, 0, 0)
        assert result.pages == 3
        page_sizes = [after - before for before, after in zip([0, *processed], processed)]
        assert page_sizes == [50, 50, 30]
        assert result.succeeded
        assert not result.cancelled
        assert result.last_cursor == "trade-0129"
        assert len(result.performance.batch_times) == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [0.5, 0.5, 0.5]

        document = await store.get("trades", "trade-0007")
        assert document is not None
        assert document.data["schemaVersion"] == "2.0"
        assert document.data["migrationBatch"] == "batch-1"
        assert document.data["participants"]["creator"] == document.data["creatorId"]
        assert layers["trades"].is_migrated(document.data)

    @pytest.mark.asyncio
    async def test_rerun_skips_migrated_documents(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(130)
        executor = make_executor(store, layers, no_sleep)
        await executor.migrate_collection("trades", ExecutorConfig(page_size=50))

        second = await executor.migrate_collection("trades", ExecutorConfig(page_size=50))

        assert (second.total, second.migrated, second.skipped) == (130, 0, 130)

    @pytest.mark.asyncio
    async def test_failed_page_is_contained(
        self, registry: Any, legacy_trade: Any, no_sleep: AsyncMock
    ) -> None:
        """A page whose commit exhausts its retries fails alone; other pages commit."""
        store = FlakyStore("tradeya-staging", enable_tracing=False)
        await store.seed("trades", {f"trade-{i:04d}": legacy_trade() for i in range(130)})
        store.fail_batch_at = "trade-0050"
        layers = create_layers(registry, store, enable_tracing=False)
        executor = make_executor(store, layers, no_sleep)

        result = await executor.migrate_collection(
            "trades", ExecutorConfig(page_size=50, retry=FAST_RETRY)
        )

        assert (result.total, result.migrated, result.failed, result.skipped) == (130, 80, 50, 0)
        assert result.pages == 3
        assert store.failed_commits == 2
        assert {e.document_id for e in result.errors} == {
            f"trade-{i:04d}" for i in range(50, 100)
        }
        assert result.errors[0].error == (
            "Batch commit failed after 2 attempts: write quota exceeded"
        )
        untouched = await store.get("trades", "trade-0060")
        assert untouched is not None
        assert "schemaVersion" not in untouched.data

        store.fail_batch_at = None
        retry_run = await executor.migrate_collection("trades", ExecutorConfig(page_size=50))
        assert (retry_run.migrated, retry_run.skipped) == (50, 80)

    @pytest.mark.asyncio
    async def test_invalid_documents_are_recorded(
        self, store: Any, layers: dict[str, Any], legacy_trade: Any, no_sleep: AsyncMock
    ) -> None:
        await store.seed(
            "trades",
            {
                "trade-1": legacy_trade(),
                "trade-2": legacy_trade(creator=None),
                "trade-3": {"notes": "no recognizable fields"},
                "trade-4": legacy_trade(),
            },
        )
        result = await make_executor(store, layers, no_sleep).migrate_collection("trades")

        assert (result.migrated, result.failed) == (2, 2)
        assert [e.document_id for e in result.errors] == ["trade-2", "trade-3"]
        assert "Trade creator must be a non-empty string" in result.errors[0].error
        assert result.success_rate == 0.5

        invalid = await store.get("trades", "trade-2")
        assert invalid is not None
        assert "schemaVersion" not in invalid.data

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [ExecutionMode.DRY_RUN, ExecutionMode.VALIDATE_ONLY])
    async def test_non_writing_modes(
        self,
        mode: ExecutionMode,
        store: Any,
        layers: dict[str, Any],
        seed_trades: Any,
        no_sleep: AsyncMock,
    ) -> None:
        await seed_trades(20)
        result = await make_executor(store, layers, no_sleep).migrate_collection(
            "trades", ExecutorConfig(page_size=8, mode=mode)
        )

        assert result.mode is mode
        assert (result.migrated, result.pages) == (20, 3)
        documents = await store.iter_documents("trades")
        assert all("schemaVersion" not in d.data for d in documents)

    @pytest.mark.asyncio
    async def test_empty_collection(
        self, store: Any, layers: dict[str, Any], no_sleep: AsyncMock
    ) -> None:
        result = await make_executor(store, layers, no_sleep).migrate_collection("trades")

        assert (result.total, result.pages) == (0, 0)
        assert result.last_cursor is None
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_entity_type(
        self, store: Any, layers: dict[str, Any], no_sleep: AsyncMock
    ) -> None:
        with pytest.raises(ValueError, match="No compatibility layer"):
            await make_executor(store, layers, no_sleep).migrate_collection("invoices")

    @pytest.mark.asyncio
    async def test_default_batch_id(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(1)
        result = await make_executor(store, layers, no_sleep).migrate_collection("trades")

        assert result.batch_id is not None
        assert result.batch_id.startswith("trades-")
        document = await store.get("trades", "trade-0000")
        assert document is not None
        assert document.data["migrationBatch"] == result.batch_id

    @pytest.mark.asyncio
    async def test_non_retryable_commit_error_propagates(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(3)
        store.commit_batch = AsyncMock(side_effect=ValueError("payload too large"))

        with pytest.raises(ValueError, match="payload too large"):
            await make_executor(store, layers, no_sleep).migrate_collection("trades")


class TestStoppingAndResuming:
    """Tests for cancellation, registry rollback and resume."""

    @pytest.mark.asyncio
    async def test_cancel_after_first_page_then_resume(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(130)
        executor = make_executor(store, layers, no_sleep)

        def cancel_after_first_page(progress: MigrationProgress) -> None:
            if progress.pages_processed == 1:
                executor.cancel()

        result = await executor.migrate_collection(
            "trades",
            ExecutorConfig(page_size=50),
            progress_callback=cancel_after_first_page,
        )

        assert result.cancelled
        assert (result.migrated, result.pages) == (50, 1)
        assert result.last_cursor == "trade-0049"

        resumed = await executor.migrate_collection(
            "trades", ExecutorConfig(page_size=50, start_after=result.last_cursor)
        )
        assert not resumed.cancelled
        assert (resumed.migrated, resumed.skipped) == (80, 0)
        assert resumed.last_cursor == "trade-0129"

    @pytest.mark.asyncio
    async def test_rolling_back_registry_stops_the_run(
        self,
        store: Any,
        layers: dict[str, Any],
        registry: Any,
        seed_trades: Any,
        no_sleep: AsyncMock,
    ) -> None:
        await seed_trades(10)
        await registry.enable_migration_mode()
        await registry.enter_rollback("operator abort")

        result = await make_executor(
            store, layers, no_sleep, registry=registry
        ).migrate_collection("trades")

        assert result.cancelled
        assert result.total == 0
        assert result.last_cursor is None

    @pytest.mark.asyncio
    async def test_max_documents_shortens_the_last_page(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(130)
        executor = make_executor(store, layers, no_sleep)

        first = await executor.migrate_collection(
            "trades", ExecutorConfig(page_size=50, max_documents=60)
        )
        assert (first.total, first.pages, first.last_cursor) == (60, 2, "trade-0059")
        assert not first.cancelled

        rest = await executor.migrate_collection(
            "trades", ExecutorConfig(page_size=50, start_after=first.last_cursor)
        )
        assert (rest.total, rest.migrated, rest.skipped) == (70, 70, 0)
        assert await executor.count_documents("trades") == 130

    @pytest.mark.asyncio
    async def test_workers_share_pages_without_overlap(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(130)
        result = await make_executor(store, layers, no_sleep).migrate_collection(
            "trades", ExecutorConfig(page_size=10, workers=3)
        )

        assert (result.total, result.migrated, result.pages) == (130, 130, 13)
        assert result.last_cursor == "trade-0129"


class TestObservability:
    """Tests for progress callbacks and tracing."""

    @pytest.mark.asyncio
    async def test_progress_callback(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(130)
        snapshots: list[MigrationProgress] = []

        await make_executor(store, layers, no_sleep).migrate_collection(
            "trades", ExecutorConfig(page_size=50), progress_callback=snapshots.append
        )

        assert [s.processed for s in snapshots] == [50, 100, 130]
        assert snapshots[-1].total_estimate == 130
        assert snapshots[-1].progress_percent == 100.0
        assert snapshots[0].last_cursor == "trade-0049"

    @pytest.mark.asyncio
    async def test_spans(
        self, store: Any, layers: dict[str, Any], seed_trades: Any, no_sleep: AsyncMock
    ) -> None:
        await seed_trades(130)
        tracer = MockTracer()

        await BatchMigrationExecutor(
            store, layers, sleep=no_sleep, tracer=tracer
        ).migrate_collection("trades", ExecutorConfig(page_size=50))

        assert tracer.span_names.count("docshift.executor.migrate_collection") == 1
        assert tracer.span_names.count("docshift.executor.page") == 3
