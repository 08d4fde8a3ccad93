"""
BatchMigrationExecutor - Rewrites a collection into dual-shape documents.

The executor walks a collection in cursor-ordered pages. For every page it:

1. Skips documents that are already migrated
2. Normalizes and denormalizes the rest through the entity's compatibility layer
3. Validates each payload against the layer's required-field rules
4. Commits the valid payloads as one atomic batch, retrying transient failures

A page whose commit exhausts its retries marks its pending documents failed
and the run moves on. Pages may be processed by a bounded worker pool; a
single reader hands out pages by cursor so no two workers share a document.

Usage:
    >>> executor = BatchMigrationExecutor(store, layers, registry=registry)
    >>> result = await executor.migrate_collection("trades", ExecutorConfig(page_size=50))
    >>> result.migrated, result.failed, result.skipped
    (130, 0, 0)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from docshift.compat.base import CompatibilityLayer
from docshift.exceptions import DocshiftError, DocumentValidationError
from docshift.models import ExecutionMode, MigrationMode
from docshift.observability import (
    ATTR_COLLECTION,
    ATTR_DOCUMENT_COUNT,
    ATTR_DOCUMENTS_FAILED,
    ATTR_DOCUMENTS_MIGRATED,
    ATTR_DOCUMENTS_SKIPPED,
    ATTR_ENTITY_TYPE,
    ATTR_EXECUTION_MODE,
    ATTR_PAGE_NUMBER,
    ATTR_PAGE_SIZE,
    Tracer,
    create_tracer,
)
from docshift.registry import MigrationRegistry
from docshift.retry import RetryConfig, RetryError, RetryPolicy
from docshift.stores.interface import Document, DocumentPage, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class ExecutorConfig:
    """
    Knobs for one migration run.

    Attributes:
        page_size: Documents per page and per atomic batch (1-500)
        retry: Retry policy for page reads and commits
        inter_page_delay_seconds: Pause after each page to bound write throughput
        workers: Pages processed concurrently
        mode: DRY_RUN and VALIDATE_ONLY never write; EXECUTE writes
        start_after: Resume cursor from a previous run's ``last_cursor``
        batch_id: Stamped on migrated documents as ``migrationBatch``
        max_documents: Stop after reading this many documents; the last
            page is shortened to fit. None reads to the end of the collection.
    """

    page_size: int = DEFAULT_PAGE_SIZE
    retry: RetryConfig = field(default_factory=RetryConfig)
    inter_page_delay_seconds: float = 0.5
    workers: int = 1
    mode: ExecutionMode = ExecutionMode.EXECUTE
    start_after: str | None = None
    batch_id: str | None = None
    max_documents: int | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {self.page_size}"
            )
        if self.inter_page_delay_seconds < 0:
            raise ValueError(
                f"inter_page_delay_seconds must be >= 0, got {self.inter_page_delay_seconds}"
            )
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.max_documents is not None and self.max_documents < 1:
            raise ValueError(f"max_documents must be >= 1, got {self.max_documents}")


@dataclass(frozen=True)
class MigrationErrorRecord:
    """One failed document."""

    document_id: str
    error: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.document_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PerformanceTimings:
    """Wall-clock timings of a run; ``batch_times`` are per-page seconds."""

    start_time: datetime
    end_time: datetime
    batch_times: tuple[float, ...] = ()

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def average_batch_seconds(self) -> float:
        return sum(self.batch_times) / len(self.batch_times) if self.batch_times else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "batch_times": [round(t, 4) for t in self.batch_times],
        }


@dataclass(frozen=True)
class MigrationResult:
    """
    Aggregate result for one entity type.

    Invariant: ``migrated + failed + skipped == total``.

    In DRY_RUN and VALIDATE_ONLY modes ``migrated`` counts documents that
    transformed and validated cleanly; nothing was written.
    """

    entity_type: str
    collection: str
    mode: ExecutionMode
    total: int
    migrated: int
    failed: int
    skipped: int
    errors: tuple[MigrationErrorRecord, ...]
    performance: PerformanceTimings
    pages: int = 0
    cancelled: bool = False
    last_cursor: str | None = None
    batch_id: str | None = None

    def __post_init__(self) -> None:
        for name in ("total", "migrated", "failed", "skipped", "pages"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.migrated + self.failed + self.skipped != self.total:
            raise ValueError(
                f"migrated ({self.migrated}) + failed ({self.failed}) + skipped "
                f"({self.skipped}) != total ({self.total})"
            )

    @property
    def succeeded(self) -> bool:
        return self.failed == 0

    @property
    def success_rate(self) -> float:
        """Fraction of non-skipped documents that migrated (1.0 when none needed it)."""
        attempted = self.migrated + self.failed
        return self.migrated / attempted if attempted else 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "collection": self.collection,
            "mode": self.mode.value,
            "total": self.total,
            "migrated": self.migrated,
            "failed": self.failed,
            "skipped": self.skipped,
            "pages": self.pages,
            "cancelled": self.cancelled,
            "last_cursor": self.last_cursor,
            "batch_id": self.batch_id,
            "errors": [e.to_dict() for e in self.errors],
            "performance": self.performance.to_dict(),
        }


@dataclass(frozen=True)
class MigrationProgress:
    """Snapshot passed to the progress callback after every page."""

    entity_type: str
    pages_processed: int
    processed: int
    migrated: int
    failed: int
    skipped: int
    total_estimate: int
    last_cursor: str | None

    @property
    def progress_percent(self) -> float:
        if self.total_estimate == 0:
            return 0.0
        return min(100.0, self.processed / self.total_estimate * 100)


@dataclass
class _Run:
    """Mutable counters shared by the workers of one run."""

    layer: CompatibilityLayer
    config: ExecutorConfig
    policy: RetryPolicy
    batch_id: str
    migrated_at: str
    total_estimate: int
    progress_callback: Callable[[MigrationProgress], None] | None
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    pages_done: int = 0
    errors: list[MigrationErrorRecord] = field(default_factory=list)
    batch_times: list[float] = field(default_factory=list)
    stop_reason: str | None = None
    worker_error: BaseException | None = None
    # Page number -> cursor after that page, for pages finished out of order.
    finished: dict[int, str | None] = field(default_factory=dict)
    next_contiguous: int = 1
    last_cursor: str | None = None

    @property
    def processed(self) -> int:
        return self.migrated + self.failed + self.skipped

    def fail(self, document_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append(MigrationErrorRecord(document_id, error, datetime.now(UTC)))

    def finish_page(self, number: int, cursor: str | None) -> None:
        self.pages_done += 1
        self.finished[number] = cursor
        while self.next_contiguous in self.finished:
            self.last_cursor = self.finished.pop(self.next_contiguous)
            self.next_contiguous += 1


@dataclass(frozen=True)
class _PageWork:
    number: int
    page: DocumentPage
    cursor: str | None


class BatchMigrationExecutor:
    """
    Migrates collections page by page through their compatibility layers.

    Example:
        >>> executor = BatchMigrationExecutor(store, layers, registry=registry)
        >>> result = await executor.migrate_collection(
        ...     "trades",
        ...     ExecutorConfig(page_size=25, mode=ExecutionMode.DRY_RUN),
        ... )

    Attributes:
        _store: Store being migrated.
        _layers: Compatibility layer per entity type.
        _registry: Registry watched for ROLLING_BACK.
        _is_cancelled: Flag indicating cancellation requested.
    """

    def __init__(
        self,
        store: DocumentStore,
        layers: Mapping[str, CompatibilityLayer],
        *,
        registry: MigrationRegistry | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            store: Store to migrate
            layers: Compatibility layers keyed by entity type
            registry: Registry whose ROLLING_BACK mode stops the run early
            sleep: Awaitable sleep for the inter-page delay and retry backoff
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._store = store
        self._layers = dict(layers)
        self._registry = registry
        self._sleep = sleep
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._is_cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    def cancel(self) -> None:
        """
        Stop the current run after in-flight pages complete.

        The result records ``cancelled`` and the ``last_cursor`` to resume from.
        """
        self._is_cancelled = True
        logger.info("Migration cancellation requested")

    def _should_stop(self, run: _Run) -> bool:
        if run.stop_reason is not None:
            return True
        if self._is_cancelled:
            run.stop_reason = "cancelled by operator"
        elif self._registry is not None and self._registry.mode is MigrationMode.ROLLING_BACK:
            run.stop_reason = "registry entered rolling_back"
        return run.stop_reason is not None

    def layer_for(self, entity_type: str) -> CompatibilityLayer:
        try:
            return self._layers[entity_type]
        except KeyError:
            raise ValueError(
                f"No compatibility layer for entity type {entity_type!r}; "
                f"known: {sorted(self._layers)}"
            ) from None

    async def count_documents(self, entity_type: str) -> int:
        return await self._store.count(self.layer_for(entity_type).collection)

    async def migrate_collection(
        self,
        entity_type: str,
        config: ExecutorConfig | None = None,
        *,
        progress_callback: Callable[[MigrationProgress], None] | None = None,
    ) -> MigrationResult:
        """
        Migrate every document of one entity type.

        Args:
            entity_type: Entity type whose layer and collection to use
            config: Run configuration (defaults to ExecutorConfig())
            progress_callback: Called with a MigrationProgress after each page

        Returns:
            The run's MigrationResult

        Raises:
            ValueError: If no layer is registered for the entity type
            RetryError: If reading a page keeps failing after all retries
        """
        config = config or ExecutorConfig()
        layer = self.layer_for(entity_type)
        self._is_cancelled = False
        start_time = datetime.now(UTC)

        with self._tracer.span(
            "docshift.executor.migrate_collection",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_COLLECTION: layer.collection,
                ATTR_EXECUTION_MODE: config.mode.value,
                ATTR_PAGE_SIZE: config.page_size,
            },
        ):
            run = _Run(
                layer=layer,
                config=config,
                policy=RetryPolicy(config.retry, sleep=self._sleep),
                batch_id=config.batch_id or f"{entity_type}-{start_time:%Y%m%dT%H%M%SZ}",
                migrated_at=start_time.isoformat(),
                total_estimate=await self._store.count(layer.collection),
                progress_callback=progress_callback,
                last_cursor=config.start_after,
            )
            logger.info(
                "Starting %s migration of %s: ~%d documents, page size %d, %d worker(s)%s",
                config.mode.value,
                layer.collection,
                run.total_estimate,
                config.page_size,
                config.workers,
                f", resuming after {config.start_after}" if config.start_after else "",
            )

            queue: asyncio.Queue[_PageWork | None] = asyncio.Queue(maxsize=config.workers)
            workers = [
                asyncio.create_task(self._worker(queue, run)) for _ in range(config.workers)
            ]
            try:
                await self._read_pages(queue, run)
            finally:
                for _ in workers:
                    await queue.put(None)
                await asyncio.gather(*workers)
            if run.worker_error is not None:
                raise run.worker_error

            result = MigrationResult(
                entity_type=entity_type,
                collection=layer.collection,
                mode=config.mode,
                total=run.processed,
                migrated=run.migrated,
                failed=run.failed,
                skipped=run.skipped,
                errors=tuple(run.errors),
                performance=PerformanceTimings(
                    start_time=start_time,
                    end_time=datetime.now(UTC),
                    batch_times=tuple(run.batch_times),
                ),
                pages=run.pages_done,
                cancelled=run.stop_reason is not None,
                last_cursor=run.last_cursor,
                batch_id=run.batch_id,
            )

        if result.cancelled:
            logger.warning(
                "Migration of %s stopped early (%s); resume after cursor %s",
                layer.collection,
                run.stop_reason,
                result.last_cursor,
            )
        logger.info(
            "Finished %s migration of %s: %d total, %d migrated, %d failed, %d skipped "
            "in %d page(s) (%.1fs)",
            config.mode.value,
            layer.collection,
            result.total,
            result.migrated,
            result.failed,
            result.skipped,
            result.pages,
            result.performance.duration_seconds,
        )
        return result

    async def _read_pages(self, queue: asyncio.Queue[_PageWork | None], run: _Run) -> None:
        """Single reader: hand out pages in cursor order until exhausted or stopped."""
        cursor = run.config.start_after
        number = 0
        read = 0
        collection = run.layer.collection
        while not self._should_stop(run):
            limit = run.config.page_size
            if run.config.max_documents is not None:
                limit = min(limit, run.config.max_documents - read)
                if limit <= 0:
                    return
            after = cursor
            page = await run.policy.run(
                lambda: self._store.read_page(collection, after=after, limit=limit),
                f"read {collection} page {number + 1}",
            )
            if not page.documents:
                return
            number += 1
            read += len(page.documents)
            await queue.put(_PageWork(number=number, page=page, cursor=page.documents[-1].id))
            if page.is_last:
                return
            cursor = page.next_cursor

    async def _worker(self, queue: asyncio.Queue[_PageWork | None], run: _Run) -> None:
        while True:
            work = await queue.get()
            if work is None:
                return
            if self._should_stop(run):
                continue
            try:
                await self._process_page(work, run)
            except Exception as e:
                # Keep draining so the reader never blocks on a full queue.
                run.worker_error = run.worker_error or e
                run.stop_reason = f"page {work.number} raised {type(e).__name__}"
                continue
            await self._sleep(run.config.inter_page_delay_seconds)

    async def _process_page(self, work: _PageWork, run: _Run) -> None:
        layer = run.layer
        config = run.config
        started = time.perf_counter()
        migrated_before, failed_before, skipped_before = run.migrated, run.failed, run.skipped

        with self._tracer.span(
            "docshift.executor.page",
            {
                ATTR_ENTITY_TYPE: layer.entity_type,
                ATTR_PAGE_NUMBER: work.number,
                ATTR_DOCUMENT_COUNT: len(work.page),
            },
        ) as span:
            pending = self._transform_page(work.page.documents, run)

            if pending and config.mode.writes:
                await self._commit(pending, work.number, run)
            else:
                run.migrated += len(pending)

            if span is not None:
                span.set_attribute(ATTR_DOCUMENTS_MIGRATED, run.migrated - migrated_before)
                span.set_attribute(ATTR_DOCUMENTS_FAILED, run.failed - failed_before)
                span.set_attribute(ATTR_DOCUMENTS_SKIPPED, run.skipped - skipped_before)

        elapsed = time.perf_counter() - started
        run.batch_times.append(elapsed)
        run.finish_page(work.number, work.cursor)
        logger.debug(
            "%s page %d: %d migrated, %d failed, %d skipped (%.3fs)",
            layer.collection,
            work.number,
            run.migrated - migrated_before,
            run.failed - failed_before,
            run.skipped - skipped_before,
            elapsed,
        )

        if run.progress_callback is not None:
            run.progress_callback(
                MigrationProgress(
                    entity_type=layer.entity_type,
                    pages_processed=run.pages_done,
                    processed=run.processed,
                    migrated=run.migrated,
                    failed=run.failed,
                    skipped=run.skipped,
                    total_estimate=run.total_estimate,
                    last_cursor=run.last_cursor,
                )
            )

    def _transform_page(self, documents: tuple[Document, ...], run: _Run) -> list[Document]:
        """Normalize, denormalize and validate; returns payloads ready to commit."""
        layer = run.layer
        pending: list[Document] = []
        for document in documents:
            if layer.is_migrated(document.data):
                run.skipped += 1
                continue
            try:
                entity = layer.normalize(document.data, document.id)
                payload = layer.denormalize(
                    entity, migrated_at=run.migrated_at, batch_id=run.batch_id
                )
                problems = layer.validate(payload)
                if problems:
                    raise DocumentValidationError(
                        "; ".join(problems),
                        problems=problems,
                        entity_type=layer.entity_type,
                        document_id=document.id,
                    )
            except DocumentValidationError as e:
                logger.debug("Document %s/%s failed: %s", layer.collection, document.id, e)
                run.fail(document.id, e.message)
            else:
                pending.append(Document(document.id, payload))
        return pending

    async def _commit(self, pending: list[Document], number: int, run: _Run) -> None:
        collection = run.layer.collection
        try:
            await run.policy.run(
                lambda: self._store.commit_batch(collection, pending),
                f"commit {collection} page {number}",
            )
        except RetryError as e:
            message = f"Batch commit failed after {e.attempts} attempts: {e.last_error}"
            logger.warning("%s page %d: %s", collection, number, message)
            for document in pending:
                run.fail(document.id, message)
        except DocshiftError as e:
            logger.warning("%s page %d: batch commit failed: %s", collection, number, e)
            for document in pending:
                run.fail(document.id, f"Batch commit failed: {e.message}")
        else:
            run.migrated += len(pending)


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "BatchMigrationExecutor",
    "ExecutorConfig",
    "MigrationErrorRecord",
    "MigrationProgress",
    "MigrationResult",
    "PerformanceTimings",
]
