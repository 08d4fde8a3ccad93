"""
Performance regression validator.

Runs a small fixed set of benchmark queries before and after a migration and
compares the two baselines. A degraded verdict is advisory: it is logged
and returned as a RegressionDetected value, never raised.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass

from docshift.compat.base import CompatibilityLayer
from docshift.exceptions import RegressionDetected
from docshift.models import (
    DEFAULT_REGRESSION_TOLERANCE_PERCENT,
    BaselinePhase,
    PerformanceBaseline,
    RegressionVerdict,
    compare_baselines,
)
from docshift.observability import ATTR_COLLECTION, Tracer, create_tracer
from docshift.registry import MigrationRegistry
from docshift.stores.interface import Document, DocumentStore, QueryFilter

logger = logging.getLogger(__name__)

DEFAULT_SAMPLES = 3
DEFAULT_BENCHMARK_LIMIT = 20


@dataclass(frozen=True)
class BenchmarkQuery:
    """
    A representative query timed by the validator.

    With no filters the benchmark reads the first page of the collection.
    """

    name: str
    collection: str
    filters: tuple[QueryFilter, ...] = ()
    limit: int = DEFAULT_BENCHMARK_LIMIT

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")

    async def run(self, store: DocumentStore) -> list[Document]:
        if self.filters:
            return await store.query(self.collection, list(self.filters), limit=self.limit)
        page = await store.read_page(self.collection, limit=self.limit)
        return list(page.documents)


def default_benchmarks(layers: Iterable[CompatibilityLayer]) -> list[BenchmarkQuery]:
    """One first-page benchmark per layer collection."""
    benchmarks: list[BenchmarkQuery] = []
    for layer in layers:
        if all(p.collection != layer.collection for p in benchmarks):
            benchmarks.append(
                BenchmarkQuery(name=f"{layer.entity_type}.first_page", collection=layer.collection)
            )
    return benchmarks


def detect_regression(verdict: RegressionVerdict) -> RegressionDetected | None:
    """The advisory RegressionDetected value for a degraded verdict, else None."""
    if not verdict.degraded:
        return None
    return RegressionDetected(verdict.delta_percent, verdict.threshold_percent)


class PerformanceRegressionValidator:
    """
    Records pre/post baselines and compares them.

    Example:
        >>> validator = PerformanceRegressionValidator(
        ...     store, default_benchmarks(layers.values()), registry=registry
        ... )
        >>> pre = await validator.record_baseline(BaselinePhase.PRE)
        >>> # ... migrate ...
        >>> post = await validator.record_baseline(BaselinePhase.POST)
        >>> validator.compare_baselines(pre, post).status
        <RegressionStatus.OK: 'ok'>
    """

    def __init__(
        self,
        store: DocumentStore,
        benchmarks: Sequence[BenchmarkQuery],
        *,
        registry: MigrationRegistry | None = None,
        samples: int = DEFAULT_SAMPLES,
        threshold_percent: float | None = None,
        cache_hit_rate_source: Callable[[], Awaitable[float | None]] | None = None,
        clock: Callable[[], float] = time.perf_counter,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            store: Store the benchmarks run against
            benchmarks: Representative queries (at least one)
            registry: Registry the baselines are recorded in, if any
            samples: How many times each benchmark runs per baseline
            threshold_percent: Tolerance; defaults to the registry's, else 20%
            cache_hit_rate_source: Async callable returning a 0-1 hit rate
            clock: Monotonic clock in seconds (injectable for tests)
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        if not benchmarks:
            raise ValueError("At least one benchmark query is required")
        if samples < 1:
            raise ValueError(f"samples must be >= 1, got {samples}")
        self._store = store
        self._benchmarks = list(benchmarks)
        self._registry = registry
        self._samples = samples
        if threshold_percent is None:
            threshold_percent = (
                registry.regression_tolerance_percent
                if registry is not None
                else DEFAULT_REGRESSION_TOLERANCE_PERCENT
            )
        self._threshold = threshold_percent
        self._cache_hit_rate_source = cache_hit_rate_source
        self._clock = clock
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def threshold_percent(self) -> float:
        return self._threshold

    async def measure(self) -> PerformanceBaseline:
        """Run the benchmarks and build a baseline without recording it."""
        query_times: list[float] = []
        sample_document: tuple[str, str] | None = None

        for _ in range(self._samples):
            for benchmark in self._benchmarks:
                with self._tracer.span(
                    "docshift.performance.benchmark", {ATTR_COLLECTION: benchmark.collection}
                ):
                    started = self._clock()
                    documents = await benchmark.run(self._store)
                    query_times.append((self._clock() - started) * 1000)
                if sample_document is None and documents:
                    sample_document = (benchmark.collection, documents[0].id)

        latencies: list[float] = []
        for _ in range(self._samples):
            started = self._clock()
            if sample_document is not None:
                await self._store.get(*sample_document)
            else:
                await self._store.ping()
            latencies.append((self._clock() - started) * 1000)

        cache_hit_rate = None
        if self._cache_hit_rate_source is not None:
            cache_hit_rate = await self._cache_hit_rate_source()

        return PerformanceBaseline(
            average_query_time_ms=sum(query_times) / len(query_times),
            real_time_latency_ms=sum(latencies) / len(latencies),
            cache_hit_rate=cache_hit_rate,
        )

    async def record_baseline(self, phase: BaselinePhase) -> PerformanceBaseline:
        """
        Measure and record a baseline for a phase.

        Raises:
            BaselineAlreadyRecordedError: If the registry already holds one for the phase
        """
        with self._tracer.span("docshift.performance.record_baseline", {"phase": phase.value}):
            baseline = await self.measure()
        if self._registry is not None:
            await self._registry.record_performance_baseline(baseline, phase)
        logger.info(
            "%s baseline: query=%.2fms latency=%.2fms over %d benchmark(s) x %d sample(s)",
            phase.value,
            baseline.average_query_time_ms,
            baseline.real_time_latency_ms,
            len(self._benchmarks),
            self._samples,
        )
        return baseline

    def compare_baselines(
        self, pre: PerformanceBaseline, post: PerformanceBaseline
    ) -> RegressionVerdict:
        """Compare post against pre; a degraded verdict is logged, not raised."""
        verdict = compare_baselines(pre, post, self._threshold)
        if verdict.degraded:
            logger.warning(
                "Performance regression detected: %.1f%% slower (tolerance %.1f%%)",
                verdict.delta_percent,
                verdict.threshold_percent,
            )
        return verdict


__all__ = [
    "DEFAULT_BENCHMARK_LIMIT",
    "DEFAULT_SAMPLES",
    "BenchmarkQuery",
    "PerformanceRegressionValidator",
    "default_benchmarks",
    "detect_regression",
]
