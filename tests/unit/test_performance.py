"""
Unit tests for the performance regression validator.

A step clock makes every timed operation take a fixed duration, so the
measured baselines are deterministic.
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from docshift.exceptions import BaselineAlreadyRecordedError, RegressionDetected
from docshift.models import BaselinePhase, PerformanceBaseline, RegressionStatus
from docshift.performance import (
    BenchmarkQuery,
    PerformanceRegressionValidator,
    default_benchmarks,
    detect_regression,
)
from docshift.stores.interface import FilterOperator, QueryFilter


class StepClock:
    """Clock that advances by ``step`` seconds on every read."""

    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class TestBenchmarkQuery:
    """Tests for BenchmarkQuery."""

    @pytest.mark.asyncio
    async def test_first_page_benchmark(self, store: Any, seed_trades: Any) -> None:
        await seed_trades(30)
        documents = await BenchmarkQuery("trades.first", "trades", limit=5).run(store)
        assert [d.id for d in documents] == [f"trade-{i:04d}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_filtered_benchmark(self, store: Any, seed_trades: Any) -> None:
        await seed_trades(14)
        benchmark = BenchmarkQuery(
            "trades.by_creator",
            "trades",
            filters=(QueryFilter("creatorId", FilterOperator.EQUAL, "user-3"),),
        )
        assert [d.id for d in await benchmark.run(store)] == ["trade-0003", "trade-0010"]

    def test_limit_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            BenchmarkQuery("x", "trades", limit=0)

    def test_default_benchmarks_one_per_collection(self, layers: dict[str, Any]) -> None:
        benchmarks = default_benchmarks([*layers.values(), layers["trades"]])
        assert [p.collection for p in benchmarks] == ["trades", "conversations", "messages"]
        assert benchmarks[0].name == "trades.first_page"


class TestPerformanceRegressionValidator:
    """Tests for PerformanceRegressionValidator."""

    def test_requires_benchmarks(self, store: Any) -> None:
        with pytest.raises(ValueError):
            PerformanceRegressionValidator(store, [], enable_tracing=False)

    @pytest.mark.asyncio
    async def test_measure_with_step_clock(self, store: Any, seed_trades: Any) -> None:
        await seed_trades(3)
        validator = PerformanceRegressionValidator(
            store,
            [BenchmarkQuery("trades.first", "trades")],
            clock=StepClock(0.010),
            cache_hit_rate_source=AsyncMock(return_value=0.9),
            enable_tracing=False,
        )

        baseline = await validator.measure()

        assert baseline.average_query_time_ms == pytest.approx(10.0)
        assert baseline.real_time_latency_ms == pytest.approx(10.0)
        assert baseline.cache_hit_rate == 0.9

    @pytest.mark.asyncio
    async def test_empty_collection_pings(self, store: Any) -> None:
        store.ping = AsyncMock(return_value=None)
        validator = PerformanceRegressionValidator(
            store, [BenchmarkQuery("trades.first", "trades")], samples=2, enable_tracing=False
        )

        await validator.measure()
        assert store.ping.await_count == 2

    @pytest.mark.asyncio
    async def test_records_baselines_in_registry(
        self, store: Any, registry: Any, seed_trades: Any
    ) -> None:
        await seed_trades(3)
        clock = StepClock(0.010)
        validator = PerformanceRegressionValidator(
            store,
            [BenchmarkQuery("trades.first", "trades")],
            registry=registry,
            clock=clock,
            enable_tracing=False,
        )

        pre = await validator.record_baseline(BaselinePhase.PRE)
        clock.step = 0.015
        post = await validator.record_baseline(BaselinePhase.POST)

        assert registry.get_baseline(BaselinePhase.PRE) == pre
        assert registry.get_baseline(BaselinePhase.POST) == post
        with pytest.raises(BaselineAlreadyRecordedError):
            await validator.record_baseline(BaselinePhase.PRE)

        verdict = validator.compare_baselines(pre, post)
        assert verdict.status is RegressionStatus.DEGRADED
        assert verdict.delta_percent == pytest.approx(50.0)

    def test_threshold_from_registry(self, store: Any, registry: Any) -> None:
        validator = PerformanceRegressionValidator(
            store, [BenchmarkQuery("p", "trades")], registry=registry, enable_tracing=False
        )
        assert validator.threshold_percent == registry.regression_tolerance_percent

    def test_within_tolerance(self, store: Any) -> None:
        validator = PerformanceRegressionValidator(
            store, [BenchmarkQuery("p", "trades")], threshold_percent=10.0, enable_tracing=False
        )
        verdict = validator.compare_baselines(
            PerformanceBaseline(100.0, 50.0), PerformanceBaseline(105.0, 40.0)
        )

        assert verdict.status is RegressionStatus.OK
        assert verdict.latency_delta_percent == pytest.approx(-20.0)
        assert detect_regression(verdict) is None


class TestDetectRegression:
    """Tests for detect_regression."""

    def test_degraded_verdict_returns_advisory_error(self, store: Any) -> None:
        validator = PerformanceRegressionValidator(
            store, [BenchmarkQuery("p", "trades")], threshold_percent=10.0, enable_tracing=False
        )
        verdict = validator.compare_baselines(
            PerformanceBaseline(100.0, 50.0), PerformanceBaseline(130.0, 50.0)
        )

        regression = detect_regression(verdict)
        assert isinstance(regression, RegressionDetected)
        assert regression.delta_percent == pytest.approx(30.0)
        assert regression.threshold_percent == 10.0
