"""
Core data models for the docshift migration toolkit.

This module defines:
- MigrationMode: Registry state machine
- ExecutionMode: dry_run / validate_only / execute
- BaselinePhase, PerformanceBaseline: Performance snapshots
- RegressionStatus, RegressionVerdict, compare_baselines: Pre/post comparison
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class MigrationMode(Enum):
    """
    Registry-owned migration mode.

    State machine transitions:
        IDLE -> MIGRATING -> VALIDATING -> COMPLETE -> IDLE
                   |             |            |
        Any non-rollback mode -------------------> ROLLING_BACK -> IDLE

    Valid transitions:
        - IDLE -> MIGRATING: enable_migration_mode
        - MIGRATING -> VALIDATING: every entity type migrated
        - VALIDATING -> COMPLETE: post-migration checks recorded
        - COMPLETE -> IDLE: compatibility layer retired
        - Any except ROLLING_BACK -> ROLLING_BACK: rollback lease taken
        - ROLLING_BACK -> IDLE: rollback lease released

    Attributes:
        IDLE: Legacy schema in use, no migration running.
        MIGRATING: Batch migration running; layers dual-write.
        VALIDATING: Migration done; post-migration validation running.
        COMPLETE: Target schema in use; legacy fields still dual-written.
        ROLLING_BACK: Rollback Manager restoring legacy state.
    """

    IDLE = "idle"
    MIGRATING = "migrating"
    VALIDATING = "validating"
    COMPLETE = "complete"
    ROLLING_BACK = "rolling_back"

    @property
    def is_migration_active(self) -> bool:
        """True while the target schema may be partially populated or in use."""
        return self in (MigrationMode.MIGRATING, MigrationMode.VALIDATING, MigrationMode.COMPLETE)

    def can_transition_to(self, target: MigrationMode) -> bool:
        """
        Check if transition to target mode is valid.

        Args:
            target: The target mode to transition to.

        Returns:
            True if the transition is valid.
        """
        if target is MigrationMode.ROLLING_BACK:
            return self is not MigrationMode.ROLLING_BACK
        return target in _MODE_TRANSITIONS.get(self, ())


_MODE_TRANSITIONS: dict[MigrationMode, tuple[MigrationMode, ...]] = {
    MigrationMode.IDLE: (MigrationMode.MIGRATING,),
    MigrationMode.MIGRATING: (MigrationMode.VALIDATING,),
    MigrationMode.VALIDATING: (MigrationMode.COMPLETE,),
    MigrationMode.COMPLETE: (MigrationMode.IDLE,),
    MigrationMode.ROLLING_BACK: (MigrationMode.IDLE,),
}


class ExecutionMode(Enum):
    """
    How a migration run treats the database.

    Attributes:
        DRY_RUN: Transform and validate, never write; safety checks advisory.
        VALIDATE_ONLY: Transform and validate, never write; safety checks gate.
        EXECUTE: Transform, validate and write; safety checks gate.
    """

    DRY_RUN = "dry_run"
    VALIDATE_ONLY = "validate_only"
    EXECUTE = "execute"

    @property
    def writes(self) -> bool:
        return self is ExecutionMode.EXECUTE

    @property
    def safety_checks_block(self) -> bool:
        return self is not ExecutionMode.DRY_RUN


class BaselinePhase(Enum):
    PRE = "pre"
    POST = "post"


@dataclass(frozen=True)
class PerformanceBaseline:
    """
    Performance snapshot taken before or after a migration.

    Attributes:
        average_query_time_ms: Mean latency of the benchmark queries
        real_time_latency_ms: Mean single-document read round trip
        cache_hit_rate: Fraction of cache hits (0-1), if the store reports it
        timestamp: When the snapshot was taken
    """

    average_query_time_ms: float
    real_time_latency_ms: float
    cache_hit_rate: float | None = None
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if self.average_query_time_ms < 0:
            raise ValueError(
                f"average_query_time_ms must be >= 0, got {self.average_query_time_ms}"
            )
        if self.real_time_latency_ms < 0:
            raise ValueError(f"real_time_latency_ms must be >= 0, got {self.real_time_latency_ms}")
        if self.cache_hit_rate is not None and not 0.0 <= self.cache_hit_rate <= 1.0:
            raise ValueError(f"cache_hit_rate must be between 0 and 1, got {self.cache_hit_rate}")
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "average_query_time_ms": self.average_query_time_ms,
            "real_time_latency_ms": self.real_time_latency_ms,
            "cache_hit_rate": self.cache_hit_rate,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceBaseline:
        timestamp = data.get("timestamp")
        return cls(
            average_query_time_ms=float(data["average_query_time_ms"]),
            real_time_latency_ms=float(data["real_time_latency_ms"]),
            cache_hit_rate=data.get("cache_hit_rate"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
        )


class RegressionStatus(Enum):
    OK = "ok"
    DEGRADED = "degraded"


DEFAULT_REGRESSION_TOLERANCE_PERCENT = 20.0


@dataclass(frozen=True)
class RegressionVerdict:
    """
    Result of comparing a post-migration baseline against the pre baseline.

    Attributes:
        status: OK or DEGRADED
        delta_percent: Worst percent increase across the compared metrics
        query_time_delta_percent: Percent change of average query time
        latency_delta_percent: Percent change of real-time latency
        threshold_percent: Tolerance applied
    """

    status: RegressionStatus
    delta_percent: float
    query_time_delta_percent: float
    latency_delta_percent: float
    threshold_percent: float = DEFAULT_REGRESSION_TOLERANCE_PERCENT

    @property
    def degraded(self) -> bool:
        return self.status is RegressionStatus.DEGRADED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "delta_percent": round(self.delta_percent, 2),
            "query_time_delta_percent": round(self.query_time_delta_percent, 2),
            "latency_delta_percent": round(self.latency_delta_percent, 2),
            "threshold_percent": self.threshold_percent,
        }


def _percent_change(before: float, after: float) -> float:
    if before == 0:
        return 0.0 if after == 0 else 100.0
    return (after - before) / before * 100.0


def compare_baselines(
    pre: PerformanceBaseline,
    post: PerformanceBaseline,
    threshold_percent: float = DEFAULT_REGRESSION_TOLERANCE_PERCENT,
) -> RegressionVerdict:
    """
    Compare post-migration metrics against the pre-migration baseline.

    DEGRADED when average query time or real-time latency grew by more than
    ``threshold_percent``. Improvements are negative deltas.

    Example:
        >>> pre = PerformanceBaseline(average_query_time_ms=100, real_time_latency_ms=50)
        >>> post = PerformanceBaseline(average_query_time_ms=130, real_time_latency_ms=50)
        >>> compare_baselines(pre, post).status
        <RegressionStatus.DEGRADED: 'degraded'>
    """
    query_delta = _percent_change(pre.average_query_time_ms, post.average_query_time_ms)
    latency_delta = _percent_change(pre.real_time_latency_ms, post.real_time_latency_ms)
    worst = max(query_delta, latency_delta)
    status = RegressionStatus.DEGRADED if worst > threshold_percent else RegressionStatus.OK
    return RegressionVerdict(
        status=status,
        delta_percent=worst,
        query_time_delta_percent=query_delta,
        latency_delta_percent=latency_delta,
        threshold_percent=threshold_percent,
    )


__all__ = [
    "BaselinePhase",
    "DEFAULT_REGRESSION_TOLERANCE_PERCENT",
    "ExecutionMode",
    "MigrationMode",
    "PerformanceBaseline",
    "RegressionStatus",
    "RegressionVerdict",
    "compare_baselines",
]
