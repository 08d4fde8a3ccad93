"""
Migration registry: single owner of the migration mode and baselines.

Compatibility layers receive the registry at construction and read
``registry.mode`` on every operation; they never cache it. Mode changes are
broadcast synchronously to registered observers.

Once the registry enters ROLLING_BACK only the holder of the RollbackLease
may leave it. Every other writer gets RollbackInProgressError and must defer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from docshift.exceptions import (
    AlreadyMigratingError,
    BaselineAlreadyRecordedError,
    BaselineNotRecordedError,
    InvalidModeTransitionError,
    RollbackInProgressError,
)
from docshift.models import (
    DEFAULT_REGRESSION_TOLERANCE_PERCENT,
    BaselinePhase,
    MigrationMode,
    PerformanceBaseline,
    RegressionVerdict,
    compare_baselines,
)
from docshift.observability import (
    ATTR_MIGRATION_MODE,
    ATTR_ROLLBACK_REASON,
    Tracer,
    create_tracer,
)
from docshift.repositories.control_plane import (
    ControlPlaneRecord,
    ControlPlaneRepository,
    InMemoryControlPlaneRepository,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ModeObserver(Protocol):
    """Receives every registry mode change."""

    def on_mode_changed(
        self,
        previous: MigrationMode,
        current: MigrationMode,
        reason: str | None,
    ) -> None: ...


@dataclass(frozen=True)
class RollbackLease:
    """Proof that the holder entered ROLLING_BACK and may leave it."""

    token: str
    reason: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class RegistryStatus:
    """Snapshot of the registry for status output."""

    mode: MigrationMode
    reason: str | None
    updated_at: datetime
    observers: tuple[str, ...]
    pre_baseline: PerformanceBaseline | None
    post_baseline: PerformanceBaseline | None

    @property
    def initialized(self) -> bool:
        return bool(self.observers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "reason": self.reason,
            "updated_at": self.updated_at.isoformat(),
            "observers": list(self.observers),
            "pre_baseline": self.pre_baseline.to_dict() if self.pre_baseline else None,
            "post_baseline": self.post_baseline.to_dict() if self.post_baseline else None,
        }


class MigrationRegistry:
    """
    Owns the migration mode state machine and the performance baselines.

    Example:
        >>> registry = MigrationRegistry(SQLiteControlPlaneRepository(store.connection))
        >>> await registry.load()
        >>> await registry.enable_migration_mode("schema v2 rollout")
        >>> registry.mode
        <MigrationMode.MIGRATING: 'migrating'>
    """

    def __init__(
        self,
        control_plane: ControlPlaneRepository | None = None,
        *,
        regression_tolerance_percent: float = DEFAULT_REGRESSION_TOLERANCE_PERCENT,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            control_plane: Where the record is persisted (in-memory by default)
            regression_tolerance_percent: Allowed slowdown before a post
                baseline counts as a regression (default 20%)
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        if regression_tolerance_percent < 0:
            raise ValueError(
                f"regression_tolerance_percent must be >= 0, got {regression_tolerance_percent}"
            )
        self._control_plane = control_plane or InMemoryControlPlaneRepository(
            enable_tracing=enable_tracing
        )
        self._tolerance = regression_tolerance_percent
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._record = ControlPlaneRecord.initial()
        self._observers: list[ModeObserver] = []
        self._lease: RollbackLease | None = None
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def mode(self) -> MigrationMode:
        return self._record.mode

    @property
    def reason(self) -> str | None:
        return self._record.reason

    @property
    def regression_tolerance_percent(self) -> float:
        return self._tolerance

    def is_migration_mode(self) -> bool:
        """True while a migration is running, validating or complete."""
        return self._record.mode.is_migration_active

    def get_baseline(self, phase: BaselinePhase) -> PerformanceBaseline | None:
        if phase is BaselinePhase.PRE:
            return self._record.pre_baseline
        return self._record.post_baseline

    def status(self) -> RegistryStatus:
        return RegistryStatus(
            mode=self._record.mode,
            reason=self._record.reason,
            updated_at=self._record.updated_at,
            observers=tuple(_observer_name(o) for o in self._observers),
            pre_baseline=self._record.pre_baseline,
            post_baseline=self._record.post_baseline,
        )

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def register_observer(self, observer: ModeObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unregister_observer(self, observer: ModeObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, previous: MigrationMode, current: MigrationMode, reason: str | None) -> None:
        for observer in list(self._observers):
            try:
                observer.on_mode_changed(previous, current, reason)
            except Exception:
                logger.exception("Mode observer %s failed", _observer_name(observer))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def load(self) -> MigrationMode:
        """
        Restore mode and baselines from the control plane.

        A record left in ROLLING_BACK by a crashed process is restored as-is;
        an operator must complete or re-run the rollback.
        """
        async with self._lock:
            record = await self._control_plane.load()
            if record is None:
                await self._control_plane.save(self._record)
            else:
                self._record = record
            logger.info("Migration registry loaded in mode %s", self._record.mode.value)
            return self._record.mode

    async def _set_mode(self, target: MigrationMode, reason: str | None) -> None:
        previous = self._record.mode
        if not previous.can_transition_to(target):
            raise InvalidModeTransitionError(previous, target)
        record = self._record.with_mode(target, reason)
        if target is MigrationMode.IDLE:
            record = replace(record, pre_baseline=None, post_baseline=None)
        with self._tracer.span(
            "docshift.registry.set_mode",
            {ATTR_MIGRATION_MODE: target.value},
        ):
            await self._control_plane.save(record)
        self._record = record
        logger.info(
            "Migration mode %s -> %s%s",
            previous.value,
            target.value,
            f" ({reason})" if reason else "",
        )
        self._notify(previous, target, reason)

    def _check_not_rolling_back(self) -> None:
        if self._record.mode is MigrationMode.ROLLING_BACK:
            raise RollbackInProgressError(self._record.mode)

    # -------------------------------------------------------------------------
    # Forward transitions
    # -------------------------------------------------------------------------

    async def enable_migration_mode(self, reason: str = "migration started") -> None:
        """
        Enter MIGRATING.

        Raises:
            RollbackInProgressError: If a rollback holds the registry
            AlreadyMigratingError: If the registry is not IDLE
        """
        async with self._lock:
            self._check_not_rolling_back()
            if self._record.mode is not MigrationMode.IDLE:
                raise AlreadyMigratingError(self._record.mode)
            await self._set_mode(MigrationMode.MIGRATING, reason)

    async def begin_validation(self, reason: str | None = None) -> None:
        """MIGRATING -> VALIDATING."""
        async with self._lock:
            self._check_not_rolling_back()
            await self._set_mode(MigrationMode.VALIDATING, reason or "migration finished")

    async def mark_complete(self, reason: str | None = None) -> None:
        """VALIDATING -> COMPLETE."""
        async with self._lock:
            self._check_not_rolling_back()
            await self._set_mode(MigrationMode.COMPLETE, reason or "validation finished")

    async def disable_migration_mode(self, reason: str | None = None) -> None:
        """
        COMPLETE -> IDLE, clearing both baselines.

        Raises:
            RollbackInProgressError: If a rollback holds the registry
            InvalidModeTransitionError: If the registry is not COMPLETE
        """
        async with self._lock:
            self._check_not_rolling_back()
            await self._set_mode(MigrationMode.IDLE, reason or "migration retired")

    # -------------------------------------------------------------------------
    # Rollback lease
    # -------------------------------------------------------------------------

    async def enter_rollback(self, reason: str) -> RollbackLease:
        """
        Enter ROLLING_BACK and return the lease required to leave it.

        Raises:
            RollbackInProgressError: If another rollback holds the registry
        """
        async with self._lock:
            self._check_not_rolling_back()
            with self._tracer.span(
                "docshift.registry.enter_rollback", {ATTR_ROLLBACK_REASON: reason}
            ):
                await self._set_mode(MigrationMode.ROLLING_BACK, reason)
            self._lease = RollbackLease(token=uuid.uuid4().hex, reason=reason)
            return self._lease

    async def resume_rollback(self, reason: str) -> RollbackLease:
        """
        Take the lease for a registry already in ROLLING_BACK.

        Used when a previous rollback process died after entering the mode.

        Raises:
            InvalidModeTransitionError: If the registry is not ROLLING_BACK
        """
        async with self._lock:
            if self._record.mode is not MigrationMode.ROLLING_BACK:
                raise InvalidModeTransitionError(self._record.mode, MigrationMode.ROLLING_BACK)
            logger.warning("Resuming interrupted rollback: %s", reason)
            self._lease = RollbackLease(token=uuid.uuid4().hex, reason=reason)
            return self._lease

    async def finish_rollback(self, lease: RollbackLease) -> None:
        """
        ROLLING_BACK -> IDLE for the lease holder.

        Raises:
            RollbackInProgressError: If the lease is not the active one
        """
        async with self._lock:
            if self._lease is None or lease.token != self._lease.token:
                raise RollbackInProgressError(self._record.mode)
            await self._set_mode(MigrationMode.IDLE, f"rollback finished: {lease.reason}")
            self._lease = None

    # -------------------------------------------------------------------------
    # Baselines
    # -------------------------------------------------------------------------

    async def record_performance_baseline(
        self,
        baseline: PerformanceBaseline,
        phase: BaselinePhase,
    ) -> None:
        """
        Record a baseline; each phase is write-once until the registry returns to IDLE.

        Raises:
            BaselineAlreadyRecordedError: If the phase already has a baseline
            BaselineNotRecordedError: If a POST baseline is recorded without a PRE
        """
        async with self._lock:
            if self.get_baseline(phase) is not None:
                raise BaselineAlreadyRecordedError(phase.value)
            if phase is BaselinePhase.POST and self._record.pre_baseline is None:
                raise BaselineNotRecordedError(BaselinePhase.PRE.value)
            if phase is BaselinePhase.PRE:
                record = replace(self._record, pre_baseline=baseline)
            else:
                record = replace(self._record, post_baseline=baseline)
            await self._control_plane.save(record)
            self._record = record
            logger.info(
                "Recorded %s baseline: query=%.2fms latency=%.2fms",
                phase.value,
                baseline.average_query_time_ms,
                baseline.real_time_latency_ms,
            )

    def regression_verdict(self, post_metrics: PerformanceBaseline) -> RegressionVerdict:
        """
        Compare post metrics against the recorded PRE baseline.

        Raises:
            BaselineNotRecordedError: If no PRE baseline was recorded
        """
        pre = self._record.pre_baseline
        if pre is None:
            raise BaselineNotRecordedError(BaselinePhase.PRE.value)
        return compare_baselines(pre, post_metrics, self._tolerance)

    def validate_performance_regression(self, post_metrics: PerformanceBaseline) -> bool:
        """
        True when post metrics are within tolerance of the PRE baseline.

        Raises:
            BaselineNotRecordedError: If no PRE baseline was recorded
        """
        verdict = self.regression_verdict(post_metrics)
        if verdict.degraded:
            logger.warning(
                "Performance regression: %.1f%% slower (tolerance %.1f%%)",
                verdict.delta_percent,
                verdict.threshold_percent,
            )
        return not verdict.degraded


def _observer_name(observer: object) -> str:
    return getattr(observer, "entity_type", None) or type(observer).__name__


__all__ = [
    "MigrationRegistry",
    "ModeObserver",
    "RegistryStatus",
    "RollbackLease",
]
