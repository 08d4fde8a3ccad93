"""
MigrationCoordinator - runs one migration end to end.

The coordinator is the single sequential flow tying the components together:

1. Safety checks (blocking in VALIDATE_ONLY/EXECUTE, advisory in DRY_RUN)
2. Index deployment pipeline (EXECUTE only, when configured)
3. Pre-migration performance baseline
4. Registry enters MIGRATING
5. Batch migration per entity type, optionally in percentage phases
6. Registry enters VALIDATING; post baseline and regression verdict
7. Registry enters COMPLETE

An EXECUTE run that finds the registry already MIGRATING resumes the
interrupted run: the pipeline is skipped, the recorded PRE baseline is
reused and the registry stays in MIGRATING.

With ``rollback_on_failure`` a failed pipeline, a failed document, an
unhealthy rollout phase or an aborted batch run hands over to the
RollbackManager. A regression verdict is advisory and never triggers a
rollback on its own.

Usage:
    >>> coordinator = MigrationCoordinator(
    ...     registry,
    ...     executor,
    ...     safety,
    ...     layers=layers,
    ...     performance=validator,
    ...     rollback=manager,
    ...     rollout=PhasedRollout(),
    ... )
    >>> report = await coordinator.run(
    ...     ["trades", "conversations"],
    ...     SafetyCheckConfig(environment="staging", expected_database_id="tradeya-staging"),
    ...     ExecutorConfig(mode=ExecutionMode.EXECUTE),
    ... )
    >>> report.succeeded
    True
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from docshift.compat.base import CompatibilityLayer
from docshift.exceptions import DocshiftError, RegressionDetected, SafetyCheckFailure
from docshift.executor import (
    BatchMigrationExecutor,
    ExecutorConfig,
    MigrationProgress,
    MigrationResult,
)
from docshift.indexes.pipeline import DeploymentReport, IndexDeploymentPipeline
from docshift.models import (
    BaselinePhase,
    ExecutionMode,
    MigrationMode,
    PerformanceBaseline,
    RegressionVerdict,
)
from docshift.observability import ATTR_EXECUTION_MODE, Tracer, create_tracer
from docshift.performance import PerformanceRegressionValidator, detect_regression
from docshift.registry import MigrationRegistry
from docshift.rollback import RollbackManager, RollbackResult
from docshift.safety import SafetyCheckConfig, SafetyCheckEngine, SafetyCheckReport

logger = logging.getLogger(__name__)


# =============================================================================
# Phased rollout
# =============================================================================


@dataclass(frozen=True)
class RolloutPhase:
    """
    One step of a phased rollout.

    Attributes:
        name: Label used in logs and reports
        percentage: Cumulative share of each collection migrated by the end
            of the phase (0-100]
        max_error_rate: Highest failed/attempted ratio the phase tolerates
            before the rollout stops
    """

    name: str
    percentage: float
    max_error_rate: float = 0.05

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("phase name must not be empty")
        if not 0 < self.percentage <= 100:
            raise ValueError(f"percentage must be in (0, 100], got {self.percentage}")
        if not 0 <= self.max_error_rate <= 1:
            raise ValueError(f"max_error_rate must be in [0, 1], got {self.max_error_rate}")


DEFAULT_ROLLOUT_PHASES = (
    RolloutPhase("initial", 10, max_error_rate=0.01),
    RolloutPhase("expanded", 50, max_error_rate=0.02),
    RolloutPhase("full", 100, max_error_rate=0.05),
)


@dataclass(frozen=True)
class PhasedRollout:
    """
    Ordered rollout phases; percentages strictly increase and end at 100.

    Example:
        >>> PhasedRollout.from_percentages([25, 100]).phases[0].name
        'phase-1'
    """

    phases: tuple[RolloutPhase, ...] = DEFAULT_ROLLOUT_PHASES

    def __post_init__(self) -> None:
        if not self.phases:
            raise ValueError("a rollout needs at least one phase")
        percentages = [p.percentage for p in self.phases]
        if any(b <= a for a, b in zip(percentages, percentages[1:])):
            raise ValueError(f"phase percentages must strictly increase, got {percentages}")
        if percentages[-1] != 100:
            raise ValueError(f"the last phase must reach 100%, got {percentages[-1]}")

    @classmethod
    def from_percentages(
        cls, percentages: Sequence[float], max_error_rate: float = 0.05
    ) -> PhasedRollout:
        return cls(
            tuple(
                RolloutPhase(f"phase-{i}", percentage, max_error_rate=max_error_rate)
                for i, percentage in enumerate(percentages, start=1)
            )
        )


@dataclass(frozen=True)
class PhaseOutcome:
    """What one rollout phase did to one entity type."""

    phase: RolloutPhase
    entity_type: str
    target_documents: int | None
    result: MigrationResult

    @property
    def error_rate(self) -> float:
        return 1.0 - self.result.success_rate

    @property
    def healthy(self) -> bool:
        return self.error_rate <= self.phase.max_error_rate

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.name,
            "percentage": self.phase.percentage,
            "entity_type": self.entity_type,
            "target_documents": self.target_documents,
            "processed": self.result.total,
            "error_rate": round(self.error_rate, 4),
            "max_error_rate": self.phase.max_error_rate,
            "healthy": self.healthy,
        }


# =============================================================================
# Coordinator
# =============================================================================


@dataclass
class MigrationRunReport:
    """
    Everything one coordinator run produced.

    Attributes:
        execution_mode: DRY_RUN, VALIDATE_ONLY or EXECUTE
        safety: The safety check report
        results: MigrationResult per entity type (one per phase when phased),
            in run order
        phases: Outcome of every rollout phase that ran
        deployment: Index deployment report, if the pipeline ran
        pre_baseline: Baseline recorded before migrating
        post_baseline: Baseline recorded after migrating
        verdict: Pre/post comparison
        regression: Advisory RegressionDetected when the verdict degraded
        rollback: Rollback result when a rollback ran
        resumed: Whether the run picked up a registry left in MIGRATING
        final_mode: Registry mode when the run returned
        aborted_reason: Why the run stopped before COMPLETE, if it did
    """

    execution_mode: ExecutionMode
    safety: SafetyCheckReport
    results: list[MigrationResult] = field(default_factory=list)
    phases: list[PhaseOutcome] = field(default_factory=list)
    deployment: DeploymentReport | None = None
    pre_baseline: PerformanceBaseline | None = None
    post_baseline: PerformanceBaseline | None = None
    verdict: RegressionVerdict | None = None
    regression: RegressionDetected | None = None
    rollback: RollbackResult | None = None
    resumed: bool = False
    final_mode: MigrationMode = MigrationMode.IDLE
    aborted_reason: str | None = None

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def total_migrated(self) -> int:
        return sum(r.migrated for r in self.results)

    @property
    def succeeded(self) -> bool:
        return self.aborted_reason is None and self.total_failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_mode": self.execution_mode.value,
            "succeeded": self.succeeded,
            "resumed": self.resumed,
            "safety": self.safety.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "phases": [p.to_dict() for p in self.phases],
            "deployment_state": self.deployment.state.value if self.deployment else None,
            "pre_baseline": self.pre_baseline.to_dict() if self.pre_baseline else None,
            "post_baseline": self.post_baseline.to_dict() if self.post_baseline else None,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "regression": self.regression.to_dict() if self.regression else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "final_mode": self.final_mode.value,
            "aborted_reason": self.aborted_reason,
        }


class MigrationCoordinator:
    """
    Orchestrates safety checks, index deployment, batch migration,
    performance validation and rollback for one run.
    """

    def __init__(
        self,
        registry: MigrationRegistry,
        executor: BatchMigrationExecutor,
        safety: SafetyCheckEngine,
        *,
        layers: Mapping[str, CompatibilityLayer],
        performance: PerformanceRegressionValidator | None = None,
        rollback: RollbackManager | None = None,
        pipeline: IndexDeploymentPipeline | None = None,
        rollout: PhasedRollout | None = None,
        rollback_on_failure: bool = False,
        progress_callback: Callable[[MigrationProgress], None] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            registry: Registry owning the migration mode
            executor: Executor migrating each entity type
            safety: Engine running the pre-flight checks
            layers: Compatibility layers keyed by entity type
            performance: Validator for pre/post baselines (skipped when None)
            rollback: Rollback manager used on failure
            pipeline: Index deployment pipeline run before migrating
            rollout: Percentage phases for EXECUTE runs (one pass when None)
            rollback_on_failure: Roll back automatically on any failure
            progress_callback: Forwarded to the executor
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        if rollback_on_failure and rollback is None:
            raise ValueError("rollback_on_failure requires a RollbackManager")
        self._registry = registry
        self._executor = executor
        self._safety = safety
        self._layers = dict(layers)
        self._performance = performance
        self._rollback = rollback
        self._pipeline = pipeline
        self._rollout = rollout
        self._rollback_on_failure = rollback_on_failure
        self._progress_callback = progress_callback
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def cancel(self) -> None:
        """Stop the running batch migration after its in-flight pages."""
        self._executor.cancel()
        if self._pipeline is not None:
            self._pipeline.cancel()

    async def run(
        self,
        entity_types: Sequence[str],
        safety_config: SafetyCheckConfig,
        executor_config: ExecutorConfig,
    ) -> MigrationRunReport:
        """
        Run one migration.

        Args:
            entity_types: Entity types to migrate, in order
            safety_config: Configuration for the pre-flight checks
            executor_config: Executor configuration; its mode drives the run

        Returns:
            MigrationRunReport

        Raises:
            ValueError: If an entity type has no compatibility layer
            SafetyCheckFailure: If blocking safety checks report errors
            AlreadyMigratingError: If EXECUTE starts while the registry is
                neither IDLE nor MIGRATING
        """
        unknown = [name for name in entity_types if name not in self._layers]
        if unknown:
            raise ValueError(f"Unknown entity type(s) {unknown}; known: {sorted(self._layers)}")
        mode = executor_config.mode
        resuming = mode.writes and self._registry.mode is MigrationMode.MIGRATING
        if mode.writes and self._pipeline is not None and not resuming:
            safety_config = replace(safety_config, indexes_deployed_by_pipeline=True)

        with self._tracer.span(
            "docshift.coordinator.run", {ATTR_EXECUTION_MODE: mode.value}
        ):
            safety_report = await self._safety.run_safety_checks(safety_config)
            report = MigrationRunReport(
                execution_mode=mode, safety=safety_report, resumed=resuming
            )
            if not safety_report.passed:
                if mode.safety_checks_block:
                    raise SafetyCheckFailure(safety_report)
                logger.warning(
                    "Dry run continuing despite %d safety error(s)", len(safety_report.errors)
                )

            if not mode.writes:
                for entity_type in entity_types:
                    report.results.append(await self._migrate(entity_type, executor_config))
                    if report.results[-1].cancelled:
                        report.aborted_reason = "cancelled"
                        break
                report.final_mode = self._registry.mode
                return report

            await self._execute(report, entity_types, executor_config)
            report.final_mode = self._registry.mode
            return report

    async def _migrate(self, entity_type: str, config: ExecutorConfig) -> MigrationResult:
        return await self._executor.migrate_collection(
            entity_type, config, progress_callback=self._progress_callback
        )

    async def _execute(
        self,
        report: MigrationRunReport,
        entity_types: Sequence[str],
        config: ExecutorConfig,
    ) -> None:
        if report.resumed:
            logger.warning(
                "Registry already %s; resuming the interrupted run%s",
                MigrationMode.MIGRATING.value,
                f" after {config.start_after}" if config.start_after else "",
            )
        elif self._pipeline is not None:
            report.deployment = await self._pipeline.run()
            if not report.deployment.succeeded:
                report.aborted_reason = f"index deployment failed: {report.deployment.error}"
                await self._handle_failure(report, entity_types)
                return

        if self._performance is not None:
            report.pre_baseline = self._registry.get_baseline(BaselinePhase.PRE)
            if report.pre_baseline is None:
                report.pre_baseline = await self._performance.record_baseline(
                    BaselinePhase.PRE
                )

        if not report.resumed:
            await self._registry.enable_migration_mode(
                f"migrating {', '.join(entity_types)}"
            )

        for entity_type in entity_types:
            try:
                if self._rollout is None:
                    result = await self._migrate(entity_type, config)
                    report.results.append(result)
                    if result.cancelled:
                        report.aborted_reason = (
                            f"{entity_type} stopped early at {result.last_cursor}"
                        )
                else:
                    await self._migrate_in_phases(report, entity_type, config, self._rollout)
            except DocshiftError as e:
                logger.error("Migration of %s aborted: %s", entity_type, e)
                report.aborted_reason = f"{entity_type}: {e}"
            if report.aborted_reason is not None:
                break

        if report.aborted_reason is not None or report.total_failed:
            if report.aborted_reason is None:
                report.aborted_reason = f"{report.total_failed} document(s) failed to migrate"
            await self._handle_failure(report, entity_types)
            return

        await self._registry.begin_validation()
        if self._performance is not None:
            report.post_baseline = await self._performance.record_baseline(BaselinePhase.POST)
            if report.pre_baseline is not None:
                report.verdict = self._performance.compare_baselines(
                    report.pre_baseline, report.post_baseline
                )
                report.regression = detect_regression(report.verdict)
        await self._registry.mark_complete()
        logger.info(
            "Migration complete: %d document(s) migrated across %d entity type(s)",
            report.total_migrated,
            len(entity_types),
        )

    async def _migrate_in_phases(
        self,
        report: MigrationRunReport,
        entity_type: str,
        config: ExecutorConfig,
        rollout: PhasedRollout,
    ) -> None:
        """
        Migrate one entity type phase by phase.

        Phase targets are shares of the document count taken when the entity
        type starts; the last phase reads to the end of the collection. A
        cancelled or unhealthy phase sets ``aborted_reason`` and stops.
        """
        total = await self._executor.count_documents(entity_type)
        cursor = config.start_after
        read = 0
        for phase in rollout.phases:
            target = None if phase.percentage >= 100 else math.ceil(total * phase.percentage / 100)
            if target is not None and target <= read:
                continue
            result = await self._migrate(
                entity_type,
                replace(
                    config,
                    start_after=cursor,
                    max_documents=None if target is None else target - read,
                ),
            )
            outcome = PhaseOutcome(phase, entity_type, target, result)
            report.results.append(result)
            report.phases.append(outcome)
            read += result.total
            cursor = result.last_cursor or cursor
            logger.info(
                "Phase %s of %s: %d document(s) processed, error rate %.1f%% (max %.1f%%)",
                phase.name,
                entity_type,
                result.total,
                outcome.error_rate * 100,
                phase.max_error_rate * 100,
            )
            if result.cancelled:
                report.aborted_reason = f"{entity_type} stopped early at {result.last_cursor}"
                return
            if not outcome.healthy:
                report.aborted_reason = (
                    f"phase {phase.name} of {entity_type}: error rate "
                    f"{outcome.error_rate:.1%} exceeds {phase.max_error_rate:.1%}"
                )
                return

    async def _handle_failure(
        self, report: MigrationRunReport, entity_types: Sequence[str]
    ) -> None:
        logger.error("Migration run failed: %s", report.aborted_reason)
        if not self._rollback_on_failure or self._rollback is None:
            if self._registry.mode is MigrationMode.MIGRATING:
                logger.warning(
                    "Registry left in %s; resume the run or roll back",
                    MigrationMode.MIGRATING.value,
                )
            return
        collections = list(dict.fromkeys(self._layers[e].collection for e in entity_types))
        report.rollback = await self._rollback.rollback(
            report.aborted_reason or "migration failed", collections
        )


__all__ = [
    "DEFAULT_ROLLOUT_PHASES",
    "MigrationCoordinator",
    "MigrationRunReport",
    "PhaseOutcome",
    "PhasedRollout",
    "RolloutPhase",
]
