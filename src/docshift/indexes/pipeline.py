"""
Staged index deployment pipeline.

Definitions are deployed to staging first and verified there before they
are deployed to production. Verification polls the index admin until every
expected definition is present, the maximum wait elapses, or an operator
cancels.

State machine:
    NOT_DEPLOYED -> DEPLOYING_STAGING -> VERIFYING_STAGING
                 -> DEPLOYING_PRODUCTION -> VERIFYING_PRODUCTION -> READY
    Any deploying/verifying state --------------------------------> FAILED
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from docshift.exceptions import (
    DeploymentCancelledError,
    DocshiftError,
    IndexDeploymentError,
    IndexDeploymentTimeoutError,
)
from docshift.indexes.admin import IndexAdmin
from docshift.indexes.comparator import IndexComparisonResult, IndexStatus, compare_indexes
from docshift.indexes.definitions import IndexDefinition
from docshift.indexes.readiness import IndexReadinessTracker
from docshift.observability import (
    ATTR_DEPLOYMENT_STAGE,
    ATTR_INDEX_COUNT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class DeploymentState(Enum):
    """
    Index deployment lifecycle states.

    Attributes:
        NOT_DEPLOYED: Pipeline created, nothing deployed yet.
        DEPLOYING_STAGING: Definitions being submitted to staging.
        VERIFYING_STAGING: Polling staging until every index is READY.
        DEPLOYING_PRODUCTION: Definitions being submitted to production.
        VERIFYING_PRODUCTION: Polling production until every index is READY.
        READY: Every expected index is READY in every stage.
        FAILED: Deployment error, timeout, or operator cancel.
    """

    NOT_DEPLOYED = "not_deployed"
    DEPLOYING_STAGING = "deploying_staging"
    VERIFYING_STAGING = "verifying_staging"
    DEPLOYING_PRODUCTION = "deploying_production"
    VERIFYING_PRODUCTION = "verifying_production"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentState.READY, DeploymentState.FAILED)

    def can_transition_to(self, target: DeploymentState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The target state to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False
        if target is DeploymentState.FAILED:
            return self is not DeploymentState.NOT_DEPLOYED
        return target in _FORWARD_TRANSITIONS.get(self, ())


_FORWARD_TRANSITIONS: dict[DeploymentState, tuple[DeploymentState, ...]] = {
    DeploymentState.NOT_DEPLOYED: (
        DeploymentState.DEPLOYING_STAGING,
        DeploymentState.DEPLOYING_PRODUCTION,
    ),
    DeploymentState.DEPLOYING_STAGING: (DeploymentState.VERIFYING_STAGING,),
    DeploymentState.VERIFYING_STAGING: (DeploymentState.DEPLOYING_PRODUCTION,),
    DeploymentState.DEPLOYING_PRODUCTION: (DeploymentState.VERIFYING_PRODUCTION,),
    DeploymentState.VERIFYING_PRODUCTION: (DeploymentState.READY,),
}


@dataclass(frozen=True)
class PipelineConfig:
    """
    Polling configuration for index verification.

    Attributes:
        poll_interval_seconds: Delay between readiness polls (default 30s)
        max_wait_seconds: Maximum time to wait per stage (default 1 hour)
    """

    poll_interval_seconds: float = 30.0
    max_wait_seconds: float = 3600.0

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if self.max_wait_seconds < self.poll_interval_seconds:
            raise ValueError(
                f"max_wait_seconds ({self.max_wait_seconds}) must be >= "
                f"poll_interval_seconds ({self.poll_interval_seconds})"
            )


@dataclass(frozen=True)
class DeploymentStage:
    """A named target database (e.g. staging) and its index admin."""

    name: str
    admin: IndexAdmin
    production: bool = False


@dataclass(frozen=True)
class StateTransition:
    from_state: DeploymentState
    to_state: DeploymentState
    at: datetime


@dataclass
class DeploymentReport:
    """
    Outcome of a pipeline run.

    Attributes:
        state: Final state (READY or FAILED)
        comparisons: Last comparison per stage name
        polls: Number of readiness polls per stage name
        error: The error that failed the pipeline, if any
        history: Every state transition in order
    """

    state: DeploymentState
    comparisons: dict[str, IndexComparisonResult] = field(default_factory=dict)
    polls: dict[str, int] = field(default_factory=dict)
    error: DocshiftError | None = None
    history: list[StateTransition] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is DeploymentState.READY

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, DeploymentCancelledError)


class IndexDeploymentPipeline:
    """
    Deploys expected index definitions stage by stage.

    A failed or timed-out staging verification blocks production deployment.
    Only a run that reaches READY marks the definitions ready in the
    readiness tracker.

    Example:
        >>> pipeline = IndexDeploymentPipeline(
        ...     expected,
        ...     staging=DeploymentStage("staging", staging_admin),
        ...     production=DeploymentStage("production", production_admin, production=True),
        ...     config=PipelineConfig(poll_interval_seconds=30, max_wait_seconds=3600),
        ... )
        >>> report = await pipeline.run()
        >>> report.state
        <DeploymentState.READY: 'ready'>
    """

    def __init__(
        self,
        expected: Sequence[IndexDefinition],
        *,
        staging: DeploymentStage | None = None,
        production: DeploymentStage,
        config: PipelineConfig | None = None,
        readiness: IndexReadinessTracker | None = None,
        on_transition: Callable[[DeploymentState, DeploymentState], None] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._expected = list(expected)
        self._staging = staging
        self._production = production
        self._config = config or PipelineConfig()
        self._readiness = readiness
        self._on_transition = on_transition
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._state = DeploymentState.NOT_DEPLOYED
        self._cancel_event = asyncio.Event()
        self._report = DeploymentReport(state=self._state)

    @property
    def state(self) -> DeploymentState:
        return self._state

    @property
    def report(self) -> DeploymentReport:
        return self._report

    def cancel(self) -> None:
        """Abort the pipeline; the wait loop stops at its next wake-up."""
        logger.warning("Index deployment cancelled by operator (state=%s)", self._state.value)
        self._cancel_event.set()

    def _transition(self, target: DeploymentState) -> None:
        if not self._state.can_transition_to(target):
            raise IndexDeploymentError(
                f"Invalid deployment transition: {self._state.value} -> {target.value}"
            )
        previous = self._state
        self._state = target
        self._report.state = target
        self._report.history.append(StateTransition(previous, target, datetime.now(UTC)))
        logger.info("Index deployment: %s -> %s", previous.value, target.value)
        if self._on_transition:
            self._on_transition(previous, target)

    async def run(self) -> DeploymentReport:
        """
        Run the pipeline to READY or FAILED.

        Returns:
            DeploymentReport; errors are captured in the report, not raised
        """
        stages: list[tuple[DeploymentStage, DeploymentState, DeploymentState]] = []
        if self._staging is not None:
            stages.append(
                (
                    self._staging,
                    DeploymentState.DEPLOYING_STAGING,
                    DeploymentState.VERIFYING_STAGING,
                )
            )
        stages.append(
            (
                self._production,
                DeploymentState.DEPLOYING_PRODUCTION,
                DeploymentState.VERIFYING_PRODUCTION,
            )
        )

        with self._tracer.span(
            "docshift.index_pipeline.run", {ATTR_INDEX_COUNT: len(self._expected)}
        ):
            try:
                for stage, deploying, verifying in stages:
                    self._transition(deploying)
                    await self._deploy_stage(stage)
                    self._transition(verifying)
                    comparison = await self.wait_until_ready(stage)
                    self._report.comparisons[stage.name] = comparison
                self._transition(DeploymentState.READY)
            except DocshiftError as e:
                self._report.error = e
                logger.error("Index deployment failed in %s: %s", self._state.value, e)
                self._transition(DeploymentState.FAILED)
                return self._report

        if self._readiness is not None:
            self._readiness.mark_ready(self._expected)
        return self._report

    async def _deploy_stage(self, stage: DeploymentStage) -> None:
        with self._tracer.span(
            "docshift.index_pipeline.deploy", {ATTR_DEPLOYMENT_STAGE: stage.name}
        ):
            try:
                await stage.admin.deploy(self._expected)
            except IndexDeploymentError:
                raise
            except DocshiftError as e:
                raise IndexDeploymentError(
                    f"Deployment to {stage.name} failed: {e}", stage=stage.name
                ) from e

    async def wait_until_ready(self, stage: DeploymentStage) -> IndexComparisonResult:
        """
        Poll a stage until every expected definition is present.

        Raises:
            IndexDeploymentTimeoutError: If max_wait_seconds elapses first
            DeploymentCancelledError: If cancel() is called while waiting
        """
        started = time.monotonic()
        last_status: dict[tuple[Any, ...], IndexStatus] = {}
        polls = 0

        while True:
            if self._cancel_event.is_set():
                raise DeploymentCancelledError(
                    f"Deployment cancelled while verifying {stage.name}", stage=stage.name
                )

            comparison = compare_indexes(self._expected, await stage.admin.list_indexes())
            polls += 1
            self._report.polls[stage.name] = polls
            self._report.comparisons[stage.name] = comparison
            self._warn_on_regression(stage, last_status, comparison)
            last_status = comparison.statuses()

            if comparison.all_present:
                logger.info(
                    "All %d indexes ready on %s after %d poll(s)",
                    comparison.expected_count,
                    stage.name,
                    polls,
                )
                return comparison

            waited = time.monotonic() - started
            if waited >= self._config.max_wait_seconds:
                raise IndexDeploymentTimeoutError(
                    stage.name,
                    waited,
                    len(comparison.missing) + len(comparison.building),
                )

            logger.info(
                "Waiting for %s: %d building, %d missing (poll %d)",
                stage.name,
                len(comparison.building),
                len(comparison.missing),
                polls,
            )
            timeout = min(
                self._config.poll_interval_seconds,
                max(self._config.max_wait_seconds - waited, 0.0),
            )
            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=timeout)
            except TimeoutError:
                pass

    @staticmethod
    def _warn_on_regression(
        stage: DeploymentStage,
        previous: dict[tuple[Any, ...], IndexStatus],
        comparison: IndexComparisonResult,
    ) -> None:
        for key, status in comparison.statuses().items():
            before = previous.get(key)
            if before is not None and status.rank < before.rank:
                logger.warning(
                    "Index on %s regressed from %s to %s on %s",
                    key[0],
                    before.value,
                    status.value,
                    stage.name,
                )


__all__ = [
    "DeploymentReport",
    "DeploymentStage",
    "DeploymentState",
    "IndexDeploymentPipeline",
    "PipelineConfig",
    "StateTransition",
]
