"""
Pre-flight safety checks run before any migration write.

Checks run in a fixed order and all of them run even after a failure, so
the operator sees every problem at once:

1. Backup: a verified backup of the affected collections exists inside the
   rollback window (skippable outside production only)
2. Indexes: every expected index is present in the target database
3. Connectivity: one bounded read succeeds within a timeout
4. Compatibility layers: every layer passes its self-check
5. Environment identity: the connected database is the one the environment
   selector resolved to

Only errors block a run; warnings are informational.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from docshift.compat.base import CompatibilityLayer
from docshift.exceptions import DocshiftError, SafetyCheckFailure
from docshift.indexes.admin import IndexAdmin
from docshift.indexes.comparator import compare_indexes
from docshift.indexes.definitions import IndexDefinition
from docshift.indexes.readiness import IndexReadinessTracker
from docshift.observability import ATTR_ENVIRONMENT, Tracer, create_tracer
from docshift.repositories.backups import DEFAULT_ROLLBACK_WINDOW, BackupStore
from docshift.stores.interface import DocumentStore

logger = logging.getLogger(__name__)


class SafetyCheck(Enum):
    """The checks, in execution order."""

    BACKUP = "backup"
    INDEXES = "indexes"
    CONNECTIVITY = "connectivity"
    COMPATIBILITY = "compatibility"
    ENVIRONMENT = "environment"


class CheckStatus(Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SafetyCheckConfig:
    """
    Inputs to one safety check run.

    Attributes:
        environment: Environment selector (e.g. "staging")
        expected_database_id: Project id the selector resolved to
        is_production: Whether the environment is a production environment
        skip_backup: Skip the backup check (refused in production)
        collections: Collections the run will touch; defaults to the
            collections of the registered compatibility layers
        rollback_window: Maximum age of a usable backup
        connectivity_timeout_seconds: Bound on the connectivity smoke read
        indexes_deployed_by_pipeline: Report missing or building indexes as
            warnings because an index pipeline deploys them before migrating
    """

    environment: str
    expected_database_id: str
    is_production: bool = False
    skip_backup: bool = False
    collections: tuple[str, ...] = ()
    rollback_window: timedelta = DEFAULT_ROLLBACK_WINDOW
    connectivity_timeout_seconds: float = 10.0
    indexes_deployed_by_pipeline: bool = False

    def __post_init__(self) -> None:
        if not self.environment:
            raise ValueError("environment must not be empty")
        if not self.expected_database_id:
            raise ValueError("expected_database_id must not be empty")
        if self.rollback_window <= timedelta(0):
            raise ValueError(f"rollback_window must be positive, got {self.rollback_window}")
        if self.connectivity_timeout_seconds <= 0:
            raise ValueError(
                "connectivity_timeout_seconds must be positive, "
                f"got {self.connectivity_timeout_seconds}"
            )


@dataclass(frozen=True)
class CheckOutcome:
    """Result of a single check."""

    check: SafetyCheck
    status: CheckStatus
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.check.value,
            "status": self.status.value,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass(frozen=True)
class SafetyCheckReport:
    """
    Aggregate of every check in execution order.

    ``passed`` is true only when no check reported an error.
    """

    checks: tuple[CheckOutcome, ...] = field(default_factory=tuple)

    @property
    def errors(self) -> list[str]:
        return [e for outcome in self.checks for e in outcome.errors]

    @property
    def warnings(self) -> list[str]:
        return [w for outcome in self.checks for w in outcome.warnings]

    @property
    def passed(self) -> bool:
        return not self.errors

    def outcome(self, check: SafetyCheck) -> CheckOutcome | None:
        for outcome in self.checks:
            if outcome.check is check:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "errors": self.errors,
            "warnings": self.warnings,
            "checks": [c.to_dict() for c in self.checks],
        }


class _Findings:
    def __init__(self) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.skipped = False


def _format_window(window: timedelta) -> str:
    hours = window.total_seconds() / 3600
    return f"{hours:g}h"


class SafetyCheckEngine:
    """
    Runs the pre-flight checks against a store and its collaborators.

    Example:
        >>> engine = SafetyCheckEngine(
        ...     store,
        ...     index_admin=admin,
        ...     backups=backups,
        ...     layers=layers.values(),
        ...     expected_indexes=definitions,
        ...     readiness=tracker,
        ... )
        >>> report = await engine.run_safety_checks(
        ...     SafetyCheckConfig(environment="staging", expected_database_id="tradeya-staging")
        ... )
        >>> report.passed
        True
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        index_admin: IndexAdmin | None = None,
        backups: BackupStore | None = None,
        layers: Iterable[CompatibilityLayer] = (),
        expected_indexes: Sequence[IndexDefinition] = (),
        readiness: IndexReadinessTracker | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._index_admin = index_admin
        self._backups = backups
        self._layers = list(layers)
        self._expected = list(expected_indexes)
        self._readiness = readiness
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _collections(self, config: SafetyCheckConfig) -> list[str]:
        if config.collections:
            return list(config.collections)
        return list(dict.fromkeys(layer.collection for layer in self._layers))

    async def run_safety_checks(self, config: SafetyCheckConfig) -> SafetyCheckReport:
        """
        Run every check in order and collect the results.

        Never raises for a failed check; failures are reported as errors.
        """
        checks: list[tuple[SafetyCheck, Callable[[SafetyCheckConfig, _Findings], Awaitable[None]]]]
        checks = [
            (SafetyCheck.BACKUP, self._check_backup),
            (SafetyCheck.INDEXES, self._check_indexes),
            (SafetyCheck.CONNECTIVITY, self._check_connectivity),
            (SafetyCheck.COMPATIBILITY, self._check_compatibility),
            (SafetyCheck.ENVIRONMENT, self._check_environment),
        ]
        with self._tracer.span(
            "docshift.safety.run_safety_checks", {ATTR_ENVIRONMENT: config.environment}
        ):
            outcomes = [await self._run_check(check, fn, config) for check, fn in checks]
        report = SafetyCheckReport(checks=tuple(outcomes))
        if report.passed:
            logger.info(
                "Safety checks passed for %s (%d warning(s))",
                config.environment,
                len(report.warnings),
            )
        else:
            logger.error(
                "Safety checks failed for %s: %s", config.environment, "; ".join(report.errors)
            )
        return report

    async def ensure_safe(self, config: SafetyCheckConfig) -> SafetyCheckReport:
        """
        Run the checks and raise if any error was reported.

        Raises:
            SafetyCheckFailure: Carrying the full report
        """
        report = await self.run_safety_checks(config)
        if not report.passed:
            raise SafetyCheckFailure(report)
        return report

    async def _run_check(
        self,
        check: SafetyCheck,
        fn: Callable[[SafetyCheckConfig, _Findings], Awaitable[None]],
        config: SafetyCheckConfig,
    ) -> CheckOutcome:
        findings = _Findings()
        started = time.perf_counter()
        with self._tracer.span(f"docshift.safety.{check.value}"):
            try:
                await fn(config, findings)
            except DocshiftError as e:
                findings.errors.append(f"{check.value} check failed: {e.message}")
            except Exception as e:
                logger.exception("Safety check %s raised unexpectedly", check.value)
                findings.errors.append(f"{check.value} check raised {type(e).__name__}: {e}")
        duration_ms = (time.perf_counter() - started) * 1000

        if findings.errors:
            status = CheckStatus.FAILED
        elif findings.skipped:
            status = CheckStatus.SKIPPED
        elif findings.warnings:
            status = CheckStatus.WARNING
        else:
            status = CheckStatus.PASSED
        logger.debug("Safety check %s: %s", check.value, status.value)
        return CheckOutcome(
            check=check,
            status=status,
            errors=tuple(findings.errors),
            warnings=tuple(findings.warnings),
            duration_ms=duration_ms,
        )

    async def _check_backup(self, config: SafetyCheckConfig, findings: _Findings) -> None:
        if config.skip_backup:
            if config.is_production:
                findings.errors.append(
                    f"Backup check cannot be skipped in production environment "
                    f"'{config.environment}'"
                )
            else:
                findings.skipped = True
                findings.warnings.append(
                    f"Backup check skipped for non-production environment '{config.environment}'"
                )
            return

        if self._backups is None:
            findings.errors.append("No backup store configured; cannot verify a backup exists")
            return

        collections = self._collections(config)
        record = await self._backups.latest_verified(
            collections,
            window=config.rollback_window,
            environment=config.environment,
        )
        if record is None:
            findings.errors.append(
                f"No verified backup of {', '.join(collections) or 'any collection'} "
                f"within the last {_format_window(config.rollback_window)} "
                f"for environment '{config.environment}'"
            )
        elif record.database_id and record.database_id != config.expected_database_id:
            findings.errors.append(
                f"Latest backup {record.backup_id} was taken from database "
                f"'{record.database_id}', expected '{config.expected_database_id}'"
            )

    async def _check_indexes(self, config: SafetyCheckConfig, findings: _Findings) -> None:
        if not self._expected:
            findings.warnings.append("No index definitions configured; index check skipped")
            findings.skipped = True
            return
        if self._index_admin is None:
            findings.errors.append("No index admin configured; cannot verify index readiness")
            return

        deployed = await self._index_admin.list_indexes()
        comparison = compare_indexes(self._expected, deployed)
        if self._readiness is not None:
            self._readiness.update_from(comparison)

        pending = [f"Index missing: {d.describe()}" for d in comparison.missing]
        pending.extend(f"Index still building: {d.describe()}" for d in comparison.building)
        if config.indexes_deployed_by_pipeline:
            findings.warnings.extend(f"{p} (deployed by the index pipeline)" for p in pending)
        else:
            findings.errors.extend(pending)
        findings.warnings.extend(
            f"Unexpected index deployed: {d.name} ({d.definition.describe()})"
            for d in comparison.unexpected
        )

        declared = {d.key for d in self._expected}
        for layer in self._layers:
            for definition in layer.required_indexes():
                if definition.key not in declared:
                    findings.warnings.append(
                        f"{layer.entity_type} query index not declared in index config: "
                        f"{definition.describe()}"
                    )

    async def _check_connectivity(self, config: SafetyCheckConfig, findings: _Findings) -> None:
        collections = self._collections(config)
        try:
            if collections:
                await asyncio.wait_for(
                    self._store.read_page(collections[0], limit=1),
                    timeout=config.connectivity_timeout_seconds,
                )
            else:
                await asyncio.wait_for(
                    self._store.ping(), timeout=config.connectivity_timeout_seconds
                )
        except TimeoutError:
            findings.errors.append(
                f"Connectivity check timed out after {config.connectivity_timeout_seconds:g}s"
            )

    async def _check_compatibility(self, config: SafetyCheckConfig, findings: _Findings) -> None:
        if not self._layers:
            findings.warnings.append("No compatibility layers registered")
            return
        for layer in self._layers:
            findings.errors.extend(layer.self_check())

    async def _check_environment(self, config: SafetyCheckConfig, findings: _Findings) -> None:
        actual = self._store.database_id
        if not actual:
            findings.errors.append(
                "Connected database has no recorded identity; "
                "initialize it for an environment first"
            )
        elif actual != config.expected_database_id:
            findings.errors.append(
                f"Connected database '{actual}' does not match '{config.expected_database_id}' "
                f"resolved for environment '{config.environment}'"
            )


__all__ = [
    "CheckOutcome",
    "CheckStatus",
    "SafetyCheck",
    "SafetyCheckConfig",
    "SafetyCheckEngine",
    "SafetyCheckReport",
]
