"""
Exceptions for the docshift migration toolkit.

Exception Hierarchy:
    DocshiftError (base)
    +-- ConfigurationError
    |   +-- MalformedConfigError
    |   +-- UnresolvedEnvironmentError
    +-- ConnectivityError
    +-- DocumentValidationError
    |   +-- UnrecognizedShapeError
    +-- SafetyCheckFailure
    +-- RegressionDetected
    +-- NoBackupAvailableError
    +-- BackupIntegrityError
    +-- MigrationModeError
    |   +-- AlreadyMigratingError
    |   +-- InvalidModeTransitionError
    |   +-- RollbackInProgressError
    +-- BaselineError
    |   +-- BaselineAlreadyRecordedError
    |   +-- BaselineNotRecordedError
    +-- IndexDeploymentError
        +-- IndexDeploymentTimeoutError
        +-- DeploymentCancelledError

Error Classification:
    Every error carries an ErrorClassification describing its severity,
    recoverability and the action an operator should take. Retry decisions
    are driven by ErrorRecoverability.TRANSIENT (see docshift.retry).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from docshift.models import MigrationMode
    from docshift.safety import SafetyCheckReport


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.

    Attributes:
        CRITICAL: Failure requiring immediate attention (e.g. no backup to
            roll back to).
        ERROR: Failure that blocks the current operation.
        WARNING: Issue that should be monitored but may self-resolve.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The operation can continue once the cause is fixed,
            for example a single document that fails validation.
        TRANSIENT: Temporary error that may resolve on retry.
        FATAL: Unrecoverable error; the current run must stop.
        ADVISORY: Reported to the operator, never blocks the run.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"
    ADVISORY = "advisory"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class DocshiftError(Exception):
    """
    Base exception for all docshift errors.

    All exceptions raised by the toolkit inherit from this class, allowing
    callers to catch every migration error with a single handler.

    Attributes:
        message: Human-readable error description.
        entity_type: The entity type involved, if applicable.
        document_id: The document involved, if applicable.
        suggested_action: Overrides the classification's suggested action.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DOCSHIFT_ERROR",
        category="general",
        suggested_action="Review migration logs and rerun in dry-run mode",
    )

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        document_id: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.entity_type = entity_type
        self.document_id = document_id
        self.suggested_action = suggested_action or self._default_classification.suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.entity_type:
            parts.append(f"entity_type={self.entity_type}")
        if self.document_id:
            parts.append(f"document_id={self.document_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification to provide specific
        classification metadata for their error type.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "entity_type": self.entity_type,
            "document_id": self.document_id,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(DocshiftError):
    """Raised when configuration is missing or inconsistent."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CONFIGURATION_ERROR",
        category="configuration",
        suggested_action="Fix the configuration and rerun the command",
    )


class MalformedConfigError(ConfigurationError):
    """
    Raised when a configuration file cannot be parsed.

    Attributes:
        source: Path or description of the offending input.
        problems: Individual problems found in the input.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MALFORMED_CONFIG",
        category="configuration",
        suggested_action="Correct the listed fields; unknown keys are rejected",
    )

    def __init__(self, source: str, problems: list[str] | None = None) -> None:
        self.source = source
        self.problems = list(problems or [])
        detail = "; ".join(self.problems) if self.problems else "invalid content"
        super().__init__(f"Malformed configuration in {source}: {detail}")


class UnresolvedEnvironmentError(ConfigurationError):
    """
    Raised when an environment selector matches no configured project.

    Attributes:
        environment: The selector that could not be resolved.
        available: The environment names that are configured.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNRESOLVED_ENVIRONMENT",
        category="configuration",
        suggested_action="Use one of the environments declared in the project mapping",
    )

    def __init__(self, environment: str, available: list[str]) -> None:
        self.environment = environment
        self.available = sorted(available)
        super().__init__(
            f"Unknown environment '{environment}'. "
            f"Available: {', '.join(self.available) or '(none)'}"
        )


# =============================================================================
# Connectivity and document validation
# =============================================================================


class ConnectivityError(DocshiftError):
    """
    Raised when the document store or index admin cannot be reached.

    This error is transient and retried by RetryPolicy.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CONNECTIVITY",
        category="connectivity",
        suggested_action="Check database connectivity; the operation will be retried",
    )


class DocumentValidationError(DocshiftError):
    """
    Raised when a document does not satisfy the required-field rules.

    Attributes:
        problems: The individual rule violations.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DOCUMENT_INVALID",
        category="validation",
        suggested_action="Fix the document data and rerun the migration",
    )

    def __init__(
        self,
        message: str,
        *,
        problems: list[str] | None = None,
        entity_type: str | None = None,
        document_id: str | None = None,
    ) -> None:
        self.problems = list(problems or [])
        super().__init__(message, entity_type=entity_type, document_id=document_id)


class UnrecognizedShapeError(DocumentValidationError):
    """Raised when a document carries neither legacy nor target fields."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="UNRECOGNIZED_SHAPE",
        category="validation",
        suggested_action="Inspect the document; it matches no known schema version",
    )


# =============================================================================
# Safety, regression and backups
# =============================================================================


class SafetyCheckFailure(DocshiftError):
    """
    Raised when pre-migration safety checks do not pass.

    Attributes:
        report: The full SafetyCheckReport with every error and warning.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SAFETY_CHECK_FAILED",
        category="safety",
        suggested_action="Resolve every listed safety check error before migrating",
    )

    def __init__(self, report: SafetyCheckReport) -> None:
        self.report = report
        super().__init__(
            f"Safety checks failed with {len(report.errors)} error(s): "
            + "; ".join(report.errors)
        )


class RegressionDetected(DocshiftError):
    """
    Performance degraded beyond tolerance after migration.

    Advisory: it is attached to reports and logged, never raised by the
    coordinator.

    Attributes:
        delta_percent: The worst observed percent increase.
        threshold_percent: The tolerance that was exceeded.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.ADVISORY,
        error_code="PERFORMANCE_REGRESSION",
        category="performance",
        suggested_action="Review slow queries and consider a rollback",
    )

    def __init__(self, delta_percent: float, threshold_percent: float) -> None:
        self.delta_percent = delta_percent
        self.threshold_percent = threshold_percent
        super().__init__(
            f"Performance degraded by {delta_percent:.1f}% "
            f"(tolerance {threshold_percent:.1f}%)"
        )


class NoBackupAvailableError(DocshiftError):
    """Raised when a rollback finds no verified backup inside the window."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="NO_BACKUP_AVAILABLE",
        category="rollback",
        suggested_action=(
            "Restore manually from the latest export; the registry stays in "
            "rolling_back until an operator intervenes"
        ),
    )


class BackupIntegrityError(DocshiftError):
    """Raised when a backup's content does not match its manifest."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKUP_INTEGRITY",
        category="backup",
        suggested_action="Create a fresh backup before migrating",
    )


# =============================================================================
# Registry state
# =============================================================================


class MigrationModeError(DocshiftError):
    """
    Base class for invalid registry mode operations.

    Attributes:
        current_mode: The mode the registry was in.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_MODE",
        category="state",
        suggested_action="Check the registry status before retrying",
    )

    def __init__(self, message: str, current_mode: MigrationMode) -> None:
        self.current_mode = current_mode
        super().__init__(message)


class AlreadyMigratingError(MigrationModeError):
    """Raised when migration mode is enabled while not idle."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ALREADY_MIGRATING",
        category="state",
        suggested_action="Wait for the current migration to finish or roll it back",
    )

    def __init__(self, current_mode: MigrationMode) -> None:
        super().__init__(
            f"Cannot enable migration mode while registry is {current_mode.value}",
            current_mode,
        )


class InvalidModeTransitionError(MigrationModeError):
    """
    Raised when a mode transition is not allowed.

    Attributes:
        target_mode: The mode that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_MODE_TRANSITION",
        category="state",
        suggested_action="Follow idle -> migrating -> validating -> complete -> idle",
    )

    def __init__(self, current_mode: MigrationMode, target_mode: MigrationMode) -> None:
        self.target_mode = target_mode
        super().__init__(
            f"Invalid mode transition: {current_mode.value} -> {target_mode.value}",
            current_mode,
        )


class RollbackInProgressError(MigrationModeError):
    """Raised when a writer other than the rollback lease holder changes mode."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_IN_PROGRESS",
        category="state",
        suggested_action="Defer until the rollback completes",
    )

    def __init__(self, current_mode: MigrationMode) -> None:
        super().__init__("A rollback is in progress; mode changes are deferred", current_mode)


class BaselineError(DocshiftError):
    """Base class for performance baseline errors."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BASELINE",
        category="performance",
        suggested_action="Record baselines once per phase, pre before post",
    )


class BaselineAlreadyRecordedError(BaselineError):
    """Raised when a baseline is recorded twice for the same phase."""

    def __init__(self, phase: str) -> None:
        self.phase = phase
        super().__init__(f"A {phase} baseline has already been recorded")


class BaselineNotRecordedError(BaselineError):
    """Raised when a comparison needs a baseline that was never recorded."""

    def __init__(self, phase: str) -> None:
        self.phase = phase
        super().__init__(f"No {phase} baseline has been recorded")


# =============================================================================
# Index deployment
# =============================================================================


class IndexDeploymentError(DocshiftError):
    """
    Raised when index deployment fails.

    Attributes:
        stage: The stage name (e.g. "staging") where deployment failed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INDEX_DEPLOYMENT",
        category="indexes",
        suggested_action="Inspect the index admin console and redeploy",
    )

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        self.stage = stage
        super().__init__(message)


class IndexDeploymentTimeoutError(IndexDeploymentError):
    """Raised when indexes do not become ready within the maximum wait."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INDEX_DEPLOYMENT_TIMEOUT",
        category="indexes",
        suggested_action="Wait for the index build to finish, then rerun deploy",
    )

    def __init__(self, stage: str, waited_seconds: float, pending: int) -> None:
        self.waited_seconds = waited_seconds
        self.pending = pending
        super().__init__(
            f"{pending} index(es) not ready on {stage} after {waited_seconds:.0f}s",
            stage=stage,
        )


class DeploymentCancelledError(IndexDeploymentError):
    """Raised inside the pipeline when an operator cancels deployment."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INDEX_DEPLOYMENT_CANCELLED",
        category="indexes",
        suggested_action="Rerun deploy when ready",
    )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    For DocshiftError subclasses, returns their specific classification.
    For other exceptions, returns a generic fatal classification.

    Example:
        >>> try:
        ...     await store.commit_batch("trades", docs)
        ... except Exception as e:
        ...     if classify_exception(e).recoverability.should_retry:
        ...         ...
    """
    if isinstance(exc, DocshiftError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs.",
    )


__all__ = [
    "AlreadyMigratingError",
    "BackupIntegrityError",
    "BaselineAlreadyRecordedError",
    "BaselineError",
    "BaselineNotRecordedError",
    "ConfigurationError",
    "ConnectivityError",
    "DeploymentCancelledError",
    "DocshiftError",
    "DocumentValidationError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "IndexDeploymentError",
    "IndexDeploymentTimeoutError",
    "InvalidModeTransitionError",
    "MalformedConfigError",
    "MigrationModeError",
    "NoBackupAvailableError",
    "RegressionDetected",
    "RollbackInProgressError",
    "SafetyCheckFailure",
    "UnrecognizedShapeError",
    "UnresolvedEnvironmentError",
    "classify_exception",
]
