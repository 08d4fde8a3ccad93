"""
docshift - Zero-downtime schema migrations for document databases.

This library provides:
- Compatibility layers that read legacy, dual-shape and target documents
- Index definition parsing, comparison and staged deployment
- A migration registry owning the migration mode and performance baselines
- Pre-flight safety checks, a paged batch migration executor and a
  performance regression validator
- Backup-driven rollback
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("docshift")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from docshift.compat import (
    CompatibilityLayer,
    ConversationCompatibilityLayer,
    DocumentShape,
    MessageCompatibilityLayer,
    NormalizedEntity,
    QueryPlan,
    TradeCompatibilityLayer,
    create_layers,
)
from docshift.config import (
    EnvironmentProfile,
    ProjectMapping,
    ResolvedEnvironment,
    load_project_mapping,
)
from docshift.coordinator import (
    MigrationCoordinator,
    MigrationRunReport,
    PhasedRollout,
    RolloutPhase,
)
from docshift.exceptions import (
    AlreadyMigratingError,
    BackupIntegrityError,
    BaselineAlreadyRecordedError,
    BaselineNotRecordedError,
    ConfigurationError,
    ConnectivityError,
    DocshiftError,
    DocumentValidationError,
    IndexDeploymentError,
    IndexDeploymentTimeoutError,
    InvalidModeTransitionError,
    MalformedConfigError,
    NoBackupAvailableError,
    RegressionDetected,
    RollbackInProgressError,
    SafetyCheckFailure,
    UnrecognizedShapeError,
    UnresolvedEnvironmentError,
)
from docshift.executor import (
    BatchMigrationExecutor,
    ExecutorConfig,
    MigrationProgress,
    MigrationResult,
)
from docshift.indexes import (
    IndexComparisonResult,
    IndexDefinition,
    IndexDeploymentPipeline,
    IndexReadinessTracker,
    compare_indexes,
    load_index_definitions,
    parse_index_definitions,
)
from docshift.models import (
    BaselinePhase,
    ExecutionMode,
    MigrationMode,
    PerformanceBaseline,
    RegressionStatus,
    RegressionVerdict,
)
from docshift.performance import BenchmarkQuery, PerformanceRegressionValidator
from docshift.registry import MigrationRegistry
from docshift.retry import BackoffStrategy, RetryConfig, RetryPolicy
from docshift.rollback import RollbackManager, RollbackResult
from docshift.safety import SafetyCheckConfig, SafetyCheckEngine, SafetyCheckReport
from docshift.stores import Document, DocumentStore, InMemoryDocumentStore, SQLiteDocumentStore

__all__ = [
    "__version__",
    # Compatibility layers
    "CompatibilityLayer",
    "ConversationCompatibilityLayer",
    "DocumentShape",
    "MessageCompatibilityLayer",
    "NormalizedEntity",
    "QueryPlan",
    "TradeCompatibilityLayer",
    "create_layers",
    # Configuration
    "EnvironmentProfile",
    "ProjectMapping",
    "ResolvedEnvironment",
    "load_project_mapping",
    # Orchestration
    "MigrationCoordinator",
    "MigrationRunReport",
    "PhasedRollout",
    "RolloutPhase",
    "BatchMigrationExecutor",
    "ExecutorConfig",
    "MigrationProgress",
    "MigrationResult",
    "MigrationRegistry",
    "PerformanceRegressionValidator",
    "BenchmarkQuery",
    "RollbackManager",
    "RollbackResult",
    "SafetyCheckConfig",
    "SafetyCheckEngine",
    "SafetyCheckReport",
    # Indexes
    "IndexComparisonResult",
    "IndexDefinition",
    "IndexDeploymentPipeline",
    "IndexReadinessTracker",
    "compare_indexes",
    "load_index_definitions",
    "parse_index_definitions",
    # Models
    "BaselinePhase",
    "ExecutionMode",
    "MigrationMode",
    "PerformanceBaseline",
    "RegressionStatus",
    "RegressionVerdict",
    # Retry
    "BackoffStrategy",
    "RetryConfig",
    "RetryPolicy",
    # Stores
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    # Exceptions
    "AlreadyMigratingError",
    "BackupIntegrityError",
    "BaselineAlreadyRecordedError",
    "BaselineNotRecordedError",
    "ConfigurationError",
    "ConnectivityError",
    "DocshiftError",
    "DocumentValidationError",
    "IndexDeploymentError",
    "IndexDeploymentTimeoutError",
    "InvalidModeTransitionError",
    "MalformedConfigError",
    "NoBackupAvailableError",
    "RegressionDetected",
    "RollbackInProgressError",
    "SafetyCheckFailure",
    "UnrecognizedShapeError",
    "UnresolvedEnvironmentError",
]
