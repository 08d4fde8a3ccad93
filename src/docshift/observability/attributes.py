"""
Standard span attributes for docshift.

Attribute constants used across components for consistent span naming.
Database attributes follow OpenTelemetry semantic conventions.

Example:
    >>> from docshift.observability.attributes import ATTR_ENTITY_TYPE
    >>>
    >>> with tracer.span(
    ...     "docshift.executor.migrate_collection",
    ...     {ATTR_ENTITY_TYPE: "trades"},
    ... ):
    ...     pass
"""

# =============================================================================
# Document Attributes
# =============================================================================

ATTR_COLLECTION = "docshift.collection"
"""Collection (or collection group) name."""

ATTR_DOCUMENT_ID = "docshift.document.id"
"""Identifier of a single document."""

ATTR_DOCUMENT_COUNT = "docshift.document.count"
"""Number of documents in an operation (integer)."""

ATTR_ENTITY_TYPE = "docshift.entity.type"
"""Entity type handled by a compatibility layer (e.g., 'trades')."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_MODE = "docshift.migration.mode"
"""Registry mode (idle, migrating, validating, complete, rolling_back)."""

ATTR_EXECUTION_MODE = "docshift.migration.execution_mode"
"""dry_run, validate_only or execute."""

ATTR_PAGE_NUMBER = "docshift.migration.page"
"""1-based page number within a run (integer)."""

ATTR_PAGE_SIZE = "docshift.migration.page_size"
"""Configured page size (integer)."""

ATTR_DOCUMENTS_MIGRATED = "docshift.migration.migrated"
"""Documents migrated (integer)."""

ATTR_DOCUMENTS_FAILED = "docshift.migration.failed"
"""Documents failed (integer)."""

ATTR_DOCUMENTS_SKIPPED = "docshift.migration.skipped"
"""Documents skipped as already migrated (integer)."""

ATTR_ROLLBACK_REASON = "docshift.rollback.reason"
"""Operator-supplied reason for a rollback."""

ATTR_BACKUP_ID = "docshift.backup.id"
"""Identifier of a backup."""

# =============================================================================
# Index Attributes
# =============================================================================

ATTR_INDEX_COUNT = "docshift.index.count"
"""Number of index definitions involved (integer)."""

ATTR_DEPLOYMENT_STAGE = "docshift.index.stage"
"""Deployment stage name (e.g., 'staging', 'production')."""

# =============================================================================
# Environment / Database Attributes (OTEL semantic)
# =============================================================================

ATTR_ENVIRONMENT = "docshift.environment"
"""Environment selector (e.g., 'staging')."""

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'memory')."""

ATTR_DB_NAME = "db.name"
"""Database name or path."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation (e.g., 'read_page', 'commit_batch')."""


__all__ = [
    "ATTR_BACKUP_ID",
    "ATTR_COLLECTION",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DEPLOYMENT_STAGE",
    "ATTR_DOCUMENTS_FAILED",
    "ATTR_DOCUMENTS_MIGRATED",
    "ATTR_DOCUMENTS_SKIPPED",
    "ATTR_DOCUMENT_COUNT",
    "ATTR_DOCUMENT_ID",
    "ATTR_ENTITY_TYPE",
    "ATTR_ENVIRONMENT",
    "ATTR_EXECUTION_MODE",
    "ATTR_INDEX_COUNT",
    "ATTR_MIGRATION_MODE",
    "ATTR_PAGE_NUMBER",
    "ATTR_PAGE_SIZE",
    "ATTR_ROLLBACK_REASON",
]
