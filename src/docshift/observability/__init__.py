"""
Observability utilities for docshift.

Composition-based tracing and standard attribute definitions. Components
accept ``tracer=`` and ``enable_tracing=`` and build their tracer with
:func:`create_tracer`.

Example:
    >>> from docshift.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from docshift.observability.attributes import (
    ATTR_BACKUP_ID,
    ATTR_COLLECTION,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DEPLOYMENT_STAGE,
    ATTR_DOCUMENT_COUNT,
    ATTR_DOCUMENT_ID,
    ATTR_DOCUMENTS_FAILED,
    ATTR_DOCUMENTS_MIGRATED,
    ATTR_DOCUMENTS_SKIPPED,
    ATTR_ENTITY_TYPE,
    ATTR_ENVIRONMENT,
    ATTR_EXECUTION_MODE,
    ATTR_INDEX_COUNT,
    ATTR_MIGRATION_MODE,
    ATTR_PAGE_NUMBER,
    ATTR_PAGE_SIZE,
    ATTR_ROLLBACK_REASON,
)
from docshift.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    Tracer,
    create_tracer,
    normalize_attributes,
)

__all__ = [
    # Tracer
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "Tracer",
    "create_tracer",
    "normalize_attributes",
    # Attributes
    "ATTR_BACKUP_ID",
    "ATTR_COLLECTION",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DEPLOYMENT_STAGE",
    "ATTR_DOCUMENT_COUNT",
    "ATTR_DOCUMENT_ID",
    "ATTR_DOCUMENTS_FAILED",
    "ATTR_DOCUMENTS_MIGRATED",
    "ATTR_DOCUMENTS_SKIPPED",
    "ATTR_ENTITY_TYPE",
    "ATTR_ENVIRONMENT",
    "ATTR_EXECUTION_MODE",
    "ATTR_INDEX_COUNT",
    "ATTR_MIGRATION_MODE",
    "ATTR_PAGE_NUMBER",
    "ATTR_PAGE_SIZE",
    "ATTR_ROLLBACK_REASON",
]
