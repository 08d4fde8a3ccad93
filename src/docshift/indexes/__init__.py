"""
Index definitions, comparison, administration and staged deployment.
"""

from docshift.indexes.admin import (
    DeployedIndex,
    IndexAdmin,
    IndexState,
    InMemoryIndexAdmin,
    SQLiteIndexAdmin,
    index_name,
)
from docshift.indexes.comparator import IndexComparisonResult, IndexStatus, compare_indexes
from docshift.indexes.definitions import (
    ArrayConfig,
    FieldOrder,
    FieldOverride,
    IndexConfig,
    IndexDefinition,
    IndexField,
    QueryScope,
    load_index_definitions,
    parse_index_config,
    parse_index_definitions,
)
from docshift.indexes.pipeline import (
    DeploymentReport,
    DeploymentStage,
    DeploymentState,
    IndexDeploymentPipeline,
    PipelineConfig,
)
from docshift.indexes.readiness import IndexReadinessTracker

__all__ = [
    "ArrayConfig",
    "DeployedIndex",
    "DeploymentReport",
    "DeploymentStage",
    "DeploymentState",
    "FieldOrder",
    "FieldOverride",
    "IndexAdmin",
    "IndexComparisonResult",
    "IndexConfig",
    "IndexDefinition",
    "IndexDeploymentPipeline",
    "IndexField",
    "IndexReadinessTracker",
    "IndexState",
    "IndexStatus",
    "InMemoryIndexAdmin",
    "PipelineConfig",
    "QueryScope",
    "SQLiteIndexAdmin",
    "compare_indexes",
    "index_name",
    "load_index_definitions",
    "parse_index_config",
    "parse_index_definitions",
]
