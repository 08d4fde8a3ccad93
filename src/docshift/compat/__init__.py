"""
Per-entity compatibility layers.

Each layer normalizes legacy, dual-shape and target documents of one entity
type and writes both shapes back.
"""

from __future__ import annotations

from docshift.compat.base import (
    FIELD_MIGRATED_AT,
    FIELD_MIGRATION_BATCH,
    FIELD_SCHEMA_VERSION,
    METADATA_FIELDS,
    SCHEMA_VERSION_LEGACY,
    SCHEMA_VERSION_TARGET,
    CompatibilityLayer,
    DocumentShape,
    NormalizedEntity,
    QueryPlan,
    QueryShape,
)
from docshift.compat.conversations import ConversationCompatibilityLayer, normalize_participant
from docshift.compat.messages import MessageCompatibilityLayer
from docshift.compat.trades import TradeCompatibilityLayer, normalize_skills
from docshift.indexes.readiness import IndexReadinessTracker
from docshift.observability import Tracer
from docshift.registry import MigrationRegistry
from docshift.stores.interface import DocumentStore

LAYER_TYPES: dict[str, type[CompatibilityLayer]] = {
    TradeCompatibilityLayer.entity_type: TradeCompatibilityLayer,
    ConversationCompatibilityLayer.entity_type: ConversationCompatibilityLayer,
    MessageCompatibilityLayer.entity_type: MessageCompatibilityLayer,
}


def create_layers(
    registry: MigrationRegistry,
    store: DocumentStore | None = None,
    *,
    entity_types: list[str] | None = None,
    readiness: IndexReadinessTracker | None = None,
    tracer: Tracer | None = None,
    enable_tracing: bool = True,
) -> dict[str, CompatibilityLayer]:
    """
    Instantiate one layer per entity type, sharing registry, store and readiness.

    Raises:
        ValueError: If an entity type has no layer
    """
    selected = entity_types or list(LAYER_TYPES)
    unknown = [name for name in selected if name not in LAYER_TYPES]
    if unknown:
        raise ValueError(f"Unknown entity type(s) {unknown}; known: {sorted(LAYER_TYPES)}")
    shared = readiness if readiness is not None else IndexReadinessTracker()
    return {
        name: LAYER_TYPES[name](
            registry,
            store,
            readiness=shared,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        for name in selected
    }


__all__ = [
    "FIELD_MIGRATED_AT",
    "FIELD_MIGRATION_BATCH",
    "FIELD_SCHEMA_VERSION",
    "LAYER_TYPES",
    "METADATA_FIELDS",
    "SCHEMA_VERSION_LEGACY",
    "SCHEMA_VERSION_TARGET",
    "CompatibilityLayer",
    "ConversationCompatibilityLayer",
    "DocumentShape",
    "MessageCompatibilityLayer",
    "NormalizedEntity",
    "QueryPlan",
    "QueryShape",
    "TradeCompatibilityLayer",
    "create_layers",
    "normalize_participant",
    "normalize_skills",
]
