"""
Base class for per-entity compatibility layers.

A compatibility layer presents one normalized shape over documents that may
be legacy-only, dual-shape or target-only. Each concrete layer supplies an
explicit mapping:

- read_legacy / read_target: raw document -> canonical values
- write_legacy / write_target: canonical values -> field sets

Canonical values are keyed by target field paths. Every write produces both
field sets so readers on either side of the migration see the same data.

Layers hold the MigrationRegistry handed to them at construction and read
``registry.mode`` on every operation.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from docshift._paths import get_path, has_path
from docshift.exceptions import DocshiftError, DocumentValidationError, UnrecognizedShapeError
from docshift.indexes.definitions import IndexDefinition
from docshift.indexes.readiness import IndexReadinessTracker
from docshift.models import MigrationMode
from docshift.observability import (
    ATTR_COLLECTION,
    ATTR_DOCUMENT_COUNT,
    ATTR_DOCUMENT_ID,
    ATTR_ENTITY_TYPE,
    ATTR_MIGRATION_MODE,
    Tracer,
    create_tracer,
)
from docshift.registry import MigrationRegistry
from docshift.stores.interface import Document, DocumentStore, FilterOperator, QueryFilter

logger = logging.getLogger(__name__)

SCHEMA_VERSION_LEGACY = "1.0"
SCHEMA_VERSION_TARGET = "2.0"

FIELD_SCHEMA_VERSION = "schemaVersion"
FIELD_MIGRATED_AT = "migratedAt"
FIELD_MIGRATION_BATCH = "migrationBatch"

METADATA_FIELDS = frozenset({FIELD_SCHEMA_VERSION, FIELD_MIGRATED_AT, FIELD_MIGRATION_BATCH})


class DocumentShape(Enum):
    """Which field sets a raw document carries."""

    LEGACY = "legacy"
    DUAL = "dual"
    TARGET = "target"


@dataclass(frozen=True)
class NormalizedEntity:
    """
    Tagged in-memory representation of one document.

    Equality covers entity type, id, canonical values and passthrough
    fields. The provenance tags (shape, schema version, timestamp) and the
    composed ``data`` view do not take part in equality.

    Attributes:
        entity_type: Owning layer's entity type (e.g. "trades")
        id: Document id, if known
        values: Canonical values keyed by target field path
        extra: Fields the mapping does not own, passed through unchanged
        shape: Shape the document was read from
        schema_version: schemaVersion tag of the source document
        migration_timestamp: migratedAt of the source document, if any
        data: Both field sets populated from ``values``
    """

    entity_type: str
    id: str | None
    values: Mapping[str, Any]
    extra: Mapping[str, Any] = field(default_factory=dict)
    shape: DocumentShape = field(default=DocumentShape.TARGET, compare=False)
    schema_version: str = field(default=SCHEMA_VERSION_LEGACY, compare=False)
    migration_timestamp: str | None = field(default=None, compare=False)
    data: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def get(self, path: str, default: Any = None) -> Any:
        """Canonical value for a target field path, falling back to passthrough fields."""
        if path in self.values:
            return self.values[path]
        return get_path(self.extra, path, default)


@dataclass(frozen=True)
class QueryShape:
    """
    A named query a layer supports.

    Attributes:
        name: Query name used by callers (e.g. "by_creator")
        target_field: Field path queried on target-shape documents
        legacy_field: Field path queried on legacy documents, or None when
            the legacy shape cannot be queried directly and needs a scan
        operator: Predicate operator
        target_index: Index that must be ready before the target field is
            used, or None when the query needs no composite index
    """

    name: str
    target_field: str | None
    legacy_field: str | None
    operator: FilterOperator = FilterOperator.EQUAL
    target_index: IndexDefinition | None = None


@dataclass(frozen=True)
class QueryPlan:
    """
    Resolved query strategy for one call.

    ``steps`` are executed in order and their results deduplicated by id.
    A step of None is a full scan matched against normalized values.
    """

    shape: QueryShape
    value: Any
    mode: MigrationMode
    use_target: bool
    steps: tuple[QueryFilter | None, ...]

    @property
    def field_side(self) -> str:
        return "target" if self.use_target else "legacy"

    @property
    def requires_scan(self) -> bool:
        return any(step is None for step in self.steps)


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


class CompatibilityLayer(ABC):
    """
    Abstract base class for per-entity compatibility layers.

    Subclasses declare their collection, field sets and query shapes as class
    attributes and implement the four mapping methods.

    Example:
        >>> layer = TradeCompatibilityLayer(registry, store, readiness=tracker)
        >>> entity = layer.normalize({"offeredSkills": ["python"], "creatorId": "u1"})
        >>> entity.values["participants.creator"]
        'u1'
        >>> payload = layer.denormalize(entity)
        >>> payload["creatorId"], payload["participants"]["creator"]
        ('u1', 'u1')
    """

    entity_type: ClassVar[str]
    collection: ClassVar[str]

    # Top-level keys owned by each shape; used for detection and passthrough.
    legacy_fields: ClassVar[tuple[str, ...]]
    target_fields: ClassVar[tuple[str, ...]]

    # Paths that must be non-blank in a write payload.
    required_legacy: ClassVar[tuple[str, ...]] = ()
    required_target: ClassVar[tuple[str, ...]] = ()

    query_shapes: ClassVar[tuple[QueryShape, ...]] = ()
    sample_document: ClassVar[Mapping[str, Any]] = {}

    def __init__(
        self,
        registry: MigrationRegistry,
        store: DocumentStore | None = None,
        *,
        readiness: IndexReadinessTracker | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            registry: Registry owning the migration mode
            store: Store used by get/query/save (not needed for pure mapping)
            readiness: Tracker consulted before switching to target fields
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._registry = registry
        self._store = store
        self._readiness = readiness if readiness is not None else IndexReadinessTracker()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._legacy_only = registry.mode is MigrationMode.ROLLING_BACK
        registry.register_observer(self)

    # -------------------------------------------------------------------------
    # Mapping (implemented per entity type)
    # -------------------------------------------------------------------------

    @abstractmethod
    def read_legacy(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        """Canonical values from legacy fields; absent values are None."""
        pass

    @abstractmethod
    def read_target(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        """Canonical values from target fields; absent values are None."""
        pass

    @abstractmethod
    def write_legacy(self, values: Mapping[str, Any]) -> dict[str, Any]:
        pass

    @abstractmethod
    def write_target(self, values: Mapping[str, Any]) -> dict[str, Any]:
        pass

    def merge(self, legacy: Mapping[str, Any], target: Mapping[str, Any]) -> dict[str, Any]:
        """Combine both readings of a dual-shape document; target values win."""
        merged = dict(legacy)
        for key, value in target.items():
            if value is not None or key not in merged:
                merged[key] = value
        return merged

    def validate_values(self, values: Mapping[str, Any]) -> list[str]:
        """Entity-specific rules over canonical values."""
        return []

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    @property
    def readiness(self) -> IndexReadinessTracker:
        return self._readiness

    @property
    def legacy_only(self) -> bool:
        return self._legacy_only

    @property
    def owned_fields(self) -> frozenset[str]:
        return frozenset(self.legacy_fields) | frozenset(self.target_fields)

    def required_indexes(self) -> list[IndexDefinition]:
        return [s.target_index for s in self.query_shapes if s.target_index is not None]

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def detect_shape(self, raw: Mapping[str, Any]) -> DocumentShape:
        """
        Classify a raw document by the field sets it carries.

        Raises:
            UnrecognizedShapeError: If neither legacy nor target fields are present
        """
        has_legacy = any(has_path(raw, f) for f in self.legacy_fields)
        has_target = any(has_path(raw, f) for f in self.target_fields)
        if has_legacy and has_target:
            return DocumentShape.DUAL
        if has_legacy:
            return DocumentShape.LEGACY
        if has_target:
            return DocumentShape.TARGET
        raise UnrecognizedShapeError(
            f"Document has neither legacy fields {list(self.legacy_fields)} "
            f"nor target fields {list(self.target_fields)}",
            entity_type=self.entity_type,
            document_id=raw.get("id") if isinstance(raw.get("id"), str) else None,
        )

    def normalize(self, raw: Mapping[str, Any], doc_id: str | None = None) -> NormalizedEntity:
        """
        Build the normalized entity for a raw document of any shape.

        Raises:
            UnrecognizedShapeError: If neither legacy nor target fields are present
        """
        shape = self.detect_shape(raw)
        legacy = self.read_legacy(raw) if shape is not DocumentShape.TARGET else {}
        target = self.read_target(raw) if shape is not DocumentShape.LEGACY else {}
        values = copy.deepcopy(self.merge(legacy, target))

        extra = {
            key: copy.deepcopy(value)
            for key, value in raw.items()
            if key not in self.owned_fields and key not in METADATA_FIELDS and key != "id"
        }
        schema_version = str(raw.get(FIELD_SCHEMA_VERSION) or SCHEMA_VERSION_LEGACY)
        migrated_at = raw.get(FIELD_MIGRATED_AT)

        data = self._compose(values, extra)
        data[FIELD_SCHEMA_VERSION] = schema_version
        if migrated_at is not None:
            data[FIELD_MIGRATED_AT] = migrated_at

        raw_id = raw.get("id")
        return NormalizedEntity(
            entity_type=self.entity_type,
            id=doc_id or (raw_id if isinstance(raw_id, str) else None),
            values=values,
            extra=extra,
            shape=shape,
            schema_version=schema_version,
            migration_timestamp=migrated_at,
            data=data,
        )

    def _compose(self, values: Mapping[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
        payload = copy.deepcopy(dict(extra))
        payload.update(self.write_legacy(values))
        payload.update(self.write_target(values))
        return payload

    def denormalize(
        self,
        entity: NormalizedEntity,
        *,
        migrated_at: str | None = None,
        batch_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Build a write payload carrying both shapes.

        The payload is tagged ``schemaVersion = "2.0"``. ``migratedAt`` keeps
        the entity's original timestamp unless one is passed.
        """
        payload = self._compose(entity.values, entity.extra)
        payload[FIELD_SCHEMA_VERSION] = SCHEMA_VERSION_TARGET
        payload[FIELD_MIGRATED_AT] = (
            migrated_at or entity.migration_timestamp or datetime.now(UTC).isoformat()
        )
        if batch_id is not None:
            payload[FIELD_MIGRATION_BATCH] = batch_id
        return payload

    def denormalize_legacy(self, entity: NormalizedEntity) -> dict[str, Any]:
        """Legacy-only payload used while the layer is rolled back."""
        payload = copy.deepcopy(dict(entity.extra))
        payload.update(self.write_legacy(entity.values))
        payload[FIELD_SCHEMA_VERSION] = SCHEMA_VERSION_LEGACY
        return payload

    def is_migrated(self, raw: Mapping[str, Any]) -> bool:
        """True for a target-tagged document carrying both field sets."""
        if raw.get(FIELD_SCHEMA_VERSION) != SCHEMA_VERSION_TARGET:
            return False
        try:
            return self.detect_shape(raw) is DocumentShape.DUAL
        except UnrecognizedShapeError:
            return False

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, payload: Mapping[str, Any], *, legacy_only: bool = False) -> list[str]:
        """
        Check a write payload against the required-field rules.

        A dual payload must carry every required legacy and target field,
        the target schema version, and agree between its two readings.

        Returns:
            List of problems; empty when the payload is valid
        """
        problems = [
            f"Missing required legacy field '{path}'"
            for path in self.required_legacy
            if _is_blank(get_path(payload, path))
        ]
        if not legacy_only:
            problems.extend(
                f"Missing required target field '{path}'"
                for path in self.required_target
                if _is_blank(get_path(payload, path))
            )
            if payload.get(FIELD_SCHEMA_VERSION) != SCHEMA_VERSION_TARGET:
                problems.append(
                    f"schemaVersion must be '{SCHEMA_VERSION_TARGET}', "
                    f"got {payload.get(FIELD_SCHEMA_VERSION)!r}"
                )
            legacy = self.read_legacy(payload)
            target = self.read_target(payload)
            for key, target_value in target.items():
                legacy_value = legacy.get(key)
                if target_value is None or legacy_value is None:
                    continue
                if legacy_value != target_value:
                    problems.append(f"Legacy and target values disagree for '{key}'")

        try:
            entity = self.normalize(payload)
        except UnrecognizedShapeError as e:
            problems.append(e.message)
        else:
            problems.extend(self.validate_values(entity.values))
        return problems

    def ensure_valid(self, payload: Mapping[str, Any], doc_id: str | None = None) -> None:
        """
        Raises:
            DocumentValidationError: If validate() reports any problem
        """
        problems = self.validate(payload, legacy_only=self._legacy_only)
        if problems:
            raise DocumentValidationError(
                "; ".join(problems),
                problems=problems,
                entity_type=self.entity_type,
                document_id=doc_id,
            )

    def self_check(self) -> list[str]:
        """
        Run the built-in sample document through the full mapping.

        Returns:
            List of problems; empty when the layer loads cleanly
        """
        problems: list[str] = []
        try:
            entity = self.normalize(self.sample_document, "self-check")
            payload = self.denormalize(entity)
            problems.extend(self.validate(payload))
            if self.normalize(payload, "self-check") != entity:
                problems.append("normalize(denormalize(entity)) does not round-trip")
        except DocshiftError as e:
            problems.append(f"{type(e).__name__}: {e.message}")
        return [f"{self.entity_type}: {p}" for p in problems]

    # -------------------------------------------------------------------------
    # Mode handling
    # -------------------------------------------------------------------------

    def on_mode_changed(
        self,
        previous: MigrationMode,
        current: MigrationMode,
        reason: str | None,
    ) -> None:
        if current is MigrationMode.ROLLING_BACK:
            self.revert_to_legacy()
        elif current is MigrationMode.MIGRATING and self._legacy_only:
            self._legacy_only = False
            logger.info("%s layer re-enabled dual writes", self.entity_type)

    def revert_to_legacy(self) -> None:
        """Switch queries and writes to the legacy shape only."""
        if not self._legacy_only:
            logger.warning("%s layer reverted to legacy-only strategy", self.entity_type)
        self._legacy_only = True

    # -------------------------------------------------------------------------
    # Query planning
    # -------------------------------------------------------------------------

    def query_shape(self, name: str) -> QueryShape:
        for shape in self.query_shapes:
            if shape.name == name:
                return shape
        raise ValueError(
            f"{self.entity_type} has no query {name!r}; "
            f"known: {[s.name for s in self.query_shapes]}"
        )

    def plan_query(self, name: str, value: Any) -> QueryPlan:
        """
        Choose legacy or target fields for a query under the current mode.

        Before migration and while rolled back, queries use legacy fields.
        During migration, target fields are used once the query's index is
        ready, followed by a legacy query for documents not yet migrated.
        After migration, target fields are used once the index is ready.
        """
        shape = self.query_shape(name)
        mode = self._registry.mode
        use_target = (
            not self._legacy_only
            and mode.is_migration_active
            and shape.target_field is not None
            and self._readiness.is_ready(shape.target_index)
        )

        def step(field_path: str | None) -> QueryFilter | None:
            if field_path is None:
                return None
            return QueryFilter(field_path, shape.operator, value)

        steps: tuple[QueryFilter | None, ...]
        if use_target:
            steps = (step(shape.target_field),)
            if mode is MigrationMode.MIGRATING:
                steps += (step(shape.legacy_field),)
        else:
            steps = (step(shape.legacy_field),)
        return QueryPlan(shape=shape, value=value, mode=mode, use_target=use_target, steps=steps)

    # -------------------------------------------------------------------------
    # Application-facing operations
    # -------------------------------------------------------------------------

    def _require_store(self) -> DocumentStore:
        if self._store is None:
            raise RuntimeError(f"{type(self).__name__} was created without a document store")
        return self._store

    async def get(self, doc_id: str) -> NormalizedEntity | None:
        if not doc_id:
            raise ValueError(f"{self.entity_type} id must be a non-empty string")
        store = self._require_store()
        with self._tracer.span(
            "docshift.compat.get",
            {ATTR_ENTITY_TYPE: self.entity_type, ATTR_DOCUMENT_ID: doc_id},
        ):
            document = await store.get(self.collection, doc_id)
            if document is None:
                return None
            return self.normalize(document.data, document.id)

    async def query(
        self, name: str, value: Any, limit: int | None = None
    ) -> list[NormalizedEntity]:
        """
        Run a named query and return normalized entities, deduplicated by id.

        Documents that match no known shape are skipped with a warning.
        """
        if limit is not None and limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        store = self._require_store()
        plan = self.plan_query(name, value)
        with self._tracer.span(
            "docshift.compat.query",
            {
                ATTR_ENTITY_TYPE: self.entity_type,
                ATTR_COLLECTION: self.collection,
                ATTR_MIGRATION_MODE: plan.mode.value,
            },
        ):
            results: dict[str, NormalizedEntity] = {}
            for query_filter in plan.steps:
                if query_filter is None:
                    documents = await self._scan(plan)
                else:
                    documents = await store.query(self.collection, [query_filter], limit=limit)
                for document in documents:
                    if document.id in results:
                        continue
                    try:
                        results[document.id] = self.normalize(document.data, document.id)
                    except UnrecognizedShapeError:
                        logger.warning(
                            "Skipping unrecognized %s document %s", self.entity_type, document.id
                        )
                if limit is not None and len(results) >= limit:
                    break
            entities = list(results.values())
            return entities[:limit] if limit is not None else entities

    async def _scan(self, plan: QueryPlan) -> list[Document]:
        store = self._require_store()
        field_path = plan.shape.target_field
        matches: list[Document] = []
        for document in await store.iter_documents(self.collection):
            try:
                entity = self.normalize(document.data, document.id)
            except UnrecognizedShapeError:
                continue
            actual = entity.get(field_path) if field_path else None
            if plan.shape.operator is FilterOperator.ARRAY_CONTAINS:
                matched = isinstance(actual, list) and plan.value in actual
            else:
                matched = actual == plan.value
            if matched:
                matches.append(document)
        logger.debug(
            "Scanned %s for %s: %d match(es)", self.collection, plan.shape.name, len(matches)
        )
        return matches

    def prepare_write(self, entity: NormalizedEntity) -> dict[str, Any]:
        """Payload for an application write under the current strategy."""
        if self._legacy_only or self._registry.mode is MigrationMode.ROLLING_BACK:
            return self.denormalize_legacy(entity)
        return self.denormalize(entity)

    async def save(self, entity: NormalizedEntity) -> NormalizedEntity:
        """
        Validate and write an entity.

        Raises:
            ValueError: If the entity has no id
            DocumentValidationError: If the payload fails required-field rules
        """
        if not entity.id:
            raise ValueError(f"{self.entity_type} entity must have an id to be saved")
        store = self._require_store()
        payload = self.prepare_write(entity)
        self.ensure_valid(payload, entity.id)
        with self._tracer.span(
            "docshift.compat.save",
            {ATTR_ENTITY_TYPE: self.entity_type, ATTR_DOCUMENT_ID: entity.id},
        ):
            await store.commit_batch(self.collection, [Document(entity.id, payload)])
        return self.normalize(payload, entity.id)

    async def save_many(self, entities: Sequence[NormalizedEntity]) -> int:
        """Validate and write several entities in one atomic batch."""
        store = self._require_store()
        documents = []
        for entity in entities:
            if not entity.id:
                raise ValueError(f"{self.entity_type} entity must have an id to be saved")
            payload = self.prepare_write(entity)
            self.ensure_valid(payload, entity.id)
            documents.append(Document(entity.id, payload))
        with self._tracer.span(
            "docshift.compat.save_many",
            {ATTR_ENTITY_TYPE: self.entity_type, ATTR_DOCUMENT_COUNT: len(documents)},
        ):
            await store.commit_batch(self.collection, documents)
        return len(documents)


__all__ = [
    "FIELD_MIGRATED_AT",
    "FIELD_MIGRATION_BATCH",
    "FIELD_SCHEMA_VERSION",
    "METADATA_FIELDS",
    "SCHEMA_VERSION_LEGACY",
    "SCHEMA_VERSION_TARGET",
    "CompatibilityLayer",
    "DocumentShape",
    "NormalizedEntity",
    "QueryPlan",
    "QueryShape",
]
