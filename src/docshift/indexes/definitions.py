"""
Index definition model and configuration file parser.

The index configuration file uses the document database's index file layout:

    {
      "indexes": [
        {
          "collectionGroup": "trades",
          "queryScope": "COLLECTION",
          "fields": [
            {"fieldPath": "participants.creator", "order": "ASCENDING"},
            {"fieldPath": "createdAt", "order": "DESCENDING"}
          ]
        }
      ],
      "fieldOverrides": [
        {
          "collectionGroup": "conversations",
          "fieldPath": "participantIds",
          "indexes": [{"arrayConfig": "CONTAINS", "queryScope": "COLLECTION"}]
        }
      ]
    }

Parsing is strict: unknown keys, unknown tokens and missing fields are all
reported through MalformedConfigError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from docshift._paths import FIELD_PATH_PATTERN
from docshift.exceptions import MalformedConfigError

logger = logging.getLogger(__name__)


class QueryScope(Enum):
    """Whether an index serves one collection or every collection with that id."""

    COLLECTION = "COLLECTION"
    COLLECTION_GROUP = "COLLECTION_GROUP"


class FieldOrder(Enum):
    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


class ArrayConfig(Enum):
    CONTAINS = "CONTAINS"


@dataclass(frozen=True)
class IndexField:
    """
    One field of an index definition.

    Exactly one of ``order`` and ``array_config`` is set.
    """

    field_path: str
    order: FieldOrder | None = None
    array_config: ArrayConfig | None = None

    def __post_init__(self) -> None:
        if (self.order is None) == (self.array_config is None):
            raise ValueError(
                f"Index field {self.field_path!r} needs exactly one of order or array_config"
            )

    def describe(self) -> str:
        if self.array_config is not None:
            return f"{self.field_path} {self.array_config.value}"
        assert self.order is not None
        return f"{self.field_path} {'ASC' if self.order is FieldOrder.ASCENDING else 'DESC'}"

    def to_dict(self) -> dict[str, str]:
        result = {"fieldPath": self.field_path}
        if self.order is not None:
            result["order"] = self.order.value
        if self.array_config is not None:
            result["arrayConfig"] = self.array_config.value
        return result


@dataclass(frozen=True)
class IndexDefinition:
    """
    A composite (or single-field) index declaration.

    Two definitions are equal only when collection group, query scope and the
    ordered field list all match; field order is significant.

    Example:
        >>> IndexDefinition(
        ...     collection_group="trades",
        ...     query_scope=QueryScope.COLLECTION,
        ...     fields=(
        ...         IndexField("status", order=FieldOrder.ASCENDING),
        ...         IndexField("createdAt", order=FieldOrder.DESCENDING),
        ...     ),
        ... ).describe()
        'trades (COLLECTION): status ASC, createdAt DESC'
    """

    collection_group: str
    query_scope: QueryScope
    fields: tuple[IndexField, ...]

    def __post_init__(self) -> None:
        if not self.collection_group:
            raise ValueError("collection_group must not be empty")
        if not self.fields:
            raise ValueError(f"Index on {self.collection_group} must have at least one field")

    @property
    def key(self) -> tuple[Any, ...]:
        """Hashable identity used for matching deployed indexes."""
        return (
            self.collection_group,
            self.query_scope,
            tuple((f.field_path, f.order, f.array_config) for f in self.fields),
        )

    @property
    def field_paths(self) -> tuple[str, ...]:
        return tuple(f.field_path for f in self.fields)

    def describe(self) -> str:
        fields = ", ".join(f.describe() for f in self.fields)
        return f"{self.collection_group} ({self.query_scope.value}): {fields}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "collectionGroup": self.collection_group,
            "queryScope": self.query_scope.value,
            "fields": [f.to_dict() for f in self.fields],
        }


# =============================================================================
# File models
# =============================================================================


class _IndexFieldModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    field_path: str = Field(alias="fieldPath", pattern=FIELD_PATH_PATTERN.pattern)
    order: FieldOrder | None = None
    array_config: ArrayConfig | None = Field(default=None, alias="arrayConfig")

    @model_validator(mode="after")
    def _exactly_one_mode(self) -> _IndexFieldModel:
        if (self.order is None) == (self.array_config is None):
            raise ValueError("exactly one of 'order' or 'arrayConfig' is required")
        return self

    def to_field(self) -> IndexField:
        return IndexField(self.field_path, order=self.order, array_config=self.array_config)


class _IndexModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    collection_group: str = Field(alias="collectionGroup", min_length=1)
    query_scope: QueryScope = Field(alias="queryScope")
    fields: list[_IndexFieldModel] = Field(min_length=1)

    def to_definition(self) -> IndexDefinition:
        return IndexDefinition(
            collection_group=self.collection_group,
            query_scope=self.query_scope,
            fields=tuple(f.to_field() for f in self.fields),
        )


class _FieldOverrideIndexModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    query_scope: QueryScope = Field(alias="queryScope")
    order: FieldOrder | None = None
    array_config: ArrayConfig | None = Field(default=None, alias="arrayConfig")

    @model_validator(mode="after")
    def _exactly_one_mode(self) -> _FieldOverrideIndexModel:
        if (self.order is None) == (self.array_config is None):
            raise ValueError("exactly one of 'order' or 'arrayConfig' is required")
        return self


class _FieldOverrideModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    collection_group: str = Field(alias="collectionGroup", min_length=1)
    field_path: str = Field(alias="fieldPath", pattern=FIELD_PATH_PATTERN.pattern)
    ttl: bool = False
    indexes: list[_FieldOverrideIndexModel] = Field(default_factory=list)


class _IndexFileModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    indexes: list[_IndexModel]
    field_overrides: list[_FieldOverrideModel] = Field(
        default_factory=list, alias="fieldOverrides"
    )


@dataclass(frozen=True)
class FieldOverride:
    """Single-field index behavior for one field of a collection group."""

    collection_group: str
    field_path: str
    indexes: tuple[IndexDefinition, ...]
    ttl: bool = False


@dataclass(frozen=True)
class IndexConfig:
    """Parsed index configuration file."""

    indexes: tuple[IndexDefinition, ...]
    field_overrides: tuple[FieldOverride, ...] = ()

    def all_definitions(self) -> list[IndexDefinition]:
        """Composite definitions followed by definitions expanded from field overrides."""
        result = list(self.indexes)
        for override in self.field_overrides:
            result.extend(override.indexes)
        return result


def _format_problems(error: ValidationError) -> list[str]:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "(root)"
        problems.append(f"{location}: {item['msg']}")
    return problems


def parse_index_config(
    source: str | bytes | Mapping[str, Any],
    *,
    source_name: str = "<index config>",
) -> IndexConfig:
    """
    Parse an index configuration document.

    Args:
        source: JSON text, JSON bytes, or an already-decoded mapping
        source_name: Name used in error messages (usually the file path)

    Returns:
        IndexConfig with composite indexes and field overrides

    Raises:
        MalformedConfigError: On invalid JSON, missing fields, unknown tokens
            or unknown keys
    """
    if isinstance(source, (str, bytes)):
        try:
            data = json.loads(source)
        except json.JSONDecodeError as e:
            raise MalformedConfigError(source_name, [f"invalid JSON: {e}"]) from e
    else:
        data = source

    if not isinstance(data, Mapping):
        raise MalformedConfigError(source_name, ["top level must be a JSON object"])

    try:
        model = _IndexFileModel.model_validate(data)
    except ValidationError as e:
        raise MalformedConfigError(source_name, _format_problems(e)) from e

    overrides = tuple(
        FieldOverride(
            collection_group=o.collection_group,
            field_path=o.field_path,
            ttl=o.ttl,
            indexes=tuple(
                IndexDefinition(
                    collection_group=o.collection_group,
                    query_scope=i.query_scope,
                    fields=(IndexField(o.field_path, order=i.order, array_config=i.array_config),),
                )
                for i in o.indexes
            ),
        )
        for o in model.field_overrides
    )
    config = IndexConfig(
        indexes=tuple(i.to_definition() for i in model.indexes),
        field_overrides=overrides,
    )
    logger.debug(
        "Parsed %d index definitions and %d field overrides from %s",
        len(config.indexes),
        len(config.field_overrides),
        source_name,
    )
    return config


def parse_index_definitions(
    source: str | bytes | Mapping[str, Any],
    *,
    source_name: str = "<index config>",
) -> list[IndexDefinition]:
    """
    Parse an index configuration into the full list of expected definitions.

    Field overrides are expanded into single-field definitions and appended
    after the composite indexes.

    Raises:
        MalformedConfigError: See parse_index_config
    """
    return parse_index_config(source, source_name=source_name).all_definitions()


def load_index_definitions(path: str | Path) -> list[IndexDefinition]:
    """
    Read and parse an index configuration file.

    Raises:
        MalformedConfigError: If the file is missing or invalid
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedConfigError(str(path), [f"cannot read file: {e.strerror or e}"]) from e
    return parse_index_definitions(content, source_name=str(path))


__all__ = [
    "ArrayConfig",
    "FieldOrder",
    "FieldOverride",
    "IndexConfig",
    "IndexDefinition",
    "IndexField",
    "QueryScope",
    "load_index_definitions",
    "parse_index_config",
    "parse_index_definitions",
]
