"""
Unit tests for index configuration parsing.

Tests cover:
- Parsing composite indexes and field overrides
- Malformed input reporting
- Definition identity and naming
"""

import json
from pathlib import Path

import pytest

from docshift.exceptions import MalformedConfigError
from docshift.indexes import (
    ArrayConfig,
    FieldOrder,
    IndexDefinition,
    IndexField,
    QueryScope,
    index_name,
    load_index_definitions,
    parse_index_config,
    parse_index_definitions,
)

CONFIG = {
    "indexes": [
        {
            "collectionGroup": "trades",
            "queryScope": "COLLECTION",
            "fields": [
                {"fieldPath": "participants.creator", "order": "ASCENDING"},
                {"fieldPath": "createdAt", "order": "DESCENDING"},
            ],
        },
        {
            "collectionGroup": "conversations",
            "queryScope": "COLLECTION",
            "fields": [
                {"fieldPath": "participantIds", "arrayConfig": "CONTAINS"},
                {"fieldPath": "updatedAt", "order": "DESCENDING"},
            ],
        },
    ],
    "fieldOverrides": [
        {
            "collectionGroup": "messages",
            "fieldPath": "readBy",
            "indexes": [
                {"queryScope": "COLLECTION", "arrayConfig": "CONTAINS"},
                {"queryScope": "COLLECTION_GROUP", "order": "ASCENDING"},
            ],
        }
    ],
}


class TestParseIndexConfig:
    """Tests for parse_index_config."""

    def test_parses_composite_indexes(self) -> None:
        config = parse_index_config(json.dumps(CONFIG))

        assert len(config.indexes) == 2
        first = config.indexes[0]
        assert first.collection_group == "trades"
        assert first.query_scope is QueryScope.COLLECTION
        assert first.fields == (
            IndexField("participants.creator", order=FieldOrder.ASCENDING),
            IndexField("createdAt", order=FieldOrder.DESCENDING),
        )
        assert config.indexes[1].fields[0].array_config is ArrayConfig.CONTAINS

    def test_field_overrides_expand_to_single_field_definitions(self) -> None:
        definitions = parse_index_definitions(CONFIG)

        assert len(definitions) == 4
        overrides = definitions[2:]
        assert [d.query_scope for d in overrides] == [
            QueryScope.COLLECTION,
            QueryScope.COLLECTION_GROUP,
        ]
        assert all(d.field_paths == ("readBy",) for d in overrides)

    def test_accepts_bytes(self) -> None:
        config = parse_index_config(json.dumps({"indexes": []}).encode())
        assert config.indexes == ()
        assert config.field_overrides == ()

    def test_bundled_index_file_parses(self) -> None:
        path = Path(__file__).resolve().parents[2] / "indexes.json"
        definitions = load_index_definitions(path)
        assert {d.collection_group for d in definitions} == {
            "trades",
            "conversations",
            "messages",
        }


class TestMalformedConfig:
    """Every malformed input raises MalformedConfigError naming the problem."""

    def test_invalid_json(self) -> None:
        with pytest.raises(MalformedConfigError) as exc_info:
            parse_index_config("{not json", source_name="indexes.json")

        assert exc_info.value.source == "indexes.json"
        assert exc_info.value.problems[0].startswith("invalid JSON")

    def test_top_level_must_be_object(self) -> None:
        with pytest.raises(MalformedConfigError, match="top level must be a JSON object"):
            parse_index_config("[]")

    def test_missing_indexes_key(self) -> None:
        with pytest.raises(MalformedConfigError) as exc_info:
            parse_index_config({"fieldOverrides": []})
        assert any(p.startswith("indexes:") for p in exc_info.value.problems)

    def test_unknown_key_is_rejected(self) -> None:
        data = {
            "indexes": [
                {
                    "collectionGroup": "trades",
                    "queryScope": "COLLECTION",
                    "fields": [{"fieldPath": "status", "order": "ASCENDING"}],
                    "density": "SPARSE",
                }
            ]
        }
        with pytest.raises(MalformedConfigError, match="density"):
            parse_index_config(data)

    def test_unknown_order_token(self) -> None:
        data = {
            "indexes": [
                {
                    "collectionGroup": "trades",
                    "queryScope": "COLLECTION",
                    "fields": [{"fieldPath": "status", "order": "UPWARDS"}],
                }
            ]
        }
        with pytest.raises(MalformedConfigError):
            parse_index_config(data)

    @pytest.mark.parametrize(
        "field",
        [
            {"fieldPath": "tags"},
            {"fieldPath": "tags", "order": "ASCENDING", "arrayConfig": "CONTAINS"},
        ],
    )
    def test_field_needs_exactly_one_mode(self, field: dict) -> None:
        data = {
            "indexes": [
                {"collectionGroup": "trades", "queryScope": "COLLECTION", "fields": [field]}
            ]
        }
        with pytest.raises(MalformedConfigError, match="exactly one of"):
            parse_index_config(data)

    def test_empty_field_list(self) -> None:
        data = {
            "indexes": [{"collectionGroup": "trades", "queryScope": "COLLECTION", "fields": []}]
        }
        with pytest.raises(MalformedConfigError):
            parse_index_config(data)

    def test_invalid_field_path(self) -> None:
        data = {
            "indexes": [
                {
                    "collectionGroup": "trades",
                    "queryScope": "COLLECTION",
                    "fields": [{"fieldPath": "a'); DROP", "order": "ASCENDING"}],
                }
            ]
        }
        with pytest.raises(MalformedConfigError):
            parse_index_config(data)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(MalformedConfigError, match="cannot read file"):
            load_index_definitions(tmp_path / "missing.json")


class TestIndexDefinition:
    """Tests for IndexDefinition identity."""

    def test_field_order_is_significant(self) -> None:
        a = IndexDefinition(
            "trades",
            QueryScope.COLLECTION,
            (
                IndexField("status", order=FieldOrder.ASCENDING),
                IndexField("createdAt", order=FieldOrder.DESCENDING),
            ),
        )
        b = IndexDefinition("trades", QueryScope.COLLECTION, tuple(reversed(a.fields)))

        assert a.key != b.key
        assert index_name(a) != index_name(b)
        assert index_name(a).startswith("ix_trades_")

    def test_describe(self) -> None:
        definition = IndexDefinition(
            "conversations",
            QueryScope.COLLECTION,
            (IndexField("participantIds", array_config=ArrayConfig.CONTAINS),),
        )
        assert definition.describe() == "conversations (COLLECTION): participantIds CONTAINS"
        assert definition.to_dict()["fields"] == [
            {"fieldPath": "participantIds", "arrayConfig": "CONTAINS"}
        ]

    def test_requires_fields(self) -> None:
        with pytest.raises(ValueError, match="at least one field"):
            IndexDefinition("trades", QueryScope.COLLECTION, ())

    def test_field_requires_one_mode(self) -> None:
        with pytest.raises(ValueError):
            IndexField("tags")
