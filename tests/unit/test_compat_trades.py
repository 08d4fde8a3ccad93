"""
Unit tests for the trade compatibility layer.

Tests cover:
- Skill normalization from strings and objects
- Shape detection and normalization of legacy, dual and target documents
- Dual-shape write payloads and the normalize/denormalize round trip
- Required-field validation
- Query planning across migration modes and index readiness
- Application reads and writes, including the legacy-only strategy
"""

from typing import Any

import pytest

from docshift.compat import (
    FIELD_MIGRATED_AT,
    FIELD_MIGRATION_BATCH,
    FIELD_SCHEMA_VERSION,
    SCHEMA_VERSION_LEGACY,
    SCHEMA_VERSION_TARGET,
    DocumentShape,
    NormalizedEntity,
)
from docshift.compat.trades import (
    TRADES_BY_CREATOR_INDEX,
    TRADES_BY_PARTICIPANT_INDEX,
    TradeCompatibilityLayer,
    normalize_skills,
)
from docshift.exceptions import DocumentValidationError, UnrecognizedShapeError
from docshift.models import MigrationMode
from docshift.stores.interface import Document


@pytest.fixture
def trades(layers: dict[str, Any]) -> TradeCompatibilityLayer:
    return layers["trades"]


class TestNormalizeSkills:
    """Tests for normalize_skills."""

    def test_string_skill_gets_default_level(self) -> None:
        """Plain strings become id/name/level objects."""
        assert normalize_skills(["python"]) == [
            {"id": "python", "name": "python", "level": "intermediate"}
        ]

    def test_object_skill_keeps_extra_keys(self) -> None:
        """Object skills keep unknown keys and get missing fields filled in."""
        result = normalize_skills([{"name": "Testing", "level": "expert", "years": 4}])
        assert result == [{"id": "Testing", "name": "Testing", "level": "expert", "years": 4}]

    def test_object_without_id_or_name_gets_positional_id(self) -> None:
        result = normalize_skills(["python", {"level": "beginner"}])
        assert result[1] == {"id": "skill_1", "name": "Skill 2", "level": "beginner"}

    def test_unexpected_entry_is_stringified(self) -> None:
        assert normalize_skills([42]) == [
            {"id": "unknown_skill_0", "name": "42", "level": "intermediate"}
        ]

    def test_non_list_yields_empty_list(self) -> None:
        assert normalize_skills(None) == []
        assert normalize_skills("python") == []

    def test_is_idempotent(self) -> None:
        """Normalizing an already-normalized list changes nothing."""
        once = normalize_skills(["python", {"id": "design", "name": "Logo Design"}])
        assert normalize_skills(once) == once


class TestNormalize:
    """Tests for reading documents of every shape."""

    def test_legacy_document(self, trades: TradeCompatibilityLayer, legacy_trade: Any) -> None:
        """Legacy fields are read into canonical target paths."""
        entity = trades.normalize(legacy_trade(), "trade-1")

        assert entity.shape is DocumentShape.LEGACY
        assert entity.id == "trade-1"
        assert entity.schema_version == SCHEMA_VERSION_LEGACY
        assert entity.values["participants.creator"] == "user-a"
        assert entity.values["participants.participant"] == "user-b"
        assert entity.values["skillsOffered"] == [
            {"id": "python", "name": "python", "level": "intermediate"}
        ]
        assert entity.extra == {
            "title": "Logo for tutoring",
            "status": "open",
            "createdAt": "2024-01-01T00:00:00+00:00",
        }

    def test_target_document(self, trades: TradeCompatibilityLayer) -> None:
        raw = {
            "skillsOffered": ["go"],
            "skillsWanted": [],
            "participants": {"creator": "user-c"},
        }
        entity = trades.normalize(raw, "trade-2")

        assert entity.shape is DocumentShape.TARGET
        assert entity.values["participants.creator"] == "user-c"
        assert entity.values["participants.participant"] is None
        assert entity.values["skillsWanted"] == []

    def test_dual_document_prefers_target_values(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        """When both shapes disagree the target field wins."""
        raw = legacy_trade(creator="old-owner")
        raw["participants"] = {"creator": "new-owner"}
        entity = trades.normalize(raw)

        assert entity.shape is DocumentShape.DUAL
        assert entity.values["participants.creator"] == "new-owner"
        assert entity.values["participants.participant"] == "user-b"

    def test_missing_skill_lists_default_to_empty(self, trades: TradeCompatibilityLayer) -> None:
        entity = trades.normalize({"creatorId": "user-a"})
        assert entity.values["skillsOffered"] == []
        assert entity.values["skillsWanted"] == []

    def test_unrecognized_shape_raises(self, trades: TradeCompatibilityLayer) -> None:
        with pytest.raises(UnrecognizedShapeError) as exc_info:
            trades.normalize({"title": "no trade fields"}, "trade-x")
        assert exc_info.value.entity_type == "trades"

    def test_entity_data_carries_both_shapes(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        entity = trades.normalize(legacy_trade())
        assert entity.data["creatorId"] == "user-a"
        assert entity.data["participants"] == {"creator": "user-a", "participant": "user-b"}
        assert entity.data[FIELD_SCHEMA_VERSION] == SCHEMA_VERSION_LEGACY


class TestDenormalize:
    """Tests for dual-shape write payloads."""

    def test_payload_populates_both_field_sets(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        entity = trades.normalize(legacy_trade(), "trade-1")
        payload = trades.denormalize(
            entity, migrated_at="2024-02-01T00:00:00+00:00", batch_id="batch-1"
        )

        assert payload["offeredSkills"] == payload["skillsOffered"]
        assert payload["requestedSkills"] == payload["skillsWanted"]
        assert payload["creatorId"] == "user-a"
        assert payload["participants"] == {"creator": "user-a", "participant": "user-b"}
        assert payload[FIELD_SCHEMA_VERSION] == SCHEMA_VERSION_TARGET
        assert payload[FIELD_MIGRATED_AT] == "2024-02-01T00:00:00+00:00"
        assert payload[FIELD_MIGRATION_BATCH] == "batch-1"
        assert payload["title"] == "Logo for tutoring"

    def test_round_trip(self, trades: TradeCompatibilityLayer, legacy_trade: Any) -> None:
        """normalize(denormalize(e)) equals e."""
        entity = trades.normalize(legacy_trade(), "trade-1")
        assert trades.normalize(trades.denormalize(entity), "trade-1") == entity

    def test_round_trip_without_participant(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        entity = trades.normalize(legacy_trade(participant=None), "trade-1")
        payload = trades.denormalize(entity)

        assert "participantId" not in payload
        assert payload["participants"] == {"creator": "user-a"}
        assert trades.normalize(payload, "trade-1") == entity

    def test_migrated_at_defaults_to_entity_timestamp(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        raw = legacy_trade(**{FIELD_MIGRATED_AT: "2024-03-01T00:00:00+00:00"})
        entity = trades.normalize(raw)
        assert trades.denormalize(entity)[FIELD_MIGRATED_AT] == "2024-03-01T00:00:00+00:00"

    def test_legacy_payload_has_no_target_fields(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        entity = trades.normalize(legacy_trade())
        payload = trades.denormalize_legacy(entity)

        assert "skillsOffered" not in payload
        assert "participants" not in payload
        assert payload[FIELD_SCHEMA_VERSION] == SCHEMA_VERSION_LEGACY
        assert payload["creatorId"] == "user-a"

    def test_is_migrated(self, trades: TradeCompatibilityLayer, legacy_trade: Any) -> None:
        """Only target-tagged documents with both field sets count as migrated."""
        entity = trades.normalize(legacy_trade())
        payload = trades.denormalize(entity)

        assert trades.is_migrated(payload)
        assert not trades.is_migrated(legacy_trade())
        target_only = {
            FIELD_SCHEMA_VERSION: SCHEMA_VERSION_TARGET,
            "skillsOffered": [],
            "skillsWanted": [],
            "participants": {"creator": "user-a"},
        }
        assert not trades.is_migrated(target_only)
        assert not trades.is_migrated({FIELD_SCHEMA_VERSION: SCHEMA_VERSION_TARGET})


class TestValidate:
    """Tests for required-field validation."""

    def test_valid_payload(self, trades: TradeCompatibilityLayer, legacy_trade: Any) -> None:
        entity = trades.normalize(legacy_trade())
        assert trades.validate(trades.denormalize(entity)) == []

    def test_missing_creator(self, trades: TradeCompatibilityLayer, legacy_trade: Any) -> None:
        entity = trades.normalize(legacy_trade(creator=None))
        problems = trades.validate(trades.denormalize(entity))

        assert "Missing required legacy field 'creatorId'" in problems
        assert "Missing required target field 'participants.creator'" in problems
        assert "Trade creator must be a non-empty string" in problems

    def test_wrong_schema_version(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        payload = trades.denormalize(trades.normalize(legacy_trade()))
        payload[FIELD_SCHEMA_VERSION] = SCHEMA_VERSION_LEGACY
        problems = trades.validate(payload)
        assert any("schemaVersion must be '2.0'" in p for p in problems)

    def test_disagreeing_shapes(self, trades: TradeCompatibilityLayer, legacy_trade: Any) -> None:
        payload = trades.denormalize(trades.normalize(legacy_trade()))
        payload["creatorId"] = "someone-else"
        problems = trades.validate(payload)
        assert "Legacy and target values disagree for 'participants.creator'" in problems

    def test_legacy_only_skips_target_rules(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        assert trades.validate(legacy_trade(), legacy_only=True) == []
        assert trades.validate(legacy_trade()) != []

    def test_ensure_valid_raises_with_problems(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        payload = trades.denormalize(trades.normalize(legacy_trade(creator=None)))
        with pytest.raises(DocumentValidationError) as exc_info:
            trades.ensure_valid(payload, "trade-1")
        assert exc_info.value.document_id == "trade-1"
        assert "Trade creator must be a non-empty string" in exc_info.value.problems

    def test_self_check_passes(self, trades: TradeCompatibilityLayer) -> None:
        assert trades.self_check() == []


class TestQueryPlanning:
    """Tests for choosing legacy or target fields."""

    def test_idle_uses_legacy_field(self, trades: TradeCompatibilityLayer) -> None:
        plan = trades.plan_query("by_creator", "user-a")

        assert not plan.use_target
        assert plan.field_side == "legacy"
        assert [s.field_path for s in plan.steps] == ["creatorId"]

    @pytest.mark.asyncio
    async def test_migrating_without_ready_index_uses_legacy(
        self, trades: TradeCompatibilityLayer, registry: Any
    ) -> None:
        await registry.enable_migration_mode()
        plan = trades.plan_query("by_creator", "user-a")
        assert [s.field_path for s in plan.steps] == ["creatorId"]

    @pytest.mark.asyncio
    async def test_migrating_with_ready_index_queries_both(
        self, trades: TradeCompatibilityLayer, registry: Any, readiness: Any
    ) -> None:
        """While migrating, target results are followed by not-yet-migrated legacy ones."""
        readiness.mark_ready([TRADES_BY_CREATOR_INDEX])
        await registry.enable_migration_mode()
        plan = trades.plan_query("by_creator", "user-a")

        assert plan.use_target
        assert [s.field_path for s in plan.steps] == ["participants.creator", "creatorId"]

    @pytest.mark.asyncio
    async def test_complete_uses_target_only(
        self, trades: TradeCompatibilityLayer, registry: Any, readiness: Any
    ) -> None:
        readiness.mark_ready([TRADES_BY_PARTICIPANT_INDEX])
        await registry.enable_migration_mode()
        await registry.begin_validation()
        await registry.mark_complete()
        plan = trades.plan_query("by_participant", "user-b")

        assert plan.mode is MigrationMode.COMPLETE
        assert [s.field_path for s in plan.steps] == ["participants.participant"]

    @pytest.mark.asyncio
    async def test_rollback_reverts_to_legacy(
        self, trades: TradeCompatibilityLayer, registry: Any, readiness: Any
    ) -> None:
        readiness.mark_ready([TRADES_BY_CREATOR_INDEX])
        await registry.enable_migration_mode()
        await registry.enter_rollback("latency regression")

        assert trades.legacy_only
        assert [s.field_path for s in trades.plan_query("by_creator", "u").steps] == ["creatorId"]

    @pytest.mark.asyncio
    async def test_new_migration_re_enables_dual_writes(
        self, trades: TradeCompatibilityLayer, registry: Any
    ) -> None:
        lease = await registry.enter_rollback("abandoned")
        await registry.finish_rollback(lease)
        assert trades.legacy_only

        await registry.enable_migration_mode()
        assert not trades.legacy_only

    def test_unknown_query_name(self, trades: TradeCompatibilityLayer) -> None:
        with pytest.raises(ValueError, match="has no query 'by_status'"):
            trades.plan_query("by_status", "open")

    def test_required_indexes(self, trades: TradeCompatibilityLayer) -> None:
        assert trades.required_indexes() == [TRADES_BY_CREATOR_INDEX, TRADES_BY_PARTICIPANT_INDEX]


class TestApplicationOperations:
    """Tests for get, query and save against a store."""

    @pytest.mark.asyncio
    async def test_get_normalizes(
        self, trades: TradeCompatibilityLayer, store: Any, legacy_trade: Any
    ) -> None:
        await store.seed("trades", {"trade-1": legacy_trade()})

        entity = await trades.get("trade-1")
        assert entity is not None
        assert entity.values["participants.creator"] == "user-a"
        assert await trades.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_rejects_empty_id(self, trades: TradeCompatibilityLayer) -> None:
        with pytest.raises(ValueError):
            await trades.get("")

    @pytest.mark.asyncio
    async def test_query_during_migration_merges_shapes(
        self,
        trades: TradeCompatibilityLayer,
        store: Any,
        registry: Any,
        readiness: Any,
        legacy_trade: Any,
    ) -> None:
        """Migrated and not-yet-migrated documents are both found, once each."""
        migrated = trades.denormalize(trades.normalize(legacy_trade(creator="user-1")))
        await store.seed(
            "trades",
            {
                "trade-1": legacy_trade(creator="user-1"),
                "trade-2": migrated,
                "trade-3": legacy_trade(creator="user-2"),
            },
        )
        readiness.mark_ready([TRADES_BY_CREATOR_INDEX])
        await registry.enable_migration_mode()

        results = await trades.query("by_creator", "user-1")
        assert sorted(e.id for e in results) == ["trade-1", "trade-2"]

    @pytest.mark.asyncio
    async def test_query_respects_limit(
        self, trades: TradeCompatibilityLayer, seed_trades: Any
    ) -> None:
        await seed_trades(20)
        results = await trades.query("by_creator", "user-0", limit=2)
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_query_rejects_non_positive_limit(
        self, trades: TradeCompatibilityLayer
    ) -> None:
        with pytest.raises(ValueError):
            await trades.query("by_creator", "user-0", limit=0)

    @pytest.mark.asyncio
    async def test_save_writes_dual_shape(
        self, trades: TradeCompatibilityLayer, store: Any, legacy_trade: Any
    ) -> None:
        entity = trades.normalize(legacy_trade(), "trade-1")
        saved = await trades.save(entity)

        stored = await store.get("trades", "trade-1")
        assert stored is not None
        assert trades.is_migrated(stored.data)
        assert saved == entity

    @pytest.mark.asyncio
    async def test_save_while_rolling_back_writes_legacy_only(
        self, trades: TradeCompatibilityLayer, store: Any, registry: Any, legacy_trade: Any
    ) -> None:
        await registry.enter_rollback("incident")
        entity = trades.normalize(legacy_trade(), "trade-1")
        await trades.save(entity)

        stored = await store.get("trades", "trade-1")
        assert stored is not None
        assert "skillsOffered" not in stored.data
        assert stored.data[FIELD_SCHEMA_VERSION] == SCHEMA_VERSION_LEGACY

    @pytest.mark.asyncio
    async def test_save_rejects_invalid_entity(
        self, trades: TradeCompatibilityLayer, store: Any, legacy_trade: Any
    ) -> None:
        entity = trades.normalize(legacy_trade(creator=None), "trade-1")
        with pytest.raises(DocumentValidationError):
            await trades.save(entity)
        assert await store.get("trades", "trade-1") is None

    @pytest.mark.asyncio
    async def test_save_requires_id(self, trades: TradeCompatibilityLayer) -> None:
        entity = NormalizedEntity(entity_type="trades", id=None, values={})
        with pytest.raises(ValueError):
            await trades.save(entity)

    @pytest.mark.asyncio
    async def test_save_many_commits_one_batch(
        self, trades: TradeCompatibilityLayer, store: Any, legacy_trade: Any
    ) -> None:
        entities = [
            trades.normalize(legacy_trade(creator=f"user-{i}"), f"trade-{i}") for i in range(3)
        ]
        await trades.save_many(entities)
        assert await store.count("trades") == 3

    @pytest.mark.asyncio
    async def test_layer_without_store_cannot_read(self, registry: Any) -> None:
        layer = TradeCompatibilityLayer(registry, enable_tracing=False)
        with pytest.raises(RuntimeError):
            await layer.get("trade-1")

    def test_document_passthrough_keeps_unknown_fields(
        self, trades: TradeCompatibilityLayer, legacy_trade: Any
    ) -> None:
        raw = legacy_trade(tags=["design"], views=12)
        payload = trades.denormalize(trades.normalize(raw))
        assert payload["tags"] == ["design"]
        assert payload["views"] == 12
        assert Document("trade-1", payload).copy_data()["views"] == 12
