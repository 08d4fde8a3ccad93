"""
Unit tests for the message compatibility layer and the layer factory.
"""

from typing import Any

import pytest

from docshift.compat import (
    LAYER_TYPES,
    ConversationCompatibilityLayer,
    MessageCompatibilityLayer,
    TradeCompatibilityLayer,
    create_layers,
)


@pytest.fixture
def messages(layers: dict[str, Any]) -> MessageCompatibilityLayer:
    return layers["messages"]


class TestMessageLayer:
    """Tests for MessageCompatibilityLayer."""

    def test_legacy_aliases(self, messages: MessageCompatibilityLayer) -> None:
        """authorId and text are accepted in place of userId and message."""
        entity = messages.normalize({"chatId": "conv-1", "authorId": "user-a", "text": "hi"})

        assert entity.values == {
            "conversationId": "conv-1",
            "senderId": "user-a",
            "content": "hi",
        }

    def test_missing_content_defaults_to_empty(self, messages: MessageCompatibilityLayer) -> None:
        entity = messages.normalize({"chatId": "conv-1", "userId": "user-a"})
        assert entity.values["content"] == ""

    def test_denormalize_writes_both_shapes(self, messages: MessageCompatibilityLayer) -> None:
        entity = messages.normalize(
            {"chatId": "conv-1", "userId": "user-a", "message": "hi", "readBy": ["user-a"]},
            "msg-1",
        )
        payload = messages.denormalize(entity)

        assert payload["chatId"] == payload["conversationId"] == "conv-1"
        assert payload["userId"] == payload["senderId"] == "user-a"
        assert payload["message"] == payload["content"] == "hi"
        assert payload["readBy"] == ["user-a"]
        assert messages.normalize(payload, "msg-1") == entity

    def test_missing_conversation_fails_validation(
        self, messages: MessageCompatibilityLayer
    ) -> None:
        entity = messages.normalize({"userId": "user-a", "message": "orphan"})
        problems = messages.validate(messages.denormalize(entity))

        assert "Missing required legacy field 'chatId'" in problems
        assert "Message must belong to a conversation" in problems

    def test_idle_query_uses_chat_id(self, messages: MessageCompatibilityLayer) -> None:
        plan = messages.plan_query("by_conversation", "conv-1")
        assert [s.field_path for s in plan.steps] == ["chatId"]

    @pytest.mark.asyncio
    async def test_query_by_sender(self, messages: MessageCompatibilityLayer, store: Any) -> None:
        await store.seed(
            "messages",
            {
                "msg-1": {"chatId": "conv-1", "userId": "user-a", "message": "one"},
                "msg-2": {"chatId": "conv-1", "userId": "user-b", "message": "two"},
            },
        )
        results = await messages.query("by_sender", "user-b")
        assert [e.values["content"] for e in results] == ["two"]

    def test_self_check_passes(self, messages: MessageCompatibilityLayer) -> None:
        assert messages.self_check() == []


class TestCreateLayers:
    """Tests for create_layers."""

    def test_creates_every_layer(self, registry: Any) -> None:
        layers = create_layers(registry, enable_tracing=False)

        assert set(layers) == set(LAYER_TYPES)
        assert isinstance(layers["trades"], TradeCompatibilityLayer)
        assert isinstance(layers["conversations"], ConversationCompatibilityLayer)

    def test_selected_types_share_readiness(self, registry: Any, readiness: Any) -> None:
        layers = create_layers(
            registry, entity_types=["trades", "messages"], readiness=readiness, enable_tracing=False
        )

        assert list(layers) == ["trades", "messages"]
        assert layers["trades"].readiness is layers["messages"].readiness is readiness

    def test_unknown_type(self, registry: Any) -> None:
        with pytest.raises(ValueError, match="Unknown entity type"):
            create_layers(registry, entity_types=["invoices"], enable_tracing=False)

    def test_layers_observe_registry(self, registry: Any) -> None:
        create_layers(registry, enable_tracing=False)
        assert set(registry.status().observers) == {"trades", "conversations", "messages"}
