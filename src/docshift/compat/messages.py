"""
Compatibility layer for chat messages.

Messages live in per-conversation subcollections and are queried as the
``messages`` collection group. Legacy messages name their fields
``chatId``, ``userId`` (or ``authorId``) and ``message`` (or ``text``);
the target shape uses ``conversationId``, ``senderId`` and ``content``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from docshift.compat.base import CompatibilityLayer, QueryShape
from docshift.indexes.definitions import FieldOrder, IndexDefinition, IndexField, QueryScope

MESSAGES_BY_CONVERSATION_INDEX = IndexDefinition(
    collection_group="messages",
    query_scope=QueryScope.COLLECTION_GROUP,
    fields=(
        IndexField("conversationId", order=FieldOrder.ASCENDING),
        IndexField("createdAt", order=FieldOrder.ASCENDING),
    ),
)

MESSAGES_BY_SENDER_INDEX = IndexDefinition(
    collection_group="messages",
    query_scope=QueryScope.COLLECTION_GROUP,
    fields=(
        IndexField("senderId", order=FieldOrder.ASCENDING),
        IndexField("createdAt", order=FieldOrder.DESCENDING),
    ),
)


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key):
            return raw[key]
    return None


class MessageCompatibilityLayer(CompatibilityLayer):
    entity_type = "messages"
    collection = "messages"

    legacy_fields = ("chatId", "userId", "authorId", "message", "text")
    target_fields = ("conversationId", "senderId", "content")

    required_legacy = ("chatId", "userId")
    required_target = ("conversationId", "senderId")

    query_shapes = (
        QueryShape(
            name="by_conversation",
            target_field="conversationId",
            legacy_field="chatId",
            target_index=MESSAGES_BY_CONVERSATION_INDEX,
        ),
        QueryShape(
            name="by_sender",
            target_field="senderId",
            legacy_field="userId",
            target_index=MESSAGES_BY_SENDER_INDEX,
        ),
    )

    sample_document = {
        "chatId": "conv-1",
        "authorId": "user-a",
        "text": "Is the logo ready?",
        "type": "text",
        "readBy": ["user-a"],
        "createdAt": "2024-01-01T00:00:00+00:00",
    }

    def read_legacy(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "conversationId": _first(raw, "chatId"),
            "senderId": _first(raw, "userId", "authorId"),
            "content": _first(raw, "message", "text"),
        }

    def read_target(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "conversationId": _first(raw, "conversationId"),
            "senderId": _first(raw, "senderId"),
            "content": _first(raw, "content"),
        }

    def merge(self, legacy: Mapping[str, Any], target: Mapping[str, Any]) -> dict[str, Any]:
        merged = super().merge(legacy, target)
        if merged.get("content") is None:
            merged["content"] = ""
        return merged

    def write_legacy(self, values: Mapping[str, Any]) -> dict[str, Any]:
        payload = {"message": values.get("content") or ""}
        if values.get("conversationId"):
            payload["chatId"] = values["conversationId"]
        if values.get("senderId"):
            payload["userId"] = values["senderId"]
        return payload

    def write_target(self, values: Mapping[str, Any]) -> dict[str, Any]:
        payload = {"content": values.get("content") or ""}
        if values.get("conversationId"):
            payload["conversationId"] = values["conversationId"]
        if values.get("senderId"):
            payload["senderId"] = values["senderId"]
        return payload

    def validate_values(self, values: Mapping[str, Any]) -> list[str]:
        problems = []
        if not values.get("conversationId"):
            problems.append("Message must belong to a conversation")
        if not values.get("senderId"):
            problems.append("Message must have a sender")
        if not isinstance(values.get("content"), str):
            problems.append("Message content must be a string")
        return problems


__all__ = [
    "MESSAGES_BY_CONVERSATION_INDEX",
    "MESSAGES_BY_SENDER_INDEX",
    "MessageCompatibilityLayer",
]
