"""
Compatibility layer for chat conversations.

Legacy conversations store ``participants`` as a list of profile objects
(``id`` or ``userId``, ``name`` or ``displayName``, ``avatar`` or
``photoURL``). The target shape adds a flat ``participantIds`` array so
membership can be queried with array-contains.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from docshift.compat.base import CompatibilityLayer, QueryShape
from docshift.indexes.definitions import (
    ArrayConfig,
    FieldOrder,
    IndexDefinition,
    IndexField,
    QueryScope,
)
from docshift.stores.interface import FilterOperator

CONVERSATIONS_BY_PARTICIPANT_INDEX = IndexDefinition(
    collection_group="conversations",
    query_scope=QueryScope.COLLECTION,
    fields=(
        IndexField("participantIds", array_config=ArrayConfig.CONTAINS),
        IndexField("updatedAt", order=FieldOrder.DESCENDING),
    ),
)


def normalize_participant(participant: Any) -> dict[str, Any] | None:
    """
    Profile object for one legacy participant entry, or None without an id.

    Unknown keys (``status``, ``role``...) are preserved.
    """
    if isinstance(participant, str):
        return {"id": participant, "name": "", "avatar": ""} if participant else None
    if not isinstance(participant, Mapping):
        return None
    participant_id = participant.get("id") or participant.get("userId")
    if not isinstance(participant_id, str) or not participant_id:
        return None
    entry = dict(participant)
    entry["id"] = participant_id
    entry["name"] = _first_not_none(participant, "name", "displayName")
    entry["avatar"] = _first_not_none(participant, "avatar", "photoURL")
    return entry


def _first_not_none(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return ""


class ConversationCompatibilityLayer(CompatibilityLayer):
    """Keeps ``participants`` profiles and ``participantIds`` in step."""

    entity_type = "conversations"
    collection = "conversations"

    legacy_fields = ("participants",)
    target_fields = ("participantIds",)

    required_legacy = ("participants",)
    required_target = ("participantIds",)

    query_shapes = (
        QueryShape(
            name="by_participant",
            target_field="participantIds",
            legacy_field=None,
            operator=FilterOperator.ARRAY_CONTAINS,
            target_index=CONVERSATIONS_BY_PARTICIPANT_INDEX,
        ),
    )

    sample_document = {
        "title": "Logo trade",
        "participants": [
            {"id": "user-a", "name": "Ada", "avatar": "a.png"},
            {"userId": "user-b", "displayName": "Bo", "photoURL": "b.png", "status": "online"},
        ],
        "updatedAt": "2024-01-01T00:00:00+00:00",
    }

    def read_legacy(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        entries = raw.get("participants")
        if not isinstance(entries, list):
            return {"participantIds": None, "participants": None}
        participants: list[dict[str, Any]] = []
        seen: set[str] = set()
        for entry in entries:
            profile = normalize_participant(entry)
            if profile is None or profile["id"] in seen:
                continue
            seen.add(profile["id"])
            participants.append(profile)
        return {
            "participantIds": [p["id"] for p in participants],
            "participants": participants,
        }

    def read_target(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        ids = raw.get("participantIds")
        if not isinstance(ids, list):
            return {"participantIds": None}
        unique: list[str] = []
        for participant_id in ids:
            if isinstance(participant_id, str) and participant_id and participant_id not in unique:
                unique.append(participant_id)
        return {"participantIds": unique}

    def merge(self, legacy: Mapping[str, Any], target: Mapping[str, Any]) -> dict[str, Any]:
        """
        Union participants from both shapes.

        Target ids keep their order; legacy-only ids follow. Ids without a
        profile object get an empty profile.
        """
        ids = list(target.get("participantIds") or [])
        for participant_id in legacy.get("participantIds") or []:
            if participant_id not in ids:
                ids.append(participant_id)
        profiles = {p["id"]: p for p in legacy.get("participants") or []}
        participants = [
            profiles.get(participant_id) or {"id": participant_id, "name": "", "avatar": ""}
            for participant_id in ids
        ]
        return {"participantIds": ids, "participants": participants}

    def write_legacy(self, values: Mapping[str, Any]) -> dict[str, Any]:
        return {"participants": [dict(p) for p in values.get("participants") or []]}

    def write_target(self, values: Mapping[str, Any]) -> dict[str, Any]:
        return {"participantIds": list(values.get("participantIds") or [])}

    def validate_values(self, values: Mapping[str, Any]) -> list[str]:
        if not values.get("participantIds"):
            return ["Conversation must have at least one participant"]
        return []


__all__ = [
    "CONVERSATIONS_BY_PARTICIPANT_INDEX",
    "ConversationCompatibilityLayer",
    "normalize_participant",
]
