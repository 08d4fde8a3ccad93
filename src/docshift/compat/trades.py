"""
Compatibility layer for trade documents.

Legacy shape::

    {"offeredSkills": [...], "requestedSkills": [...],
     "creatorId": "u1", "participantId": "u2"}

Target shape::

    {"skillsOffered": [...], "skillsWanted": [...],
     "participants": {"creator": "u1", "participant": "u2"}}

Skills may be stored as plain strings or as objects; both readings are
normalized to ``{"id", "name", "level", ...}`` objects.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from docshift._paths import get_path, set_path
from docshift.compat.base import CompatibilityLayer, QueryShape
from docshift.indexes.definitions import FieldOrder, IndexDefinition, IndexField, QueryScope

logger = logging.getLogger(__name__)

DEFAULT_SKILL_LEVEL = "intermediate"

TRADES_BY_CREATOR_INDEX = IndexDefinition(
    collection_group="trades",
    query_scope=QueryScope.COLLECTION,
    fields=(
        IndexField("participants.creator", order=FieldOrder.ASCENDING),
        IndexField("createdAt", order=FieldOrder.DESCENDING),
    ),
)

TRADES_BY_PARTICIPANT_INDEX = IndexDefinition(
    collection_group="trades",
    query_scope=QueryScope.COLLECTION,
    fields=(
        IndexField("participants.participant", order=FieldOrder.ASCENDING),
        IndexField("createdAt", order=FieldOrder.DESCENDING),
    ),
)


def normalize_skills(skills: Any) -> list[dict[str, Any]]:
    """
    Normalize a skill list stored in either format.

    Strings become ``{"id": s, "name": s, "level": "intermediate"}``. Objects
    keep their extra keys and get an id, name and level filled in. Anything
    that is not a list yields an empty list.

    Example:
        >>> normalize_skills(["python"])
        [{'id': 'python', 'name': 'python', 'level': 'intermediate'}]
    """
    if not isinstance(skills, list):
        return []

    normalized: list[dict[str, Any]] = []
    for index, skill in enumerate(skills):
        if isinstance(skill, str):
            normalized.append({"id": skill, "name": skill, "level": DEFAULT_SKILL_LEVEL})
        elif isinstance(skill, Mapping):
            entry = dict(skill)
            entry["id"] = skill.get("id") or skill.get("name") or f"skill_{index}"
            entry["name"] = skill.get("name") or skill.get("id") or f"Skill {index + 1}"
            entry["level"] = skill.get("level") or DEFAULT_SKILL_LEVEL
            normalized.append(entry)
        else:
            logger.warning("Unexpected skill entry at index %d: %r", index, skill)
            normalized.append(
                {"id": f"unknown_skill_{index}", "name": str(skill), "level": DEFAULT_SKILL_LEVEL}
            )
    return normalized


def _skills_or_none(raw: Mapping[str, Any], key: str) -> list[dict[str, Any]] | None:
    return normalize_skills(raw[key]) if key in raw else None


class TradeCompatibilityLayer(CompatibilityLayer):
    """Normalizes trades stored with legacy or target skill and participant fields."""

    entity_type = "trades"
    collection = "trades"

    legacy_fields = ("offeredSkills", "requestedSkills", "creatorId", "participantId")
    target_fields = ("skillsOffered", "skillsWanted", "participants")

    required_legacy = ("offeredSkills", "requestedSkills", "creatorId")
    required_target = ("skillsOffered", "skillsWanted", "participants.creator")

    query_shapes = (
        QueryShape(
            name="by_creator",
            target_field="participants.creator",
            legacy_field="creatorId",
            target_index=TRADES_BY_CREATOR_INDEX,
        ),
        QueryShape(
            name="by_participant",
            target_field="participants.participant",
            legacy_field="participantId",
            target_index=TRADES_BY_PARTICIPANT_INDEX,
        ),
    )

    sample_document = {
        "title": "Logo design for Python tutoring",
        "status": "open",
        "offeredSkills": ["python", {"name": "Testing", "level": "expert"}],
        "requestedSkills": [{"id": "design", "name": "Logo Design"}],
        "creatorId": "user-a",
        "participantId": "user-b",
    }

    def merge(self, legacy: Mapping[str, Any], target: Mapping[str, Any]) -> dict[str, Any]:
        merged = super().merge(legacy, target)
        for key in ("skillsOffered", "skillsWanted"):
            if merged.get(key) is None:
                merged[key] = []
        return merged

    def read_legacy(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "skillsOffered": _skills_or_none(raw, "offeredSkills"),
            "skillsWanted": _skills_or_none(raw, "requestedSkills"),
            "participants.creator": raw.get("creatorId"),
            "participants.participant": raw.get("participantId"),
        }

    def read_target(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "skillsOffered": _skills_or_none(raw, "skillsOffered"),
            "skillsWanted": _skills_or_none(raw, "skillsWanted"),
            "participants.creator": get_path(raw, "participants.creator"),
            "participants.participant": get_path(raw, "participants.participant"),
        }

    def write_legacy(self, values: Mapping[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "offeredSkills": list(values.get("skillsOffered") or []),
            "requestedSkills": list(values.get("skillsWanted") or []),
        }
        if values.get("participants.creator") is not None:
            payload["creatorId"] = values["participants.creator"]
        if values.get("participants.participant") is not None:
            payload["participantId"] = values["participants.participant"]
        return payload

    def write_target(self, values: Mapping[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "skillsOffered": list(values.get("skillsOffered") or []),
            "skillsWanted": list(values.get("skillsWanted") or []),
            "participants": {},
        }
        for path in ("participants.creator", "participants.participant"):
            if values.get(path) is not None:
                set_path(payload, path, values[path])
        return payload

    def validate_values(self, values: Mapping[str, Any]) -> list[str]:
        problems = []
        creator = values.get("participants.creator")
        if not isinstance(creator, str) or not creator:
            problems.append("Trade creator must be a non-empty string")
        for key in ("skillsOffered", "skillsWanted"):
            if not isinstance(values.get(key), list):
                problems.append(f"Trade {key} must be a list")
        return problems


__all__ = [
    "DEFAULT_SKILL_LEVEL",
    "TRADES_BY_CREATOR_INDEX",
    "TRADES_BY_PARTICIPANT_INDEX",
    "TradeCompatibilityLayer",
    "normalize_skills",
]
