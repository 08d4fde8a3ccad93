"""
Comparison of expected index definitions against deployed indexes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from docshift.indexes.admin import DeployedIndex, IndexState
from docshift.indexes.definitions import IndexDefinition

logger = logging.getLogger(__name__)


class IndexStatus(Enum):
    """
    Status of one expected definition.

    Expected definitions move MISSING -> BUILDING -> PRESENT.
    """

    MISSING = "missing"
    BUILDING = "building"
    PRESENT = "present"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {IndexStatus.MISSING: 0, IndexStatus.BUILDING: 1, IndexStatus.PRESENT: 2}


@dataclass(frozen=True)
class IndexComparisonResult:
    """
    Result of comparing expected definitions E with deployed indexes D.

    Every element of E appears in exactly one of present, missing or
    building. Every element of D that matches no element of E appears in
    unexpected.
    """

    present: tuple[IndexDefinition, ...] = ()
    missing: tuple[IndexDefinition, ...] = ()
    building: tuple[IndexDefinition, ...] = ()
    unexpected: tuple[DeployedIndex, ...] = ()

    @property
    def all_present(self) -> bool:
        """True when every expected definition is deployed and ready."""
        return not self.missing and not self.building

    @property
    def expected_count(self) -> int:
        return len(self.present) + len(self.missing) + len(self.building)

    def status_of(self, definition: IndexDefinition) -> IndexStatus | None:
        key = definition.key
        for status, bucket in (
            (IndexStatus.PRESENT, self.present),
            (IndexStatus.BUILDING, self.building),
            (IndexStatus.MISSING, self.missing),
        ):
            if any(d.key == key for d in bucket):
                return status
        return None

    def statuses(self) -> dict[tuple[Any, ...], IndexStatus]:
        result: dict[tuple[Any, ...], IndexStatus] = {}
        for d in self.missing:
            result[d.key] = IndexStatus.MISSING
        for d in self.building:
            result[d.key] = IndexStatus.BUILDING
        for d in self.present:
            result[d.key] = IndexStatus.PRESENT
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "present": [d.describe() for d in self.present],
            "missing": [d.describe() for d in self.missing],
            "building": [d.describe() for d in self.building],
            "unexpected": [d.definition.describe() for d in self.unexpected],
            "all_present": self.all_present,
        }


def _dedupe(definitions: Iterable[IndexDefinition]) -> list[IndexDefinition]:
    seen: set[tuple[Any, ...]] = set()
    result: list[IndexDefinition] = []
    for definition in definitions:
        if definition.key in seen:
            logger.warning("Duplicate expected index ignored: %s", definition.describe())
            continue
        seen.add(definition.key)
        result.append(definition)
    return result


def compare_indexes(
    expected: Sequence[IndexDefinition],
    deployed: Sequence[DeployedIndex],
) -> IndexComparisonResult:
    """
    Compare expected definitions against deployed indexes.

    Matching is by collection group, query scope and the ordered field list.
    A deployed index matches at most one expected definition. When several
    deployed indexes share a definition, a READY one is preferred.

    Args:
        expected: Definitions from the index configuration file
        deployed: Indexes reported by an index admin

    Returns:
        IndexComparisonResult with present/missing/building/unexpected buckets

    Example:
        >>> result = compare_indexes([trades_by_status], [])
        >>> result.missing == (trades_by_status,)
        True
    """
    remaining = sorted(deployed, key=lambda d: d.state is not IndexState.READY)
    present: list[IndexDefinition] = []
    missing: list[IndexDefinition] = []
    building: list[IndexDefinition] = []

    for definition in _dedupe(expected):
        match = next((d for d in remaining if d.definition.key == definition.key), None)
        if match is None:
            missing.append(definition)
            continue
        remaining.remove(match)
        if match.state is IndexState.READY:
            present.append(definition)
        else:
            building.append(definition)

    return IndexComparisonResult(
        present=tuple(present),
        missing=tuple(missing),
        building=tuple(building),
        unexpected=tuple(remaining),
    )


__all__ = ["IndexComparisonResult", "IndexStatus", "compare_indexes"]
