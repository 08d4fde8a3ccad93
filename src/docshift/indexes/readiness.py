"""
Tracks which index definitions are known to be ready in the target database.

Compatibility layers consult the tracker before switching a query shape from
legacy fields to target fields. The deployment pipeline and the safety
checks feed it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from docshift.indexes.comparator import IndexComparisonResult
from docshift.indexes.definitions import IndexDefinition

logger = logging.getLogger(__name__)


class IndexReadinessTracker:
    """
    Set of index definitions confirmed READY.

    Example:
        >>> tracker = IndexReadinessTracker()
        >>> tracker.is_ready(definition)
        False
        >>> tracker.mark_ready([definition])
        >>> tracker.is_ready(definition)
        True
    """

    def __init__(self, ready: Iterable[IndexDefinition] = ()) -> None:
        self._ready: set[tuple[Any, ...]] = {d.key for d in ready}

    def mark_ready(self, definitions: Iterable[IndexDefinition]) -> None:
        for definition in definitions:
            self._ready.add(definition.key)

    def update_from(self, comparison: IndexComparisonResult) -> None:
        """Replace the ready set with the present bucket of a comparison."""
        self._ready = {d.key for d in comparison.present}
        logger.debug("Index readiness updated: %d ready", len(self._ready))

    def is_ready(self, definition: IndexDefinition | None) -> bool:
        """A query shape without an index requirement is always ready."""
        if definition is None:
            return True
        return definition.key in self._ready

    def reset(self) -> None:
        self._ready.clear()

    def __len__(self) -> int:
        return len(self._ready)


__all__ = ["IndexReadinessTracker"]
