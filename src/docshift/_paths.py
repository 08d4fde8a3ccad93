"""
Dotted field path helpers shared by stores and compatibility layers.

Field paths use the document database convention: ``participants.creator``
addresses the ``creator`` key of the ``participants`` map.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

FIELD_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_MISSING = object()


def validate_field_path(path: str) -> str:
    """
    Check that a field path is a dotted identifier.

    Raises:
        ValueError: If the path contains anything other than identifiers and dots
    """
    if not FIELD_PATH_PATTERN.match(path):
        raise ValueError(f"Invalid field path: {path!r}")
    return path


def get_path(data: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """
    Read a dotted path from nested mappings.

    Example:
        >>> get_path({"participants": {"creator": "u1"}}, "participants.creator")
        'u1'
    """
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return default
    return current


def has_path(data: Mapping[str, Any], path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING


def json_path(path: str) -> str:
    """Translate a dotted field path to an SQLite JSON path (``$.a.b``)."""
    return "$." + validate_field_path(path)


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate maps as needed."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value
