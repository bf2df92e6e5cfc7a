"""
Dot-path access into nested dict/list values.

Used by the prompt compiler to bind placeholders to flow input and by the
validator to render error locations.
"""
from __future__ import annotations

from typing import Any, Iterable


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_nested_value(data: Any, path: str) -> Any:
    """
    Get a value from nested dicts/lists using dot notation, e.g. 'endLocation.lat'
    or 'stops.0.lat'. Returns MISSING (not None) when any segment is absent,
    so an explicit null can be told apart from a missing key.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def join_path(parts: Iterable[Any]) -> str:
    """('stops', 0, 'lat') → 'stops.0.lat'; an empty location is the root."""
    joined = ".".join(str(p) for p in parts)
    return joined or "<root>"
