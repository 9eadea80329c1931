"""Core utility functions shared across modules."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, Optional

QUOTE_CHARS = "\"'"


def deep_merge(target: Dict[str, Any], updates: Dict[str, Any]) -> bool:
    """Recursively merge updates into target dict, modifying target in-place.

    Nested dicts are merged key by key; every other value overwrites the
    existing one with a deep copy. Keys present only in ``target`` are kept.

    Returns:
        True if any value in ``target`` changed.

    Examples:
        >>> target = {"a": 1, "b": {"x": 10, "y": 20}}
        >>> deep_merge(target, {"b": {"x": 100, "z": 30}, "c": 3})
        True
        >>> target
        {'a': 1, 'b': {'x': 100, 'y': 20, 'z': 30}, 'c': 3}
    """
    changed = False
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            changed = deep_merge(existing, value) or changed
        elif key not in target or existing != value:
            target[key] = copy.deepcopy(value)
            changed = True
    return changed


def strip_enclosing_quotes(text: str) -> str:
    """Remove one layer of matching quotes around ``text``."""

    if len(text) >= 2 and text[0] == text[-1] and text[0] in QUOTE_CHARS:
        return text[1:-1]
    return text


def strip_stray_quotes(text: str) -> str:
    return text.strip().strip(QUOTE_CHARS)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning ``None`` on failure."""

    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
