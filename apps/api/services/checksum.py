"""
Entity payload canonicalization and checksums.

Two concerns live here:
- calculate_checksum(): deterministic, key-order-independent SHA-256 of a payload.
  Used for change detection and duplicate-content detection.
- canonicalize_for_storage(): the single "make this storable" transform applied
  right before a payload is persisted. The store cannot represent "missing"
  distinctly from null, so missing sentinels become explicit None.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from typing import Any, Dict

from pydantic_core import PydanticUndefined


# Values that mean "field not provided" rather than "explicitly null".
MISSING_SENTINELS = (dataclasses.MISSING, PydanticUndefined)


def _is_missing(value: Any) -> bool:
    return any(value is sentinel for sentinel in MISSING_SENTINELS)


def canonicalize(payload: Any) -> Any:
    """Sort mapping keys at every nesting level; sequences keep element order."""
    if isinstance(payload, dict):
        return {str(k): canonicalize(payload[k]) for k in sorted(payload, key=str)}
    if isinstance(payload, (list, tuple)):
        return [canonicalize(item) for item in payload]
    return payload


def canonical_json(payload: Any) -> str:
    """Serialize the canonical form. datetime/UUID and other scalars fall back to str()."""
    return json.dumps(
        canonicalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def calculate_checksum(payload: Any) -> str:
    """Lowercase hex SHA-256 of the canonical JSON form of payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def canonicalize_for_storage(value: Any) -> Any:
    """
    Recursively normalize a payload for persistence.

    - missing sentinels -> None (at any depth, including inside lists)
    - tuples -> lists
    - a container that refers back to one of its ancestors -> {}

    Only the current path is tracked, so the same object referenced from two
    sibling fields is copied twice rather than blanked.
    """
    return _sanitize(value, set())


def _sanitize(value: Any, ancestors: set) -> Any:
    if _is_missing(value):
        return None
    if not isinstance(value, (dict, list, tuple)):
        return value

    marker = id(value)
    if marker in ancestors:
        return {}

    ancestors.add(marker)
    try:
        if isinstance(value, dict):
            sanitized: Dict[str, Any] = {}
            for key, item in value.items():
                sanitized[key] = _sanitize(item, ancestors)
            return sanitized
        return [_sanitize(item, ancestors) for item in value]
    finally:
        ancestors.discard(marker)
