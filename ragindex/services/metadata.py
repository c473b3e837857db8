# =============================================================================
# Metadata Sanitizer — Store-Safe Chunk Metadata
# =============================================================================
#
# Two separate concerns:
#
# 1. sanitize_metadata() removes KEYS that break vector-store filter syntax:
#    keys starting with "$" (Mongo/Sift operators) or containing "." (path
#    separators). Applied to every chunk before it reaches a store.
#
# 2. coerce_metadata_values() flattens VALUES into the scalar set that
#    stores like ChromaDB accept (str, int, float, bool). Applied by the
#    stores that need it, not by the pipeline.
#
# Both are pure functions: they never mutate their input and never raise.
# =============================================================================

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def is_safe_key(key: Any) -> bool:
    """True when a metadata key can be used in a store filter."""
    text = str(key)
    return not text.startswith("$") and "." not in text


def sanitize_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Return a copy of `metadata` without unsafe keys.

    Nested mappings are cleaned the same way. Non-string keys are
    stringified so the result is always a str-keyed dict.
    """
    if not metadata:
        return {}

    sanitized: dict[str, Any] = {}
    for key, value in metadata.items():
        if not is_safe_key(key):
            continue
        if isinstance(value, Mapping):
            value = sanitize_metadata(value)
        sanitized[str(key)] = value
    return sanitized


def coerce_metadata_values(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """
    Flatten metadata values to str / int / float / bool.

    - list / tuple → comma-separated string
    - None → empty string
    - anything else non-scalar → str()
    """
    coerced: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            coerced[key] = ""
        elif isinstance(value, (list, tuple)):
            coerced[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            coerced[key] = value
        else:
            coerced[key] = str(value)
    return coerced
