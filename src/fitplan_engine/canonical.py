from __future__ import annotations

import hashlib
import math
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert plan payload values into JSON-primitive types.

    Generated payloads are decoded JSON, so they are mostly primitives already;
    models, enums and dates show up when callers fingerprint engine objects.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError(f"Cannot serialize non-finite float to canonical JSON: {value!r}")
        # Whole-number floats collapse to ints so 500 and 500.0 fingerprint alike.
        return int(value) if value.is_integer() else value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def content_fingerprint(payload: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of ``payload``.

    Two payloads that differ only in key order or float formatting share a
    fingerprint, so a regenerated plan can be compared with the stored one.
    """
    return hashlib.sha256(to_canonical_json(payload).encode("utf-8")).hexdigest()
