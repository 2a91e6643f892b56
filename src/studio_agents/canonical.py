from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))

FINGERPRINT_LENGTH = 32


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/Pydantic types into JSON-primitive types.

    rfc8785.dumps only accepts: bool, int, float, str, None, list/tuple, dict.
    Pydantic models, datetime, UUID, Decimal, Enum and sets are converted first.
    Sets are sorted so that snapshots built from unordered collections still
    hash identically.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_for_jcs(item) for item in value), key=rfc8785.dumps)

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Decimal):
        if not value.is_finite():
            raise TypeError(f"Cannot serialize non-finite Decimal to JSON: {value!r}")
        return float(value)

    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785.

    Args:
        value: Any Python value including Pydantic models and special types.

    Returns:
        A UTF-8 string containing the canonicalized JSON representation.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def compute_fingerprint(stage: str | Enum, session_id: str, snapshot: Any) -> str:
    """Derive the cache key for one stage invocation.

    The key covers the stage, the session and the full input snapshot, so two
    invocations share a fingerprint only when every input row is identical
    (key order and set order do not matter).

    Args:
        stage: Stage name (``synthesis``, ``solutions``, ``sequencing``).
        session_id: Session the snapshot was collected for.
        snapshot: The stage input snapshot (Pydantic model or JSON-like value).

    Returns:
        A lowercase hex SHA-256 prefix of ``FINGERPRINT_LENGTH`` characters.
    """
    if not session_id or not session_id.strip():
        raise ValueError("session_id must be non-empty")
    stage_value = stage.value if isinstance(stage, Enum) else stage
    canonical = to_canonical_json({"stage": stage_value, "session_id": session_id, "inputs": snapshot})
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]
