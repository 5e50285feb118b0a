"""
Deterministic hashing utilities.

All hashing in the approval kernel must be deterministic and reproducible.
This module provides the canonical hashing functions used by the audit
chain and the configuration checksum.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Normalize so 1000000 and 1000000.000000000 hash the same
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(_json_serializer(v) if not isinstance(v, str) else v for v in obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, enums, sets)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip ``data`` through canonical JSON so it can go in a JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute hash for an audit event.

    The hash includes all key fields plus the previous event's hash,
    creating a tamper-evident chain.
    """
    components = [
        entity_type,
        str(entity_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
