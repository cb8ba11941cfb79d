"""
Deterministic hashing utilities.

Used for policy checksums, idempotency keys, and the payout audit hash chain.
All output must be reproducible across processes and machines.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON: sorted keys, no whitespace, stable
    rendering of Decimal, datetime and UUID.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_chain_link(payload_hash: str, prev_hash: str | None) -> str:
    """
    Link a payload hash to its predecessor.

    ``H(payload_hash + "|" + prev_hash)``; the first link in a chain uses
    the literal ``"genesis"`` as its predecessor.
    """
    link = f"{payload_hash}|{prev_hash or 'genesis'}"
    return hashlib.sha256(link.encode("utf-8")).hexdigest()
