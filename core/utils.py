"""
Small helpers shared across the load engine.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (all stored timestamps are naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def canonical_json(data: Any) -> str:
    """Deterministic JSON rendering used for hashing and key encoding."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
