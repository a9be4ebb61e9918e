"""Common storage contract and helpers shared by the memory and postgres stores.

Both backends expose the same partition/row keyed entity interface so the
repository layer never needs to know which one it is talking to.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from linkhub.storage.models import Entity


class EntityStore(Protocol):
    """Partitioned key-value store with per-key atomic primitives.

    ``expires_at`` is housekeeping metadata consumed by ``purge_expired``;
    visibility is never decided by it, callers check their own expiry fields.
    """

    def get(self, partition: str, row: str) -> Optional[Entity]: ...

    def query(
        self,
        partition: str,
        *,
        where: Optional[Mapping[str, Any]] = None,
        row_from: Optional[str] = None,
        row_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]: ...

    def insert(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[datetime] = None,
    ) -> Entity: ...

    def upsert(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[datetime] = None,
    ) -> Entity: ...

    def replace(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expected_version: int,
        expires_at: Optional[datetime] = None,
    ) -> Entity: ...

    def delete(self, partition: str, row: str) -> bool: ...

    def pop(self, partition: str, row: str) -> Optional[Entity]: ...

    def increment(
        self,
        partition: str,
        row: str,
        *,
        field: str = "count",
        amount: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> int: ...

    def purge_expired(self, now: datetime) -> int: ...


# ============================================================================
# FILTERING
# ============================================================================

def matches_where(data: Mapping[str, Any], where: Optional[Mapping[str, Any]]) -> bool:
    """Equality filter over top-level data fields."""
    if not where:
        return True
    for key, expected in where.items():
        if key not in data or data[key] != expected:
            return False
    return True


def in_row_range(row: str, row_from: Optional[str], row_to: Optional[str]) -> bool:
    """Row-key range check; ``row_from`` inclusive, ``row_to`` exclusive."""
    if row_from is not None and row < row_from:
        return False
    if row_to is not None and row >= row_to:
        return False
    return True


# ============================================================================
# TIMESTAMPS
# ============================================================================

def encode_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def decode_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and expires_at <= now
