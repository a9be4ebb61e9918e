from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from linkhub.logging import get_logger
from linkhub.storage.common import in_row_range, is_expired, matches_where
from linkhub.storage.errors import ConcurrencyConflict, ConstraintViolation
from linkhub.storage.models import Entity


class MemoryStore:
    """In-process entity store for tests and single-node development.

    Every operation holds ``_data_lock`` so per-key primitives (insert, pop,
    increment, versioned replace) are atomic with respect to each other.
    Returned entities are copies; mutating them never touches stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._partitions: Dict[str, Dict[str, Entity]] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(entity: Entity) -> Entity:
        return Entity(
            partition_key=entity.partition_key,
            row_key=entity.row_key,
            data=copy.deepcopy(entity.data),
            version=entity.version,
            expires_at=entity.expires_at,
        )

    def _rows(self, partition: str) -> Dict[str, Entity]:
        return self._partitions.setdefault(partition, {})

    def get(self, partition: str, row: str) -> Optional[Entity]:
        with self._data_lock:
            entity = self._rows(partition).get(row)
            return self._copy(entity) if entity else None

    def query(
        self,
        partition: str,
        *,
        where: Optional[Mapping[str, Any]] = None,
        row_from: Optional[str] = None,
        row_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        with self._data_lock:
            rows = self._rows(partition)
            results: List[Entity] = []
            for row_key in sorted(rows):
                if not in_row_range(row_key, row_from, row_to):
                    continue
                entity = rows[row_key]
                if not matches_where(entity.data, where):
                    continue
                results.append(self._copy(entity))
                if limit is not None and len(results) >= limit:
                    break
            return results

    def insert(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[datetime] = None,
    ) -> Entity:
        with self._data_lock:
            rows = self._rows(partition)
            if row in rows:
                raise ConstraintViolation(
                    "entity already exists", {"partition": partition, "row": row}
                )
            entity = Entity(partition, row, copy.deepcopy(data), 1, expires_at)
            rows[row] = entity
            return self._copy(entity)

    def upsert(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[datetime] = None,
    ) -> Entity:
        with self._data_lock:
            rows = self._rows(partition)
            existing = rows.get(row)
            version = existing.version + 1 if existing else 1
            entity = Entity(partition, row, copy.deepcopy(data), version, expires_at)
            rows[row] = entity
            return self._copy(entity)

    def replace(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expected_version: int,
        expires_at: Optional[datetime] = None,
    ) -> Entity:
        with self._data_lock:
            rows = self._rows(partition)
            existing = rows.get(row)
            if existing is None or existing.version != expected_version:
                raise ConcurrencyConflict(
                    "entity version mismatch",
                    {
                        "partition": partition,
                        "row": row,
                        "expected_version": expected_version,
                    },
                )
            entity = Entity(
                partition, row, copy.deepcopy(data), existing.version + 1, expires_at
            )
            rows[row] = entity
            return self._copy(entity)

    def delete(self, partition: str, row: str) -> bool:
        with self._data_lock:
            return self._rows(partition).pop(row, None) is not None

    def pop(self, partition: str, row: str) -> Optional[Entity]:
        with self._data_lock:
            return self._rows(partition).pop(row, None)

    def increment(
        self,
        partition: str,
        row: str,
        *,
        field: str = "count",
        amount: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            rows = self._rows(partition)
            existing = rows.get(row)
            if existing is None:
                entity = Entity(partition, row, {field: amount}, 1, expires_at)
                rows[row] = entity
                return amount
            value = int(existing.data.get(field, 0)) + amount
            existing.data[field] = value
            existing.version += 1
            return value

    def purge_expired(self, now: datetime) -> int:
        removed = 0
        with self._data_lock:
            for rows in self._partitions.values():
                stale = [key for key, entity in rows.items() if is_expired(entity.expires_at, now)]
                for key in stale:
                    del rows[key]
                removed += len(stale)
        if removed:
            self.logger.info("entity_store_purged", removed=removed)
        return removed
