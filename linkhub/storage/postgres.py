from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from linkhub.logging import get_logger
from linkhub.storage.common import decode_ts
from linkhub.storage.errors import (
    ConcurrencyConflict,
    ConstraintViolation,
    StoreUnavailableError,
)
from linkhub.storage.models import Entity

_COLUMNS = "partition_key, row_key, data, version, expires_at"


class PostgresStore:
    """Postgres-backed entity store over a single ``entities`` table.

    Each primitive is one statement, so atomicity comes from row locks taken by
    Postgres itself: ``DELETE ... RETURNING`` for pop, ``INSERT ... ON CONFLICT``
    for counters and ``UPDATE ... WHERE version = %s`` for compare-and-swap.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "entity_store_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailableError("entity store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    partition_key TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    data JSONB NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    expires_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (partition_key, row_key)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS entities_expires_at_idx "
                "ON entities (expires_at) WHERE expires_at IS NOT NULL"
            )

    @staticmethod
    def _row_to_entity(row: Mapping[str, Any]) -> Entity:
        data = row["data"]
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        return Entity(
            partition_key=row["partition_key"],
            row_key=row["row_key"],
            data=dict(data or {}),
            version=int(row["version"]),
            expires_at=decode_ts(row.get("expires_at")),
        )

    def get(self, partition: str, row: str) -> Optional[Entity]:
        with self._connect() as conn:
            found = conn.execute(
                f"SELECT {_COLUMNS} FROM entities WHERE partition_key = %s AND row_key = %s",
                (partition, row),
            ).fetchone()
        return self._row_to_entity(found) if found else None

    def query(
        self,
        partition: str,
        *,
        where: Optional[Mapping[str, Any]] = None,
        row_from: Optional[str] = None,
        row_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        clauses = ["partition_key = %s"]
        params: List[Any] = [partition]
        if where:
            clauses.append("data @> %s::jsonb")
            params.append(json.dumps(dict(where)))
        if row_from is not None:
            clauses.append("row_key >= %s")
            params.append(row_from)
        if row_to is not None:
            clauses.append("row_key < %s")
            params.append(row_to)
        sql = f"SELECT {_COLUMNS} FROM entities WHERE {' AND '.join(clauses)} ORDER BY row_key"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_entity(row) for row in rows]

    def insert(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[datetime] = None,
    ) -> Entity:
        try:
            with self._connect() as conn:
                created = conn.execute(
                    f"""
                    INSERT INTO entities (partition_key, row_key, data, version, expires_at)
                    VALUES (%s, %s, %s::jsonb, 1, %s)
                    RETURNING {_COLUMNS}
                    """,
                    (partition, row, json.dumps(data), expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "entity already exists", {"partition": partition, "row": row}
            )
        return self._row_to_entity(created)

    def upsert(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[datetime] = None,
    ) -> Entity:
        with self._connect() as conn:
            saved = conn.execute(
                f"""
                INSERT INTO entities (partition_key, row_key, data, version, expires_at)
                VALUES (%s, %s, %s::jsonb, 1, %s)
                ON CONFLICT (partition_key, row_key) DO UPDATE
                SET data = EXCLUDED.data,
                    expires_at = EXCLUDED.expires_at,
                    version = entities.version + 1,
                    updated_at = now()
                RETURNING {_COLUMNS}
                """,
                (partition, row, json.dumps(data), expires_at),
            ).fetchone()
        return self._row_to_entity(saved)

    def replace(
        self,
        partition: str,
        row: str,
        data: Dict[str, Any],
        *,
        expected_version: int,
        expires_at: Optional[datetime] = None,
    ) -> Entity:
        with self._connect() as conn:
            updated = conn.execute(
                f"""
                UPDATE entities
                SET data = %s::jsonb, expires_at = %s, version = version + 1, updated_at = now()
                WHERE partition_key = %s AND row_key = %s AND version = %s
                RETURNING {_COLUMNS}
                """,
                (json.dumps(data), expires_at, partition, row, expected_version),
            ).fetchone()
        if not updated:
            raise ConcurrencyConflict(
                "entity version mismatch",
                {"partition": partition, "row": row, "expected_version": expected_version},
            )
        return self._row_to_entity(updated)

    def delete(self, partition: str, row: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM entities WHERE partition_key = %s AND row_key = %s",
                (partition, row),
            )
            return (cursor.rowcount or 0) > 0

    def pop(self, partition: str, row: str) -> Optional[Entity]:
        with self._connect() as conn:
            removed = conn.execute(
                f"""
                DELETE FROM entities WHERE partition_key = %s AND row_key = %s
                RETURNING {_COLUMNS}
                """,
                (partition, row),
            ).fetchone()
        return self._row_to_entity(removed) if removed else None

    def increment(
        self,
        partition: str,
        row: str,
        *,
        field: str = "count",
        amount: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> int:
        with self._connect() as conn:
            counted = conn.execute(
                """
                INSERT INTO entities (partition_key, row_key, data, version, expires_at)
                VALUES (%s, %s, jsonb_build_object(%s::text, %s::bigint), 1, %s)
                ON CONFLICT (partition_key, row_key) DO UPDATE
                SET data = jsonb_set(
                        entities.data,
                        ARRAY[%s::text],
                        to_jsonb(COALESCE((entities.data ->> %s)::bigint, 0) + %s::bigint)
                    ),
                    version = entities.version + 1,
                    updated_at = now()
                RETURNING (data ->> %s)::bigint AS value
                """,
                (partition, row, field, amount, expires_at, field, field, amount, field),
            ).fetchone()
        return int(counted["value"])

    def purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM entities WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (now,),
            )
            removed = cursor.rowcount or 0
        if removed:
            self.logger.info("entity_store_purged", removed=removed)
        return removed

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
