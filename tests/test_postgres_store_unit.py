import contextlib
from datetime import datetime, timezone

import pytest
from psycopg import OperationalError, errors

from linkhub.logging import get_logger
from linkhub.storage.errors import ConcurrencyConflict, ConstraintViolation, StoreUnavailableError
from linkhub.storage.postgres import PostgresStore


class DummyCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class DummyConnection:
    def __init__(self, results, raises=None):
        self.results = list(results)
        self.raises = raises
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else DummyCursor()


class DummyPool:
    def __init__(self, conn=None, fail=False):
        self.conn = conn
        self.fail = fail

    @contextlib.contextmanager
    def connection(self):
        if self.fail:
            raise OperationalError("connection refused")
        yield self.conn


def _store(conn=None, fail=False) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.pool = DummyPool(conn, fail=fail)
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "partition_key": "Users",
        "row_key": "u1",
        "data": '{"email": "a@x.com"}',
        "version": 3,
        "expires_at": None,
    }
    row.update(overrides)
    return row


def test_get_decodes_json_rows():
    conn = DummyConnection([DummyCursor(_row())])

    entity = _store(conn).get("Users", "u1")

    assert entity.data == {"email": "a@x.com"}
    assert entity.version == 3
    assert conn.statements[0][1] == ("Users", "u1")


def test_insert_maps_unique_violation():
    conn = DummyConnection([], raises=errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        _store(conn).insert("UserEmails", "a@x.com", {"user_id": "u1"})


def test_replace_with_stale_version_conflicts():
    conn = DummyConnection([DummyCursor(None)])

    with pytest.raises(ConcurrencyConflict) as excinfo:
        _store(conn).replace("TwoFactor", "u1", {}, expected_version=2)
    assert excinfo.value.detail["expected_version"] == 2
    sql, params = conn.statements[0]
    assert "WHERE partition_key = %s AND row_key = %s AND version = %s" in sql
    assert params[-1] == 2


def test_pop_is_a_single_delete_returning():
    conn = DummyConnection([DummyCursor(_row(partition_key="RefreshTokens"))])

    entity = _store(conn).pop("RefreshTokens", "u1")

    assert entity.partition_key == "RefreshTokens"
    assert len(conn.statements) == 1
    assert conn.statements[0][0].startswith("DELETE FROM entities")
    assert "RETURNING" in conn.statements[0][0]


def test_increment_returns_counter_value():
    conn = DummyConnection([DummyCursor({"value": 4})])
    expires = datetime(2024, 6, 1, 12, 1, tzinfo=timezone.utc)

    assert _store(conn).increment("RateLimits", "login:abc:0", expires_at=expires) == 4
    assert "ON CONFLICT" in conn.statements[0][0]


def test_query_filters_on_jsonb_containment():
    conn = DummyConnection([DummyCursor(_row())])

    _store(conn).query("RefreshTokens", where={"user_id": "u1"}, limit=5)

    sql, params = conn.statements[0]
    assert "data @> %s::jsonb" in sql
    assert params == ["RefreshTokens", '{"user_id": "u1"}', 5]


def test_delete_reports_rowcount():
    conn = DummyConnection([DummyCursor(rowcount=1), DummyCursor(rowcount=0)])
    store = _store(conn)

    assert store.delete("Users", "u1") is True
    assert store.delete("Users", "u1") is False


def test_unreachable_database_raises_store_unavailable():
    with pytest.raises(StoreUnavailableError):
        _store(fail=True).get("Users", "u1")
    with pytest.raises(StoreUnavailableError):
        _store(fail=True).verify_connection()
