from __future__ import annotations

from typing import Any

import psycopg
import pytest

import ledger_sync.db as ledger_db
from ledger_sync.db import LazyLedgerDB, PsycopgLedgerDB, _convert_named_params, connect_ledger_db
from ledger_sync.errors import TransportError


class _FakeCursor:
    def __init__(self, conn: "_FakeConnection", row_factory: Any = None) -> None:
        self._conn = conn
        self._row_factory = row_factory
        self.description: Any = None

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        return None

    def execute(self, sql: str, params: Any = None) -> None:
        if self._conn.fail_with is not None:
            raise self._conn.fail_with
        self._conn.executed.append((sql, params, self._row_factory))
        self.description = [("col",)] if self._conn.fetchall_rows is not None else None

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._conn.fetchall_rows or [])


class _FakeConnection:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.fetchall_rows = rows
        self.executed: list[tuple[str, Any, Any]] = []
        self.fail_with: Exception | None = None
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self, row_factory: Any = None) -> _FakeCursor:
        return _FakeCursor(self, row_factory=row_factory)

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True

    def close(self) -> None:
        self.closed = True


def test_named_params_are_converted_and_casts_untouched() -> None:
    assert _convert_named_params("x=:x AND y::int = 1") == "x=%(x)s AND y::int = 1"
    assert _convert_named_params("id::text = ANY(:ids)") == "id::text = ANY(%(ids)s)"


def test_adapter_fetch_and_execute() -> None:
    conn = _FakeConnection(rows=[{"a": 1}])
    db = PsycopgLedgerDB(conn)

    assert db.fetch_one("SELECT :a", {"a": 1}) == {"a": 1}
    assert db.fetch_all("SELECT :a, :b", {"a": 1, "b": 2}) == [{"a": 1}]
    db.execute("DELETE FROM t WHERE x = :x", {"x": 1})
    assert conn.executed[-1][0] == "DELETE FROM t WHERE x = %(x)s"

    db.commit()
    db.rollback()
    db.close()
    assert (conn.committed, conn.rolled_back, conn.closed) == (True, True, True)


def test_statement_without_result_set_returns_no_rows() -> None:
    db = PsycopgLedgerDB(_FakeConnection(rows=None))

    assert db.fetch_all("INSERT INTO t VALUES (:x) ON CONFLICT DO NOTHING", {"x": 1}) == []
    assert db.fetch_one("INSERT INTO t VALUES (:x)", {"x": 1}) is None


def test_store_failures_surface_as_transport_errors() -> None:
    conn = _FakeConnection(rows=[])
    conn.fail_with = psycopg.OperationalError("server closed the connection unexpectedly")
    db = PsycopgLedgerDB(conn)

    with pytest.raises(TransportError) as excinfo:
        db.fetch_all("SELECT 1", {})
    assert "server closed" in excinfo.value.details

    with pytest.raises(TransportError):
        db.execute("SELECT 1", {})


def test_connect_ledger_db_from_dsn_or_env(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def _connect(*args: Any, **kwargs: Any) -> _FakeConnection:
        seen["args"] = args
        seen["kwargs"] = kwargs
        return _FakeConnection()

    monkeypatch.setattr(ledger_db.psycopg, "connect", _connect)

    assert isinstance(connect_ledger_db("postgresql://x"), PsycopgLedgerDB)
    assert seen["args"] == ("postgresql://x",)

    for key, value in {"DB_HOST": "h", "DB_PORT": "5432", "DB_NAME": "d", "DB_USER": "u", "DB_PASSWORD": "p"}.items():
        monkeypatch.setenv(key, value)
    connect_ledger_db(None)
    assert seen["kwargs"]["host"] == "h"
    assert seen["kwargs"]["autocommit"] is False

    monkeypatch.delenv("DB_PASSWORD")
    with pytest.raises(RuntimeError, match="missing: password"):
        connect_ledger_db(None)


def test_connection_failure_is_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _refuse(*_args: Any, **_kwargs: Any) -> _FakeConnection:
        raise psycopg.OperationalError("connection refused")

    monkeypatch.setattr(ledger_db.psycopg, "connect", _refuse)

    with pytest.raises(TransportError, match="Ledger store connection failed") as excinfo:
        connect_ledger_db("postgresql://down")
    assert "connection refused" in excinfo.value.details


def test_lazy_db_connects_on_first_statement_only() -> None:
    conn = _FakeConnection(rows=[{"a": 1}])
    opened: list[PsycopgLedgerDB] = []

    def _connect() -> PsycopgLedgerDB:
        opened.append(PsycopgLedgerDB(conn))
        return opened[-1]

    idle = LazyLedgerDB(_connect)
    idle.commit()
    idle.rollback()
    idle.close()
    assert opened == []
    assert idle.connected is False

    db = LazyLedgerDB(_connect)
    assert db.fetch_one("SELECT :a", {"a": 1}) == {"a": 1}
    assert db.fetch_all("SELECT :a", {"a": 1}) == [{"a": 1}]
    db.execute("SELECT 1", {})
    db.commit()
    db.close()

    assert len(opened) == 1
    assert (conn.committed, conn.closed) == (True, True)
    assert db.connected is False
