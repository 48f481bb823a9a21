"""psycopg adapter implementing the ledger database protocol."""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Callable, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from ledger_sync.errors import TransportError

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _convert_named_params(sql: str) -> str:
    """Convert :named params to psycopg %(named)s format."""
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


class PsycopgLedgerDB:
    """Ledger store adapter over one psycopg connection; the caller owns the transaction."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def close(self) -> None:
        self.conn.close()

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(converted, dict(params))
                if cur.description is None:
                    return []
                return [dict(row) for row in cur.fetchall()]
        except psycopg.Error as exc:
            logger.error("Ledger store query failed: %s", exc)
            raise TransportError("Ledger store query failed", details=str(exc)) from exc

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        try:
            with self.conn.cursor() as cur:
                cur.execute(converted, dict(params))
        except psycopg.Error as exc:
            logger.error("Ledger store statement failed: %s", exc)
            raise TransportError("Ledger store statement failed", details=str(exc)) from exc


def connect_ledger_db(dsn: str | None = None) -> PsycopgLedgerDB:
    """Open a non-autocommit connection from a DSN or the DB_* environment."""
    if dsn:
        return PsycopgLedgerDB(_open_connection(dsn))

    params = {
        "host": os.getenv("DB_HOST"),
        "port": os.getenv("DB_PORT"),
        "dbname": os.getenv("DB_NAME"),
        "user": os.getenv("DB_USER"),
        "password": os.getenv("DB_PASSWORD"),
    }
    missing = [key for key, value in params.items() if not value]
    if missing:
        raise RuntimeError(
            "Missing DB connection settings. Set LEDGER_SYNC_DATABASE_DSN or DB_HOST/DB_PORT/DB_NAME/DB_USER/DB_PASSWORD "
            f"(missing: {', '.join(missing)})."
        )
    return PsycopgLedgerDB(_open_connection(**params))


def _open_connection(*args: Any, **kwargs: Any) -> psycopg.Connection[Any]:
    try:
        return psycopg.connect(*args, autocommit=False, **kwargs)
    except psycopg.Error as exc:
        logger.error("Ledger store connection failed: %s", exc)
        raise TransportError("Ledger store connection failed", details=str(exc)) from exc


class LazyLedgerDB:
    """Open the underlying connection on the first statement only.

    Requests rejected during validation never touch the store, and
    commit/rollback/close are no-ops until a connection exists.
    """

    def __init__(self, connect: Callable[[], PsycopgLedgerDB]) -> None:
        self._connect = connect
        self._db: PsycopgLedgerDB | None = None

    @property
    def connected(self) -> bool:
        return self._db is not None

    def _active(self) -> PsycopgLedgerDB:
        if self._db is None:
            self._db = self._connect()
        return self._db

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        return self._active().fetch_one(sql, params)

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        return self._active().fetch_all(sql, params)

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        self._active().execute(sql, params)

    def commit(self) -> None:
        if self._db is not None:
            self._db.commit()

    def rollback(self) -> None:
        if self._db is not None:
            self._db.rollback()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None
