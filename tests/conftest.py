"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any

import psycopg
import pytest

from ledger_sync.db import PsycopgLedgerDB


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    conn = psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def ledger_db(pg_conn: Any) -> Any:
    """Ledger store adapter bound to the integration connection; every test is rolled back."""
    db = PsycopgLedgerDB(pg_conn)
    row = db.fetch_one("SELECT to_regclass('public.treasury_transaction') AS relation", {})
    if row is None or row["relation"] is None:
        pg_conn.rollback()
        pytest.skip("Ledger schema is not migrated; run alembic upgrade head first")
    try:
        yield db
    finally:
        pg_conn.rollback()
