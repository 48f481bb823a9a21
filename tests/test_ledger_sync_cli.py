from __future__ import annotations

import argparse
import dataclasses
import importlib.util
import json
from pathlib import Path
import runpy
import sys
from typing import Any

import pytest

from ledger_sync.chain_rpc import JsonRpcChainClient
from ledger_sync.config import LedgerSyncConfig
from tests.utils.ledger_fakes import OWNER, TOKEN, TREASURY, FakeLedgerDB, ScriptedRpc, spend_log


ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = ROOT / "scripts" / "ledger_sync_cli.py"

_CONFIG = LedgerSyncConfig(
    database_dsn=None,
    default_rpc_url="http://default-rpc.test",
    rpc_timeout_seconds=5.0,
    timestamp_workers=1,
    liveness_workers=1,
    transaction_page_limit=50,
)


def _load_cli_module(module_name: str) -> Any:
    spec = importlib.util.spec_from_file_location(module_name, SCRIPT_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


class _FakeConnection:
    def __init__(self) -> None:
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True

    def close(self) -> None:
        self.closed = True


def _wire(
    cli: Any,
    monkeypatch: pytest.MonkeyPatch,
    argv: list[str],
    db: FakeLedgerDB,
    rpc: ScriptedRpc | None = None,
) -> _FakeConnection:
    conn = _FakeConnection()
    monkeypatch.setattr(sys, "argv", ["ledger_sync_cli.py", *argv])
    monkeypatch.setattr(cli, "load_ledger_sync_config", lambda: _CONFIG)
    monkeypatch.setattr(cli, "_resolve_connection", lambda _args, _config: conn)
    monkeypatch.setattr(cli, "PsycopgLedgerDB", lambda _conn: db)
    if rpc is not None:
        monkeypatch.setattr(
            cli,
            "JsonRpcChainClient",
            lambda *, rpc_url, timeout_seconds: JsonRpcChainClient(rpc_url=rpc_url, requester=rpc),
        )
    return conn


def test_import_path_branch_and_main_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    root = str(ROOT)
    monkeypatch.setattr(sys, "path", [entry for entry in sys.path if entry != root])
    runpy.run_path(str(SCRIPT_PATH), run_name="ledger_sync_cli_import_missing_root")
    assert root in sys.path

    monkeypatch.setattr(sys, "argv", [str(SCRIPT_PATH), "--help"])
    with pytest.raises(SystemExit) as exc:
        runpy.run_path(str(SCRIPT_PATH), run_name="__main__")
    assert exc.value.code == 0


def test_connection_resolution_and_parser(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cli = _load_cli_module("ledger_sync_cli_conn")
    expected = _FakeConnection()
    seen: dict[str, Any] = {}

    def _connect(*args: Any, **kwargs: Any) -> _FakeConnection:
        seen["args"] = args
        seen["kwargs"] = kwargs
        return expected

    monkeypatch.setattr(cli.psycopg, "connect", _connect)
    args = argparse.Namespace(dsn="postgresql://x", host=None, port=None, dbname=None, user=None, password=None)
    assert cli._resolve_connection(args, _CONFIG) is expected
    assert seen["args"] == ("postgresql://x",)

    with_config_dsn = dataclasses.replace(_CONFIG, database_dsn="postgresql://from-env")
    args_none = argparse.Namespace(dsn=None, host=None, port=None, dbname=None, user=None, password=None)
    cli._resolve_connection(args_none, with_config_dsn)
    assert seen["args"] == ("postgresql://from-env",)

    args2 = argparse.Namespace(dsn=None, host="h", port="1", dbname="d", user="u", password="p")
    cli._resolve_connection(args2, _CONFIG)
    assert seen["kwargs"]["host"] == "h"

    for key in ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD", "TEST_DB_HOST", "TEST_DB_PORT", "TEST_DB_NAME", "TEST_DB_USER", "TEST_DB_PASSWORD"):
        monkeypatch.delenv(key, raising=False)
    with pytest.raises(SystemExit, match="Missing DB connection args"):
        cli._resolve_connection(args_none, _CONFIG)

    payload_file = tmp_path / "treasury.json"
    payload_file.write_text(json.dumps({"chainId": 1}), encoding="utf-8")
    parser = cli._build_parser()
    parsed = parser.parse_args(["--dsn", "postgresql://x", "register", f"@{payload_file}"])
    assert parsed.command == "register"
    assert parsed.payload == {"chainId": 1}
    parsed_sync = parser.parse_args(["sync", "--treasury-id", "t", "--treasury-address", TREASURY, "--from-block", "7"])
    assert parsed_sync.from_block == 7
    assert parsed_sync.log_level == "INFO"


def test_sync_command_prints_summary_and_commits(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    cli = _load_cli_module("ledger_sync_cli_sync")
    db = FakeLedgerDB()
    treasury_id = db.add_treasury()
    rpc = ScriptedRpc(head=20)
    rpc.logs.append(spend_log(block_number=5, log_index=0, tx_seed=1))
    conn = _wire(cli, monkeypatch, ["sync", "--treasury-id", treasury_id, "--treasury-address", TREASURY], db, rpc)

    assert cli.main() == 0

    output = json.loads(capsys.readouterr().out)
    assert output["eventsProcessed"] == 1
    assert output["syncedTo"] == 20
    assert conn.committed is True
    assert conn.closed is True


def test_reconcile_command_with_explicit_ids(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    cli = _load_cli_module("ledger_sync_cli_reconcile_ids")
    db = FakeLedgerDB()
    doomed = db.add_treasury()
    _wire(
        cli,
        monkeypatch,
        ["reconcile", "--owner-address", OWNER, "--chain-id", "1", "--stale-id", doomed, "--stale-id", "other"],
        db,
    )

    assert cli.main() == 0

    assert json.loads(capsys.readouterr().out) == {"chainId": 1, "deleted": 1, "ownerAddress": OWNER, "scanned": 2}


def test_reconcile_command_probes_liveness(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    cli = _load_cli_module("ledger_sync_cli_reconcile_probe")
    db = FakeLedgerDB()
    db.add_treasury(address=TREASURY)
    db.add_treasury(address=TOKEN)
    rpc = ScriptedRpc()
    rpc.code[TREASURY] = "0x"
    rpc.code[TOKEN] = "0x"
    _wire(cli, monkeypatch, ["reconcile", "--owner-address", OWNER, "--chain-id", "1"], db, rpc)

    assert cli.main() == 0

    assert json.loads(capsys.readouterr().out)["deleted"] == 0
    assert len(db.treasuries) == 2


def test_register_record_and_list_commands(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    db = FakeLedgerDB()
    registration = {
        "chainId": 1,
        "address": TREASURY,
        "ownerAddress": OWNER,
        "tokenAddress": TOKEN,
        "maxSpendPerPeriod": "10",
        "periodSeconds": 60,
        "migrationTarget": OWNER,
    }
    cli = _load_cli_module("ledger_sync_cli_register")
    _wire(cli, monkeypatch, ["register", json.dumps(registration)], db)
    assert cli.main() == 0
    registered = json.loads(capsys.readouterr().out)
    assert registered["created"] is True
    treasury_id = registered["treasury"]["treasury_id"]

    record = {
        "txHash": "0x" + "ab" * 32,
        "eventType": "deposit",
        "logIndex": 3,
        "blockNumber": 8,
        "blockTimestamp": 1_700_000_000,
        "fromAddress": OWNER,
        "toAddress": TREASURY,
        "amount": 5,
    }
    cli = _load_cli_module("ledger_sync_cli_record")
    _wire(cli, monkeypatch, ["record", "--treasury-id", treasury_id, json.dumps(record)], db)
    assert cli.main() == 0
    assert json.loads(capsys.readouterr().out)["inserted"] is True

    cli = _load_cli_module("ledger_sync_cli_list")
    _wire(cli, monkeypatch, ["transactions", "--owner-address", OWNER], db)
    assert cli.main() == 0
    rows = json.loads(capsys.readouterr().out)["transactions"]
    assert [row["log_index"] for row in rows] == [3]


def test_domain_error_rolls_back_and_returns_code(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    cli = _load_cli_module("ledger_sync_cli_errors")
    db = FakeLedgerDB()
    conn = _wire(cli, monkeypatch, ["sync", "--treasury-id", "missing", "--treasury-address", TREASURY], db, ScriptedRpc())

    assert cli.main() == 1
    assert conn.rolled_back is True
    assert json.loads(capsys.readouterr().out)["error"] == "Failed to resolve treasury token_address"

    conn = _wire(cli, monkeypatch, ["sync", "--treasury-id", "t", "--treasury-address", "0x12"], db, ScriptedRpc())
    assert cli.main() == 2
    assert conn.rolled_back is True


def test_unexpected_error_rolls_back_and_reraises(monkeypatch: pytest.MonkeyPatch) -> None:
    cli = _load_cli_module("ledger_sync_cli_unexpected")
    conn = _wire(cli, monkeypatch, ["transactions", "--treasury-id", "t"], FakeLedgerDB())

    def _boom(*_args: Any, **_kwargs: Any) -> Any:
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "list_treasury_transactions", _boom)
    with pytest.raises(RuntimeError, match="boom"):
        cli.main()
    assert conn.rolled_back is True
    assert conn.closed is True


def test_serve_command_runs_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    cli = _load_cli_module("ledger_sync_cli_serve")
    seen: dict[str, Any] = {}
    monkeypatch.setattr(sys, "argv", ["ledger_sync_cli.py", "serve", "--bind-port", "9001"])
    monkeypatch.setattr(cli, "load_ledger_sync_config", lambda: _CONFIG)

    import uvicorn

    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: seen.update(app=app, **kwargs))

    assert cli.main() == 0
    assert seen["port"] == 9001
    assert seen["host"] == "127.0.0.1"
    assert seen["app"].state.config is _CONFIG


def test_whitelist_and_activity_commands(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    db = FakeLedgerDB()
    treasury_id = db.add_treasury()
    body = {"addresses": [{"address": OWNER, "label": "owner"}]}

    cli = _load_cli_module("ledger_sync_cli_whitelist")
    conn = _wire(cli, monkeypatch, ["whitelist", "--treasury-id", treasury_id, json.dumps(body)], db)
    assert cli.main() == 0
    output = json.loads(capsys.readouterr().out)
    assert output["inserted"] == 1
    assert [row["label"] for row in output["whitelist"]] == ["owner"]
    assert conn.committed is True

    cli = _load_cli_module("ledger_sync_cli_activity")
    _wire(cli, monkeypatch, ["activity", "--treasury-id", treasury_id], db)
    assert cli.main() == 0
    assert json.loads(capsys.readouterr().out) == {
        "has_migration": False,
        "has_transactions": False,
        "treasury_id": treasury_id,
    }
