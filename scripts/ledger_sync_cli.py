#!/usr/bin/env python3
"""Treasury ledger sync operator CLI."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
import sys
from typing import Any

import psycopg

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ledger_sync.chain_rpc import JsonRpcChainClient
from ledger_sync.config import LedgerSyncConfig, load_ledger_sync_config
from ledger_sync.db import PsycopgLedgerDB
from ledger_sync.errors import LedgerSyncError
from ledger_sync.ingestor import SyncRequest, run_event_ingestion
from ledger_sync.ledger_store import (
    TreasuryRegistration,
    list_owner_transactions,
    list_treasury_transactions,
    list_whitelist,
    record_ledger_entry,
    record_whitelist,
    register_treasury,
    treasury_activity,
)
from ledger_sync.liveness import reconcile_owner
from ledger_sync.reconciler import reconcile_stale_treasuries


def _resolve_connection(args: argparse.Namespace, config: LedgerSyncConfig) -> psycopg.Connection[Any]:
    dsn = args.dsn or config.database_dsn
    if dsn:
        return psycopg.connect(dsn, autocommit=False)

    host = args.host or os.getenv("DB_HOST") or os.getenv("TEST_DB_HOST")
    port = args.port or os.getenv("DB_PORT") or os.getenv("TEST_DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME") or os.getenv("TEST_DB_NAME")
    user = args.user or os.getenv("DB_USER") or os.getenv("TEST_DB_USER")
    password = args.password or os.getenv("DB_PASSWORD") or os.getenv("TEST_DB_PASSWORD")

    missing = [
        key
        for key, value in (("host", host), ("port", port), ("dbname", dbname), ("user", user), ("password", password))
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(host=host, port=port, dbname=dbname, user=user, password=password, autocommit=False)


def _load_json_arg(value: str) -> Any:
    """Accept inline JSON or @path to a JSON file."""
    raw = Path(value[1:]).read_text(encoding="utf-8") if value.startswith("@") else value
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid JSON: {exc}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Treasury ledger sync CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Ingest new events for one treasury")
    sync.add_argument("--treasury-id", required=True)
    sync.add_argument("--treasury-address", required=True)
    sync.add_argument("--from-block", type=int, default=None)
    sync.add_argument("--rpc-url", default=None)

    reconcile = subparsers.add_parser("reconcile", help="Delete stale treasuries for one owner")
    reconcile.add_argument("--owner-address", required=True)
    reconcile.add_argument("--chain-id", type=int, required=True)
    reconcile.add_argument("--rpc-url", default=None)
    reconcile.add_argument(
        "--stale-id",
        action="append",
        default=None,
        help="Explicit stale treasury id (repeatable); skips the liveness probe",
    )

    register = subparsers.add_parser("register", help="Register a deployed treasury")
    register.add_argument("payload", type=_load_json_arg, help="JSON object or @file")

    record = subparsers.add_parser("record", help="Record one confirmed transaction")
    record.add_argument("--treasury-id", required=True)
    record.add_argument("payload", type=_load_json_arg, help="JSON object or @file")

    transactions = subparsers.add_parser("transactions", help="List ledger entries")
    target = transactions.add_mutually_exclusive_group(required=True)
    target.add_argument("--treasury-id")
    target.add_argument("--owner-address")
    transactions.add_argument("--limit", type=int, default=None)

    whitelist = subparsers.add_parser("whitelist", help="Add whitelisted recipients to a treasury")
    whitelist.add_argument("--treasury-id", required=True)
    whitelist.add_argument("payload", type=_load_json_arg, help="JSON object or @file")

    activity = subparsers.add_parser("activity", help="Show ledger activity flags for a treasury")
    activity.add_argument("--treasury-id", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--bind-host", default="127.0.0.1")
    serve.add_argument("--bind-port", type=int, default=8000)

    return parser


def _run_command(args: argparse.Namespace, db: PsycopgLedgerDB, config: LedgerSyncConfig) -> dict[str, Any]:
    if args.command == "sync":
        sync_request = SyncRequest.from_payload(
            {
                "treasuryAddress": args.treasury_address,
                "treasuryId": args.treasury_id,
                "fromBlock": args.from_block,
                "rpcUrl": args.rpc_url,
            }
        )
        chain = JsonRpcChainClient(
            rpc_url=sync_request.rpc_url or config.default_rpc_url,
            timeout_seconds=config.rpc_timeout_seconds,
        )
        result = run_event_ingestion(
            db=db,
            chain=chain,
            treasury_id=sync_request.treasury_id,
            treasury_address=sync_request.treasury_address,
            from_block=sync_request.from_block,
            timestamp_workers=config.timestamp_workers,
        )
        return result.to_payload()

    if args.command == "reconcile":
        if args.stale_id is not None:
            result = reconcile_stale_treasuries(
                db=db,
                owner_address=args.owner_address,
                chain_id=args.chain_id,
                stale_treasury_ids=args.stale_id,
            )
        else:
            chain = JsonRpcChainClient(
                rpc_url=args.rpc_url or config.default_rpc_url,
                timeout_seconds=config.rpc_timeout_seconds,
            )
            result = reconcile_owner(
                db,
                chain,
                owner_address=args.owner_address,
                chain_id=args.chain_id,
                max_workers=config.liveness_workers,
            )
        return result.to_payload()

    if args.command == "register":
        row, created = register_treasury(db, TreasuryRegistration.from_payload(args.payload))
        return {"treasury": row, "created": created}

    if args.command == "record":
        entry, inserted = record_ledger_entry(db, args.treasury_id, args.payload)
        return {"transaction": entry.as_payload(), "inserted": inserted}

    if args.command == "transactions":
        if args.treasury_id:
            rows = list_treasury_transactions(
                db, args.treasury_id, limit=args.limit or config.transaction_page_limit
            )
        else:
            rows = list_owner_transactions(db, args.owner_address, limit=args.limit or 200)
        return {"transactions": list(rows)}

    if args.command == "whitelist":
        inserted = record_whitelist(db, args.treasury_id, args.payload)
        return {"inserted": inserted, "whitelist": list(list_whitelist(db, args.treasury_id))}

    if args.command == "activity":
        return treasury_activity(db, args.treasury_id)

    raise SystemExit(f"Unknown command: {args.command}")


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_ledger_sync_config()

    if args.command == "serve":
        import uvicorn

        from ledger_sync.api import create_app

        uvicorn.run(create_app(config), host=args.bind_host, port=args.bind_port)
        return 0

    conn = _resolve_connection(args, config)
    db = PsycopgLedgerDB(conn)
    try:
        payload = _run_command(args, db, config)
        conn.commit()
    except LedgerSyncError as exc:
        conn.rollback()
        print(json.dumps({"error": str(exc), "details": exc.details}, sort_keys=True, default=str))
        return 2 if exc.status_code < 500 else 1
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    print(json.dumps(payload, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
