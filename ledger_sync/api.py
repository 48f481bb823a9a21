"""FastAPI entry points for treasury event sync and reconciliation."""

from __future__ import annotations

from collections.abc import Callable, Iterator
import logging
from typing import Any

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ledger_sync.chain_rpc import ChainClient, JsonRpcChainClient
from ledger_sync.common import LedgerDatabase
from ledger_sync.config import LedgerSyncConfig, load_ledger_sync_config
from ledger_sync.db import LazyLedgerDB, connect_ledger_db
from ledger_sync.errors import LedgerSyncError
from ledger_sync.ingestor import SyncRequest, run_event_ingestion
from ledger_sync.ledger_store import (
    TreasuryRegistration,
    list_treasury_transactions,
    list_whitelist,
    record_ledger_entry,
    record_whitelist,
    register_treasury,
    treasury_activity,
)
from ledger_sync.reconciler import ReconcileRequest, reconcile_stale_treasuries

logger = logging.getLogger(__name__)

ChainClientFactory = Callable[[str], ChainClient]


def get_config(request: Request) -> LedgerSyncConfig:
    return request.app.state.config


def get_db(config: LedgerSyncConfig = Depends(get_config)) -> Iterator[LedgerDatabase]:
    """One transaction per request; the connection opens on the first statement."""
    db = LazyLedgerDB(lambda: connect_ledger_db(config.database_dsn))
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_chain_client_factory(config: LedgerSyncConfig = Depends(get_config)) -> ChainClientFactory:
    def _factory(rpc_url: str) -> ChainClient:
        return JsonRpcChainClient(rpc_url=rpc_url, timeout_seconds=config.rpc_timeout_seconds)

    return _factory


def _error_response(exc: LedgerSyncError) -> JSONResponse:
    content: dict[str, Any] = {"error": str(exc)}
    if exc.status_code >= 500:
        content["details"] = jsonable_encoder(exc.details) if exc.details is not None else None
    return JSONResponse(status_code=exc.status_code, content=content)


async def _handle_ledger_sync_error(request: Request, exc: LedgerSyncError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc, exc.details)
    return _error_response(exc)


async def _handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Unexpected error", "details": str(exc)})


def create_app(config: LedgerSyncConfig | None = None) -> FastAPI:
    """Build the API application; configuration is read from the environment when omitted."""
    app = FastAPI(title="Treasury Ledger Sync", version="0.1.0")
    app.state.config = config if config is not None else load_ledger_sync_config()

    app.add_exception_handler(LedgerSyncError, _handle_ledger_sync_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected_error)

    @app.post("/sync-treasury-events")
    def sync_treasury_events(
        payload: Any = Body(...),
        db: LedgerDatabase = Depends(get_db),
        chain_factory: ChainClientFactory = Depends(get_chain_client_factory),
        config: LedgerSyncConfig = Depends(get_config),
    ) -> dict[str, Any]:
        """Fetch and record new policy and deposit events for one treasury."""
        sync_request = SyncRequest.from_payload(payload)
        result = run_event_ingestion(
            db=db,
            chain=chain_factory(sync_request.rpc_url or config.default_rpc_url),
            treasury_id=sync_request.treasury_id,
            treasury_address=sync_request.treasury_address,
            from_block=sync_request.from_block,
            timestamp_workers=config.timestamp_workers,
        )
        return result.to_payload()

    @app.post("/reconcile-treasuries")
    def reconcile_treasuries(
        payload: Any = Body(...),
        db: LedgerDatabase = Depends(get_db),
    ) -> dict[str, Any]:
        """Delete the submitted stale treasuries that belong to the owner on the chain."""
        reconcile_request = ReconcileRequest.from_payload(payload)
        result = reconcile_stale_treasuries(
            db=db,
            owner_address=reconcile_request.owner_address,
            chain_id=reconcile_request.chain_id,
            stale_treasury_ids=reconcile_request.stale_treasury_ids,
        )
        return result.to_payload()

    @app.post("/treasuries")
    def create_treasury(
        payload: Any = Body(...),
        db: LedgerDatabase = Depends(get_db),
    ) -> JSONResponse:
        row, created = register_treasury(db, TreasuryRegistration.from_payload(payload))
        return JSONResponse(
            status_code=201 if created else 200,
            content=jsonable_encoder({"treasury": row, "created": created}),
        )

    @app.post("/treasuries/{treasury_id}/transactions")
    def record_transaction(
        treasury_id: str,
        payload: Any = Body(...),
        db: LedgerDatabase = Depends(get_db),
    ) -> JSONResponse:
        entry, inserted = record_ledger_entry(db, treasury_id, payload)
        return JSONResponse(
            status_code=201 if inserted else 200,
            content={"transaction": entry.as_payload(), "inserted": inserted},
        )

    @app.get("/treasuries/{treasury_id}/transactions")
    def get_transactions(
        treasury_id: str,
        limit: int | None = Query(None, ge=1, le=1000),
        db: LedgerDatabase = Depends(get_db),
        config: LedgerSyncConfig = Depends(get_config),
    ) -> JSONResponse:
        rows = list_treasury_transactions(db, treasury_id, limit=limit or config.transaction_page_limit)
        return JSONResponse(content=jsonable_encoder({"transactions": rows}))

    @app.get("/treasuries/{treasury_id}/activity")
    def get_activity(treasury_id: str, db: LedgerDatabase = Depends(get_db)) -> dict[str, Any]:
        return treasury_activity(db, treasury_id)

    @app.post("/treasuries/{treasury_id}/whitelist")
    def add_whitelist(
        treasury_id: str,
        payload: Any = Body(...),
        db: LedgerDatabase = Depends(get_db),
    ) -> JSONResponse:
        inserted = record_whitelist(db, treasury_id, payload)
        return JSONResponse(
            status_code=201 if inserted else 200,
            content=jsonable_encoder({"inserted": inserted, "whitelist": list_whitelist(db, treasury_id)}),
        )

    @app.get("/treasuries/{treasury_id}/whitelist")
    def get_whitelist(treasury_id: str, db: LedgerDatabase = Depends(get_db)) -> JSONResponse:
        return JSONResponse(content=jsonable_encoder({"whitelist": list_whitelist(db, treasury_id)}))

    return app
