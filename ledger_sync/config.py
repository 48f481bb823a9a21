"""Environment-backed configuration for the ledger sync services."""

from __future__ import annotations

from dataclasses import dataclass
import os


DEFAULT_RPC_URL = "http://localhost:8545"


@dataclass(frozen=True)
class LedgerSyncConfig:
    """Canonical configuration surface for the sync API and CLI."""

    database_dsn: str | None
    default_rpc_url: str
    rpc_timeout_seconds: float
    timestamp_workers: int
    liveness_workers: int
    transaction_page_limit: int


def _read_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _read_int(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}: {raw}")
    return value


def _read_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    if not value > 0:
        raise RuntimeError(f"{name} must be > 0: {raw}")
    return value


def load_ledger_sync_config() -> LedgerSyncConfig:
    """Load and validate ledger sync configuration from environment."""
    return LedgerSyncConfig(
        database_dsn=_read_optional("LEDGER_SYNC_DATABASE_DSN"),
        default_rpc_url=_read_optional("LEDGER_SYNC_DEFAULT_RPC_URL") or DEFAULT_RPC_URL,
        rpc_timeout_seconds=_read_positive_float("LEDGER_SYNC_RPC_TIMEOUT_SECONDS", 20.0),
        timestamp_workers=_read_int("LEDGER_SYNC_TIMESTAMP_WORKERS", 4, minimum=1),
        liveness_workers=_read_int("LEDGER_SYNC_LIVENESS_WORKERS", 8, minimum=1),
        transaction_page_limit=_read_int("LEDGER_SYNC_TRANSACTION_PAGE_LIMIT", 100, minimum=1),
    )
