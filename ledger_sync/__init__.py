"""On-chain event synchronization and reconciliation for treasury ledgers."""

from ledger_sync.errors import (
    DecodeError,
    LedgerSyncError,
    ResolutionError,
    TransportError,
    ValidationError,
)
from ledger_sync.ingestor import IngestionResult, SyncRequest, run_event_ingestion
from ledger_sync.liveness import LivenessStatus, plan_stale_treasury_ids, reconcile_owner
from ledger_sync.reconciler import ReconcileRequest, ReconcileResult, reconcile_stale_treasuries

__all__ = [
    "DecodeError",
    "IngestionResult",
    "LedgerSyncError",
    "LivenessStatus",
    "ReconcileRequest",
    "ReconcileResult",
    "ResolutionError",
    "SyncRequest",
    "TransportError",
    "ValidationError",
    "plan_stale_treasury_ids",
    "reconcile_owner",
    "reconcile_stale_treasuries",
    "run_event_ingestion",
]
