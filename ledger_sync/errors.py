"""Error taxonomy for ledger synchronization and reconciliation."""

from __future__ import annotations

from typing import Any


class LedgerSyncError(RuntimeError):
    """Base class for failures surfaced by the sync and reconcile services."""

    status_code: int = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class ValidationError(LedgerSyncError):
    """Raised for malformed input before any store or chain access."""

    status_code = 400


class ResolutionError(LedgerSyncError):
    """Raised when a referenced treasury or its token address cannot be resolved."""


class TransportError(LedgerSyncError):
    """Raised when an RPC or store call fails or returns an envelope error."""


class DecodeError(LedgerSyncError):
    """Raised when a log payload does not fit its classified event layout."""

    def __init__(
        self,
        message: str,
        *,
        tx_hash: str | None = None,
        log_index: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.tx_hash = tx_hash
        self.log_index = log_index
