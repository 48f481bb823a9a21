"""Bytecode liveness probe and the mass-deletion guard in front of the reconciler."""

from __future__ import annotations

from concurrent import futures
from dataclasses import dataclass
import enum
import logging
from typing import Any, Mapping, Sequence

from ledger_sync.chain_rpc import EMPTY_CODE, ChainClient
from ledger_sync.common import LedgerDatabase, normalize_address
from ledger_sync.errors import LedgerSyncError
from ledger_sync.ledger_store import list_treasuries
from ledger_sync.reconciler import ReconcileResult, reconcile_stale_treasuries

logger = logging.getLogger(__name__)


class LivenessStatus(str, enum.Enum):
    HAS_CODE = "has_code"
    NO_CODE = "no_code"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class LivenessCheck:
    treasury_id: str
    address: str
    status: LivenessStatus
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is not LivenessStatus.FAILED


def classify_code(code: str | None) -> LivenessStatus:
    """Map an ``eth_getCode`` result to a liveness status.

    Only the exact empty sentinel counts as "no code"; a missing value is
    neither stale nor live.
    """
    if code is None:
        return LivenessStatus.ABSENT
    if code == EMPTY_CODE:
        return LivenessStatus.NO_CODE
    return LivenessStatus.HAS_CODE


def _probe(chain: ChainClient, treasury_id: str, address: str) -> LivenessCheck:
    try:
        code = chain.get_code(address)
    except LedgerSyncError as exc:
        logger.warning("Liveness probe failed for treasury %s (%s): %s", treasury_id, address, exc)
        return LivenessCheck(treasury_id, address, LivenessStatus.FAILED, error=str(exc))
    return LivenessCheck(treasury_id, address, classify_code(code))


def check_liveness(
    chain: ChainClient,
    treasuries: Sequence[Mapping[str, Any]],
    *,
    max_workers: int = 8,
) -> list[LivenessCheck]:
    """Probe every treasury concurrently; results keep the input order."""
    if not treasuries:
        return []
    with futures.ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(treasuries)))) as executor:
        pending = [
            executor.submit(_probe, chain, str(row["treasury_id"]), str(row["address"]))
            for row in treasuries
        ]
        return [future.result() for future in pending]


def plan_stale_treasury_ids(checks: Sequence[LivenessCheck]) -> list[str]:
    """Return the ids that are safe to hand to the reconciler.

    When every successful probe reports no code the whole set is withheld,
    and nothing is submitted unless at least one probe found deployed code.
    A misconfigured RPC endpoint looks exactly like "everything is gone".
    """
    successful = [check for check in checks if check.succeeded]
    stale = [check for check in successful if check.status is LivenessStatus.NO_CODE]
    live = [check for check in successful if check.status is LivenessStatus.HAS_CODE]

    if successful and len(stale) == len(successful):
        logger.warning(
            "All %s successfully probed treasuries report no code; possible RPC or network mismatch, skipping deletion",
            len(successful),
        )
        return []
    if not live:
        if stale:
            logger.warning(
                "No probe confirmed deployed code; withholding %s stale candidate(s)",
                len(stale),
            )
        return []
    return [check.treasury_id for check in stale]


def live_treasuries(
    chain: ChainClient,
    treasuries: Sequence[Mapping[str, Any]],
    *,
    max_workers: int = 8,
) -> list[Mapping[str, Any]]:
    """Keep only treasuries whose address currently has deployed code."""
    checks = check_liveness(chain, treasuries, max_workers=max_workers)
    return [row for row, check in zip(treasuries, checks) if check.status is LivenessStatus.HAS_CODE]


def reconcile_owner(
    db: LedgerDatabase,
    chain: ChainClient,
    *,
    owner_address: str,
    chain_id: int,
    max_workers: int = 8,
) -> ReconcileResult:
    """List, probe, guard, then reconcile one owner's treasuries on one chain."""
    owner_address = normalize_address(owner_address, field="ownerAddress")
    treasuries = list_treasuries(db, owner_address=owner_address, chain_id=chain_id)
    checks = check_liveness(chain, treasuries, max_workers=max_workers)
    stale_ids = plan_stale_treasury_ids(checks)
    logger.info(
        "Probed %s treasuries for owner %s on chain %s: %s",
        len(checks),
        owner_address,
        chain_id,
        {status.value: sum(1 for check in checks if check.status is status) for status in LivenessStatus},
    )
    return reconcile_stale_treasuries(
        db=db,
        owner_address=owner_address,
        chain_id=chain_id,
        stale_treasury_ids=stale_ids,
    )
