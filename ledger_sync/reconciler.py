"""Owner-scoped deletion of treasuries flagged as stale."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any, Mapping

from ledger_sync.common import LedgerDatabase, normalize_address
from ledger_sync.errors import ValidationError
from ledger_sync.ledger_store import delete_owned_treasuries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileRequest:
    owner_address: str
    chain_id: int | float
    stale_treasury_ids: tuple[str, ...]

    @classmethod
    def from_payload(cls, payload: Any) -> "ReconcileRequest":
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be an object")
        return cls(
            owner_address=_parse_owner(payload.get("ownerAddress")),
            chain_id=_parse_chain_id(payload.get("chainId")),
            stale_treasury_ids=_parse_ids(payload.get("staleTreasuryIds")),
        )


@dataclass(frozen=True)
class ReconcileResult:
    chain_id: int | float
    owner_address: str
    scanned: int
    deleted: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "ownerAddress": self.owner_address,
            "scanned": self.scanned,
            "deleted": self.deleted,
        }


def _parse_owner(value: Any) -> str:
    try:
        return normalize_address(value, field="ownerAddress")
    except ValidationError:
        raise ValidationError("Invalid ownerAddress") from None


def _parse_chain_id(value: Any) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Invalid chainId")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError("Invalid chainId")
        if value.is_integer():
            return int(value)
    return value


def _parse_ids(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise ValidationError("staleTreasuryIds must be an array")
    ids: list[str] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise ValidationError("staleTreasuryIds must contain strings")
        text = str(item).strip()
        if text:
            ids.append(text)
    return tuple(ids)


def reconcile_stale_treasuries(
    *,
    db: LedgerDatabase,
    owner_address: str,
    chain_id: int | float,
    stale_treasury_ids: tuple[str, ...] | list[str],
) -> ReconcileResult:
    """Delete the candidates that belong to ``owner_address`` on ``chain_id``.

    Ownership and chain are re-checked inside the delete statement, so ids
    belonging to another owner or chain are silently left in place.
    """
    request = ReconcileRequest.from_payload(
        {"ownerAddress": owner_address, "chainId": chain_id, "staleTreasuryIds": list(stale_treasury_ids)}
    )
    deleted = delete_owned_treasuries(
        db,
        owner_address=request.owner_address,
        chain_id=request.chain_id,
        treasury_ids=request.stale_treasury_ids,
    )
    if deleted:
        logger.info(
            "Deleted %s stale treasuries for owner %s on chain %s: %s",
            len(deleted),
            request.owner_address,
            request.chain_id,
            ", ".join(deleted),
        )
    skipped = len(request.stale_treasury_ids) - len(deleted)
    if skipped > 0:
        logger.info(
            "Left %s candidate(s) in place for owner %s on chain %s (not owned or not registered)",
            skipped,
            request.owner_address,
            request.chain_id,
        )
    return ReconcileResult(
        chain_id=request.chain_id,
        owner_address=request.owner_address,
        scanned=len(request.stale_treasury_ids),
        deleted=len(deleted),
    )
