"""Shared helpers for the treasury ledger services."""

from __future__ import annotations

from datetime import datetime, timezone
import re
from typing import Any, Mapping, Optional, Protocol, Sequence

from ledger_sync.errors import ValidationError


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

# Column bounds: log_index and period_index are INTEGER, block_number is BIGINT.
INT4_MAX = 2**31 - 1
INT8_MAX = 2**63 - 1


class LedgerDatabase(Protocol):
    """Minimal DB protocol used by the ledger services."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch rows."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute mutation statement."""


def is_address(value: Any) -> bool:
    return isinstance(value, str) and ADDRESS_RE.match(value) is not None


def normalize_address(value: Any, *, field: str = "address") -> str:
    """Validate a 40-hex-digit address and return its lower-cased canonical form."""
    if not is_address(value):
        raise ValidationError(f"Invalid {field} format")
    return value.lower()


def normalize_tx_hash(value: Any, *, field: str = "tx_hash") -> str:
    if not isinstance(value, str) or TX_HASH_RE.match(value) is None:
        raise ValidationError(f"Invalid {field} format")
    return value.lower()


def to_hex_quantity(value: int) -> str:
    """Encode a non-negative integer as a JSON-RPC quantity."""
    if value < 0:
        raise ValueError(f"quantity must be non-negative: {value}")
    return hex(value)


def parse_hex_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not a hex quantity: {value!r}")
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise ValueError(f"not a hex quantity: {value!r}")
    return int(value, 16)


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic word."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def utc_iso(ts: datetime) -> str:
    """Normalize timestamp to UTC RFC3339 string."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_from_epoch(seconds: int) -> datetime:
    """Convert epoch seconds to an aware UTC datetime; ValueError when out of range."""
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError(f"epoch seconds out of range: {seconds}") from exc
