"""SQL operations over the treasury ledger store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Mapping, Sequence

from backend.db.enums import PERIOD_INDEXED_EVENT_TYPES, LedgerEventType
from ledger_sync.common import (
    INT4_MAX,
    INT8_MAX,
    LedgerDatabase,
    normalize_address,
    normalize_tx_hash,
    utc_from_epoch,
    utc_iso,
)
from ledger_sync.errors import ResolutionError, ValidationError

logger = logging.getLogger(__name__)

_EVENT_TYPE_ALIASES: Mapping[str, LedgerEventType] = {"fund": LedgerEventType.DEPOSIT}

_TREASURY_COLUMNS = """
    treasury_id::text AS treasury_id, chain_id, address, owner_address, token_address,
    max_spend_per_period, period_seconds, expiry_timestamp, migration_target,
    name, description, deployment_tx_hash, created_at_utc, updated_at_utc
"""

_TRANSACTION_COLUMNS = """
    tx.transaction_id::text AS transaction_id, tx.treasury_id::text AS treasury_id,
    tx.tx_hash, tx.event_type::text AS event_type, tx.log_index, tx.block_number,
    tx.block_timestamp, tx.from_address, tx.to_address, tx.amount, tx.period_index
"""


@dataclass(frozen=True)
class ResolvedTreasury:
    treasury_id: str
    address: str
    token_address: str


@dataclass(frozen=True)
class LedgerEntry:
    """One ledger row keyed by (treasury, tx_hash, event_type, log_index)."""

    event_type: LedgerEventType
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: datetime
    from_address: str
    to_address: str
    amount: str
    period_index: int | None

    def as_payload(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "block_timestamp": utc_iso(self.block_timestamp),
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": self.amount,
            "period_index": self.period_index,
        }


@dataclass(frozen=True)
class TreasuryRegistration:
    """Validated registration of an already deployed treasury contract."""

    chain_id: int
    address: str
    owner_address: str
    token_address: str
    max_spend_per_period: str
    period_seconds: int
    migration_target: str
    expiry_timestamp: int | None = None
    name: str | None = None
    description: str | None = None
    deployment_tx_hash: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TreasuryRegistration":
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be an object")
        deployment_tx_hash = payload.get("deploymentTxHash")
        return cls(
            chain_id=_require_int(payload.get("chainId"), "chainId", minimum=1, maximum=INT4_MAX),
            address=normalize_address(payload.get("address"), field="address"),
            owner_address=normalize_address(payload.get("ownerAddress"), field="ownerAddress"),
            token_address=normalize_address(payload.get("tokenAddress"), field="tokenAddress"),
            max_spend_per_period=_require_uint_string(payload.get("maxSpendPerPeriod"), "maxSpendPerPeriod"),
            period_seconds=_require_int(payload.get("periodSeconds"), "periodSeconds", minimum=1, maximum=INT4_MAX),
            migration_target=normalize_address(payload.get("migrationTarget"), field="migrationTarget"),
            expiry_timestamp=_optional_int(payload.get("expiryTimestamp"), "expiryTimestamp"),
            name=_optional_text(payload.get("name"), "name"),
            description=_optional_text(payload.get("description"), "description"),
            deployment_tx_hash=(
                normalize_tx_hash(deployment_tx_hash, field="deploymentTxHash")
                if deployment_tx_hash is not None
                else None
            ),
        )


def _require_int(value: Any, field: str, *, minimum: int = 0, maximum: int = INT8_MAX) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if value > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return value


def _optional_int(value: Any, field: str, *, maximum: int = INT8_MAX) -> int | None:
    if value is None:
        return None
    return _require_int(value, field, maximum=maximum)


def _optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value


def _require_uint_string(value: Any, field: str) -> str:
    """Accept a non-negative integer or its decimal string; never a float."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a non-negative integer")
    if isinstance(value, int) and value >= 0:
        return str(value)
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return str(int(value))
    raise ValidationError(f"{field} must be a non-negative integer")


def _parse_event_type(value: Any) -> LedgerEventType:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _EVENT_TYPE_ALIASES:
            return _EVENT_TYPE_ALIASES[normalized]
        for member in LedgerEventType:
            if member.value == normalized:
                return member
    raise ValidationError(f"Unknown eventType: {value!r}")


def _parse_block_timestamp(value: Any) -> datetime:
    if isinstance(value, bool):
        raise ValidationError("blockTimestamp must be epoch seconds or an ISO-8601 timestamp")
    if isinstance(value, int):
        try:
            return utc_from_epoch(value)
        except ValueError as exc:
            raise ValidationError("blockTimestamp is out of range") from exc
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError("blockTimestamp must be an ISO-8601 timestamp") from exc
        if parsed.tzinfo is None:
            raise ValidationError("blockTimestamp must include a timezone offset")
        return parsed.astimezone(timezone.utc)
    raise ValidationError("blockTimestamp must be epoch seconds or an ISO-8601 timestamp")


def ledger_entry_from_payload(payload: Mapping[str, Any]) -> LedgerEntry:
    """Validate a direct-write payload for a just-confirmed transaction."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be an object")
    event_type = _parse_event_type(payload.get("eventType"))
    period_index = _optional_int(payload.get("periodIndex"), "periodIndex", maximum=INT4_MAX)
    if event_type in PERIOD_INDEXED_EVENT_TYPES and period_index is None:
        raise ValidationError(f"periodIndex is required for {event_type.value}")
    if event_type not in PERIOD_INDEXED_EVENT_TYPES and period_index is not None:
        raise ValidationError(f"periodIndex is not allowed for {event_type.value}")
    return LedgerEntry(
        event_type=event_type,
        tx_hash=normalize_tx_hash(payload.get("txHash"), field="txHash"),
        log_index=_require_int(payload.get("logIndex"), "logIndex", maximum=INT4_MAX),
        block_number=_require_int(payload.get("blockNumber"), "blockNumber"),
        block_timestamp=_parse_block_timestamp(payload.get("blockTimestamp")),
        from_address=normalize_address(payload.get("fromAddress"), field="fromAddress"),
        to_address=normalize_address(payload.get("toAddress"), field="toAddress"),
        amount=_require_uint_string(payload.get("amount"), "amount"),
        period_index=period_index,
    )


def resolve_treasury(db: LedgerDatabase, treasury_id: str) -> ResolvedTreasury:
    """Load the treasury's canonical id, address and token, or fail the run."""
    row = db.fetch_one(
        """
        SELECT treasury_id::text AS treasury_id, address, token_address
        FROM treasury
        WHERE treasury_id::text = lower(:treasury_id)
        """,
        {"treasury_id": treasury_id},
    )
    if row is None:
        raise ResolutionError("Failed to resolve treasury token_address", details=f"Unknown treasury {treasury_id}")
    token_address = row.get("token_address")
    if not token_address:
        raise ResolutionError("Failed to resolve treasury token_address", details="Missing token_address")
    return ResolvedTreasury(
        treasury_id=str(row["treasury_id"]),
        address=str(row["address"]).lower(),
        token_address=str(token_address).lower(),
    )


def latest_recorded_block(db: LedgerDatabase, treasury_id: str) -> int | None:
    row = db.fetch_one(
        """
        SELECT MAX(block_number) AS max_block_number
        FROM treasury_transaction
        WHERE treasury_id = :treasury_id
        """,
        {"treasury_id": treasury_id},
    )
    if row is None or row.get("max_block_number") is None:
        return None
    return int(row["max_block_number"])


def insert_ledger_entry(db: LedgerDatabase, *, treasury_id: str, entry: LedgerEntry) -> bool:
    """Insert one entry; return False when its identity tuple already exists."""
    row = db.fetch_one(
        """
        INSERT INTO treasury_transaction (
            treasury_id, tx_hash, event_type, log_index,
            block_number, block_timestamp,
            from_address, to_address, amount, period_index
        ) VALUES (
            :treasury_id, :tx_hash, :event_type, :log_index,
            :block_number, :block_timestamp,
            :from_address, :to_address, :amount, :period_index
        )
        ON CONFLICT (treasury_id, tx_hash, event_type, log_index) DO NOTHING
        RETURNING transaction_id::text AS transaction_id
        """,
        {
            "treasury_id": treasury_id,
            "tx_hash": entry.tx_hash,
            "event_type": entry.event_type.value,
            "log_index": entry.log_index,
            "block_number": entry.block_number,
            "block_timestamp": entry.block_timestamp,
            "from_address": entry.from_address,
            "to_address": entry.to_address,
            "amount": entry.amount,
            "period_index": entry.period_index,
        },
    )
    return row is not None


def record_ledger_entry(db: LedgerDatabase, treasury_id: str, payload: Mapping[str, Any]) -> tuple[LedgerEntry, bool]:
    """Direct-write path for a transaction the dashboard just saw confirmed."""
    entry = ledger_entry_from_payload(payload)
    treasury = resolve_treasury(db, treasury_id)
    inserted = insert_ledger_entry(db, treasury_id=treasury.treasury_id, entry=entry)
    logger.info(
        "Recorded %s %s:%s for treasury %s (inserted=%s)",
        entry.event_type.value,
        entry.tx_hash,
        entry.log_index,
        treasury.treasury_id,
        inserted,
    )
    return entry, inserted


def register_treasury(db: LedgerDatabase, registration: TreasuryRegistration) -> tuple[Mapping[str, Any], bool]:
    """Insert a treasury unless (chain_id, address) exists; return the stored row."""
    created = db.fetch_one(
        """
        INSERT INTO treasury (
            chain_id, address, owner_address, token_address,
            max_spend_per_period, period_seconds, expiry_timestamp, migration_target,
            name, description, deployment_tx_hash
        ) VALUES (
            :chain_id, :address, :owner_address, :token_address,
            :max_spend_per_period, :period_seconds, :expiry_timestamp, :migration_target,
            :name, :description, :deployment_tx_hash
        )
        ON CONFLICT (chain_id, address) DO NOTHING
        RETURNING treasury_id::text AS treasury_id
        """,
        {
            "chain_id": registration.chain_id,
            "address": registration.address,
            "owner_address": registration.owner_address,
            "token_address": registration.token_address,
            "max_spend_per_period": registration.max_spend_per_period,
            "period_seconds": registration.period_seconds,
            "expiry_timestamp": registration.expiry_timestamp,
            "migration_target": registration.migration_target,
            "name": registration.name,
            "description": registration.description,
            "deployment_tx_hash": registration.deployment_tx_hash,
        },
    )
    row = db.fetch_one(
        f"""
        SELECT {_TREASURY_COLUMNS}
        FROM treasury
        WHERE chain_id = :chain_id
          AND address = :address
        """,
        {"chain_id": registration.chain_id, "address": registration.address},
    )
    if row is None:
        raise ResolutionError("Failed to create or load treasury record", details=registration.address)
    if created is not None:
        logger.info("Registered treasury %s on chain %s", registration.address, registration.chain_id)
    return row, created is not None


def list_treasuries(db: LedgerDatabase, *, owner_address: str, chain_id: Any) -> Sequence[Mapping[str, Any]]:
    return db.fetch_all(
        f"""
        SELECT {_TREASURY_COLUMNS}
        FROM treasury
        WHERE owner_address = :owner_address
          AND chain_id = :chain_id
        ORDER BY created_at_utc DESC, treasury_id
        """,
        {"owner_address": owner_address.lower(), "chain_id": chain_id},
    )


def list_treasury_transactions(db: LedgerDatabase, treasury_id: str, *, limit: int) -> Sequence[Mapping[str, Any]]:
    return db.fetch_all(
        f"""
        SELECT {_TRANSACTION_COLUMNS}
        FROM treasury_transaction AS tx
        WHERE tx.treasury_id::text = lower(:treasury_id)
        ORDER BY tx.block_timestamp DESC, tx.block_number DESC, tx.log_index DESC
        LIMIT :limit
        """,
        {"treasury_id": treasury_id, "limit": limit},
    )


def list_owner_transactions(db: LedgerDatabase, owner_address: str, *, limit: int) -> Sequence[Mapping[str, Any]]:
    return db.fetch_all(
        f"""
        SELECT {_TRANSACTION_COLUMNS}, t.address AS treasury_address, t.name AS treasury_name
        FROM treasury_transaction AS tx
        JOIN treasury AS t ON t.treasury_id = tx.treasury_id
        WHERE t.owner_address = :owner_address
        ORDER BY tx.block_timestamp DESC, tx.block_number DESC, tx.log_index DESC
        LIMIT :limit
        """,
        {"owner_address": owner_address.lower(), "limit": limit},
    )


def count_treasury_transactions(
    db: LedgerDatabase,
    treasury_id: str,
    *,
    event_type: LedgerEventType | None = None,
) -> int:
    row = db.fetch_one(
        """
        SELECT COUNT(*) AS entry_count
        FROM treasury_transaction
        WHERE treasury_id::text = lower(:treasury_id)
          AND (CAST(:event_type AS text) IS NULL OR event_type::text = :event_type)
        """,
        {"treasury_id": treasury_id, "event_type": event_type.value if event_type is not None else None},
    )
    return int(row["entry_count"]) if row is not None else 0


def treasury_has_transactions(db: LedgerDatabase, treasury_id: str) -> bool:
    return count_treasury_transactions(db, treasury_id) > 0


def treasury_has_migration(db: LedgerDatabase, treasury_id: str) -> bool:
    return count_treasury_transactions(db, treasury_id, event_type=LedgerEventType.MIGRATION) > 0


def treasury_activity(db: LedgerDatabase, treasury_id: str) -> dict[str, Any]:
    """Flags the dashboard uses to gate withdraw and migrate actions."""
    return {
        "treasury_id": treasury_id.lower(),
        "has_transactions": treasury_has_transactions(db, treasury_id),
        "has_migration": treasury_has_migration(db, treasury_id),
    }


def whitelist_entries_from_payload(payload: Any) -> list[tuple[str, str | None]]:
    """Validate ``{"addresses": [{"address": ..., "label": ...}, ...]}``."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be an object")
    addresses = payload.get("addresses")
    if not isinstance(addresses, list) or not addresses:
        raise ValidationError("addresses must be a non-empty array")
    entries: list[tuple[str, str | None]] = []
    for item in addresses:
        if not isinstance(item, Mapping):
            raise ValidationError("addresses must contain objects")
        entries.append(
            (
                normalize_address(item.get("address"), field="address"),
                _optional_text(item.get("label"), "label"),
            )
        )
    return entries


def list_whitelist(db: LedgerDatabase, treasury_id: str) -> Sequence[Mapping[str, Any]]:
    return db.fetch_all(
        """
        SELECT whitelist_id, treasury_id::text AS treasury_id, address, label, created_at_utc
        FROM treasury_whitelist
        WHERE treasury_id::text = lower(:treasury_id)
        ORDER BY created_at_utc, whitelist_id
        """,
        {"treasury_id": treasury_id},
    )


def record_whitelist(db: LedgerDatabase, treasury_id: str, payload: Any) -> int:
    """Validate, resolve the treasury, then insert the addresses; returns how many were new."""
    entries = whitelist_entries_from_payload(payload)
    treasury = resolve_treasury(db, treasury_id)
    inserted = add_whitelist_addresses(db, treasury.treasury_id, entries)
    logger.info("Whitelisted %s of %s addresses for treasury %s", inserted, len(entries), treasury.treasury_id)
    return inserted


def add_whitelist_addresses(
    db: LedgerDatabase,
    treasury_id: str,
    entries: Sequence[tuple[str, str | None]],
) -> int:
    """Insert (address, label) pairs, ignoring ones already whitelisted."""
    inserted = 0
    for address, label in entries:
        row = db.fetch_one(
            """
            INSERT INTO treasury_whitelist (treasury_id, address, label)
            VALUES (:treasury_id, :address, :label)
            ON CONFLICT (treasury_id, address) DO NOTHING
            RETURNING whitelist_id
            """,
            {"treasury_id": treasury_id, "address": normalize_address(address), "label": label},
        )
        if row is not None:
            inserted += 1
    return inserted


def delete_owned_treasuries(
    db: LedgerDatabase,
    *,
    owner_address: str,
    chain_id: Any,
    treasury_ids: Sequence[str],
) -> list[str]:
    """Delete only the listed treasuries that match owner and chain; return deleted ids."""
    if not treasury_ids:
        return []
    rows = db.fetch_all(
        """
        DELETE FROM treasury
        WHERE owner_address = :owner_address
          AND chain_id = :chain_id
          AND treasury_id::text = ANY(:treasury_ids)
        RETURNING treasury_id::text AS treasury_id
        """,
        {
            "owner_address": owner_address,
            "chain_id": chain_id,
            "treasury_ids": [str(value).lower() for value in treasury_ids],
        },
    )
    return sorted(str(row["treasury_id"]) for row in rows)
