"""Incremental treasury event ingestion."""

from __future__ import annotations

from concurrent import futures
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Mapping, Sequence

from ledger_sync.chain_rpc import ChainClient
from ledger_sync.common import LedgerDatabase, normalize_address, utc_iso
from ledger_sync.errors import DecodeError, LedgerSyncError, ValidationError
from ledger_sync.event_codec import (
    POLICY_EVENT_LAYOUTS,
    TOKEN_EVENT_LAYOUTS,
    DecodedEvent,
    decode_log,
    inbound_transfer_topic_filter,
    policy_topic_filter,
)
from ledger_sync.ledger_store import (
    LedgerEntry,
    insert_ledger_entry,
    latest_recorded_block,
    resolve_treasury,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncRequest:
    """Validated body of a sync invocation."""

    treasury_address: str
    treasury_id: str
    from_block: int | None = None
    rpc_url: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "SyncRequest":
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be an object")
        treasury_address = normalize_address(payload.get("treasuryAddress"), field="treasuryAddress")

        treasury_id = payload.get("treasuryId")
        if not isinstance(treasury_id, str) or not treasury_id.strip():
            raise ValidationError("Invalid treasuryId")

        from_block = payload.get("fromBlock")
        if from_block is not None:
            if isinstance(from_block, bool) or not isinstance(from_block, int) or from_block < 0:
                raise ValidationError("fromBlock must be a non-negative integer")

        rpc_url = payload.get("rpcUrl")
        if rpc_url is not None and (not isinstance(rpc_url, str) or not rpc_url.strip()):
            raise ValidationError("rpcUrl must be a non-empty string")

        return cls(
            treasury_address=treasury_address,
            treasury_id=treasury_id.strip(),
            from_block=from_block,
            rpc_url=rpc_url.strip() if rpc_url is not None else None,
        )


@dataclass(frozen=True)
class TimestampFailure:
    block_number: int
    tx_hash: str
    log_index: int
    event_type: str
    error: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
            "logIndex": self.log_index,
            "eventType": self.event_type,
            "error": self.error,
        }


@dataclass(frozen=True)
class DecodeFailure:
    source: str
    tx_hash: str | None
    log_index: int | None
    error: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "txHash": self.tx_hash,
            "logIndex": self.log_index,
            "error": self.error,
        }


@dataclass(frozen=True)
class IngestionResult:
    """Summary of one ingestion run for a single treasury."""

    events: tuple[LedgerEntry, ...]
    events_processed: int
    synced_from: int
    synced_to: int
    timestamp_failures: tuple[TimestampFailure, ...] = ()
    decode_failures: tuple[DecodeFailure, ...] = ()
    retry_from_block: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "syncedFrom": self.synced_from,
            "syncedTo": self.synced_to,
            "eventsProcessed": self.events_processed,
            "events": [_entry_payload(entry) for entry in self.events],
            "errors": [failure.as_payload() for failure in self.timestamp_failures],
            "decodeErrors": [failure.as_payload() for failure in self.decode_failures],
            "retryFromBlock": self.retry_from_block,
        }


def _entry_payload(entry: LedgerEntry) -> dict[str, Any]:
    return {
        "eventType": entry.event_type.value,
        "txHash": entry.tx_hash,
        "logIndex": entry.log_index,
        "fromAddress": entry.from_address,
        "toAddress": entry.to_address,
        "amount": entry.amount,
        "periodIndex": entry.period_index,
        "blockNumber": entry.block_number,
        "blockTimestamp": utc_iso(entry.block_timestamp),
    }


def ledger_entry_from_event(event: DecodedEvent, block_timestamp: datetime) -> LedgerEntry:
    return LedgerEntry(
        event_type=event.event_type,
        tx_hash=event.tx_hash,
        log_index=event.log_index,
        block_number=event.block_number,
        block_timestamp=block_timestamp,
        from_address=event.from_address,
        to_address=event.to_address,
        amount=str(event.amount),
        period_index=event.period_index,
    )


def _decode_logs(
    logs: Sequence[Mapping[str, Any]],
    layouts: Mapping[str, type[DecodedEvent]],
    *,
    source: str,
    failures: list[DecodeFailure],
) -> list[DecodedEvent]:
    decoded: list[DecodedEvent] = []
    for log in logs:
        try:
            event = decode_log(log, layouts)
        except DecodeError as exc:
            logger.warning("Skipping undecodable %s log %s:%s: %s", source, exc.tx_hash, exc.log_index, exc)
            failures.append(DecodeFailure(source=source, tx_hash=exc.tx_hash, log_index=exc.log_index, error=str(exc)))
            continue
        if event is None:
            logger.debug("Ignoring %s log with unknown topic0 %s", source, (log.get("topics") or [None])[0])
            continue
        decoded.append(event)
    return decoded


def fetch_block_timestamps(
    chain: ChainClient,
    block_numbers: Sequence[int],
    *,
    max_workers: int = 4,
) -> dict[int, datetime | LedgerSyncError]:
    """Look up each distinct block once; failures are kept per block."""
    distinct = sorted(set(block_numbers))
    resolved: dict[int, datetime | LedgerSyncError] = {}
    if not distinct:
        return resolved
    with futures.ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(distinct)))) as executor:
        pending = {executor.submit(chain.get_block_timestamp, block): block for block in distinct}
        for future in futures.as_completed(pending):
            block = pending[future]
            try:
                resolved[block] = future.result()
            except LedgerSyncError as exc:
                logger.warning("Block timestamp lookup failed for block %s: %s", block, exc)
                resolved[block] = exc
    return resolved


def run_event_ingestion(
    *,
    db: LedgerDatabase,
    chain: ChainClient,
    treasury_id: str,
    treasury_address: str,
    from_block: int | None = None,
    timestamp_workers: int = 4,
) -> IngestionResult:
    """Fetch, decode and idempotently record all new events for one treasury."""
    treasury = resolve_treasury(db, treasury_id)
    address = normalize_address(treasury_address, field="treasuryAddress")
    if address != treasury.address:
        logger.warning(
            "Treasury %s is registered at %s but sync was requested for %s",
            treasury.treasury_id,
            treasury.address,
            address,
        )

    if from_block is not None:
        lower = from_block
    else:
        latest = latest_recorded_block(db, treasury.treasury_id)
        lower = latest + 1 if latest is not None else 0
    upper = chain.block_number()

    if lower > upper:
        logger.info("Treasury %s already synced through block %s", treasury.treasury_id, upper)
        return IngestionResult(events=(), events_processed=0, synced_from=lower, synced_to=upper)

    policy_logs = chain.get_logs(
        address=address,
        from_block=lower,
        to_block=upper,
        topics=policy_topic_filter(),
    )
    token_logs = chain.get_logs(
        address=treasury.token_address,
        from_block=lower,
        to_block=upper,
        topics=inbound_transfer_topic_filter(address),
    )

    decode_failures: list[DecodeFailure] = []
    decoded = _decode_logs(policy_logs, POLICY_EVENT_LAYOUTS, source="policy", failures=decode_failures)
    decoded.extend(_decode_logs(token_logs, TOKEN_EVENT_LAYOUTS, source="token", failures=decode_failures))
    decoded.sort(key=lambda event: event.sort_key)

    timestamps = fetch_block_timestamps(
        chain,
        [event.block_number for event in decoded],
        max_workers=timestamp_workers,
    )

    inserted: list[LedgerEntry] = []
    timestamp_failures: list[TimestampFailure] = []
    for event in decoded:
        block_timestamp = timestamps[event.block_number]
        if isinstance(block_timestamp, LedgerSyncError):
            timestamp_failures.append(
                TimestampFailure(
                    block_number=event.block_number,
                    tx_hash=event.tx_hash,
                    log_index=event.log_index,
                    event_type=event.event_type.value,
                    error=str(block_timestamp),
                )
            )
            continue
        entry = ledger_entry_from_event(event, block_timestamp)
        if insert_ledger_entry(db, treasury_id=treasury.treasury_id, entry=entry):
            inserted.append(entry)

    retry_from_block = min((failure.block_number for failure in timestamp_failures), default=None)
    logger.info(
        "Synced treasury %s blocks %s-%s: decoded=%s inserted=%s timestamp_failures=%s decode_failures=%s",
        treasury.treasury_id,
        lower,
        upper,
        len(decoded),
        len(inserted),
        len(timestamp_failures),
        len(decode_failures),
    )
    return IngestionResult(
        events=tuple(inserted),
        events_processed=len(inserted),
        synced_from=lower,
        synced_to=upper,
        timestamp_failures=tuple(timestamp_failures),
        decode_failures=tuple(decode_failures),
        retry_from_block=retry_from_block,
    )
