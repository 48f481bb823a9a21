"""Topic table and fixed-layout decoders for treasury and token logs.

Three event shapes are recognised, each bound to one topic hash:

``Spend(address indexed operator, address indexed to, uint256 amount, uint256 periodIndex)``
``Migration(address indexed operator, address indexed to, uint256 amount, uint256 periodIndex, uint256 remainingBalance)``
``Transfer(address indexed from, address indexed to, uint256 value)``

Non-indexed fields are consecutive 32-byte big-endian words, so every
layout is a fixed word count. The topic hashes are hardcoded and
authoritative; nothing here derives them at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Sequence

from backend.db.enums import LedgerEventType
from ledger_sync.common import INT4_MAX, INT8_MAX, address_topic, normalize_tx_hash, parse_hex_quantity
from ledger_sync.errors import DecodeError, ValidationError


EVENT_TOPICS: Mapping[str, str] = MappingProxyType(
    {
        "Spend": "0x5d1d2caf5783ceec0d7e40fcc32a727c30e07e1ef8e7c10f4c8b2efd3f2a4a7d",
        "Migration": "0x8b80bd19aea7b735bc6d75db8d6adbe18b28c30d62b3c1c8fa5238bd88c6d2f4",
        "Transfer": "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
    }
)

WORD_HEX_CHARS = 64

_TOPIC_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_HEX_BODY_RE = re.compile(r"^[0-9a-fA-F]*$")


@dataclass(frozen=True)
class DecodedEvent:
    """Fields shared by every decoded ledger event."""

    tx_hash: str
    block_number: int
    log_index: int
    from_address: str
    to_address: str
    amount: int

    event_type: ClassVar[LedgerEventType]
    word_count: ClassVar[int]

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class SpendEvent(DecodedEvent):
    """Policy-governed outbound spend."""

    period_index: int

    event_type: ClassVar[LedgerEventType] = LedgerEventType.SPEND
    word_count: ClassVar[int] = 2


@dataclass(frozen=True)
class MigrationEvent(DecodedEvent):
    """Full-balance migration to the configured target."""

    period_index: int
    remaining_balance: int

    event_type: ClassVar[LedgerEventType] = LedgerEventType.MIGRATION
    word_count: ClassVar[int] = 3


@dataclass(frozen=True)
class DepositEvent(DecodedEvent):
    """Inbound token transfer into the treasury."""

    period_index: ClassVar[None] = None
    event_type: ClassVar[LedgerEventType] = LedgerEventType.DEPOSIT
    word_count: ClassVar[int] = 1


POLICY_EVENT_LAYOUTS: Mapping[str, type[DecodedEvent]] = MappingProxyType(
    {
        EVENT_TOPICS["Spend"]: SpendEvent,
        EVENT_TOPICS["Migration"]: MigrationEvent,
    }
)

TOKEN_EVENT_LAYOUTS: Mapping[str, type[DecodedEvent]] = MappingProxyType(
    {
        EVENT_TOPICS["Transfer"]: DepositEvent,
    }
)


def policy_topic_filter() -> list[Any]:
    """Topic filter selecting Spend or Migration logs."""
    return [[EVENT_TOPICS["Spend"], EVENT_TOPICS["Migration"]]]


def inbound_transfer_topic_filter(recipient: str) -> list[Any]:
    """Topic filter selecting Transfer logs whose indexed recipient is ``recipient``."""
    return [EVENT_TOPICS["Transfer"], None, address_topic(recipient)]


def decode_address_topic(topic: Any) -> str:
    """Take the low 20 bytes of a 32-byte topic word as a lower-cased address."""
    if not isinstance(topic, str) or _TOPIC_RE.match(topic) is None:
        raise ValueError(f"topic is not a 32-byte word: {topic!r}")
    return "0x" + topic[-40:].lower()


def decode_words(data: Any, word_count: int) -> tuple[int, ...]:
    """Split a hex payload into exactly ``word_count`` unsigned 256-bit integers."""
    if not isinstance(data, str) or not data.startswith(("0x", "0X")):
        raise ValueError("log data is not 0x-prefixed hex")
    body = data[2:]
    if _HEX_BODY_RE.match(body) is None:
        raise ValueError("log data contains non-hex characters")
    expected = word_count * WORD_HEX_CHARS
    if len(body) != expected:
        raise ValueError(f"log data has {len(body) // 2} bytes, expected {expected // 2}")
    return tuple(
        int(body[offset : offset + WORD_HEX_CHARS], 16)
        for offset in range(0, expected, WORD_HEX_CHARS)
    )


def _log_identity(log: Mapping[str, Any]) -> tuple[str | None, int | None]:
    tx_hash = log.get("transactionHash")
    try:
        log_index = parse_hex_quantity(log.get("logIndex"))
    except ValueError:
        log_index = None
    return (tx_hash if isinstance(tx_hash, str) else None), log_index


def decode_log(
    log: Mapping[str, Any],
    layouts: Mapping[str, type[DecodedEvent]],
) -> DecodedEvent | None:
    """Classify a raw log by topic0 and decode it with that event's fixed layout.

    Returns ``None`` when topic0 is not in ``layouts``. Raises
    :class:`DecodeError` when the log is classified but its shape does not
    fit the layout.
    """
    tx_ref, index_ref = _log_identity(log)
    topics = log.get("topics")
    if not isinstance(topics, Sequence) or isinstance(topics, str) or not topics:
        raise DecodeError("log has no topics", tx_hash=tx_ref, log_index=index_ref)

    topic0 = topics[0].lower() if isinstance(topics[0], str) else None
    event_cls = layouts.get(topic0) if topic0 is not None else None
    if event_cls is None:
        return None

    if len(topics) < 3:
        raise DecodeError(
            f"{event_cls.event_type.value} log needs 3 topics, got {len(topics)}",
            tx_hash=tx_ref,
            log_index=index_ref,
        )

    try:
        tx_hash = normalize_tx_hash(log.get("transactionHash"), field="transactionHash")
        block_number = parse_hex_quantity(log.get("blockNumber"))
        log_index = parse_hex_quantity(log.get("logIndex"))
        from_address = decode_address_topic(topics[1])
        to_address = decode_address_topic(topics[2])
        words = decode_words(log.get("data"), event_cls.word_count)
    except (ValueError, ValidationError) as exc:
        raise DecodeError(
            f"malformed {event_cls.event_type.value} log: {exc}",
            tx_hash=tx_ref,
            log_index=index_ref,
        ) from exc

    event = event_cls(tx_hash, block_number, log_index, from_address, to_address, *words)
    overflow = _column_overflow(event)
    if overflow is not None:
        raise DecodeError(
            f"{event_cls.event_type.value} log {overflow} exceeds the ledger column range",
            tx_hash=tx_ref,
            log_index=index_ref,
        )
    return event


def _column_overflow(event: DecodedEvent) -> str | None:
    if event.block_number > INT8_MAX:
        return "blockNumber"
    if event.log_index > INT4_MAX:
        return "logIndex"
    if event.period_index is not None and event.period_index > INT4_MAX:
        return "periodIndex"
    return None
