"""PostgreSQL native enum contracts for the treasury ledger schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class LedgerEventType(str, enum.Enum):
    """Closed set of ledger event kinds.

    ``DEPOSIT`` covers inbound token transfers (the dashboard labels them
    "fund"). ``WITHDRAW`` is only written by the direct-write path.
    """

    DEPOSIT = "deposit"
    SPEND = "spend"
    MIGRATION = "migration"
    WITHDRAW = "withdraw"


PERIOD_INDEXED_EVENT_TYPES: frozenset[LedgerEventType] = frozenset(
    {LedgerEventType.SPEND, LedgerEventType.MIGRATION}
)

ledger_event_type_enum = PGEnum(
    LedgerEventType,
    name="ledger_event_type_enum",
    values_callable=lambda members: [member.value for member in members],
)
