"""Treasury transaction ledger model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    desc,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import ledger_event_type_enum
from backend.db.models.treasury import ADDRESS_PATTERN_SQL

logger = logging.getLogger(__name__)


class TreasuryTransaction(Base):
    """Append-only decoded on-chain events attributed to a treasury."""

    __tablename__ = "treasury_transaction"
    __table_args__ = (
        PrimaryKeyConstraint("transaction_id", name="pk_treasury_transaction"),
        UniqueConstraint(
            "treasury_id",
            "tx_hash",
            "event_type",
            "log_index",
            name="uq_treasury_transaction_idempotency",
        ),
        ForeignKeyConstraint(
            ["treasury_id"],
            ["treasury.treasury_id"],
            name="fk_treasury_transaction_treasury",
            onupdate="RESTRICT",
            ondelete="CASCADE",
        ),
        CheckConstraint("tx_hash ~ '^0x[0-9a-f]{64}$'", name="ck_treasury_transaction_tx_hash_canonical"),
        CheckConstraint(
            f"from_address ~ {ADDRESS_PATTERN_SQL}",
            name="ck_treasury_transaction_from_canonical",
        ),
        CheckConstraint(
            f"to_address ~ {ADDRESS_PATTERN_SQL}",
            name="ck_treasury_transaction_to_canonical",
        ),
        CheckConstraint("amount ~ '^[0-9]+$'", name="ck_treasury_transaction_amount_digits"),
        CheckConstraint("block_number >= 0", name="ck_treasury_transaction_block_nonneg"),
        CheckConstraint("log_index >= 0", name="ck_treasury_transaction_log_index_nonneg"),
        CheckConstraint(
            "(event_type IN ('spend', 'migration')) = (period_index IS NOT NULL)",
            name="ck_treasury_transaction_period_index_presence",
        ),
        Index(
            "idx_treasury_transaction_treasury_block_desc",
            "treasury_id",
            desc("block_number"),
        ),
        Index("idx_treasury_transaction_block_ts_desc", desc("block_timestamp")),
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        server_default=text("gen_random_uuid()"),
    )
    treasury_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    tx_hash: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(ledger_event_type_enum, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    from_address: Mapped[str] = mapped_column(Text, nullable=False)
    to_address: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[str] = mapped_column(Text, nullable=False)
    period_index: Mapped[int | None] = mapped_column(Integer)
    created_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
