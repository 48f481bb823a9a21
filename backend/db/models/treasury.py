"""Tracked treasury and whitelist model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKeyConstraint,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)

ADDRESS_PATTERN_SQL = "'^0x[0-9a-f]{40}$'"


class Treasury(Base):
    """Registered policy contract mirrored from chain.

    Policy parameters are a display copy; the contract is authoritative.
    """

    __tablename__ = "treasury"
    __table_args__ = (
        PrimaryKeyConstraint("treasury_id", name="pk_treasury"),
        UniqueConstraint("chain_id", "address", name="uq_treasury_chain_address"),
        CheckConstraint(f"address ~ {ADDRESS_PATTERN_SQL}", name="ck_treasury_address_canonical"),
        CheckConstraint(f"owner_address ~ {ADDRESS_PATTERN_SQL}", name="ck_treasury_owner_canonical"),
        CheckConstraint(f"token_address ~ {ADDRESS_PATTERN_SQL}", name="ck_treasury_token_canonical"),
        CheckConstraint(
            f"migration_target ~ {ADDRESS_PATTERN_SQL}",
            name="ck_treasury_migration_target_canonical",
        ),
        CheckConstraint("max_spend_per_period ~ '^[0-9]+$'", name="ck_treasury_max_spend_digits"),
        CheckConstraint("period_seconds > 0", name="ck_treasury_period_seconds_pos"),
        Index("idx_treasury_owner_chain", "owner_address", "chain_id"),
    )

    treasury_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        server_default=text("gen_random_uuid()"),
    )
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    address: Mapped[str] = mapped_column(Text, nullable=False)
    owner_address: Mapped[str] = mapped_column(Text, nullable=False)
    token_address: Mapped[str] = mapped_column(Text, nullable=False)
    max_spend_per_period: Mapped[str] = mapped_column(Text, nullable=False)
    period_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    expiry_timestamp: Mapped[int | None] = mapped_column(BigInteger)
    migration_target: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    deployment_tx_hash: Mapped[str | None] = mapped_column(Text)
    created_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    updated_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class TreasuryWhitelist(Base):
    """Recipient addresses allowed to receive spends from a treasury."""

    __tablename__ = "treasury_whitelist"
    __table_args__ = (
        PrimaryKeyConstraint("whitelist_id", name="pk_treasury_whitelist"),
        UniqueConstraint("treasury_id", "address", name="uq_treasury_whitelist_treasury_address"),
        ForeignKeyConstraint(
            ["treasury_id"],
            ["treasury.treasury_id"],
            name="fk_treasury_whitelist_treasury",
            onupdate="RESTRICT",
            ondelete="CASCADE",
        ),
        CheckConstraint(f"address ~ {ADDRESS_PATTERN_SQL}", name="ck_treasury_whitelist_address_canonical"),
    )

    whitelist_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        nullable=False,
    )
    treasury_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str | None] = mapped_column(Text)
    created_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
