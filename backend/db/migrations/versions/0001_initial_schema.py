"""Initial schema for the treasury ledger store."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE ledger_event_type_enum AS ENUM ('deposit', 'spend', 'migration', 'withdraw');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE treasury (
        treasury_id UUID NOT NULL DEFAULT gen_random_uuid(),
        chain_id INTEGER NOT NULL DEFAULT 1,
        address TEXT NOT NULL,
        owner_address TEXT NOT NULL,
        token_address TEXT NOT NULL,
        max_spend_per_period TEXT NOT NULL,
        period_seconds INTEGER NOT NULL,
        expiry_timestamp BIGINT,
        migration_target TEXT NOT NULL,
        name TEXT,
        description TEXT,
        deployment_tx_hash TEXT,
        created_at_utc TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at_utc TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_treasury PRIMARY KEY (treasury_id),
        CONSTRAINT uq_treasury_chain_address UNIQUE (chain_id, address),
        CONSTRAINT ck_treasury_address_canonical CHECK (address ~ '^0x[0-9a-f]{40}$'),
        CONSTRAINT ck_treasury_owner_canonical CHECK (owner_address ~ '^0x[0-9a-f]{40}$'),
        CONSTRAINT ck_treasury_token_canonical CHECK (token_address ~ '^0x[0-9a-f]{40}$'),
        CONSTRAINT ck_treasury_migration_target_canonical CHECK (migration_target ~ '^0x[0-9a-f]{40}$'),
        CONSTRAINT ck_treasury_max_spend_digits CHECK (max_spend_per_period ~ '^[0-9]+$'),
        CONSTRAINT ck_treasury_period_seconds_pos CHECK (period_seconds > 0)
    );
    """,
    """
    CREATE TABLE treasury_transaction (
        transaction_id UUID NOT NULL DEFAULT gen_random_uuid(),
        treasury_id UUID NOT NULL,
        tx_hash TEXT NOT NULL,
        event_type ledger_event_type_enum NOT NULL,
        log_index INTEGER NOT NULL,
        block_number BIGINT NOT NULL,
        block_timestamp TIMESTAMPTZ NOT NULL,
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        period_index INTEGER,
        created_at_utc TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_treasury_transaction PRIMARY KEY (transaction_id),
        CONSTRAINT uq_treasury_transaction_idempotency UNIQUE (treasury_id, tx_hash, event_type, log_index),
        CONSTRAINT fk_treasury_transaction_treasury FOREIGN KEY (treasury_id)
            REFERENCES treasury (treasury_id) ON UPDATE RESTRICT ON DELETE CASCADE,
        CONSTRAINT ck_treasury_transaction_tx_hash_canonical CHECK (tx_hash ~ '^0x[0-9a-f]{64}$'),
        CONSTRAINT ck_treasury_transaction_from_canonical CHECK (from_address ~ '^0x[0-9a-f]{40}$'),
        CONSTRAINT ck_treasury_transaction_to_canonical CHECK (to_address ~ '^0x[0-9a-f]{40}$'),
        CONSTRAINT ck_treasury_transaction_amount_digits CHECK (amount ~ '^[0-9]+$'),
        CONSTRAINT ck_treasury_transaction_block_nonneg CHECK (block_number >= 0),
        CONSTRAINT ck_treasury_transaction_log_index_nonneg CHECK (log_index >= 0),
        CONSTRAINT ck_treasury_transaction_period_index_presence
            CHECK ((event_type IN ('spend', 'migration')) = (period_index IS NOT NULL))
    );
    """,
    """
    CREATE TABLE treasury_whitelist (
        whitelist_id BIGINT GENERATED ALWAYS AS IDENTITY,
        treasury_id UUID NOT NULL,
        address TEXT NOT NULL,
        label TEXT,
        created_at_utc TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_treasury_whitelist PRIMARY KEY (whitelist_id),
        CONSTRAINT uq_treasury_whitelist_treasury_address UNIQUE (treasury_id, address),
        CONSTRAINT fk_treasury_whitelist_treasury FOREIGN KEY (treasury_id)
            REFERENCES treasury (treasury_id) ON UPDATE RESTRICT ON DELETE CASCADE,
        CONSTRAINT ck_treasury_whitelist_address_canonical CHECK (address ~ '^0x[0-9a-f]{40}$')
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_treasury_owner_chain ON treasury USING btree (owner_address, chain_id);",
    "CREATE INDEX idx_treasury_transaction_treasury_block_desc ON treasury_transaction USING btree (treasury_id, block_number DESC);",
    "CREATE INDEX idx_treasury_transaction_block_ts_desc ON treasury_transaction USING btree (block_timestamp DESC);",
)

TRIGGER_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_touch_updated_at_utc()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        NEW.updated_at_utc = now();
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_treasury_touch_updated_at
    BEFORE UPDATE ON treasury
    FOR EACH ROW EXECUTE FUNCTION fn_touch_updated_at_utc();
    """,
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_treasury_transaction_append_only
    BEFORE UPDATE ON treasury_transaction
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(TRIGGER_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_treasury_transaction_append_only ON treasury_transaction;",
            "DROP TRIGGER IF EXISTS trg_treasury_touch_updated_at ON treasury;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP FUNCTION IF EXISTS fn_touch_updated_at_utc();",
            "DROP TABLE IF EXISTS treasury_whitelist;",
            "DROP TABLE IF EXISTS treasury_transaction;",
            "DROP TABLE IF EXISTS treasury;",
            "DROP TYPE IF EXISTS ledger_event_type_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
