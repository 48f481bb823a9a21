"""DB-backed integration tests for the ledger store against a migrated PostgreSQL schema."""

from __future__ import annotations

from typing import Any

import pytest

from ledger_sync.errors import TransportError
from ledger_sync.ledger_store import (
    TreasuryRegistration,
    add_whitelist_addresses,
    count_treasury_transactions,
    delete_owned_treasuries,
    latest_recorded_block,
    record_ledger_entry,
    register_treasury,
    resolve_treasury,
)
from tests.utils.ledger_fakes import OPERATOR, OWNER, RECIPIENT, TOKEN, tx_hash


_TREASURY_ADDRESS = "0x" + "7e" * 20


def _register(db: Any, *, address: str = _TREASURY_ADDRESS) -> str:
    registration = TreasuryRegistration.from_payload(
        {
            "chainId": 31337,
            "address": address,
            "ownerAddress": OWNER,
            "tokenAddress": TOKEN,
            "maxSpendPerPeriod": "1000000",
            "periodSeconds": 86400,
            "migrationTarget": OWNER,
            "name": "integration",
        }
    )
    row, _created = register_treasury(db, registration)
    return str(row["treasury_id"])


def _spend(block_number: int, log_index: int = 0) -> dict[str, Any]:
    return {
        "txHash": tx_hash(block_number),
        "eventType": "spend",
        "logIndex": log_index,
        "blockNumber": block_number,
        "blockTimestamp": 1_700_000_000 + block_number,
        "fromAddress": OPERATOR,
        "toAddress": RECIPIENT,
        "amount": "25",
        "periodIndex": 0,
    }


def test_register_is_idempotent_and_resolves_token(ledger_db: Any) -> None:
    treasury_id = _register(ledger_db)
    again = _register(ledger_db)

    assert again == treasury_id
    resolved = resolve_treasury(ledger_db, treasury_id.upper())
    assert resolved.token_address == TOKEN
    assert resolved.address == _TREASURY_ADDRESS


def test_ledger_insert_is_idempotent_and_cursor_advances(ledger_db: Any) -> None:
    treasury_id = _register(ledger_db)

    _, first = record_ledger_entry(ledger_db, treasury_id, _spend(12))
    _, duplicate = record_ledger_entry(ledger_db, treasury_id, _spend(12))
    _, sibling = record_ledger_entry(ledger_db, treasury_id, _spend(12, log_index=1))
    record_ledger_entry(ledger_db, treasury_id, _spend(30))

    assert (first, duplicate, sibling) == (True, False, True)
    assert count_treasury_transactions(ledger_db, treasury_id) == 3
    assert latest_recorded_block(ledger_db, treasury_id) == 30


def test_scoped_delete_cascades_to_children(ledger_db: Any) -> None:
    treasury_id = _register(ledger_db)
    record_ledger_entry(ledger_db, treasury_id, _spend(5))
    assert add_whitelist_addresses(ledger_db, treasury_id, [(RECIPIENT, "payee"), (RECIPIENT, "again")]) == 1

    untouched = delete_owned_treasuries(
        ledger_db,
        owner_address=OPERATOR,
        chain_id=31337,
        treasury_ids=[treasury_id],
    )
    deleted = delete_owned_treasuries(
        ledger_db,
        owner_address=OWNER,
        chain_id=31337,
        treasury_ids=[treasury_id, "not-a-uuid"],
    )

    assert untouched == []
    assert deleted == [treasury_id]
    assert count_treasury_transactions(ledger_db, treasury_id) == 0
    remaining = ledger_db.fetch_one(
        "SELECT COUNT(*) AS n FROM treasury_whitelist WHERE treasury_id::text = :treasury_id",
        {"treasury_id": treasury_id},
    )
    assert remaining is not None and int(remaining["n"]) == 0


def test_ledger_rows_reject_updates(ledger_db: Any, pg_conn: Any) -> None:
    treasury_id = _register(ledger_db)
    record_ledger_entry(ledger_db, treasury_id, _spend(7))

    with pytest.raises(TransportError):
        ledger_db.execute(
            "UPDATE treasury_transaction SET amount = '0' WHERE treasury_id::text = :treasury_id",
            {"treasury_id": treasury_id},
        )
    pg_conn.rollback()
