"""
GlobalConnect — models/balance.py
─────────────────────────────────────────────────────────────────
Balances + balance ledger table definitions + dataclasses.
No logic here, only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
# owner_id is a user id OR an enterprise id (shared pool).
# Amounts are INTEGER units of 1/10000 (see core/money.py).
BALANCES_TABLE = """
    CREATE TABLE IF NOT EXISTS balances (
        owner_id     TEXT PRIMARY KEY,
        amount_units INTEGER NOT NULL DEFAULT 0,
        currency     TEXT NOT NULL DEFAULT 'USD',
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    );
"""

BALANCE_LEDGER_TABLE = """
    CREATE TABLE IF NOT EXISTS balance_ledger (
        id                  TEXT PRIMARY KEY,
        owner_id            TEXT NOT NULL,
        delta_units         INTEGER NOT NULL,
        reason              TEXT NOT NULL,
        ref_id              TEXT,
        balance_after_units INTEGER NOT NULL,
        created_at          TEXT NOT NULL
    );

    -- Unique ref_id prevents the same event moving money twice
    CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_ref_id
        ON balance_ledger(ref_id)
        WHERE ref_id IS NOT NULL;

    CREATE INDEX IF NOT EXISTS idx_ledger_owner
        ON balance_ledger(owner_id, created_at DESC);
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class Balance:
    owner_id:   str
    amount:     Decimal
    currency:   str
    updated_at: str


@dataclass
class LedgerEntry:
    id:            str
    owner_id:      str
    delta:         Decimal
    reason:        str
    ref_id:        Optional[str]
    balance_after: Decimal
    created_at:    str

    @property
    def is_credit(self) -> bool:
        return self.delta > 0

    @property
    def is_debit(self) -> bool:
        return self.delta < 0
