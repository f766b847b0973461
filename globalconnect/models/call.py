"""
GlobalConnect — models/call.py
─────────────────────────────────────────────────────────────────
Call ledger table definition + status enum + dataclasses.
No logic here, only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, FrozenSet
from enum import Enum


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class CallStatus(str, Enum):
    INITIATED   = "initiated"
    RINGING     = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    FAILED      = "failed"
    BUSY        = "busy"
    NO_ANSWER   = "no_answer"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[CallStatus] = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
})

# Allowed moves. Terminal statuses have no outgoing edges.
CALL_TRANSITIONS: Dict[CallStatus, FrozenSet[CallStatus]] = {
    CallStatus.INITIATED: frozenset({
        CallStatus.RINGING, CallStatus.IN_PROGRESS,
        CallStatus.COMPLETED, CallStatus.FAILED,
        CallStatus.BUSY, CallStatus.NO_ANSWER,
    }),
    CallStatus.RINGING: frozenset({
        CallStatus.IN_PROGRESS,
        CallStatus.COMPLETED, CallStatus.FAILED,
        CallStatus.BUSY, CallStatus.NO_ANSWER,
    }),
    CallStatus.IN_PROGRESS: frozenset({
        CallStatus.COMPLETED, CallStatus.FAILED,
    }),
    CallStatus.COMPLETED: frozenset(),
    CallStatus.FAILED:    frozenset(),
    CallStatus.BUSY:      frozenset(),
    CallStatus.NO_ANSWER: frozenset(),
}


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
CALLS_TABLE = """
    CREATE TABLE IF NOT EXISTS calls (
        id                      TEXT PRIMARY KEY,
        user_id                 TEXT NOT NULL,     -- who dialled
        owner_id                TEXT NOT NULL,     -- whose balance pays
        enterprise_id           TEXT,
        destination_number      TEXT NOT NULL,
        destination_country     TEXT NOT NULL,
        caller_id_type          TEXT NOT NULL DEFAULT 'public',
        caller_id_number        TEXT NOT NULL DEFAULT '',
        status                  TEXT NOT NULL DEFAULT 'initiated',
        sell_units              INTEGER NOT NULL,  -- rate pinned at initiation
        cost_units              INTEGER NOT NULL,
        started_at              TEXT NOT NULL,
        ended_at                TEXT,
        duration_seconds        INTEGER,
        billed_units            INTEGER,
        provider_cost_units     INTEGER,
        profit_units            INTEGER,
        provider_call_reference TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_calls_user
        ON calls(user_id, started_at DESC);

    CREATE INDEX IF NOT EXISTS idx_calls_enterprise
        ON calls(enterprise_id)
        WHERE enterprise_id IS NOT NULL;

    CREATE INDEX IF NOT EXISTS idx_calls_open
        ON calls(status, started_at)
        WHERE status IN ('initiated', 'ringing', 'in_progress');
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class CallRecord:
    id:                      str
    user_id:                 str
    owner_id:                str
    enterprise_id:           Optional[str]
    destination_number:      str
    destination_country:     str
    caller_id_type:          str
    caller_id_number:        str
    status:                  CallStatus
    sell_rate_per_minute:    Decimal
    cost_per_minute:         Decimal
    started_at:              str
    ended_at:                Optional[str]
    duration_seconds:        Optional[int]
    billed_amount:           Optional[Decimal]
    provider_cost_estimate:  Optional[Decimal]
    profit_margin:           Optional[Decimal]
    provider_call_reference: Optional[str]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class SettlementResult:
    call_id:          str
    status:           CallStatus
    billed_amount:    Decimal
    duration_seconds: int
    profit_margin:    Decimal
    balance_after:    Optional[Decimal]   # None when no debit happened
