"""
GlobalConnect — models/payment.py
─────────────────────────────────────────────────────────────────
Payment records table definition + enums + dataclasses.
No logic here, only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any
from enum import Enum


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class PaymentStatus(str, Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"
    REFUNDED  = "refunded"


class Provider(str, Enum):
    STRIPE   = "stripe"
    RAZORPAY = "razorpay"


class EventKind(str, Enum):
    CAPTURED = "captured"
    OTHER    = "other"


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
PAYMENTS_TABLE = """
    CREATE TABLE IF NOT EXISTS payments (
        id                 TEXT PRIMARY KEY,
        owner_id           TEXT NOT NULL,
        amount_units       INTEGER NOT NULL,
        currency           TEXT NOT NULL,
        provider           TEXT NOT NULL,
        provider_reference TEXT,
        status             TEXT NOT NULL DEFAULT 'pending',
        credits_units      INTEGER,
        created_at         TEXT NOT NULL,
        updated_at         TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_payments_owner
        ON payments(owner_id, created_at DESC);
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class PaymentRecord:
    id:                 str
    owner_id:           str
    amount:             Decimal
    currency:           str
    provider:           Provider
    provider_reference: Optional[str]
    status:             PaymentStatus
    credits_added:      Optional[Decimal]
    created_at:         str
    updated_at:         str

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED


@dataclass
class ProviderCharge:
    """What a provider hands back when a charge/order is created."""
    reference: str                       # pi_... / order_...
    handle:    str                       # client_secret / order id for checkout
    extra:     Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentEvent:
    """Provider webhook normalized into one shape."""
    kind:               EventKind
    event_type:         str
    owner_id:           Optional[str] = None
    payment_id:         Optional[str] = None
    provider_reference: Optional[str] = None
    amount:             Optional[Decimal] = None
    currency:           Optional[str] = None
