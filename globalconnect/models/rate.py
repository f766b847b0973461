"""
GlobalConnect — models/rate.py
─────────────────────────────────────────────────────────────────
Rate table definition + dataclasses.
No logic here, only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
RATE_SETTINGS_TABLE = """
    CREATE TABLE IF NOT EXISTS rate_settings (
        country_code       TEXT PRIMARY KEY,
        country_name       TEXT NOT NULL,
        cost_units         INTEGER NOT NULL,   -- cost per minute
        sell_units         INTEGER NOT NULL,   -- sell rate per minute
        is_active          INTEGER NOT NULL DEFAULT 1,
        created_at         TEXT NOT NULL,
        updated_at         TEXT NOT NULL
    );
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class RateEntry:
    country_code:         str
    country_name:         str
    cost_per_minute:      Decimal
    sell_rate_per_minute: Decimal
    is_active:            bool = True
    updated_at:           Optional[str] = None

    @property
    def margin_per_minute(self) -> Decimal:
        # May be negative: recorded, never enforced
        return self.sell_rate_per_minute - self.cost_per_minute


@dataclass
class CallCharge:
    billed_amount:          Decimal
    provider_cost_estimate: Decimal
    profit_margin:          Decimal
