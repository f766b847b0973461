"""
GlobalConnect — models/enterprise.py
─────────────────────────────────────────────────────────────────
Enterprise accounts + memberships table definitions + dataclasses.
The shared pool is the balances row keyed by the enterprise id.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from decimal import Decimal


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
ENTERPRISE_TABLES = """
    CREATE TABLE IF NOT EXISTS enterprise_accounts (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        admin_id    TEXT NOT NULL,
        max_members INTEGER NOT NULL DEFAULT 50,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_enterprise_admin
        ON enterprise_accounts(admin_id);

    CREATE TABLE IF NOT EXISTS enterprise_members (
        id                   TEXT PRIMARY KEY,
        enterprise_id        TEXT NOT NULL REFERENCES enterprise_accounts(id),
        user_id              TEXT NOT NULL,
        credit_limit_units   INTEGER NOT NULL DEFAULT 0,   -- 0 = unlimited
        used_credits_units   INTEGER NOT NULL DEFAULT 0,
        can_make_calls       INTEGER NOT NULL DEFAULT 1,
        can_purchase_numbers INTEGER NOT NULL DEFAULT 0,
        joined_at            TEXT NOT NULL,
        UNIQUE(enterprise_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_members_user
        ON enterprise_members(user_id);
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class EnterpriseAccount:
    id:          str
    name:        str
    admin_id:    str
    max_members: int
    created_at:  str


@dataclass
class EnterpriseMembership:
    id:                   str
    enterprise_id:        str
    user_id:              str
    credit_limit:         Decimal
    used_credits:         Decimal
    can_make_calls:       bool
    can_purchase_numbers: bool
    joined_at:            str

    @property
    def has_unlimited_credit(self) -> bool:
        return self.credit_limit <= 0

    @property
    def remaining_credit(self):
        """None when unlimited."""
        if self.has_unlimited_credit:
            return None
        return max(Decimal("0"), self.credit_limit - self.used_credits)

    @property
    def is_over_limit(self) -> bool:
        return not self.has_unlimited_credit and self.used_credits >= self.credit_limit
