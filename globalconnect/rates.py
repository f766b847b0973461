"""
GlobalConnect — rates.py
─────────────────────────────────────────────────────────────────
Rate Table + call pricing.
- Destination country → {cost per minute, sell rate per minute}
- Read on the hot path (initiate / end), written by admins only
- calculate_call_charge(): single source of truth for call pricing
─────────────────────────────────────────────────────────────────
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from fastapi import APIRouter, Depends, Request

from globalconnect.core.config import cfg
from globalconnect.core.database import get_db, run_in_transaction, now_iso
from globalconnect.core.errors import UnsupportedDestination, InvalidAmount
from globalconnect.core.money import MONEY_PLACES, to_money, to_units, from_units, Number
from globalconnect.models.rate import RateEntry, CallCharge

logger = logging.getLogger("globalconnect.rates")


def normalize_country_code(code: str) -> str:
    """'+44' / ' 44' / '44' all mean the same destination."""
    return (code or "").strip().lstrip("+").upper()


def _row_to_rate(row) -> RateEntry:
    return RateEntry(
        country_code         = row["country_code"],
        country_name         = row["country_name"],
        cost_per_minute      = from_units(row["cost_units"]),
        sell_rate_per_minute = from_units(row["sell_units"]),
        is_active            = bool(row["is_active"]),
        updated_at           = row["updated_at"],
    )


# ─────────────────────────────────────────────
# Pricing
# ─────────────────────────────────────────────
def calculate_call_charge(
    duration_seconds: int,
    sell_rate_per_minute: Number,
    cost_per_minute: Number,
) -> CallCharge:
    """
    billed  = seconds × sell / 60
    cost    = seconds × cost / 60
    margin  = billed − cost        (negative margins are recorded as-is)

    Seconds are multiplied before dividing by 60 so 100s at 0.02/min
    is 0.0333, not 1.6666…×0.02 rounded twice.
    """
    if duration_seconds < 0:
        raise InvalidAmount(f"Duration must be >= 0, got {duration_seconds}")

    seconds = Decimal(int(duration_seconds))
    billed = (seconds * to_money(sell_rate_per_minute) / 60).quantize(
        MONEY_PLACES, rounding=ROUND_HALF_UP
    )
    cost = (seconds * to_money(cost_per_minute) / 60).quantize(
        MONEY_PLACES, rounding=ROUND_HALF_UP
    )
    return CallCharge(
        billed_amount          = billed,
        provider_cost_estimate = cost,
        profit_margin          = billed - cost,
    )


# ─────────────────────────────────────────────
# RateService
# ─────────────────────────────────────────────
class RateService:

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or cfg.DB_PATH

    async def find_rate(self, country_code: str) -> Optional[RateEntry]:
        """Rate row regardless of active flag, or None."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM rate_settings WHERE country_code = ?",
                (normalize_country_code(country_code),)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_rate(row) if row else None

    async def get_rate(self, country_code: str) -> RateEntry:
        """Active rate for a destination. Raises UnsupportedDestination."""
        rate = await self.find_rate(country_code)
        if rate is None or not rate.is_active:
            raise UnsupportedDestination(f"Country '{country_code}' is not supported")
        return rate

    async def list_rates(self, include_inactive: bool = True) -> List[RateEntry]:
        query = "SELECT * FROM rate_settings"
        if not include_inactive:
            query += " WHERE is_active = 1"
        query += " ORDER BY country_name"
        async with get_db(self.db_path) as db:
            async with db.execute(query) as cur:
                rows = await cur.fetchall()
        return [_row_to_rate(r) for r in rows]

    async def upsert_rate(self, entry: RateEntry) -> RateEntry:
        """
        Admin only. Overwrites cost/sell/name/active for the country.
        Past calls keep the amounts they were settled with.
        """
        code = normalize_country_code(entry.country_code)
        if not code:
            raise UnsupportedDestination("Country code is required")
        cost = to_money(entry.cost_per_minute)
        sell = to_money(entry.sell_rate_per_minute)
        if cost < 0 or sell < 0:
            raise InvalidAmount("Rates must be >= 0")

        async def _work(db):
            now = now_iso()
            await db.execute(
                """INSERT INTO rate_settings
                   (country_code, country_name, cost_units, sell_units, is_active, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?)
                   ON CONFLICT(country_code) DO UPDATE SET
                       country_name = excluded.country_name,
                       cost_units   = excluded.cost_units,
                       sell_units   = excluded.sell_units,
                       is_active    = excluded.is_active,
                       updated_at   = excluded.updated_at""",
                (code, entry.country_name, to_units(cost), to_units(sell),
                 1 if entry.is_active else 0, now, now)
            )

        await run_in_transaction(_work, self.db_path)
        if sell < cost:
            logger.warning(f"Rate {code}: sell {sell} below cost {cost} (negative margin)")
        logger.info(f"Rate upserted: {code} cost={cost} sell={sell} active={entry.is_active}")
        return await self.find_rate(code)


# ─────────────────────────────────────────────
# FastAPI Router (public rate card)
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/rates", tags=["rates"])


def rate_service(request: Request) -> RateService:
    return request.app.state.rates


@router.get("")
async def list_public_rates(rates: RateService = Depends(rate_service)):
    """Active destinations and their per-minute sell rate."""
    return {
        "rates": [
            {
                "country_code": r.country_code,
                "country_name": r.country_name,
                "rate_per_minute": r.sell_rate_per_minute,
            }
            for r in await rates.list_rates(include_inactive=False)
        ]
    }
