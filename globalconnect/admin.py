"""
GlobalConnect — admin.py
─────────────────────────────────────────────────────────────────
Admin Console

SECURITY:
  - Every route requires an identity token whose role is "admin"
    (app_metadata.role set in the identity provider)
  - Manual credits are written to the ledger with the admin id

ENDPOINTS:
  GET  /api/admin/rates                      → Full rate table (incl. inactive)
  PUT  /api/admin/rates                      → Upsert one destination rate
  GET  /api/admin/call-logs                  → All calls, newest first
  GET  /api/admin/payments                   → All payments
  GET  /api/admin/enterprises                → Enterprises + member count + pool
  GET  /api/admin/stats                      → Revenue / profit overview
  POST /api/admin/balances/{owner_id}/credit → Manual credit
  POST /api/admin/calls/reap                 → Fail calls stuck open too long
─────────────────────────────────────────────────────────────────
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from globalconnect.core.database import get_db
from globalconnect.core.errors import InvalidAmount
from globalconnect.core.money import from_units, to_money
from globalconnect.core.schemas import ApiModel
from globalconnect.core.security import Identity, require_admin
from globalconnect.models.rate import RateEntry

logger = logging.getLogger("globalconnect.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ─────────────────────────────────────────────
# Stats
# ─────────────────────────────────────────────
async def get_platform_stats(db_path: str) -> Dict[str, Any]:
    """Revenue and profit come from completed calls only."""
    now = datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()

    async with get_db(db_path) as db:
        async with db.execute(
            """SELECT COUNT(*) AS total_calls,
                      COALESCE(SUM(CASE WHEN status = 'completed' THEN billed_units END), 0) AS revenue,
                      COALESCE(SUM(CASE WHEN status = 'completed' THEN profit_units END), 0) AS profit,
                      COALESCE(SUM(CASE WHEN status = 'completed' AND started_at >= ?
                                        THEN billed_units END), 0) AS month_revenue,
                      COALESCE(SUM(CASE WHEN status = 'completed' AND started_at >= ?
                                        THEN profit_units END), 0) AS month_profit,
                      COUNT(DISTINCT user_id) AS callers
               FROM calls""",
            (month_start, month_start)
        ) as cur:
            calls = await cur.fetchone()

        async with db.execute("SELECT COUNT(*) FROM enterprise_accounts") as cur:
            enterprises = (await cur.fetchone())[0]

        async with db.execute(
            """SELECT COUNT(*) AS completed,
                      COALESCE(SUM(credits_units), 0) AS topped_up
               FROM payments WHERE status = 'completed'"""
        ) as cur:
            payments = await cur.fetchone()

    return {
        "totalCalls":        int(calls["total_calls"]),
        "totalCallers":      int(calls["callers"]),
        "totalEnterprises":  int(enterprises),
        "totalRevenue":      from_units(calls["revenue"]),
        "totalProfit":       from_units(calls["profit"]),
        "monthRevenue":      from_units(calls["month_revenue"]),
        "monthProfit":       from_units(calls["month_profit"]),
        "completedPayments": int(payments["completed"]),
        "totalTopUps":       from_units(payments["topped_up"]),
    }


# ─────────────────────────────────────────────
# Schemas
# ─────────────────────────────────────────────
class RateUpdateRequest(ApiModel):
    country_code:         str
    country_name:         str
    cost_per_minute:      Decimal
    sell_rate_per_minute: Decimal
    is_active:            bool = True


class AdminCreditRequest(ApiModel):
    amount: Decimal = Field(..., description="Amount in major units")
    note:   str = Field("manual", max_length=200)


class ReapRequest(ApiModel):
    max_age_minutes: Optional[int] = None


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
@router.get("/rates")
async def admin_list_rates(request: Request, admin: Identity = Depends(require_admin)):
    return {"rates": await request.app.state.rates.list_rates(include_inactive=True)}


@router.put("/rates")
async def admin_update_rate(
    body: RateUpdateRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
):
    rate = await request.app.state.rates.upsert_rate(RateEntry(
        country_code         = body.country_code,
        country_name         = body.country_name,
        cost_per_minute      = body.cost_per_minute,
        sell_rate_per_minute = body.sell_rate_per_minute,
        is_active            = body.is_active,
    ))
    logger.info(f"[admin {admin.user_id}] rate {rate.country_code} updated")
    return {"rate": rate}


@router.get("/call-logs")
async def admin_call_logs(
    request: Request,
    limit: int = 100,
    offset: int = 0,
    admin: Identity = Depends(require_admin),
):
    return {"calls": await request.app.state.calls.list_calls(min(limit, 500), offset)}


@router.get("/payments")
async def admin_payments(
    request: Request,
    limit: int = 100,
    offset: int = 0,
    admin: Identity = Depends(require_admin),
):
    return {"payments": await request.app.state.payments.list_payments(min(limit, 500), offset)}


@router.get("/enterprises")
async def admin_enterprises(request: Request, admin: Identity = Depends(require_admin)):
    rows = await request.app.state.enterprise.list_enterprises()
    return {
        "enterprises": [
            {
                "enterprise":    r["enterprise"],
                "memberCount":   r["member_count"],
                "sharedBalance": r["shared_balance"],
            }
            for r in rows
        ]
    }


@router.get("/stats")
async def admin_stats(request: Request, admin: Identity = Depends(require_admin)):
    return {"stats": await get_platform_stats(request.app.state.db_path)}


@router.post("/balances/{owner_id}/credit")
async def admin_credit_balance(
    owner_id: str,
    body: AdminCreditRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
):
    amount = to_money(body.amount)
    if amount <= 0:
        raise InvalidAmount("Credit amount must be positive")
    balance = await request.app.state.wallet.admin_credit(
        owner_id, amount, note=body.note, admin_id=admin.user_id
    )
    logger.info(f"[admin {admin.user_id}] credited {amount} to {owner_id}: {body.note}")
    return {"ownerId": owner_id, "credited": amount, "balance": balance}


@router.post("/calls/reap")
async def admin_reap_calls(
    request: Request,
    body: Optional[ReapRequest] = None,
    admin: Identity = Depends(require_admin),
):
    minutes = body.max_age_minutes if body else None
    reaped = await request.app.state.calls.reap_stale_calls(minutes)
    return {"reaped": reaped, "count": len(reaped)}
