"""
GlobalConnect — calls.py
─────────────────────────────────────────────────────────────────
Call Ledger + Settlement Engine

LIFECYCLE:
  initiated → ringing / in_progress → completed / failed / busy / no_answer
  initiated → failed (immediate failure)

- initiate: balance > 0 and a supported destination, nothing is held
- end: status + duration + money fields + balance debit in ONE commit
- a call is settled at most once (guarded UPDATE + ledger ref "call:<id>")

ENDPOINTS:
  POST /api/calls/initiate
  POST /api/calls/end
  POST /api/calls/status
  GET  /api/calls/history
  GET  /api/calls/stats
  GET  /api/calls/{call_id}
─────────────────────────────────────────────────────────────────
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List, Tuple, Dict, Any

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from globalconnect.core.config import cfg
from globalconnect.core.database import get_db, run_in_transaction, now_iso, new_id
from globalconnect.core.errors import (
    NotFound, AlreadySettled, InsufficientBalance, InvalidAmount,
    InvalidTransition, InvalidPayload,
)
from globalconnect.core.money import to_units, from_units
from globalconnect.core.schemas import ApiModel
from globalconnect.core.security import Identity, get_current_identity
from globalconnect.models.call import (
    CallStatus, CallRecord, SettlementResult, CALL_TRANSITIONS,
)
from globalconnect.models.rate import RateEntry
from globalconnect.rates import RateService, calculate_call_charge, normalize_country_code
from globalconnect.wallet import WalletService, REASON_CALL

logger = logging.getLogger("globalconnect.calls")

_OPEN = "('initiated', 'ringing', 'in_progress')"


def validate_transition(old: CallStatus, new: CallStatus):
    """Raises InvalidTransition unless old → new is an allowed edge."""
    if new not in CALL_TRANSITIONS[old]:
        raise InvalidTransition(f"Cannot move call from '{old.value}' to '{new.value}'")


def _parse_status(value) -> CallStatus:
    try:
        return CallStatus(value)
    except ValueError:
        raise InvalidPayload(f"Unknown call status '{value}'")


def _row_to_call(row) -> CallRecord:
    def _money(col):
        return from_units(row[col]) if row[col] is not None else None

    return CallRecord(
        id                      = row["id"],
        user_id                 = row["user_id"],
        owner_id                = row["owner_id"],
        enterprise_id           = row["enterprise_id"],
        destination_number      = row["destination_number"],
        destination_country     = row["destination_country"],
        caller_id_type          = row["caller_id_type"],
        caller_id_number        = row["caller_id_number"],
        status                  = CallStatus(row["status"]),
        sell_rate_per_minute    = from_units(row["sell_units"]),
        cost_per_minute         = from_units(row["cost_units"]),
        started_at              = row["started_at"],
        ended_at                = row["ended_at"],
        duration_seconds        = row["duration_seconds"],
        billed_amount           = _money("billed_units"),
        provider_cost_estimate  = _money("provider_cost_units"),
        profit_margin           = _money("profit_units"),
        provider_call_reference = row["provider_call_reference"],
    )


# ─────────────────────────────────────────────
# CallService
# ─────────────────────────────────────────────
class CallService:

    def __init__(
        self,
        wallet: WalletService,
        rates: RateService,
        enterprise=None,
        db_path: Optional[str] = None,
    ):
        self.db_path    = db_path or cfg.DB_PATH
        self.wallet     = wallet
        self.rates      = rates
        self.enterprise = enterprise

    # ─── Initiate ──────────────────────────────

    async def initiate_call(
        self,
        user_id: str,
        destination_number: str,
        destination_country_code: str,
        caller_id_type: str = "public",
        caller_id_number: str = "",
        enterprise_id: Optional[str] = None,
    ) -> Tuple[CallRecord, RateEntry]:
        """
        Pre-authorization only. No funds are reserved, so parallel calls
        on one balance can overdraw in aggregate; end_call clamps at 0.
        Nothing is written when a check fails.
        """
        if not (destination_number or "").strip():
            raise InvalidPayload("Destination number is required")
        country = normalize_country_code(destination_country_code)

        owner_id = user_id
        if enterprise_id:
            if self.enterprise is None:
                raise NotFound("Enterprise billing is not available")
            await self.enterprise.get_call_membership(enterprise_id, user_id)
            owner_id = enterprise_id

        balance = await self.wallet.get_balance(owner_id)
        if balance.amount <= 0:
            raise InsufficientBalance("Insufficient balance")

        rate = await self.rates.get_rate(country)

        call_id = new_id("call_")

        async def _work(db):
            await db.execute(
                """INSERT INTO calls
                   (id, user_id, owner_id, enterprise_id, destination_number,
                    destination_country, caller_id_type, caller_id_number, status,
                    sell_units, cost_units, started_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?)""",
                (call_id, user_id, owner_id, enterprise_id, destination_number.strip(),
                 rate.country_code, caller_id_type or "public", caller_id_number or "",
                 CallStatus.INITIATED.value,
                 to_units(rate.sell_rate_per_minute), to_units(rate.cost_per_minute),
                 now_iso())
            )

        await run_in_transaction(_work, self.db_path)
        logger.info(
            f"Call initiated: {call_id} {user_id} → +{rate.country_code} "
            f"@ {rate.sell_rate_per_minute}/min (payer={owner_id})"
        )
        return await self.get_call(call_id, user_id), rate

    # ─── Settle ────────────────────────────────

    async def _settlement_rates(self, call: CallRecord) -> Tuple[Decimal, Decimal]:
        if cfg.PIN_RATE_AT_INITIATION:
            return call.sell_rate_per_minute, call.cost_per_minute
        current = await self.rates.find_rate(call.destination_country)
        if current is None:
            return call.sell_rate_per_minute, call.cost_per_minute
        return current.sell_rate_per_minute, current.cost_per_minute

    async def end_call(
        self,
        call_id: str,
        user_id: str,
        duration_seconds: int,
        provider_call_reference: Optional[str] = None,
        provider_error: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle a call.

        status  = failed if the provider reported an error,
                  busy / no_answer when reported as the outcome,
                  completed otherwise
        billed  = seconds × sell / 60   (recorded for every end state)

        Only a completed call with duration > 0 debits the payer, clamped
        at 0. A call that is already terminal raises AlreadySettled.
        """
        if duration_seconds is None or int(duration_seconds) < 0:
            raise InvalidAmount(f"Duration must be >= 0, got {duration_seconds}")
        duration_seconds = int(duration_seconds)

        if provider_error:
            status = CallStatus.FAILED
        elif outcome:
            status = _parse_status(outcome)
            if not status.is_terminal:
                raise InvalidTransition(f"'{status.value}' is not an end state")
        else:
            status = CallStatus.COMPLETED

        call = await self.get_call(call_id, user_id)
        if call.is_terminal:
            raise AlreadySettled(f"Call '{call_id}' already ended as '{call.status.value}'")

        sell, cost = await self._settlement_rates(call)
        charge = calculate_call_charge(duration_seconds, sell, cost)
        billed, provider_cost, margin = (
            charge.billed_amount, charge.provider_cost_estimate, charge.profit_margin
        )

        async def _work(db):
            async with db.execute(
                "SELECT status FROM calls WHERE id = ?", (call_id,)
            ) as cur:
                current = CallStatus((await cur.fetchone())[0])
            if current.is_terminal:
                raise AlreadySettled(f"Call '{call_id}' already ended as '{current.value}'")
            validate_transition(current, status)

            cur = await db.execute(
                f"""UPDATE calls
                    SET status = ?, ended_at = ?, duration_seconds = ?,
                        billed_units = ?, provider_cost_units = ?, profit_units = ?,
                        provider_call_reference = COALESCE(?, provider_call_reference)
                    WHERE id = ? AND status IN {_OPEN}""",
                (status.value, now_iso(), duration_seconds,
                 to_units(billed), to_units(provider_cost), to_units(margin),
                 provider_call_reference, call_id)
            )
            if cur.rowcount == 0:
                raise AlreadySettled(f"Call '{call_id}' already settled")

            if status != CallStatus.COMPLETED or duration_seconds == 0 or billed <= 0:
                return None

            balance_after = await self.wallet.adjust_clamped(
                call.owner_id, -billed, REASON_CALL,
                ref_id=f"call:{call_id}", floor=0, db=db,
            )
            if call.enterprise_id and self.enterprise is not None:
                await self.enterprise.record_member_usage(
                    db, call.enterprise_id, call.user_id, billed
                )
            return balance_after

        balance_after = await run_in_transaction(_work, self.db_path)
        if provider_error:
            logger.warning(f"Call {call_id} failed: {provider_error}")
        logger.info(
            f"Call settled: {call_id} status={status.value} "
            f"{duration_seconds}s billed={billed} margin={margin}"
        )
        return SettlementResult(
            call_id          = call_id,
            status           = status,
            billed_amount    = billed,
            duration_seconds = duration_seconds,
            profit_margin    = margin,
            balance_after    = balance_after,
        )

    # ─── Status ────────────────────────────────

    async def update_call_status(self, call_id: str, user_id: str, status) -> CallRecord:
        """Informational progress only. End states go through end_call()."""
        new_status = _parse_status(status)
        if new_status.is_terminal:
            raise InvalidTransition(
                f"'{new_status.value}' is an end state, use /api/calls/end"
            )

        async def _work(db):
            async with db.execute(
                "SELECT status FROM calls WHERE id = ? AND user_id = ?", (call_id, user_id)
            ) as cur:
                row = await cur.fetchone()
            if not row:
                raise NotFound(f"Call '{call_id}' not found")
            current = CallStatus(row[0])
            if current == new_status:
                return
            validate_transition(current, new_status)
            await db.execute(
                "UPDATE calls SET status = ? WHERE id = ? AND status = ?",
                (new_status.value, call_id, current.value)
            )

        await run_in_transaction(_work, self.db_path)
        return await self.get_call(call_id, user_id)

    # ─── Read ──────────────────────────────────

    async def get_call(self, call_id: str, user_id: Optional[str] = None) -> CallRecord:
        query = "SELECT * FROM calls WHERE id = ?"
        params: tuple = (call_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params = (call_id, user_id)
        async with get_db(self.db_path) as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFound(f"Call '{call_id}' not found")
        return _row_to_call(row)

    async def get_call_history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CallRecord]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM calls WHERE user_id = ?
                   ORDER BY started_at DESC LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_call(r) for r in rows]

    async def list_calls(self, limit: int = 100, offset: int = 0) -> List[CallRecord]:
        """All call logs, newest first (admin console)."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM calls ORDER BY started_at DESC LIMIT ? OFFSET ?",
                (limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_call(r) for r in rows]

    async def get_call_stats(self, user_id: str) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT COUNT(*) AS total_calls,
                          COALESCE(SUM(duration_seconds), 0) AS total_seconds,
                          COALESCE(SUM(CASE WHEN status = 'completed'
                                            THEN billed_units ELSE 0 END), 0) AS spent_units,
                          COALESCE(SUM(CASE WHEN status = 'completed' AND started_at >= ?
                                            THEN billed_units ELSE 0 END), 0) AS month_units
                   FROM calls WHERE user_id = ?""",
                (month_start, user_id)
            ) as cur:
                row = await cur.fetchone()
        return {
            "total_calls":   int(row["total_calls"]),
            "total_minutes": round(int(row["total_seconds"]) / 60),
            "total_spent":   from_units(row["spent_units"]),
            "this_month":    from_units(row["month_units"]),
        }

    # ─── Maintenance ───────────────────────────

    async def reap_stale_calls(self, max_age_minutes: Optional[int] = None) -> List[str]:
        """
        Mark calls stuck in a non-terminal status for longer than
        max_age_minutes as failed, with zero charge. Admin-triggered.
        """
        minutes = cfg.STALE_CALL_MINUTES if max_age_minutes is None else int(max_age_minutes)
        if minutes < 0:
            raise InvalidAmount("max_age_minutes must be >= 0")
        cutoff = (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()

        async def _work(db):
            async with db.execute(
                f"SELECT id FROM calls WHERE status IN {_OPEN} AND started_at < ?",
                (cutoff,)
            ) as cur:
                ids = [r[0] for r in await cur.fetchall()]
            if ids:
                marks = ",".join("?" * len(ids))
                await db.execute(
                    f"""UPDATE calls
                        SET status = 'failed', ended_at = ?, duration_seconds = 0,
                            billed_units = 0, provider_cost_units = 0, profit_units = 0
                        WHERE id IN ({marks}) AND status IN {_OPEN}""",
                    (now_iso(), *ids)
                )
            return ids

        reaped = await run_in_transaction(_work, self.db_path)
        if reaped:
            logger.warning(f"Reaped {len(reaped)} stale call(s) older than {minutes} min")
        return reaped


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/calls", tags=["calls"])


def call_service(request: Request) -> CallService:
    return request.app.state.calls


class InitiateCallRequest(ApiModel):
    destination_number:       str
    destination_country_code: str
    caller_id_type:           str = "public"
    caller_id_number:         str = ""
    enterprise_id:            Optional[str] = None


class EndCallRequest(ApiModel):
    call_id:                 str
    duration_seconds:        int = Field(..., ge=0)
    provider_call_reference: Optional[str] = None
    provider_error:          Optional[str] = None
    outcome:                 Optional[str] = None


class CallStatusRequest(ApiModel):
    call_id: str
    status:  str


@router.post("/initiate")
async def initiate_call(
    body: InitiateCallRequest,
    identity: Identity = Depends(get_current_identity),
    calls: CallService = Depends(call_service),
):
    call, rate = await calls.initiate_call(
        identity.user_id,
        body.destination_number,
        body.destination_country_code,
        caller_id_type   = body.caller_id_type,
        caller_id_number = body.caller_id_number,
        enterprise_id    = body.enterprise_id,
    )
    return {
        "callId":        call.id,
        "ratePerMinute": rate.sell_rate_per_minute,
        "estimatedCost": rate.sell_rate_per_minute,   # one minute
    }


@router.post("/end")
async def end_call(
    body: EndCallRequest,
    identity: Identity = Depends(get_current_identity),
    calls: CallService = Depends(call_service),
):
    result = await calls.end_call(
        body.call_id,
        identity.user_id,
        body.duration_seconds,
        provider_call_reference = body.provider_call_reference,
        provider_error          = body.provider_error,
        outcome                 = body.outcome,
    )
    return {
        "callId":          result.call_id,
        "status":          result.status,
        "billedAmount":    result.billed_amount,
        "durationSeconds": result.duration_seconds,
        "profitMargin":    result.profit_margin,
        "balance":         result.balance_after,
    }


@router.post("/status")
async def update_call_status(
    body: CallStatusRequest,
    identity: Identity = Depends(get_current_identity),
    calls: CallService = Depends(call_service),
):
    call = await calls.update_call_status(body.call_id, identity.user_id, body.status)
    return {"callId": call.id, "status": call.status}


@router.get("/history")
async def get_call_history(
    limit: int = 50,
    offset: int = 0,
    identity: Identity = Depends(get_current_identity),
    calls: CallService = Depends(call_service),
):
    return {"calls": await calls.get_call_history(identity.user_id, min(limit, 200), offset)}


@router.get("/stats")
async def get_call_stats(
    identity: Identity = Depends(get_current_identity),
    calls: CallService = Depends(call_service),
):
    stats = await calls.get_call_stats(identity.user_id)
    return {
        "stats": {
            "totalCalls":   stats["total_calls"],
            "totalMinutes": stats["total_minutes"],
            "totalSpent":   stats["total_spent"],
            "thisMonth":    stats["this_month"],
        }
    }


@router.get("/{call_id}")
async def get_call(
    call_id: str,
    identity: Identity = Depends(get_current_identity),
    calls: CallService = Depends(call_service),
):
    return {"call": await calls.get_call(call_id, identity.user_id)}
