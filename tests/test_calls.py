"""Call ledger: initiation checks, settlement, transitions, reaper."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from globalconnect.calls import validate_transition
from globalconnect.core.config import cfg
from globalconnect.core.database import get_db
from globalconnect.core.errors import (
    AlreadySettled, InsufficientBalance, InvalidAmount, InvalidTransition,
    NotFound, UnsupportedDestination,
)
from globalconnect.models.call import CallStatus, SettlementResult
from globalconnect.models.rate import RateEntry
from globalconnect.wallet import REASON_TOPUP


async def _count_calls(db_path) -> int:
    async with get_db(db_path) as db:
        async with db.execute("SELECT COUNT(*) FROM calls") as cur:
            return (await cur.fetchone())[0]


# ─────────────────────────────────────────────
# Initiate
# ─────────────────────────────────────────────
async def test_initiate_with_zero_balance_creates_nothing(calls, us_rate, db_path):
    with pytest.raises(InsufficientBalance):
        await calls.initiate_call("user-1", "+15551234567", "1")

    assert await _count_calls(db_path) == 0


async def test_initiate_unsupported_destination_creates_nothing(calls, wallet, db_path):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")

    with pytest.raises(UnsupportedDestination):
        await calls.initiate_call("user-1", "+999123", "999")

    assert await _count_calls(db_path) == 0


async def test_initiate_pins_rate_and_moves_no_money(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")

    call, rate = await calls.initiate_call("user-1", "+15551234567", "+1")

    assert call.status == CallStatus.INITIATED
    assert call.owner_id == "user-1"
    assert call.sell_rate_per_minute == Decimal("0.02")
    assert call.billed_amount is None
    assert rate.sell_rate_per_minute == Decimal("0.02")
    assert (await wallet.get_balance("user-1")).amount == Decimal("10.00")


# ─────────────────────────────────────────────
# End / settle
# ─────────────────────────────────────────────
async def test_end_call_settles_exactly_once(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    result = await calls.end_call(call.id, "user-1", 300)

    assert result.status == CallStatus.COMPLETED
    assert result.billed_amount == Decimal("0.10")
    assert result.profit_margin == Decimal("0.05")
    assert result.balance_after == Decimal("9.90")

    with pytest.raises(AlreadySettled):
        await calls.end_call(call.id, "user-1", 300)

    assert (await wallet.get_balance("user-1")).amount == Decimal("9.90")
    settled = await calls.get_call(call.id, "user-1")
    assert settled.duration_seconds == 300
    assert settled.billed_amount == Decimal("0.10")
    assert settled.ended_at is not None


async def test_end_call_overdraw_is_clamped_to_zero(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("0.05"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    result = await calls.end_call(call.id, "user-1", 600)   # $0.20

    assert result.billed_amount == Decimal("0.20")
    assert result.balance_after == Decimal("0")


async def test_end_call_with_provider_error_records_charge_without_debit(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    result = await calls.end_call(call.id, "user-1", 300, provider_error="carrier rejected")

    assert result.status == CallStatus.FAILED
    assert result.billed_amount == Decimal("0.10")
    assert result.profit_margin == Decimal("0.05")
    assert result.balance_after is None
    assert (await wallet.get_balance("user-1")).amount == Decimal("10.00")

    stored = await calls.get_call(call.id, "user-1")
    assert stored.billed_amount == Decimal("0.10")
    assert stored.provider_cost_estimate == Decimal("0.05")
    assert stored.profit_margin == Decimal("0.05")
    assert (await calls.get_call_stats("user-1"))["total_spent"] == Decimal("0")


async def test_concurrent_end_call_settles_once(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    results = await asyncio.gather(
        *[calls.end_call(call.id, "user-1", 300) for _ in range(10)],
        return_exceptions=True,
    )

    settled = [r for r in results if isinstance(r, SettlementResult)]
    rejected = [r for r in results if not isinstance(r, SettlementResult)]
    assert len(settled) == 1
    assert settled[0].balance_after == Decimal("9.90")
    assert all(isinstance(r, AlreadySettled) for r in rejected)
    assert (await wallet.get_balance("user-1")).amount == Decimal("9.90")
    assert len(await wallet.get_ledger("user-1")) == 2


async def test_end_call_busy_outcome(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")
    await calls.update_call_status(call.id, "user-1", "ringing")

    result = await calls.end_call(call.id, "user-1", 0, outcome="busy")

    assert result.status == CallStatus.BUSY
    assert (await wallet.get_balance("user-1")).amount == Decimal("10.00")


async def test_end_call_zero_duration_completes_without_debit(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    result = await calls.end_call(call.id, "user-1", 0)

    assert result.status == CallStatus.COMPLETED
    assert result.balance_after is None
    assert len(await wallet.get_ledger("user-1")) == 1


async def test_end_call_rejects_negative_duration(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    with pytest.raises(InvalidAmount):
        await calls.end_call(call.id, "user-1", -5)


async def test_end_call_for_someone_elses_call_is_not_found(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    with pytest.raises(NotFound):
        await calls.end_call(call.id, "user-2", 60)


async def test_settlement_uses_rate_pinned_at_initiation(calls, wallet, rates, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")
    await rates.upsert_rate(RateEntry(
        country_code="1", country_name="United States",
        cost_per_minute=Decimal("0.01"), sell_rate_per_minute=Decimal("0.50"),
    ))

    result = await calls.end_call(call.id, "user-1", 60)

    assert result.billed_amount == Decimal("0.02")


async def test_settlement_rereads_rate_when_pinning_off(calls, wallet, rates, us_rate, monkeypatch):
    monkeypatch.setattr(cfg, "PIN_RATE_AT_INITIATION", False)
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")
    await rates.upsert_rate(RateEntry(
        country_code="1", country_name="United States",
        cost_per_minute=Decimal("0.01"), sell_rate_per_minute=Decimal("0.50"),
    ))

    result = await calls.end_call(call.id, "user-1", 60)

    assert result.billed_amount == Decimal("0.50")


# ─────────────────────────────────────────────
# Status transitions
# ─────────────────────────────────────────────
def test_transition_table():
    validate_transition(CallStatus.INITIATED, CallStatus.RINGING)
    validate_transition(CallStatus.RINGING, CallStatus.IN_PROGRESS)
    validate_transition(CallStatus.INITIATED, CallStatus.FAILED)
    with pytest.raises(InvalidTransition):
        validate_transition(CallStatus.COMPLETED, CallStatus.RINGING)
    with pytest.raises(InvalidTransition):
        validate_transition(CallStatus.IN_PROGRESS, CallStatus.RINGING)
    with pytest.raises(InvalidTransition):
        validate_transition(CallStatus.IN_PROGRESS, CallStatus.NO_ANSWER)


async def test_update_status_walks_forward_only(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    assert (await calls.update_call_status(call.id, "user-1", "ringing")).status == CallStatus.RINGING
    assert (await calls.update_call_status(call.id, "user-1", "in_progress")).status == CallStatus.IN_PROGRESS
    # same-state report is a no-op
    assert (await calls.update_call_status(call.id, "user-1", "in_progress")).status == CallStatus.IN_PROGRESS

    with pytest.raises(InvalidTransition):
        await calls.update_call_status(call.id, "user-1", "ringing")


async def test_update_status_cannot_set_end_state(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")

    with pytest.raises(InvalidTransition):
        await calls.update_call_status(call.id, "user-1", "completed")


async def test_in_progress_call_cannot_end_as_no_answer(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    call, _ = await calls.initiate_call("user-1", "+15551234567", "1")
    await calls.update_call_status(call.id, "user-1", "in_progress")

    with pytest.raises(InvalidTransition):
        await calls.end_call(call.id, "user-1", 0, outcome="no_answer")

    assert (await calls.get_call(call.id)).status == CallStatus.IN_PROGRESS


# ─────────────────────────────────────────────
# History / stats / reaper
# ─────────────────────────────────────────────
async def test_stats_count_only_completed_spend(calls, wallet, us_rate):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    ok, _ = await calls.initiate_call("user-1", "+15551234567", "1")
    bad, _ = await calls.initiate_call("user-1", "+15551234568", "1")
    await calls.end_call(ok.id, "user-1", 120)
    await calls.end_call(bad.id, "user-1", 60, provider_error="dropped")

    stats = await calls.get_call_stats("user-1")

    assert stats["total_calls"] == 2
    assert stats["total_spent"] == Decimal("0.04")
    assert stats["this_month"] == Decimal("0.04")
    assert len(await calls.get_call_history("user-1")) == 2


async def test_reaper_fails_stale_open_calls(calls, wallet, us_rate, db_path):
    await wallet.credit("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    stale, _ = await calls.initiate_call("user-1", "+15551234567", "1")
    fresh, _ = await calls.initiate_call("user-1", "+15551234568", "1")
    old = (datetime.now(timezone.utc) - timedelta(hours=6)).isoformat()
    async with get_db(db_path) as db:
        await db.execute("UPDATE calls SET started_at = ? WHERE id = ?", (old, stale.id))

    reaped = await calls.reap_stale_calls(max_age_minutes=60)

    assert reaped == [stale.id]
    assert (await calls.get_call(stale.id)).status == CallStatus.FAILED
    assert (await calls.get_call(fresh.id)).status == CallStatus.INITIATED
    assert (await wallet.get_balance("user-1")).amount == Decimal("10.00")
    with pytest.raises(AlreadySettled):
        await calls.end_call(stale.id, "user-1", 60)
