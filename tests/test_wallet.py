"""Balance store: atomic adjust, clamped debit, transfers, ledger."""

import asyncio
import random
from decimal import Decimal

import pytest

from globalconnect.core.errors import AlreadySettled, InsufficientBalance, InvalidAmount
from globalconnect.wallet import (
    WalletService, REASON_TOPUP, REASON_DEDUCT, REASON_CALL,
)


async def test_new_owner_starts_at_zero(wallet):
    balance = await wallet.get_balance("user-new")
    assert balance.amount == Decimal("0")
    assert balance.currency == "USD"


async def test_concurrent_adjusts_lose_no_updates(wallet):
    """50 interleaved adjusts, mixed signs, land on initial + sum."""
    await wallet.adjust("user-1", Decimal("100.00"), REASON_TOPUP, "seed")
    rng = random.Random(42)
    deltas = [
        Decimal(rng.randint(-500, 500)) / 100
        for _ in range(50)
    ]

    await asyncio.gather(*[
        wallet.adjust("user-1", d, REASON_TOPUP, f"adj-{i}")
        for i, d in enumerate(deltas)
    ])

    balance = await wallet.get_balance("user-1")
    assert balance.amount == Decimal("100.00") + sum(deltas)
    assert len(await wallet.get_ledger("user-1", limit=100)) == 51


async def test_adjust_clamped_never_goes_below_floor(wallet):
    await wallet.adjust("user-1", Decimal("0.05"), REASON_TOPUP, "seed")

    after = await wallet.adjust_clamped("user-1", Decimal("-1.00"), REASON_CALL, "call:x")

    assert after == Decimal("0")
    entries = await wallet.get_ledger("user-1")
    # The ledger records what actually moved, not the requested delta
    assert entries[0].delta == Decimal("-0.05")
    assert entries[0].balance_after == Decimal("0")


async def test_adjust_clamped_within_funds_is_plain_debit(wallet):
    await wallet.adjust("user-1", Decimal("10.00"), REASON_TOPUP, "seed")
    after = await wallet.adjust_clamped("user-1", Decimal("-0.10"), REASON_CALL, "call:y")
    assert after == Decimal("9.90")


async def test_adjust_clamped_respects_custom_floor(wallet):
    await wallet.adjust("user-1", Decimal("3.00"), REASON_TOPUP, "seed")
    after = await wallet.adjust_clamped(
        "user-1", Decimal("-5.00"), REASON_CALL, "call:z", floor=Decimal("1.00")
    )
    assert after == Decimal("1.00")


async def test_debit_rejects_overdraw(wallet):
    await wallet.adjust("user-1", Decimal("1.00"), REASON_TOPUP, "seed")

    with pytest.raises(InsufficientBalance):
        await wallet.debit("user-1", Decimal("1.01"), REASON_DEDUCT, "d-1")

    assert (await wallet.get_balance("user-1")).amount == Decimal("1.00")


async def test_debit_requires_positive_amount(wallet):
    with pytest.raises(InvalidAmount):
        await wallet.debit("user-1", Decimal("0"), REASON_DEDUCT)


async def test_duplicate_ref_id_applies_once(wallet):
    await wallet.credit("user-1", Decimal("5.00"), REASON_TOPUP, "payment:p1")

    with pytest.raises(AlreadySettled):
        await wallet.credit("user-1", Decimal("5.00"), REASON_TOPUP, "payment:p1")

    assert (await wallet.get_balance("user-1")).amount == Decimal("5.00")


async def test_transfer_moves_funds_between_owners(wallet):
    await wallet.adjust("admin", Decimal("20.00"), REASON_TOPUP, "seed")

    src, dst = await wallet.transfer("admin", "ent-1", Decimal("7.50"))

    assert src == Decimal("12.50")
    assert dst == Decimal("7.50")


async def test_transfer_rejects_when_source_short(wallet):
    await wallet.adjust("admin", Decimal("2.00"), REASON_TOPUP, "seed")

    with pytest.raises(InsufficientBalance):
        await wallet.transfer("admin", "ent-1", Decimal("5.00"))

    assert (await wallet.get_balance("admin")).amount == Decimal("2.00")
    assert (await wallet.get_balance("ent-1")).amount == Decimal("0")


async def test_transfer_failure_midway_changes_nothing(wallet, monkeypatch):
    """Debit succeeds, credit blows up: both legs roll back together."""
    await wallet.adjust("admin", Decimal("20.00"), REASON_TOPUP, "seed")
    real_move = WalletService._move
    calls = {"n": 0}

    async def flaky_move(self, db, owner_id, delta_units, *args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("store went away")
        return await real_move(self, db, owner_id, delta_units, *args, **kwargs)

    monkeypatch.setattr(WalletService, "_move", flaky_move)

    with pytest.raises(RuntimeError):
        await wallet.transfer("admin", "ent-1", Decimal("5.00"))

    monkeypatch.setattr(WalletService, "_move", real_move)
    admin = (await wallet.get_balance("admin")).amount
    pool = (await wallet.get_balance("ent-1")).amount
    assert admin + pool == Decimal("20.00")
    assert admin == Decimal("20.00")


async def test_rebuild_balance_matches_ledger(wallet):
    await wallet.credit("user-1", Decimal("4.00"), REASON_TOPUP, "a")
    await wallet.debit("user-1", Decimal("1.25"), REASON_DEDUCT, "b")

    assert await wallet.rebuild_balance("user-1") == Decimal("2.75")


async def test_admin_credit_is_audited(wallet):
    after = await wallet.admin_credit("user-1", Decimal("3.00"), "goodwill", "admin-9")

    assert after == Decimal("3.00")
    entry = (await wallet.get_ledger("user-1"))[0]
    assert entry.reason == "admin_credit:goodwill"
    assert entry.ref_id.startswith("admin_admin-9_")
