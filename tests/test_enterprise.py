"""Enterprise credit sharing, membership rules, enterprise-billed calls."""

import logging
from decimal import Decimal

import pytest

from globalconnect.core.errors import (
    CapacityExceeded, Conflict, CreditLimitExceeded, InsufficientBalance,
    InvalidAmount, NotFound, PermissionDenied,
)
from globalconnect.wallet import REASON_TOPUP, WalletService


@pytest.fixture
async def acme(enterprise, wallet):
    await wallet.credit("admin-1", Decimal("50.00"), REASON_TOPUP, "seed-admin")
    return await enterprise.create_enterprise("admin-1", "Acme Corp", max_members=2)


async def test_create_enterprise_defaults(enterprise, wallet):
    account = await enterprise.create_enterprise("admin-1", "Globex")

    assert account.max_members == 50
    assert account.admin_id == "admin-1"
    assert (await wallet.get_balance(account.id)).amount == Decimal("0")


async def test_share_credits_moves_admin_funds_to_pool(enterprise, acme):
    result = await enterprise.share_credits("admin-1", acme.id, Decimal("20.00"))

    assert result == {"shared_balance": Decimal("20.00"), "admin_balance": Decimal("30.00")}


async def test_share_credits_rules(enterprise, wallet, acme):
    with pytest.raises(InvalidAmount):
        await enterprise.share_credits("admin-1", acme.id, Decimal("0"))
    with pytest.raises(PermissionDenied):
        await enterprise.share_credits("someone-else", acme.id, Decimal("1.00"))
    with pytest.raises(InsufficientBalance):
        await enterprise.share_credits("admin-1", acme.id, Decimal("50.01"))
    with pytest.raises(NotFound):
        await enterprise.share_credits("admin-1", "ent_missing", Decimal("1.00"))

    assert (await wallet.get_balance("admin-1")).amount == Decimal("50.00")
    assert (await wallet.get_balance(acme.id)).amount == Decimal("0")


async def test_share_credits_failure_midway_is_atomic(enterprise, wallet, acme, monkeypatch):
    real_move = WalletService._move
    seen = {"n": 0}

    async def flaky_move(self, *args, **kwargs):
        seen["n"] += 1
        if seen["n"] == 2:
            raise RuntimeError("crash between debit and credit")
        return await real_move(self, *args, **kwargs)

    monkeypatch.setattr(WalletService, "_move", flaky_move)
    with pytest.raises(RuntimeError):
        await enterprise.share_credits("admin-1", acme.id, Decimal("10.00"))
    monkeypatch.setattr(WalletService, "_move", real_move)

    admin = (await wallet.get_balance("admin-1")).amount
    pool = (await wallet.get_balance(acme.id)).amount
    assert admin + pool == Decimal("50.00")


async def test_member_capacity_is_enforced(enterprise, acme):
    await enterprise.add_member("admin-1", acme.id, "user-a")
    await enterprise.add_member("admin-1", acme.id, "user-b")

    with pytest.raises(CapacityExceeded):
        await enterprise.add_member("admin-1", acme.id, "user-c")

    assert len(await enterprise.list_members(acme.id)) == 2


async def test_duplicate_member_conflicts(enterprise, acme):
    await enterprise.add_member("admin-1", acme.id, "user-a")
    with pytest.raises(Conflict):
        await enterprise.add_member("admin-1", acme.id, "user-a")


async def test_only_admin_manages_members(enterprise, acme):
    with pytest.raises(PermissionDenied):
        await enterprise.add_member("user-a", acme.id, "user-b")


async def test_remove_and_update_member(enterprise, acme):
    member = await enterprise.add_member("admin-1", acme.id, "user-a")

    updated = await enterprise.update_member_permissions(
        "admin-1", acme.id, member.id, credit_limit=Decimal("5.00"), can_make_calls=False,
    )
    assert updated.credit_limit == Decimal("5.00")
    assert updated.can_make_calls is False

    await enterprise.remove_member("admin-1", acme.id, member.id)
    assert await enterprise.list_members(acme.id) == []
    with pytest.raises(NotFound):
        await enterprise.remove_member("admin-1", acme.id, member.id)


async def test_get_enterprise_visible_to_members_only(enterprise, acme):
    await enterprise.add_member("admin-1", acme.id, "user-a")

    details = await enterprise.get_enterprise(acme.id, "user-a")
    assert details["is_admin"] is False
    assert len(details["members"]) == 1

    with pytest.raises(PermissionDenied):
        await enterprise.get_enterprise(acme.id, "stranger")


# ─────────────────────────────────────────────
# Enterprise-billed calls
# ─────────────────────────────────────────────
async def test_enterprise_call_charges_pool_and_tracks_usage(enterprise, calls, wallet, acme, us_rate):
    await enterprise.share_credits("admin-1", acme.id, Decimal("10.00"))
    await enterprise.add_member("admin-1", acme.id, "user-a", credit_limit=Decimal("1.00"))

    call, _ = await calls.initiate_call("user-a", "+15551234567", "1", enterprise_id=acme.id)
    assert call.owner_id == acme.id
    result = await calls.end_call(call.id, "user-a", 300)

    assert result.balance_after == Decimal("9.90")
    assert (await wallet.get_balance("user-a")).amount == Decimal("0")
    member = await enterprise.get_membership(acme.id, "user-a")
    assert member.used_credits == Decimal("0.10")

    usage = await enterprise.get_usage("admin-1", acme.id)
    assert usage["user-a"]["total_calls"] == 1
    assert usage["user-a"]["total_spent"] == Decimal("0.10")


async def test_member_over_credit_limit_cannot_call(enterprise, calls, wallet, acme, us_rate, caplog):
    await enterprise.share_credits("admin-1", acme.id, Decimal("10.00"))
    await enterprise.add_member("admin-1", acme.id, "user-a", credit_limit=Decimal("0.05"))

    call, _ = await calls.initiate_call("user-a", "+15551234567", "1", enterprise_id=acme.id)
    with caplog.at_level(logging.WARNING, logger="globalconnect.enterprise"):
        await calls.end_call(call.id, "user-a", 600)    # $0.20, usage capped at the limit

    assert "usage capped" in caplog.text
    assert (await wallet.get_balance(acme.id)).amount == Decimal("9.80")
    member = await enterprise.get_membership(acme.id, "user-a")
    assert member.used_credits == Decimal("0.05")
    with pytest.raises(CreditLimitExceeded):
        await calls.initiate_call("user-a", "+15551234567", "1", enterprise_id=acme.id)


async def test_non_member_and_disabled_member_cannot_bill_enterprise(enterprise, calls, acme, us_rate):
    await enterprise.share_credits("admin-1", acme.id, Decimal("10.00"))
    with pytest.raises(PermissionDenied):
        await calls.initiate_call("stranger", "+15551234567", "1", enterprise_id=acme.id)

    await enterprise.add_member("admin-1", acme.id, "user-a", can_make_calls=False)
    with pytest.raises(PermissionDenied):
        await calls.initiate_call("user-a", "+15551234567", "1", enterprise_id=acme.id)


async def test_empty_pool_blocks_enterprise_call(enterprise, calls, acme, us_rate):
    await enterprise.add_member("admin-1", acme.id, "user-a")

    with pytest.raises(InsufficientBalance):
        await calls.initiate_call("user-a", "+15551234567", "1", enterprise_id=acme.id)
