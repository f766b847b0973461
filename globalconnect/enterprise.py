"""
GlobalConnect — enterprise.py
─────────────────────────────────────────────────────────────────
Enterprise Credit-Sharing
- Enterprise accounts with a shared balance (balances row keyed by
  the enterprise id)
- Admin → shared pool transfers in one transaction
- Member capacity (max_members) and per-member credit limits
- Usage roll-up per member

ENDPOINTS:
  POST   /api/enterprise/create
  GET    /api/enterprise/{id}
  POST   /api/enterprise/{id}/members
  DELETE /api/enterprise/{id}/members/{member_id}
  PATCH  /api/enterprise/{id}/members/{member_id}
  POST   /api/enterprise/{id}/share-credits
  GET    /api/enterprise/{id}/usage
─────────────────────────────────────────────────────────────────
"""

import logging
from decimal import Decimal
from typing import Optional, List, Dict, Any

import aiosqlite
from fastapi import APIRouter, Depends, Request
from pydantic import Field

from globalconnect.core.config import cfg
from globalconnect.core.database import get_db, run_in_transaction, now_iso, new_id
from globalconnect.core.errors import (
    NotFound, PermissionDenied, CapacityExceeded, CreditLimitExceeded,
    Conflict, InvalidAmount, InvalidPayload,
)
from globalconnect.core.money import to_money, to_units, from_units, Number
from globalconnect.core.schemas import ApiModel
from globalconnect.core.security import Identity, get_current_identity
from globalconnect.models.enterprise import EnterpriseAccount, EnterpriseMembership
from globalconnect.wallet import WalletService

logger = logging.getLogger("globalconnect.enterprise")


def _row_to_account(row) -> EnterpriseAccount:
    return EnterpriseAccount(
        id          = row["id"],
        name        = row["name"],
        admin_id    = row["admin_id"],
        max_members = int(row["max_members"]),
        created_at  = row["created_at"],
    )


def _row_to_member(row) -> EnterpriseMembership:
    return EnterpriseMembership(
        id                   = row["id"],
        enterprise_id        = row["enterprise_id"],
        user_id              = row["user_id"],
        credit_limit         = from_units(row["credit_limit_units"]),
        used_credits         = from_units(row["used_credits_units"]),
        can_make_calls       = bool(row["can_make_calls"]),
        can_purchase_numbers = bool(row["can_purchase_numbers"]),
        joined_at            = row["joined_at"],
    )


# ─────────────────────────────────────────────
# EnterpriseService
# ─────────────────────────────────────────────
class EnterpriseService:

    def __init__(self, wallet: WalletService, db_path: Optional[str] = None):
        self.db_path = db_path or cfg.DB_PATH
        self.wallet  = wallet

    # ─── Accounts ──────────────────────────────

    async def create_enterprise(
        self,
        admin_id: str,
        name: str,
        max_members: Optional[int] = None,
    ) -> EnterpriseAccount:
        name = (name or "").strip()
        if not name:
            raise InvalidPayload("Enterprise name is required")
        max_members = cfg.DEFAULT_MAX_MEMBERS if max_members is None else int(max_members)
        if max_members < 1:
            raise InvalidPayload("max_members must be at least 1")

        enterprise_id = new_id("ent_")

        async def _work(db):
            now = now_iso()
            await db.execute(
                """INSERT INTO enterprise_accounts
                   (id, name, admin_id, max_members, created_at, updated_at)
                   VALUES (?,?,?,?,?,?)""",
                (enterprise_id, name, admin_id, max_members, now, now)
            )

        await run_in_transaction(_work, self.db_path)
        await self.wallet.get_balance(enterprise_id)   # open the shared pool at 0
        logger.info(f"Enterprise created: {enterprise_id} '{name}' admin={admin_id}")
        return await self.get_account(enterprise_id)

    async def get_account(self, enterprise_id: str) -> EnterpriseAccount:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM enterprise_accounts WHERE id = ?", (enterprise_id,)
            ) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFound(f"Enterprise '{enterprise_id}' not found")
        return _row_to_account(row)

    async def _require_admin(self, enterprise_id: str, admin_id: str) -> EnterpriseAccount:
        account = await self.get_account(enterprise_id)
        if account.admin_id != admin_id:
            raise PermissionDenied("Only the enterprise admin can do this")
        return account

    async def list_members(self, enterprise_id: str) -> List[EnterpriseMembership]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM enterprise_members WHERE enterprise_id = ? ORDER BY joined_at",
                (enterprise_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_member(r) for r in rows]

    async def get_membership(self, enterprise_id: str, user_id: str) -> Optional[EnterpriseMembership]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM enterprise_members WHERE enterprise_id = ? AND user_id = ?",
                (enterprise_id, user_id)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_member(row) if row else None

    async def get_enterprise(self, enterprise_id: str, user_id: str) -> Dict[str, Any]:
        """Account + shared balance + members. Admin or member only."""
        account = await self.get_account(enterprise_id)
        members = await self.list_members(enterprise_id)
        is_admin = account.admin_id == user_id
        if not is_admin and not any(m.user_id == user_id for m in members):
            raise PermissionDenied("Access denied")
        shared = await self.wallet.get_balance(enterprise_id)
        return {
            "enterprise":     account,
            "shared_balance": shared.amount,
            "members":        members,
            "is_admin":       is_admin,
        }

    async def list_enterprises(self) -> List[Dict[str, Any]]:
        """Admin console: every enterprise with member count and pool size."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT e.*,
                          (SELECT COUNT(*) FROM enterprise_members m
                            WHERE m.enterprise_id = e.id) AS member_count,
                          COALESCE(b.amount_units, 0) AS shared_units
                   FROM enterprise_accounts e
                   LEFT JOIN balances b ON b.owner_id = e.id
                   ORDER BY e.created_at DESC"""
            ) as cur:
                rows = await cur.fetchall()
        return [
            {
                "enterprise":     _row_to_account(r),
                "member_count":   int(r["member_count"]),
                "shared_balance": from_units(r["shared_units"]),
            }
            for r in rows
        ]

    # ─── Members ───────────────────────────────

    async def add_member(
        self,
        admin_id: str,
        enterprise_id: str,
        user_id: str,
        credit_limit: Number = 0,
        can_make_calls: bool = True,
        can_purchase_numbers: bool = False,
    ) -> EnterpriseMembership:
        """
        Capacity check and insert share one transaction, so two admins
        racing for the last seat cannot both get in.
        """
        account = await self._require_admin(enterprise_id, admin_id)
        limit = to_money(credit_limit)
        if limit < 0:
            raise InvalidAmount("credit_limit must be >= 0")
        member_id = new_id("mem_")

        async def _work(db):
            async with db.execute(
                "SELECT COUNT(*) FROM enterprise_members WHERE enterprise_id = ?",
                (enterprise_id,)
            ) as cur:
                count = int((await cur.fetchone())[0])
            if count >= account.max_members:
                raise CapacityExceeded(
                    f"Maximum member limit reached ({account.max_members})"
                )
            try:
                await db.execute(
                    """INSERT INTO enterprise_members
                       (id, enterprise_id, user_id, credit_limit_units, used_credits_units,
                        can_make_calls, can_purchase_numbers, joined_at)
                       VALUES (?,?,?,?,0,?,?,?)""",
                    (member_id, enterprise_id, user_id, to_units(limit),
                     int(can_make_calls), int(can_purchase_numbers), now_iso())
                )
            except aiosqlite.IntegrityError:
                raise Conflict(f"User '{user_id}' is already a member")

        await run_in_transaction(_work, self.db_path)
        logger.info(f"Member added: {user_id} → {enterprise_id} (limit={limit})")
        return await self.get_membership(enterprise_id, user_id)

    async def remove_member(self, admin_id: str, enterprise_id: str, member_id: str):
        await self._require_admin(enterprise_id, admin_id)

        async def _work(db):
            cur = await db.execute(
                "DELETE FROM enterprise_members WHERE id = ? AND enterprise_id = ?",
                (member_id, enterprise_id)
            )
            if cur.rowcount == 0:
                raise NotFound(f"Member '{member_id}' not found")

        await run_in_transaction(_work, self.db_path)
        logger.info(f"Member removed: {member_id} from {enterprise_id}")

    async def update_member_permissions(
        self,
        admin_id: str,
        enterprise_id: str,
        member_id: str,
        credit_limit: Optional[Number] = None,
        can_make_calls: Optional[bool] = None,
        can_purchase_numbers: Optional[bool] = None,
    ) -> EnterpriseMembership:
        await self._require_admin(enterprise_id, admin_id)

        updates, params = [], []
        if credit_limit is not None:
            limit = to_money(credit_limit)
            if limit < 0:
                raise InvalidAmount("credit_limit must be >= 0")
            updates.append("credit_limit_units = ?")
            params.append(to_units(limit))
        if can_make_calls is not None:
            updates.append("can_make_calls = ?")
            params.append(int(can_make_calls))
        if can_purchase_numbers is not None:
            updates.append("can_purchase_numbers = ?")
            params.append(int(can_purchase_numbers))

        async def _work(db):
            if updates:
                cur = await db.execute(
                    f"UPDATE enterprise_members SET {', '.join(updates)} "
                    f"WHERE id = ? AND enterprise_id = ?",
                    (*params, member_id, enterprise_id)
                )
                if cur.rowcount == 0:
                    raise NotFound(f"Member '{member_id}' not found")
            async with db.execute(
                "SELECT * FROM enterprise_members WHERE id = ? AND enterprise_id = ?",
                (member_id, enterprise_id)
            ) as cur:
                row = await cur.fetchone()
            if not row:
                raise NotFound(f"Member '{member_id}' not found")
            return _row_to_member(row)

        return await run_in_transaction(_work, self.db_path)

    # ─── Money ─────────────────────────────────

    async def share_credits(
        self,
        admin_id: str,
        enterprise_id: str,
        amount: Number,
    ) -> Dict[str, Decimal]:
        """
        Admin personal balance → enterprise shared balance.
        Debit and credit commit together (WalletService.transfer).
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount("Invalid amount")
        await self._require_admin(enterprise_id, admin_id)

        admin_balance, shared_balance = await self.wallet.transfer(
            from_owner = admin_id,
            to_owner   = enterprise_id,
            amount     = amount,
        )
        return {"shared_balance": shared_balance, "admin_balance": admin_balance}

    async def get_call_membership(self, enterprise_id: str, user_id: str) -> EnterpriseMembership:
        """
        Gate for enterprise-billed calls.
        Credit limit 0 = unlimited.
        """
        await self.get_account(enterprise_id)
        member = await self.get_membership(enterprise_id, user_id)
        if member is None:
            raise PermissionDenied("Not a member of this enterprise")
        if not member.can_make_calls:
            raise PermissionDenied("Calling is disabled for this member")
        if member.is_over_limit:
            raise CreditLimitExceeded(
                f"Member credit limit {member.credit_limit} reached"
            )
        return member

    async def record_member_usage(self, db, enterprise_id: str, user_id: str, amount: Number):
        """
        Runs inside the settlement transaction. used_credits never
        passes a positive credit_limit.
        """
        units = to_units(amount)
        async with db.execute(
            """SELECT credit_limit_units, used_credits_units FROM enterprise_members
               WHERE enterprise_id = ? AND user_id = ?""",
            (enterprise_id, user_id)
        ) as cur:
            row = await cur.fetchone()
        if row and row[0] > 0 and row[1] + units > row[0]:
            logger.warning(
                f"Member {user_id} in {enterprise_id}: usage capped at limit "
                f"{from_units(row[0])}, {from_units(row[1] + units - row[0])} not counted"
            )
        await db.execute(
            """UPDATE enterprise_members
               SET used_credits_units = CASE
                   WHEN credit_limit_units > 0
                       THEN MIN(credit_limit_units, used_credits_units + ?)
                   ELSE used_credits_units + ?
               END
               WHERE enterprise_id = ? AND user_id = ?""",
            (units, units, enterprise_id, user_id)
        )

    async def get_usage(self, admin_id: str, enterprise_id: str) -> Dict[str, Dict[str, Any]]:
        """Per-member totals for enterprise-billed calls."""
        await self._require_admin(enterprise_id, admin_id)
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT user_id,
                          COUNT(*)                          AS total_calls,
                          COALESCE(SUM(duration_seconds), 0) AS total_seconds,
                          COALESCE(SUM(CASE WHEN status = 'completed'
                                            THEN billed_units ELSE 0 END), 0) AS spent_units
                   FROM calls
                   WHERE enterprise_id = ?
                   GROUP BY user_id""",
                (enterprise_id,)
            ) as cur:
                rows = await cur.fetchall()
        return {
            r["user_id"]: {
                "total_calls":   int(r["total_calls"]),
                "total_minutes": round(int(r["total_seconds"]) / 60, 2),
                "total_spent":   from_units(r["spent_units"]),
            }
            for r in rows
        }


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/enterprise", tags=["enterprise"])


def enterprise_service(request: Request) -> EnterpriseService:
    return request.app.state.enterprise


class CreateEnterpriseRequest(ApiModel):
    name:        str
    max_members: Optional[int] = None


class AddMemberRequest(ApiModel):
    user_id:              str
    credit_limit:         Decimal = Decimal("0")
    can_make_calls:       bool = True
    can_purchase_numbers: bool = False


class UpdateMemberRequest(ApiModel):
    credit_limit:         Optional[Decimal] = None
    can_make_calls:       Optional[bool] = None
    can_purchase_numbers: Optional[bool] = None


class ShareCreditsRequest(ApiModel):
    amount: Decimal = Field(..., description="Amount in major units")


@router.post("/create")
async def create_enterprise(
    body: CreateEnterpriseRequest,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    account = await enterprise.create_enterprise(identity.user_id, body.name, body.max_members)
    return {"enterprise": account}


@router.get("/{enterprise_id}")
async def get_enterprise_details(
    enterprise_id: str,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    details = await enterprise.get_enterprise(enterprise_id, identity.user_id)
    return {
        "enterprise":    details["enterprise"],
        "sharedBalance": details["shared_balance"],
        "members":       details["members"],
        "isAdmin":       details["is_admin"],
    }


@router.post("/{enterprise_id}/members")
async def add_member(
    enterprise_id: str,
    body: AddMemberRequest,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    member = await enterprise.add_member(
        identity.user_id, enterprise_id, body.user_id,
        credit_limit         = body.credit_limit,
        can_make_calls       = body.can_make_calls,
        can_purchase_numbers = body.can_purchase_numbers,
    )
    return {"member": member}


@router.delete("/{enterprise_id}/members/{member_id}")
async def remove_member(
    enterprise_id: str,
    member_id: str,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    await enterprise.remove_member(identity.user_id, enterprise_id, member_id)
    return {"message": "Member removed successfully"}


@router.patch("/{enterprise_id}/members/{member_id}")
async def update_member_permissions(
    enterprise_id: str,
    member_id: str,
    body: UpdateMemberRequest,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    member = await enterprise.update_member_permissions(
        identity.user_id, enterprise_id, member_id,
        credit_limit         = body.credit_limit,
        can_make_calls       = body.can_make_calls,
        can_purchase_numbers = body.can_purchase_numbers,
    )
    return {"member": member}


@router.post("/{enterprise_id}/share-credits")
async def share_credits(
    enterprise_id: str,
    body: ShareCreditsRequest,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    result = await enterprise.share_credits(identity.user_id, enterprise_id, body.amount)
    return {
        "sharedBalance": result["shared_balance"],
        "adminBalance":  result["admin_balance"],
    }


@router.get("/{enterprise_id}/usage")
async def get_enterprise_usage(
    enterprise_id: str,
    identity: Identity = Depends(get_current_identity),
    enterprise: EnterpriseService = Depends(enterprise_service),
):
    return {"usage": await enterprise.get_usage(identity.user_id, enterprise_id)}
