"""
GlobalConnect — wallet.py
─────────────────────────────────────────────────────────────────
Balance Store
- One balance per owner (user OR enterprise shared pool)
- Atomic adjust: SQL increment inside BEGIN IMMEDIATE
- Checked debit (rejects) vs clamped debit (end-of-call only)
- Ledger row for every movement, unique ref_id = idempotency key
- Rebuild balance from ledger anytime

Usage:
    wallet = WalletService(db_path)
    await wallet.adjust(owner_id, Decimal("25.00"), REASON_TOPUP, "payment:pay_x")
    await wallet.debit(owner_id, Decimal("1.50"), REASON_DEDUCT, ref_id)
    await wallet.adjust_clamped(owner_id, -billed, REASON_CALL, "call:call_x")
─────────────────────────────────────────────────────────────────
"""

import logging
from decimal import Decimal
from typing import Optional, List, Tuple

import aiosqlite
from fastapi import APIRouter, Depends, Request
from pydantic import Field

from globalconnect.core.config import cfg
from globalconnect.core.database import get_db, run_in_transaction, now_iso, new_id
from globalconnect.core.errors import (
    AlreadySettled, InsufficientBalance, InvalidAmount,
)
from globalconnect.core.money import to_money, to_units, from_units, Number
from globalconnect.core.schemas import ApiModel
from globalconnect.core.security import Identity, get_current_identity
from globalconnect.models.balance import Balance, LedgerEntry

logger = logging.getLogger("globalconnect.wallet")

# Debit reasons
REASON_CALL         = "call_settlement"
REASON_DEDUCT       = "manual_deduct"
REASON_SHARE_OUT    = "enterprise_share_out"

# Credit reasons
REASON_TOPUP        = "payment_topup"
REASON_SHARE_IN     = "enterprise_share_in"
REASON_ADMIN        = "admin_credit"


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _row_to_ledger(r) -> LedgerEntry:
    return LedgerEntry(
        id            = r["id"],
        owner_id      = r["owner_id"],
        delta         = from_units(r["delta_units"]),
        reason        = r["reason"],
        ref_id        = r["ref_id"],
        balance_after = from_units(r["balance_after_units"]),
        created_at    = r["created_at"],
    )


# ─────────────────────────────────────────────
# WalletService
# ─────────────────────────────────────────────
class WalletService:
    """
    All balance operations. Each public mutator opens its own write
    transaction, or joins the caller's when `db` is passed.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or cfg.DB_PATH

    # ─── Read ─────────────────────────────────

    async def get_balance(self, owner_id: str) -> Balance:
        """Current balance. First access creates a zero balance."""
        async with get_db(self.db_path) as db:
            await db.execute(
                """INSERT OR IGNORE INTO balances
                   (owner_id, amount_units, currency, created_at, updated_at)
                   VALUES (?, 0, ?, ?, ?)""",
                (owner_id, cfg.DEFAULT_CURRENCY, now_iso(), now_iso())
            )
            async with db.execute(
                "SELECT * FROM balances WHERE owner_id = ?", (owner_id,)
            ) as cur:
                row = await cur.fetchone()
        return Balance(
            owner_id   = row["owner_id"],
            amount     = from_units(row["amount_units"]),
            currency   = row["currency"],
            updated_at = row["updated_at"],
        )

    async def get_ledger(
        self,
        owner_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[LedgerEntry]:
        """Paginated ledger history for an owner."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM balance_ledger
                   WHERE owner_id = ?
                   ORDER BY created_at DESC, rowid DESC
                   LIMIT ? OFFSET ?""",
                (owner_id, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_ledger(r) for r in rows]

    async def rebuild_balance(self, owner_id: str) -> Decimal:
        """
        Recalculate balance from ledger sum.
        Use for auditing or corruption recovery.
        """
        async def _work(db):
            async with db.execute(
                "SELECT COALESCE(SUM(delta_units), 0) AS total FROM balance_ledger WHERE owner_id = ?",
                (owner_id,)
            ) as cur:
                row = await cur.fetchone()
            total = int(row["total"])
            await self._ensure_balance(db, owner_id)
            await db.execute(
                "UPDATE balances SET amount_units = ?, updated_at = ? WHERE owner_id = ?",
                (total, now_iso(), owner_id)
            )
            return from_units(total)

        return await run_in_transaction(_work, self.db_path)

    # ─── Internals (caller holds the write lock) ──

    async def _ensure_balance(self, db, owner_id: str) -> int:
        """Create balance row if missing. Returns current units."""
        async with db.execute(
            "SELECT amount_units FROM balances WHERE owner_id = ?", (owner_id,)
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            await db.execute(
                """INSERT INTO balances (owner_id, amount_units, currency, created_at, updated_at)
                   VALUES (?, 0, ?, ?, ?)""",
                (owner_id, cfg.DEFAULT_CURRENCY, now_iso(), now_iso())
            )
            return 0
        return int(row[0])

    async def _check_duplicate(self, db, ref_id: Optional[str]) -> bool:
        if not ref_id:
            return False
        async with db.execute(
            "SELECT 1 FROM balance_ledger WHERE ref_id = ?", (ref_id,)
        ) as cur:
            return await cur.fetchone() is not None

    async def _write_ledger(self, db, owner_id: str, delta_units: int,
                            reason: str, ref_id: Optional[str], balance_after_units: int):
        await db.execute(
            """INSERT INTO balance_ledger
               (id, owner_id, delta_units, reason, ref_id, balance_after_units, created_at)
               VALUES (?,?,?,?,?,?,?)""",
            (new_id("led_"), owner_id, delta_units, reason, ref_id,
             balance_after_units, now_iso())
        )

    async def _move(
        self,
        db,
        owner_id: str,
        delta_units: int,
        reason: str,
        ref_id: Optional[str] = None,
        floor_units: Optional[int] = None,
        require_funds: bool = False,
    ) -> int:
        """
        The single mutation path. Returns the new balance in units.

        require_funds  → conditional UPDATE, rejects if it would go below 0
        floor_units    → result is MAX(floor, amount + delta)
        neither        → plain increment
        """
        if await self._check_duplicate(db, ref_id):
            raise AlreadySettled(f"ref_id '{ref_id}' already applied")

        before = await self._ensure_balance(db, owner_id)
        now = now_iso()

        if require_funds:
            cur = await db.execute(
                """UPDATE balances
                   SET amount_units = amount_units + ?, updated_at = ?
                   WHERE owner_id = ? AND amount_units + ? >= 0""",
                (delta_units, now, owner_id, delta_units)
            )
            if cur.rowcount == 0:
                raise InsufficientBalance(
                    f"Need {from_units(-delta_units)}, balance is {from_units(before)}"
                )
        elif floor_units is not None:
            await db.execute(
                """UPDATE balances
                   SET amount_units = MAX(?, amount_units + ?), updated_at = ?
                   WHERE owner_id = ?""",
                (floor_units, delta_units, now, owner_id)
            )
        else:
            await db.execute(
                """UPDATE balances
                   SET amount_units = amount_units + ?, updated_at = ?
                   WHERE owner_id = ?""",
                (delta_units, now, owner_id)
            )

        async with db.execute(
            "SELECT amount_units FROM balances WHERE owner_id = ?", (owner_id,)
        ) as cur:
            after = int((await cur.fetchone())[0])

        try:
            await self._write_ledger(db, owner_id, after - before, reason, ref_id, after)
        except aiosqlite.IntegrityError:
            raise AlreadySettled(f"ref_id '{ref_id}' already applied")
        return after

    async def _run(self, db, work):
        if db is not None:
            return await work(db)
        return await run_in_transaction(work, self.db_path)

    # ─── Write ────────────────────────────────

    async def adjust(
        self,
        owner_id: str,
        delta: Number,
        reason: str,
        ref_id: Optional[str] = None,
        db=None,
    ) -> Decimal:
        """
        Apply a signed delta. No sufficiency check; callers that debit
        on behalf of a user use debit() instead.
        Returns new balance.
        """
        delta_units = to_units(delta)

        async def _work(conn):
            return await self._move(conn, owner_id, delta_units, reason, ref_id)

        after = from_units(await self._run(db, _work))
        logger.info(f"Balance {owner_id} {to_money(delta):+} ({reason}) → {after}")
        return after

    async def adjust_clamped(
        self,
        owner_id: str,
        delta: Number,
        reason: str,
        ref_id: Optional[str] = None,
        floor: Number = 0,
        db=None,
    ) -> Decimal:
        """
        End-of-call debit: the call already happened, so an overdraw is
        forgiven by clamping to `floor` instead of rejecting.
        Result is always max(floor, current + delta).
        """
        delta_units = to_units(delta)
        floor_units = to_units(floor)

        async def _work(conn):
            return await self._move(
                conn, owner_id, delta_units, reason, ref_id, floor_units=floor_units
            )

        after = from_units(await self._run(db, _work))
        logger.info(f"Balance {owner_id} {to_money(delta):+} clamped ({reason}) → {after}")
        return after

    async def debit(
        self,
        owner_id: str,
        amount: Number,
        reason: str,
        ref_id: Optional[str] = None,
        db=None,
    ) -> Decimal:
        """
        Deduct funds. Check and deduction are one conditional UPDATE.
        Raises InsufficientBalance if not enough funds.
        Raises AlreadySettled if ref_id already processed.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Debit amount must be positive, got {amount}")
        units = to_units(amount)

        async def _work(conn):
            return await self._move(
                conn, owner_id, -units, reason, ref_id, require_funds=True
            )

        after = from_units(await self._run(db, _work))
        logger.info(f"Debited {amount} from {owner_id} ({reason}) → {after}")
        return after

    async def credit(
        self,
        owner_id: str,
        amount: Number,
        reason: str,
        ref_id: Optional[str] = None,
        db=None,
    ) -> Decimal:
        """
        Add funds. Returns new balance.
        Raises AlreadySettled if ref_id already processed.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Credit amount must be positive, got {amount}")
        return await self.adjust(owner_id, amount, reason, ref_id, db=db)

    async def transfer(
        self,
        from_owner: str,
        to_owner: str,
        amount: Number,
        ref_id: Optional[str] = None,
        debit_reason: str = REASON_SHARE_OUT,
        credit_reason: str = REASON_SHARE_IN,
    ) -> Tuple[Decimal, Decimal]:
        """
        Move funds between two balances in ONE transaction: either both
        rows change or neither does.
        Returns (from_balance, to_balance).
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Transfer amount must be positive, got {amount}")
        units = to_units(amount)
        ref = ref_id or new_id("xfer_")

        async def _work(db):
            src = await self._move(
                db, from_owner, -units, debit_reason, f"{ref}:out", require_funds=True
            )
            dst = await self._move(
                db, to_owner, units, credit_reason, f"{ref}:in"
            )
            return src, dst

        src, dst = await run_in_transaction(_work, self.db_path)
        logger.info(f"Transferred {amount} {from_owner} → {to_owner} (ref={ref})")
        return from_units(src), from_units(dst)

    async def admin_credit(
        self,
        owner_id: str,
        amount: Number,
        note: str,
        admin_id: str
    ) -> Decimal:
        """
        Manual credit by admin (logged with admin_id).
        Always has a unique ref_id so it's auditable.
        """
        ref_id = f"admin_{admin_id}_{new_id()}"
        return await self.credit(
            owner_id, amount,
            reason=f"{REASON_ADMIN}:{note}",
            ref_id=ref_id
        )


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/wallet", tags=["wallet"])


def wallet_service(request: Request) -> WalletService:
    return request.app.state.wallet


class DeductRequest(ApiModel):
    amount:       Decimal = Field(..., description="Amount in major units")
    reference_id: str     = Field(..., min_length=1, max_length=128)


@router.get("/balance")
async def get_wallet_balance(
    identity: Identity = Depends(get_current_identity),
    wallet: WalletService = Depends(wallet_service),
):
    balance = await wallet.get_balance(identity.user_id)
    return {"balance": balance.amount, "currency": balance.currency}


@router.get("/transactions")
async def get_transactions(
    limit: int = 50,
    offset: int = 0,
    identity: Identity = Depends(get_current_identity),
    wallet: WalletService = Depends(wallet_service),
):
    entries = await wallet.get_ledger(identity.user_id, min(limit, 200), offset)
    return {"transactions": entries}


@router.post("/deduct")
async def deduct_credits(
    body: DeductRequest,
    identity: Identity = Depends(get_current_identity),
    wallet: WalletService = Depends(wallet_service),
):
    """Checked debit. The client reference makes retries safe."""
    new_balance = await wallet.debit(
        identity.user_id, body.amount,
        reason=REASON_DEDUCT,
        ref_id=f"deduct:{identity.user_id}:{body.reference_id}",
    )
    return {"balance": new_balance, "deducted": to_money(body.amount)}
