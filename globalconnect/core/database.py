"""
GlobalConnect — core/database.py
─────────────────────────────────────────────────────────────────
Single place for:
  - DB connection helper
  - Write transactions (BEGIN IMMEDIATE) with bounded retry
  - ALL table CREATE statements
  - One init_all_tables() call on startup

Usage:
    from globalconnect.core.database import get_db, run_in_transaction

    # Reads:
    async with get_db(db_path) as db:
        await db.execute(...)

    # Money movements (atomic, retried on lock contention):
    async def _work(db):
        await db.execute("UPDATE balances SET ...")
    await run_in_transaction(_work, db_path)
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import aiosqlite

from globalconnect.core.config import cfg
from globalconnect.core.errors import PersistenceFailure
from globalconnect.models.balance import BALANCES_TABLE, BALANCE_LEDGER_TABLE
from globalconnect.models.rate import RATE_SETTINGS_TABLE
from globalconnect.models.call import CALLS_TABLE
from globalconnect.models.payment import PAYMENTS_TABLE
from globalconnect.models.enterprise import ENTERPRISE_TABLES

logger = logging.getLogger("globalconnect.database")

T = TypeVar("T")

# Messages SQLite uses for lock contention; these are retried
_TRANSIENT_MARKERS = ("database is locked", "database table is locked", "busy")


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str = "") -> str:
    return prefix + secrets.token_urlsafe(12)


def is_transient(exc: Exception) -> bool:
    if not isinstance(exc, aiosqlite.OperationalError):
        return False
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


# ─────────────────────────────────────────────
# Connection helpers
# ─────────────────────────────────────────────
@asynccontextmanager
async def get_db(db_path: Optional[str] = None):
    """
    Use instead of aiosqlite.connect() everywhere.

    async with get_db() as db:
        await db.execute(...)

    Autocommit mode. Write paths go through transaction().
    """
    async with aiosqlite.connect(
        db_path or cfg.DB_PATH,
        timeout=cfg.DB_BUSY_TIMEOUT,
        isolation_level=None,
    ) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db


@asynccontextmanager
async def transaction(db_path: Optional[str] = None):
    """
    One write transaction. BEGIN IMMEDIATE takes SQLite's writer lock
    up front, so every read inside sees a value no other writer can
    change before we COMMIT.
    """
    async with get_db(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        else:
            await db.execute("COMMIT")


async def run_in_transaction(
    work: Callable[[aiosqlite.Connection], Awaitable[T]],
    db_path: Optional[str] = None,
    retries: Optional[int] = None,
) -> T:
    """
    Run work(db) inside transaction(). Lock contention is retried
    `retries` times (default cfg.DB_MAX_RETRY), then surfaces as
    PersistenceFailure. Business errors roll back and propagate as-is.
    """
    max_retry = cfg.DB_MAX_RETRY if retries is None else retries
    attempt = 0
    while True:
        try:
            async with transaction(db_path) as db:
                return await work(db)
        except aiosqlite.OperationalError as e:
            if not is_transient(e):
                logger.error(f"Database error: {e}")
                raise PersistenceFailure(f"Database error: {e}") from e
            attempt += 1
            if attempt > max_retry:
                logger.error(f"Giving up after {max_retry} retries: {e}")
                raise PersistenceFailure(
                    "Store is busy. Please retry the request."
                ) from e
            logger.warning(f"Transient DB error (attempt {attempt}/{max_retry}): {e}")
            await asyncio.sleep(cfg.DB_RETRY_DELAY * attempt)


# ─────────────────────────────────────────────
# Init: call once on startup
# ─────────────────────────────────────────────
async def init_all_tables(db_path: Optional[str] = None):
    """
    Creates all tables. Safe to call multiple times (IF NOT EXISTS).
    WAL keeps readers from blocking behind the writer lock.
    """
    path = db_path or cfg.DB_PATH
    async with get_db(path) as db:
        await db.execute("PRAGMA journal_mode = WAL")

        await db.executescript(BALANCES_TABLE + BALANCE_LEDGER_TABLE)
        logger.info("✓ Balance tables")

        await db.executescript(RATE_SETTINGS_TABLE)
        logger.info("✓ Rate tables")

        await db.executescript(CALLS_TABLE)
        logger.info("✓ Call ledger tables")

        await db.executescript(PAYMENTS_TABLE)
        logger.info("✓ Payment tables")

        await db.executescript(ENTERPRISE_TABLES)
        logger.info("✓ Enterprise tables")

    logger.info(f"✅ Database ready → {path}")
