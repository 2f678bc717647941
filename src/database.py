"""SQLite store for gifts, custodial wallets and the claim audit trail.

Every state change is a single conditional UPDATE whose WHERE clause re-checks
the current state, so concurrent writers (request handlers, the event path, the
poll path, other processes) resolve races through the guard instead of locks.
"""

import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiosqlite

from .config import config
from .errors import ConflictError, DatabaseError
from .logging_utils import get_logger
from .models import (
    OPEN_STATUSES,
    PRE_LOCK_STATUSES,
    ClaimEvent,
    Gift,
    Wallet,
    can_transition,
    payment_can_advance,
    statuses_into,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Custodial wallet pool
CREATE TABLE IF NOT EXISTS wallets (
    address TEXT PRIMARY KEY,
    encrypted_private_key TEXT NOT NULL,
    encrypted_mnemonic TEXT,
    reserved INTEGER NOT NULL DEFAULT 0,
    reserved_at TEXT,
    balance TEXT NOT NULL DEFAULT '0',
    last_balance_update TEXT,
    wallet_index INTEGER NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- Gift lifecycle records
CREATE TABLE IF NOT EXISTS gifts (
    gift_code TEXT PRIMARY KEY,
    gift_id TEXT,
    buyer_email TEXT NOT NULL,
    recipient_first_name TEXT NOT NULL,
    recipient_last_name TEXT NOT NULL DEFAULT '',
    claimed_by TEXT,
    message TEXT NOT NULL DEFAULT '',
    currency TEXT NOT NULL,
    token_address TEXT NOT NULL,
    amount TEXT NOT NULL,
    fee TEXT NOT NULL,
    gas_fee TEXT NOT NULL,
    total_amount TEXT NOT NULL,
    total_received TEXT,
    actual_gas_cost TEXT,
    platform_profit TEXT,
    wallet_address TEXT NOT NULL,
    recipient_wallet TEXT NOT NULL,
    contract_address TEXT,
    unlock_date TEXT NOT NULL,
    expiry_date TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    claimed_at TEXT,
    status TEXT NOT NULL CHECK(status IN
        ('created', 'pending', 'active', 'claimed', 'cancelled', 'expired', 'failed')),
    payment_status TEXT NOT NULL CHECK(payment_status IN
        ('pending', 'paid', 'received', 'expired', 'failed')),
    is_claimed INTEGER NOT NULL DEFAULT 0,
    review_reason TEXT,
    payment_tx_hash TEXT,
    diverted_tx_hash TEXT,
    contract_locked INTEGER NOT NULL DEFAULT 0,
    lock_tx_hash TEXT,
    fee_tx_hash TEXT,
    lock_attempts INTEGER NOT NULL DEFAULT 0,
    lock_started_at TEXT,
    last_lock_error TEXT,
    auto_transfer_attempts INTEGER NOT NULL DEFAULT 0,
    last_auto_transfer_attempt TEXT,
    auto_transfer_tx_hash TEXT,
    last_auto_transfer_error TEXT,
    FOREIGN KEY (wallet_address) REFERENCES wallets(address)
);

-- Preclaim and claim audit trail
CREATE TABLE IF NOT EXISTS claim_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    gift_code TEXT NOT NULL,
    action TEXT NOT NULL CHECK(action IN ('preclaim', 'claim')),
    claimant TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (gift_code) REFERENCES gifts(gift_code)
);

-- A wallet backs at most one live gift; cancelled gifts give their wallet back
CREATE UNIQUE INDEX IF NOT EXISTS idx_gifts_live_wallet
    ON gifts(wallet_address) WHERE status != 'cancelled';

CREATE INDEX IF NOT EXISTS idx_wallets_reserved ON wallets(reserved, wallet_index);
CREATE INDEX IF NOT EXISTS idx_gifts_status ON gifts(status);
CREATE INDEX IF NOT EXISTS idx_gifts_payment_status ON gifts(payment_status);
CREATE INDEX IF NOT EXISTS idx_gifts_unlock_date ON gifts(unlock_date);
CREATE INDEX IF NOT EXISTS idx_gifts_recipient_wallet ON gifts(recipient_wallet);
CREATE INDEX IF NOT EXISTS idx_gifts_buyer_email ON gifts(buyer_email);
CREATE INDEX IF NOT EXISTS idx_gifts_claimed_by ON gifts(claimed_by);
CREATE INDEX IF NOT EXISTS idx_claim_events_gift_code ON claim_events(gift_code);
"""

GIFT_COLUMNS = list(Gift.model_fields)

WALLET_COLUMNS = {
    "address": "address",
    "encrypted_private_key": "encrypted_private_key",
    "encrypted_mnemonic": "encrypted_mnemonic",
    "reserved": "reserved",
    "reserved_at": "reserved_at",
    "balance": "balance",
    "last_balance_update": "last_balance_update",
    "index": "wallet_index",
    "created_at": "created_at",
}


def _ts(value: datetime) -> str:
    """Fixed-width ISO timestamp so string comparison in SQL orders correctly."""
    return value.isoformat(timespec="microseconds")


def _encode(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, Decimal):
        return str(value)
    return value


def _row_to_gift(row: aiosqlite.Row) -> Gift:
    return Gift(**{key: row[key] for key in row.keys()})


def _row_to_wallet(row: aiosqlite.Row) -> Wallet:
    return Wallet(**{field: row[column] for field, column in WALLET_COLUMNS.items()})


def _check_payment_moves(from_statuses: Iterable[str], to_status: str) -> None:
    illegal = [status for status in from_statuses if not payment_can_advance(status, to_status)]
    if illegal:
        raise ValueError(f"Illegal payment transition {illegal} -> {to_status}")


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class Database:
    """Async store interface for gifts and the wallet pool."""

    def __init__(self, db_path: str = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=30) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except sqlite3.OperationalError as e:
            logger.error(f"Store operation failed on {self.db_path}: {e}")
            raise DatabaseError(f"Store unavailable: {e}") from e

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Wallet operations
    async def insert_wallet(self, wallet: Wallet) -> bool:
        """Insert a generated wallet.

        Returns:
            True if inserted, False if the address or index already exists.
        """
        columns = list(WALLET_COLUMNS.values())
        values = [_encode(getattr(wallet, field)) for field in WALLET_COLUMNS]
        try:
            async with self._connect() as db:
                await db.execute(
                    f"INSERT INTO wallets ({', '.join(columns)}) VALUES ({_placeholders(values)})",
                    values,
                )
                await db.commit()
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"Wallet {wallet.address} already exists in the pool. Skipping.")
            return False

    async def get_last_wallet_index(self) -> int:
        """Highest allocated wallet index, or -1 for an empty pool."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT MAX(wallet_index) FROM wallets")
            row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else -1

    async def reserve_wallet(self) -> Optional[Wallet]:
        """Atomically take the lowest-index unreserved wallet.

        The find and the set happen in one UPDATE statement inside an
        immediate transaction; the `reserved = 0` guard makes the write a
        compare-and-swap even if another connection raced the subquery.

        Returns:
            The reserved wallet, or None if the pool is exhausted.
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                UPDATE wallets
                SET reserved = 1, reserved_at = ?
                WHERE address = (
                    SELECT address FROM wallets
                    WHERE reserved = 0
                    ORDER BY wallet_index
                    LIMIT 1
                )
                AND reserved = 0
                RETURNING *
                """,
                (_ts(datetime.utcnow()),),
            )
            row = await cursor.fetchone()
            await cursor.close()
            await db.commit()

        if row is None:
            return None
        return _row_to_wallet(row)

    async def release_wallet(self, address: str) -> bool:
        """Clear the reservation flag. Releasing an unreserved wallet is a no-op.

        Returns:
            True if this call released the wallet.
        """
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE wallets SET reserved = 0, reserved_at = NULL WHERE address = ? AND reserved = 1",
                (address.lower(),),
            )
            await db.commit()
            released = cursor.rowcount == 1
        if released:
            logger.info(f"Released wallet reservation: {address}")
        return released

    async def find_idle_reserved_wallets(self, reserved_before: datetime) -> List[Wallet]:
        """Wallets reserved before `reserved_before` that no live gift uses."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM wallets w
                WHERE w.reserved = 1 AND w.reserved_at < ?
                AND NOT EXISTS (
                    SELECT 1 FROM gifts g
                    WHERE g.wallet_address = w.address AND g.status != 'cancelled'
                )
                ORDER BY w.wallet_index
                """,
                (_ts(reserved_before),),
            )
            rows = await cursor.fetchall()
        return [_row_to_wallet(row) for row in rows]

    async def release_idle_wallet(self, address: str) -> bool:
        """Release a reservation only while no live gift has been created on the wallet."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE wallets SET reserved = 0, reserved_at = NULL
                WHERE address = ? AND reserved = 1
                AND NOT EXISTS (
                    SELECT 1 FROM gifts g
                    WHERE g.wallet_address = wallets.address AND g.status != 'cancelled'
                )
                """,
                (address.lower(),),
            )
            await db.commit()
            released = cursor.rowcount == 1
        if released:
            logger.info(f"Released idle wallet reservation: {address}")
        return released

    async def count_available_wallets(self) -> int:
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM wallets WHERE reserved = 0")
            row = await cursor.fetchone()
        return row[0]

    async def get_wallet(self, address: str) -> Optional[Wallet]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM wallets WHERE address = ?", (address.lower(),))
            row = await cursor.fetchone()
        return _row_to_wallet(row) if row else None

    async def update_wallet_balance(self, address: str, balance: Decimal) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE wallets SET balance = ?, last_balance_update = ? WHERE address = ?",
                (str(balance), _ts(datetime.utcnow()), address.lower()),
            )
            await db.commit()

    # Gift operations
    async def create_gift(self, gift: Gift) -> bool:
        """Insert a new gift record.

        Returns:
            True if created, False if the gift code already exists.

        Raises:
            ConflictError: If the wallet already backs another live gift.
        """
        values = [_encode(getattr(gift, column)) for column in GIFT_COLUMNS]
        try:
            async with self._connect() as db:
                await db.execute(
                    f"INSERT INTO gifts ({', '.join(GIFT_COLUMNS)}) VALUES ({_placeholders(values)})",
                    values,
                )
                await db.commit()
        except sqlite3.IntegrityError as e:
            if "gift_code" in str(e):
                logger.warning(f"Gift code collision: {gift.gift_code}")
                return False
            raise ConflictError(
                "Wallet is already assigned to another gift",
                {"walletAddress": gift.wallet_address},
            ) from e
        logger.info(f"Created gift: {gift.gift_code}")
        return True

    async def get_gift(self, gift_code: str) -> Optional[Gift]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM gifts WHERE gift_code = ?", (gift_code,))
            row = await cursor.fetchone()
        return _row_to_gift(row) if row else None

    async def get_live_gift_by_wallet(self, wallet_address: str) -> Optional[Gift]:
        """Gift currently backed by a custodial wallet (cancelled gifts excluded)."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM gifts WHERE wallet_address = ? AND status != 'cancelled'",
                (wallet_address.lower(),),
            )
            row = await cursor.fetchone()
        return _row_to_gift(row) if row else None

    async def get_gift_by_recipient_wallet(self, recipient_wallet: str) -> Optional[Gift]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM gifts
                WHERE recipient_wallet = ? AND status != 'cancelled'
                ORDER BY created_at DESC LIMIT 1
                """,
                (recipient_wallet.lower(),),
            )
            row = await cursor.fetchone()
        return _row_to_gift(row) if row else None

    async def _guarded_update(
        self, gift_code: str, fields: Dict[str, Any], where: str = "", params: Iterable[Any] = ()
    ) -> bool:
        fields = dict(fields)
        fields["updated_at"] = datetime.utcnow()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [_encode(value) for value in fields.values()]
        sql = f"UPDATE gifts SET {assignments} WHERE gift_code = ?"
        if where:
            sql += f" AND ({where})"
        async with self._connect() as db:
            cursor = await db.execute(sql, [*values, gift_code, *params])
            await db.commit()
            return cursor.rowcount == 1

    async def update_gift_fields(self, gift_code: str, **fields: Any) -> bool:
        """Unguarded bookkeeping write (tx hashes, error text, cached figures)."""
        return await self._guarded_update(gift_code, fields)

    async def transition_status(
        self,
        gift_code: str,
        from_statuses: Iterable[str],
        to_status: str,
        payment_statuses: Optional[Iterable[str]] = None,
        **fields: Any,
    ) -> bool:
        """Move `status` to `to_status` only if it is currently one of `from_statuses`.

        Args:
            payment_statuses: Optional extra guard on the payment axis. Required
                when ``fields`` also moves ``payment_status``.

        Returns:
            True if this call performed the transition.

        Raises:
            ValueError: If any listed move is not in the transition tables.
        """
        params = list(from_statuses)
        illegal = [status for status in params if not can_transition(status, to_status)]
        if illegal:
            raise ValueError(f"Illegal status transition {illegal} -> {to_status}")

        where = f"status IN ({_placeholders(params)})"
        if "payment_status" in fields and payment_statuses is None:
            raise ValueError("payment_status can only change under a payment_statuses guard")
        if payment_statuses is not None:
            payment_statuses = list(payment_statuses)
            if "payment_status" in fields:
                _check_payment_moves(payment_statuses, fields["payment_status"])
            where += f" AND payment_status IN ({_placeholders(payment_statuses)})"
            params.extend(payment_statuses)
        fields["status"] = to_status
        return await self._guarded_update(gift_code, fields, where, params)

    async def advance_payment_status(
        self, gift_code: str, from_statuses: Iterable[str], to_status: str, **fields: Any
    ) -> bool:
        """Move `payment_status` forward only from the listed earlier states.

        Raises:
            ValueError: If any listed move would regress the payment axis.
        """
        from_statuses = list(from_statuses)
        _check_payment_moves(from_statuses, to_status)
        fields["payment_status"] = to_status
        return await self._guarded_update(
            gift_code, fields, f"payment_status IN ({_placeholders(from_statuses)})", from_statuses
        )

    async def flag_for_review(self, gift_code: str, reason: str) -> bool:
        """Park an unpaid gift for manual review. Only the first caller wins."""
        return await self._guarded_update(
            gift_code,
            {"review_reason": reason},
            "review_reason IS NULL AND payment_status IN ('pending', 'paid')",
        )

    async def acquire_lock_lease(self, gift_code: str, lease_seconds: int) -> bool:
        """Claim the right to submit the lock transaction for a gift.

        Succeeds only while the gift is paid, unlocked and nobody else holds an
        unexpired lease.
        """
        now = datetime.utcnow()
        stale_before = now - timedelta(seconds=lease_seconds)
        return await self._guarded_update(
            gift_code,
            {"lock_started_at": now},
            "payment_status = 'received' AND contract_locked = 0 "
            "AND (lock_started_at IS NULL OR lock_started_at < ?)",
            (_ts(stale_before),),
        )

    async def mark_contract_locked(self, gift_code: str, **fields: Any) -> bool:
        """Record a confirmed lock and advance the gift to active.

        Returns:
            True if this call flipped contract_locked.
        """
        fields = dict(fields)
        fields["updated_at"] = datetime.utcnow()
        fields["contract_locked"] = True
        fields["lock_started_at"] = None
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [_encode(value) for value in fields.values()]
        into_active = statuses_into("active")
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE gifts
                SET {assignments},
                    status = CASE WHEN status IN ({_placeholders(into_active)})
                                  THEN 'active' ELSE status END
                WHERE gift_code = ? AND contract_locked = 0
                """,
                [*values, *into_active, gift_code],
            )
            await db.commit()
            return cursor.rowcount == 1

    async def record_lock_costs(self, gift_code: str, actual_gas_cost: Decimal, platform_profit: Decimal) -> bool:
        """Write the lock's gas bookkeeping once per gift.

        Whichever path records the costs first owns the fee transfer, no matter
        which path flipped contract_locked.

        Returns:
            True only for the call that wrote the costs.
        """
        return await self._guarded_update(
            gift_code,
            {"actual_gas_cost": actual_gas_cost, "platform_profit": platform_profit},
            "contract_locked = 1 AND actual_gas_cost IS NULL",
        )

    async def record_lock_failure(self, gift_code: str, error: str, max_attempts: int) -> Optional[Gift]:
        """Count a failed lock attempt; the attempt that reaches the cap fails the gift."""
        async with self._connect() as db:
            await db.execute(
                f"""
                UPDATE gifts
                SET lock_attempts = lock_attempts + 1,
                    last_lock_error = ?,
                    lock_started_at = NULL,
                    updated_at = ?,
                    status = CASE WHEN lock_attempts + 1 >= ? AND status IN ({_placeholders(PRE_LOCK_STATUSES)})
                                  THEN 'failed' ELSE status END
                WHERE gift_code = ? AND contract_locked = 0
                """,
                (error, _ts(datetime.utcnow()), max_attempts, *PRE_LOCK_STATUSES, gift_code),
            )
            await db.commit()
        return await self.get_gift(gift_code)

    async def record_auto_transfer_failure(
        self, gift_code: str, error: str, max_attempts: int
    ) -> Optional[Gift]:
        """Count a failed release attempt; reaching the cap leaves the gift failed."""
        now = _ts(datetime.utcnow())
        into_failed = statuses_into("failed")
        async with self._connect() as db:
            await db.execute(
                f"""
                UPDATE gifts
                SET auto_transfer_attempts = auto_transfer_attempts + 1,
                    last_auto_transfer_attempt = ?,
                    last_auto_transfer_error = ?,
                    updated_at = ?,
                    status = CASE WHEN auto_transfer_attempts + 1 >= ? AND status IN ({_placeholders(into_failed)})
                                  THEN 'failed' ELSE status END
                WHERE gift_code = ?
                """,
                (now, error, now, max_attempts, *into_failed, gift_code),
            )
            await db.commit()
        return await self.get_gift(gift_code)

    async def claim_gift(self, gift_code: str, claimant: str) -> bool:
        """Flip is_claimed false -> true exactly once, and only for a locked gift.

        Returns:
            True only for the single call that performed the flip.
        """
        now = _ts(datetime.utcnow())
        into_claimed = statuses_into("claimed")
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE gifts
                SET is_claimed = 1,
                    claimed_by = ?,
                    claimed_at = ?,
                    updated_at = ?,
                    status = CASE WHEN status IN ({_placeholders(into_claimed)})
                                  THEN 'claimed' ELSE status END
                WHERE gift_code = ? AND is_claimed = 0
                AND payment_status = 'received' AND contract_locked = 1
                """,
                (claimant, now, now, *into_claimed, gift_code),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def record_claim_event(self, event: ClaimEvent) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO claim_events (gift_code, action, claimant, created_at) VALUES (?, ?, ?, ?)",
                (event.gift_code, event.action, event.claimant, _ts(event.created_at)),
            )
            await db.commit()

    async def list_claim_events(self, gift_code: str) -> List[ClaimEvent]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT gift_code, action, claimant, created_at FROM claim_events WHERE gift_code = ? ORDER BY id",
                (gift_code,),
            )
            rows = await cursor.fetchall()
        return [ClaimEvent(**dict(row)) for row in rows]

    # Queries used by the background paths
    async def _select_gifts(self, where: str, params: Iterable[Any] = (), suffix: str = "") -> List[Gift]:
        async with self._connect() as db:
            cursor = await db.execute(f"SELECT * FROM gifts WHERE {where} {suffix}", list(params))
            rows = await cursor.fetchall()
        return [_row_to_gift(row) for row in rows]

    async def find_unresolved_gifts(self) -> List[Gift]:
        """Gifts awaiting payment detection or confirmation."""
        return await self._select_gifts(
            f"status IN ({_placeholders(PRE_LOCK_STATUSES)}) AND payment_status IN ('pending', 'paid') "
            "AND review_reason IS NULL",
            PRE_LOCK_STATUSES,
            suffix="ORDER BY created_at",
        )

    async def find_lock_retry_candidates(self, max_attempts: int) -> List[Gift]:
        return await self._select_gifts(
            "payment_status = 'received' AND contract_locked = 0 "
            f"AND status IN ({_placeholders(PRE_LOCK_STATUSES)}) AND lock_attempts < ?",
            (*PRE_LOCK_STATUSES, max_attempts),
            suffix="ORDER BY created_at",
        )

    async def find_unsettled_locks(self) -> List[Gift]:
        """Locked gifts whose gas costs and fee transfer have not been recorded."""
        return await self._select_gifts(
            "contract_locked = 1 AND actual_gas_cost IS NULL AND lock_tx_hash IS NOT NULL",
            suffix="ORDER BY created_at",
        )

    async def find_eligible_for_auto_transfer(self, now: datetime, max_attempts: int) -> List[Gift]:
        return await self._select_gifts(
            "unlock_date <= ? AND is_claimed = 0 AND auto_transfer_attempts < ? "
            "AND status NOT IN ('cancelled', 'expired', 'claimed') "
            "AND contract_locked = 1 AND auto_transfer_tx_hash IS NULL",
            (_ts(now), max_attempts),
            suffix="ORDER BY unlock_date",
        )

    async def find_expired(self, threshold: datetime) -> List[Gift]:
        return await self._select_gifts(
            f"unlock_date <= ? AND is_claimed = 0 AND status IN ({_placeholders(OPEN_STATUSES)})",
            (_ts(threshold), *OPEN_STATUSES),
        )

    async def expire_gifts(self, threshold: datetime) -> int:
        """Bulk-mark unclaimed gifts unlocked before `threshold` as expired.

        Returns:
            Number of gifts updated.
        """
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE gifts
                SET status = 'expired', updated_at = ?
                WHERE unlock_date <= ? AND is_claimed = 0
                AND status IN ({_placeholders(OPEN_STATUSES)})
                """,
                (_ts(datetime.utcnow()), _ts(threshold), *OPEN_STATUSES),
            )
            await db.commit()
            return cursor.rowcount

    async def find_stale_reservations(self, now: datetime) -> List[Gift]:
        return await self._select_gifts(
            f"payment_status = 'pending' AND status IN ({_placeholders(PRE_LOCK_STATUSES)}) AND expiry_date < ?",
            (*PRE_LOCK_STATUSES, _ts(now)),
        )

    async def list_gifts_by_buyer(self, buyer_email: str, page: int, limit: int) -> List[Gift]:
        return await self._select_gifts(
            "buyer_email = ?",
            (buyer_email.lower(), limit, (page - 1) * limit),
            suffix="ORDER BY created_at DESC LIMIT ? OFFSET ?",
        )

    async def list_claimed_gifts(self, claimant: str, page: int, limit: int) -> List[Gift]:
        return await self._select_gifts(
            "claimed_by = ? AND is_claimed = 1",
            (claimant.lower(), limit, (page - 1) * limit),
            suffix="ORDER BY claimed_at DESC LIMIT ? OFFSET ?",
        )


# Global database instance
db = Database()
