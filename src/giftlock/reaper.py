"""Scheduled sweeps over unlocked, expired and abandoned gifts."""

from datetime import datetime, timedelta
from typing import Optional

from src.config import config
from src.database import Database
from src.errors import NetworkError
from src.giftlock.chain import ChainClient
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import PRE_LOCK_STATUSES, SweepResult

logger = get_logger(__name__)


class ExpiryReaper:
    """Auto-transfer of unlocked gifts, expiry of unclaimed ones and release of stale reservations.

    Each sweep handles gifts one at a time inside its own error boundary; one
    gift's failure is recorded on that gift and never aborts the sweep.
    """

    def __init__(self, database: Database, wallet_pool: WalletPool, chain: ChainClient):
        self.db = database
        self.wallet_pool = wallet_pool
        self.chain = chain

    async def run_auto_transfers(self, now: Optional[datetime] = None) -> SweepResult:
        """Release every locked gift whose unlock date has passed."""
        now = now or datetime.utcnow()
        result = SweepResult(name="auto_transfer")

        with CorrelationIdContext(prefix="sweep"):
            gifts = await self.db.find_eligible_for_auto_transfer(now, config.max_auto_transfer_attempts)
            logger.info(f"Found {len(gifts)} gifts eligible for auto-transfer")

            for gift in gifts:
                result.processed += 1
                with CorrelationIdContext(gift.gift_code):
                    try:
                        tx_hash = await self.chain.release_funds(gift.recipient_wallet)
                        await self.chain.wait_for_receipt(tx_hash)
                    except Exception as e:
                        result.failed += 1
                        logger.error(f"Auto-transfer for {gift.gift_code} failed: {e}", exc_info=True)
                        updated = await self.db.record_auto_transfer_failure(
                            gift.gift_code, str(e), config.max_auto_transfer_attempts
                        )
                        if updated is not None and updated.status == "failed":
                            logger.error(
                                f"Gift {gift.gift_code} moved to failed after "
                                f"{updated.auto_transfer_attempts} auto-transfer attempts"
                            )
                        continue

                    await self.db.update_gift_fields(
                        gift.gift_code,
                        auto_transfer_tx_hash=tx_hash,
                        last_auto_transfer_attempt=datetime.utcnow(),
                        last_auto_transfer_error=None,
                    )
                    result.succeeded += 1
                    logger.info(f"Released {gift.gift_code} to {gift.recipient_wallet}: {tx_hash}")

            logger.info(f"Auto-transfer sweep: {result.succeeded} released, {result.failed} failed")
        return result

    async def expire_gifts(self, now: Optional[datetime] = None) -> SweepResult:
        """Bulk-mark gifts unclaimed for the grace period after unlock as expired."""
        now = now or datetime.utcnow()
        threshold = now - timedelta(days=config.expiry_grace_days)
        result = SweepResult(name="expiry")

        with CorrelationIdContext(prefix="sweep"):
            candidates = await self.db.find_expired(threshold)
            result.processed = len(candidates)
            if candidates:
                result.succeeded = await self.db.expire_gifts(threshold)
            logger.info(f"Expiry sweep: marked {result.succeeded} of {result.processed} gifts expired")
        return result

    async def release_stale_reservations(self, now: Optional[datetime] = None) -> SweepResult:
        """Cancel unpaid gifts past their reservation window and return their wallets.

        Wallets reserved ahead of time that never received a gift are released
        the same way. A wallet that holds any balance is left alone for the poll
        path to reconcile.
        """
        now = now or datetime.utcnow()
        result = SweepResult(name="stale_reservations")

        with CorrelationIdContext(prefix="sweep"):
            for gift in await self.db.find_stale_reservations(now):
                result.processed += 1
                with CorrelationIdContext(gift.gift_code):
                    try:
                        balance_wei = await self.chain.get_balance(gift.wallet_address)
                    except NetworkError as e:
                        result.failed += 1
                        logger.warning(f"Skipping stale check for {gift.gift_code}: {e}")
                        continue

                    if balance_wei > 0:
                        result.skipped += 1
                        logger.info(f"Gift {gift.gift_code} past reservation window but wallet is funded")
                        continue

                    cancelled = await self.db.transition_status(
                        gift.gift_code,
                        PRE_LOCK_STATUSES,
                        "cancelled",
                        payment_statuses=["pending"],
                        payment_status="expired",
                    )
                    if not cancelled:
                        result.skipped += 1
                        continue

                    await self.wallet_pool.release(gift.wallet_address)
                    result.succeeded += 1
                    logger.info(f"Reservation for {gift.gift_code} expired; wallet {gift.wallet_address} released")

            reserved_before = now - timedelta(minutes=config.reservation_window_minutes)
            for wallet in await self.db.find_idle_reserved_wallets(reserved_before):
                result.processed += 1
                try:
                    balance_wei = await self.chain.get_balance(wallet.address)
                except NetworkError as e:
                    result.failed += 1
                    logger.warning(f"Skipping idle wallet {wallet.address}: {e}")
                    continue

                if balance_wei > 0:
                    result.skipped += 1
                    logger.warning(f"Idle reserved wallet {wallet.address} holds funds with no gift; kept for review")
                    continue

                if await self.db.release_idle_wallet(wallet.address):
                    result.succeeded += 1
                else:
                    result.skipped += 1

            logger.info(f"Stale reservation sweep: {result.succeeded} released, {result.skipped} kept")
        return result
