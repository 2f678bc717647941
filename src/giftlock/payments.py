"""Payment detection over two redundant paths.

The poll path reads custodial balances and payment receipts directly; the event
path follows the gift contract's logs. Both funnel into the same guarded store
transitions, so either path may fire any number of times, in any order, for the
same gift.
"""

import asyncio
from contextlib import suppress
from datetime import datetime
from decimal import Decimal
from typing import Optional

from src.config import config
from src.database import Database
from src.errors import ContractError, NetworkError
from src.giftlock.abi import WATCHED_EVENTS
from src.giftlock.chain import ChainClient, from_wei, to_wei
from src.giftlock.locking import LockCoordinator
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import ChainEvent, Gift, SweepResult

logger = get_logger(__name__)


def within_tolerance(expected: Decimal, observed: Decimal, tolerance: Optional[float] = None) -> bool:
    """True if ``observed`` lies inside the ±tolerance band around ``expected``."""
    tolerance = tolerance if tolerance is not None else config.payment_tolerance
    return abs(observed - expected) <= expected * Decimal(str(tolerance))


class PaymentObserver:
    """Drives gifts from paymentStatus pending/paid to received and hands them to the lock."""

    def __init__(
        self,
        database: Database,
        wallet_pool: WalletPool,
        chain: ChainClient,
        lock_coordinator: LockCoordinator,
    ):
        self.db = database
        self.wallet_pool = wallet_pool
        self.chain = chain
        self.lock_coordinator = lock_coordinator

    async def confirm_payment(self, gift_code: str, total_received: Decimal) -> bool:
        """Payment-confirmation transition: paymentStatus pending/paid -> received.

        Returns:
            True only for the caller that performed the transition; every later
            call with the same or different evidence is a no-op.
        """
        confirmed = await self.db.advance_payment_status(
            gift_code, ["pending", "paid"], "received", total_received=total_received
        )
        if confirmed:
            logger.info(f"Payment confirmed for {gift_code}: {total_received}")
        return confirmed

    async def check_gift(self, gift: Gift) -> str:
        """Reconcile one unresolved gift against the chain.

        Returns:
            Short outcome label, used for logging and tests.
        """
        min_confirmations = max(config.min_confirmations, 1)

        if gift.payment_tx_hash:
            receipt = await self.chain.get_receipt(gift.payment_tx_hash)
            if receipt is None:
                return "awaiting_receipt"
            if receipt.status != 1:
                reason = f"Payment transaction {gift.payment_tx_hash} reverted"
                if await self.db.advance_payment_status(gift.gift_code, ["paid"], "failed", review_reason=reason):
                    logger.error(f"{reason}; gift {gift.gift_code} needs review")
                return "payment_failed"
            if receipt.confirmations < min_confirmations:
                logger.info(
                    f"Payment {gift.payment_tx_hash} has {receipt.confirmations}/{min_confirmations} confirmations"
                )
                return "awaiting_confirmations"

        # Only count funds that already have the required depth
        head = await self.chain.get_block_number()
        balance_wei = await self.chain.get_balance(gift.wallet_address, max(head - (min_confirmations - 1), 0))
        balance = from_wei(balance_wei)
        await self.db.update_wallet_balance(gift.wallet_address, balance)

        if balance_wei == 0:
            return "no_payment"

        if not within_tolerance(gift.total_amount, balance):
            await self.divert(gift, balance_wei)
            return "diverted"

        if await self.confirm_payment(gift.gift_code, balance):
            await self.lock_coordinator.lock_gift(gift.gift_code)
            return "confirmed"
        return "already_confirmed"

    async def divert(self, gift: Gift, balance_wei: int) -> Optional[str]:
        """Send an out-of-tolerance payment to the charity wallet and park the gift for review."""
        observed = from_wei(balance_wei)
        reason = f"Received {observed} {gift.currency}, expected {gift.total_amount} (outside tolerance)"
        if not await self.db.flag_for_review(gift.gift_code, reason):
            return None
        logger.warning(f"Gift {gift.gift_code}: {reason}; diverting to charity")

        wallet = await self.wallet_pool.get_wallet(gift.wallet_address)
        if wallet is None:
            logger.error(f"Custodial wallet {gift.wallet_address} missing; cannot divert {gift.gift_code}")
            return None

        try:
            private_key, _ = self.wallet_pool.decrypt_keys(wallet)
            gas_cost_wei = await self.chain.get_gas_price() * config.transfer_gas_limit
            if balance_wei <= gas_cost_wei:
                logger.warning(f"Balance at {gift.wallet_address} does not cover diversion gas; leaving for review")
                return None
            tx_hash = await self.chain.send_value(
                private_key, config.charity_wallet, balance_wei - gas_cost_wei, config.transfer_gas_limit
            )
        except (NetworkError, ContractError, ValueError) as e:
            logger.error(f"Diversion for {gift.gift_code} failed; funds remain at {gift.wallet_address}: {e}")
            return None

        await self.db.update_gift_fields(gift.gift_code, diverted_tx_hash=tx_hash)
        logger.info(f"Diverted {from_wei(balance_wei - gas_cost_wei)} from {gift.gift_code} to charity: {tx_hash}")
        return tx_hash

    async def poll_cycle(self) -> SweepResult:
        """One pass of the reconciliation path: unresolved payments, pending lock retries, then unsettled locks."""
        result = SweepResult(name="payment_poll")

        with CorrelationIdContext(prefix="poll"):
            for gift in await self.db.find_unresolved_gifts():
                result.processed += 1
                with CorrelationIdContext(gift.gift_code):
                    try:
                        outcome = await self.check_gift(gift)
                    except Exception as e:
                        result.failed += 1
                        logger.error(f"Payment check for {gift.gift_code} failed: {e}", exc_info=True)
                        continue
                if outcome == "confirmed":
                    result.succeeded += 1
                else:
                    result.skipped += 1

            for gift in await self.db.find_lock_retry_candidates(config.max_lock_attempts):
                result.processed += 1
                try:
                    locked = await self.lock_coordinator.lock_gift(gift.gift_code)
                except Exception as e:
                    result.failed += 1
                    logger.error(f"Lock retry for {gift.gift_code} failed: {e}", exc_info=True)
                    continue
                if locked:
                    result.succeeded += 1
                else:
                    result.failed += 1

            for gift in await self.db.find_unsettled_locks():
                result.processed += 1
                with CorrelationIdContext(gift.gift_code):
                    try:
                        settled = await self.lock_coordinator.settle_fee(gift.gift_code)
                    except Exception as e:
                        result.failed += 1
                        logger.error(f"Fee settlement for {gift.gift_code} failed: {e}", exc_info=True)
                        continue
                if settled:
                    result.succeeded += 1
                else:
                    result.skipped += 1

            logger.info(
                f"Payment poll: {result.processed} processed, {result.succeeded} confirmed, "
                f"{result.failed} failed, {result.skipped} unchanged"
            )
        return result

    async def handle_event(self, event: ChainEvent) -> None:
        if event.name == "FundsLocked":
            await self.handle_funds_locked(event)
        elif event.name == "FundsTransferred":
            await self.handle_funds_transferred(event)

    async def handle_funds_locked(self, event: ChainEvent) -> None:
        """A lock observed on-chain implies the payment arrived and the principal is held."""
        gift = await self.db.get_live_gift_by_wallet(event.args.get("paymentWallet", ""))
        if gift is None:
            logger.debug(f"FundsLocked for unknown wallet {event.args.get('paymentWallet')}")
            return

        with CorrelationIdContext(gift.gift_code):
            locked_amount = event.args.get("giftAmount")
            if locked_amount is not None and locked_amount != to_wei(gift.amount):
                logger.warning(
                    f"FundsLocked amount {from_wei(locked_amount)} differs from gift amount {gift.amount}"
                )

            if gift.payment_status in ("pending", "paid"):
                await self.confirm_payment(gift.gift_code, gift.total_received or gift.total_amount)

            if await self.db.mark_contract_locked(gift.gift_code, lock_tx_hash=event.tx_hash):
                logger.info(f"Gift {gift.gift_code} marked locked from event {event.tx_hash}")
            await self.lock_coordinator.settle_fee(gift.gift_code)

    async def handle_funds_transferred(self, event: ChainEvent) -> None:
        """Record a release whose receipt the reaper did not get to persist."""
        gift = await self.db.get_gift_by_recipient_wallet(event.args.get("recipientWallet", ""))
        if gift is None or gift.auto_transfer_tx_hash:
            return
        await self.db.update_gift_fields(
            gift.gift_code, auto_transfer_tx_hash=event.tx_hash, last_auto_transfer_attempt=datetime.utcnow()
        )
        logger.info(f"Gift {gift.gift_code} release observed on-chain: {event.tx_hash}")


class EventSubscription:
    """Follows contract logs by polling ``get_logs`` over new block ranges.

    Network failures trigger reconnect attempts with doubling delay. After
    ``max_attempts`` consecutive failures the subscription stops and reports
    itself inactive; the poll path keeps gifts moving on its own.
    """

    def __init__(
        self,
        observer: PaymentObserver,
        chain: ChainClient,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.observer = observer
        self.chain = chain
        self.poll_interval = poll_interval if poll_interval is not None else config.event_poll_interval_seconds
        self.max_attempts = max_attempts if max_attempts is not None else config.event_reconnect_max_attempts
        self.backoff = backoff if backoff is not None else config.event_reconnect_backoff_seconds
        self.last_block: Optional[int] = None
        self.active = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self.active = False

    async def run(self) -> None:
        failures = 0
        self.active = True
        logger.info("Event subscription started")

        while True:
            try:
                await self.poll_once()
                failures = 0
            except NetworkError as e:
                failures += 1
                if failures >= self.max_attempts:
                    self.active = False
                    logger.error(
                        f"Event subscription down after {failures} reconnect attempts; "
                        f"relying on poll reconciliation: {e}"
                    )
                    return
                delay = self.backoff * 2 ** (failures - 1)
                logger.warning(f"Event subscription lost ({e}); reconnecting in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """Process logs in blocks after the last seen one.

        Returns:
            Number of events handled.
        """
        head = await self.chain.get_block_number()
        if self.last_block is None:
            self.last_block = head
            return 0
        if head <= self.last_block:
            return 0

        handled = 0
        for name in WATCHED_EVENTS:
            for event in await self.chain.get_events(name, self.last_block + 1, head):
                with CorrelationIdContext(prefix="event"):
                    try:
                        await self.observer.handle_event(event)
                        handled += 1
                    except Exception as e:
                        logger.error(f"Failed to handle {event.name} in {event.tx_hash}: {e}", exc_info=True)

        self.last_block = head
        return handled
