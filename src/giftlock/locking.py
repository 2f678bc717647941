"""Moves a confirmed payment into the time-lock contract and forwards the fee.

Steps, each independently fallible:

1. Re-check the custodial balance covers principal plus fee.
2. Submit ``lockFunds`` with exactly the principal, addressed to the recipient
   wallet with the gift's unlock timestamp, and wait for the receipt.
3. Record the lock (status -> active, contract_locked).
4. Record the lock's actual gas, subtract it from the fee bucket and forward
   what is left above the gas reserve to the company wallet. Step 4 is keyed
   on the gas bookkeeping being unset, not on who recorded the lock, so a lock
   first seen through the event path is settled by ``settle_fee``.

A failure in 1 or 2 leaves the gift at paymentStatus=received with its status
unchanged and bumps ``lock_attempts``; the attempt that reaches the cap moves
the gift to failed. A failure in 4 is logged and does not undo the lock.
"""

from decimal import Decimal
from typing import Optional

from src.config import config
from src.database import Database
from src.errors import ConflictError, ContractError, NetworkError, NotFoundError
from src.giftlock.chain import ChainClient, from_wei, to_wei
from src.giftlock.gifts import unlock_timestamp
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import Gift, TxReceipt

logger = get_logger(__name__)

LOCK_ERRORS = (NetworkError, ContractError, NotFoundError, ValueError)


class LockCoordinator:
    """Serializes lock submission per gift through a stored lease."""

    def __init__(self, database: Database, wallet_pool: WalletPool, chain: ChainClient):
        self.db = database
        self.wallet_pool = wallet_pool
        self.chain = chain

    async def lock_gift(self, gift_code: str, operator: bool = False) -> bool:
        """Run one lock attempt for a paid gift.

        Args:
            gift_code: Gift to lock.
            operator: Operator-triggered retry; ignores the attempt cap and
                resubmits even if an earlier lock transaction is still unmined.

        Returns:
            True if the gift is locked when this call returns.
        """
        with CorrelationIdContext(gift_code):
            gift = await self.db.get_gift(gift_code)
            if gift is None:
                logger.error(f"Lock requested for unknown gift {gift_code}")
                return False
            if gift.contract_locked:
                return True
            if gift.payment_status != "received":
                logger.info(f"Gift {gift_code} payment is {gift.payment_status}; not locking")
                return False
            if not operator and gift.lock_attempts >= config.max_lock_attempts:
                logger.warning(f"Gift {gift_code} reached {gift.lock_attempts} lock attempts; awaiting operator")
                return False

            if not await self.db.acquire_lock_lease(gift_code, config.lock_lease_seconds):
                logger.info(f"Lock for {gift_code} already in progress elsewhere")
                return False

            try:
                private_key = await self._private_key(gift)
                receipt = await self._submit_lock(gift, private_key, resubmit_pending=operator)
            except LOCK_ERRORS as e:
                logger.error(f"Lock attempt for {gift_code} failed: {e}", exc_info=True)
                updated = await self.db.record_lock_failure(gift_code, str(e), config.max_lock_attempts)
                if updated is not None and updated.status == "failed":
                    logger.error(
                        f"Gift {gift_code} moved to failed after {updated.lock_attempts} lock attempts; "
                        f"payment of {updated.total_received} is held at {updated.wallet_address}"
                    )
                return False
            except Exception as e:
                logger.error(f"Unexpected error locking {gift_code}: {e!r}", exc_info=True)
                await self.db.record_lock_failure(gift_code, repr(e), config.max_lock_attempts)
                raise

            if receipt is None:
                await self.db.update_gift_fields(gift_code, lock_started_at=None)
                return False

            await self._finalize(gift, receipt, private_key)
            return True

    async def retry_lock(self, gift_code: str) -> Gift:
        """Operator action: one extra lock attempt for a paid, unlocked gift.

        Raises:
            NotFoundError: Unknown gift code.
            ConflictError: Gift is not in a retriable state.
            ContractError: The attempt failed; the error is also stored on the gift.
        """
        gift = await self.db.get_gift(gift_code)
        if gift is None:
            raise NotFoundError("Gift not found", {"giftCode": gift_code})
        if gift.contract_locked or gift.payment_status != "received" or gift.status not in ("failed", "pending"):
            raise ConflictError(
                "Gift is not awaiting a lock",
                {"status": gift.status, "paymentStatus": gift.payment_status, "contractLocked": gift.contract_locked},
            )

        logger.info(f"Operator lock retry for {gift_code} (previous attempts: {gift.lock_attempts})")
        if not await self.lock_gift(gift_code, operator=True):
            updated = await self.db.get_gift(gift_code)
            raise ContractError(
                "Lock attempt failed", {"giftCode": gift_code, "lastLockError": updated.last_lock_error}
            )
        return await self.db.get_gift(gift_code)

    async def _private_key(self, gift: Gift) -> str:
        wallet = await self.wallet_pool.get_wallet(gift.wallet_address)
        if wallet is None:
            raise NotFoundError(f"Custodial wallet {gift.wallet_address} is not in the pool")
        private_key, _ = self.wallet_pool.decrypt_keys(wallet)
        return private_key

    async def _submit_lock(self, gift: Gift, private_key: str, resubmit_pending: bool) -> Optional[TxReceipt]:
        if gift.lock_tx_hash:
            previous = await self.chain.get_receipt(gift.lock_tx_hash)
            if previous is not None and previous.status == 1:
                logger.info(f"Earlier lock transaction {gift.lock_tx_hash} already mined")
                return previous
            if previous is None and not resubmit_pending:
                logger.info(f"Lock transaction {gift.lock_tx_hash} still pending; checking again next cycle")
                return None

        principal_wei = to_wei(gift.amount)
        required_wei = principal_wei + to_wei(gift.fee)
        balance_wei = await self.chain.get_balance(gift.wallet_address)
        if balance_wei < required_wei:
            raise ContractError(
                f"Wallet balance {from_wei(balance_wei)} is below principal plus fee {from_wei(required_wei)}"
            )

        tx_hash = await self.chain.lock_funds(
            private_key, principal_wei, gift.recipient_wallet, unlock_timestamp(gift)
        )
        await self.db.update_gift_fields(gift.gift_code, lock_tx_hash=tx_hash)
        return await self.chain.wait_for_receipt(tx_hash)

    async def _finalize(self, gift: Gift, receipt: TxReceipt, private_key: str) -> None:
        if await self.db.mark_contract_locked(gift.gift_code, lock_tx_hash=receipt.tx_hash):
            logger.info(f"Gift {gift.gift_code} locked in {receipt.tx_hash}")
        else:
            logger.info(f"Gift {gift.gift_code} was already marked locked")
        await self._settle(gift, receipt, private_key)

    async def _settle(self, gift: Gift, receipt: TxReceipt, private_key: str) -> bool:
        """Record the lock's gas costs and forward the fee. Only the caller that records the costs forwards."""
        gas_cost = from_wei(receipt.gas_cost_wei)
        received = gift.total_received if gift.total_received is not None else gift.total_amount
        if not await self.db.record_lock_costs(gift.gift_code, gas_cost, received - gift.amount - gas_cost):
            return False

        logger.info(f"Recorded lock gas {gas_cost} for {gift.gift_code}")
        fee_tx_hash = await self.forward_fee(gift, receipt, private_key)
        if fee_tx_hash:
            await self.db.update_gift_fields(gift.gift_code, fee_tx_hash=fee_tx_hash)
        return True

    async def settle_fee(self, gift_code: str) -> bool:
        """Finish the bookkeeping of a lock that was recorded without its costs.

        Covers a lock first seen through the event path, and a coordinator that
        died between recording the lock and forwarding the fee.

        Returns:
            True if this call recorded the costs.
        """
        gift = await self.db.get_gift(gift_code)
        if gift is None or not gift.contract_locked or gift.actual_gas_cost is not None or not gift.lock_tx_hash:
            return False

        receipt = await self.chain.get_receipt(gift.lock_tx_hash)
        if receipt is None or receipt.status != 1:
            logger.info(f"Lock receipt for {gift_code} not available yet; settling later")
            return False

        private_key = await self._private_key(gift)
        return await self._settle(gift, receipt, private_key)

    async def forward_fee(self, gift: Gift, receipt: TxReceipt, private_key: str) -> Optional[str]:
        """Send the fee bucket, less actual lock gas and the per-tx reserve, to the company wallet."""
        remaining_wei = to_wei(gift.fee + gift.gas_fee) - receipt.gas_cost_wei
        reserve_wei = to_wei(Decimal(str(config.gas_reserve_per_tx)))
        if remaining_wei <= reserve_wei:
            logger.info(
                f"Remaining fee {from_wei(remaining_wei)} for {gift.gift_code} does not exceed "
                f"gas reserve {config.gas_reserve_per_tx}; not forwarding"
            )
            return None

        try:
            tx_hash = await self.chain.send_value(
                private_key, config.company_wallet, remaining_wei - reserve_wei, config.transfer_gas_limit
            )
        except (NetworkError, ContractError) as e:
            logger.warning(f"Fee transfer for {gift.gift_code} failed; principal remains locked: {e}")
            return None

        logger.info(f"Forwarded fee {from_wei(remaining_wei - reserve_wei)} for {gift.gift_code}: {tx_hash}")
        return tx_hash
