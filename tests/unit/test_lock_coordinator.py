"""Unit tests for locking confirmed payments and splitting the fee."""

from decimal import Decimal

import pytest
from web3.exceptions import Web3ValidationError

from src.config import config
from src.errors import ConflictError, ContractError, NetworkError, NotFoundError
from src.giftlock.chain import to_wei
from tests.conftest import create_test_gift


async def paid_gift(services, amount: str = "1.0"):
    """Gift with its payment deposited and confirmed, not yet locked."""
    gift = await create_test_gift(services, amount=amount)
    services.chain.deposit(gift.wallet_address, gift.total_amount)
    await services.observer.confirm_payment(gift.gift_code, gift.total_amount)
    return gift


@pytest.mark.unit
class TestLockCoordinator:
    """Lock submission, fee forwarding and failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_lock_and_fee_split(self, services):
        gift = await paid_gift(services)

        assert await services.lock.lock_gift(gift.gift_code) is True

        stored = await services.db.get_gift(gift.gift_code)
        lock_gas = Decimal("0.003")  # 100000 gas at 30 gwei
        assert stored.actual_gas_cost == lock_gas
        assert stored.platform_profit == gift.total_amount - gift.amount - lock_gas
        assert stored.fee_tx_hash is not None

        fee_transfer = services.chain.sent[-1]
        assert fee_transfer["to"] == config.company_wallet.lower()
        expected = to_wei(gift.fee + gift.gas_fee) - to_wei(lock_gas) - to_wei(Decimal("0.01"))
        assert fee_transfer["value"] == expected

    @pytest.mark.asyncio
    async def test_small_fee_is_not_forwarded(self, services, monkeypatch):
        monkeypatch.setattr(config, "gas_reserve_per_tx", 1.0)
        gift = await paid_gift(services)

        assert await services.lock.lock_gift(gift.gift_code) is True

        stored = await services.db.get_gift(gift.gift_code)
        assert stored.contract_locked is True
        assert stored.fee_tx_hash is None
        assert services.chain.sent == []

    @pytest.mark.asyncio
    async def test_fee_transfer_failure_does_not_undo_lock(self, services):
        gift = await paid_gift(services)
        services.chain.fee_error = NetworkError("fee rpc down")

        assert await services.lock.lock_gift(gift.gift_code) is True

        stored = await services.db.get_gift(gift.gift_code)
        assert stored.status == "active"
        assert stored.contract_locked is True
        assert stored.fee_tx_hash is None

    @pytest.mark.asyncio
    async def test_unpaid_gift_is_not_locked(self, services):
        gift = await create_test_gift(services)

        assert await services.lock.lock_gift(gift.gift_code) is False
        assert services.chain.locks == []

    @pytest.mark.asyncio
    async def test_lock_failure_keeps_payment_and_counts_attempt(self, services):
        gift = await paid_gift(services)
        services.chain.lock_error = ContractError("execution reverted")

        assert await services.lock.lock_gift(gift.gift_code) is False

        stored = await services.db.get_gift(gift.gift_code)
        assert stored.payment_status == "received"
        assert stored.status == "pending"
        assert stored.contract_locked is False
        assert stored.lock_attempts == 1
        assert "execution reverted" in stored.last_lock_error
        assert stored.lock_started_at is None

    @pytest.mark.asyncio
    async def test_attempt_cap_moves_gift_to_failed(self, services):
        gift = await paid_gift(services)
        services.chain.lock_error = ContractError("execution reverted")

        for _ in range(config.max_lock_attempts + 2):
            await services.lock.lock_gift(gift.gift_code)

        stored = await services.db.get_gift(gift.gift_code)
        assert stored.status == "failed"
        assert stored.lock_attempts == config.max_lock_attempts
        assert stored.payment_status == "received"

        # Failed gifts are no longer picked up by the poll path
        assert await services.db.find_lock_retry_candidates(config.max_lock_attempts) == []

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_a_lock_failure(self, services):
        gift = await create_test_gift(services)
        services.chain.deposit(gift.wallet_address, gift.amount)
        await services.observer.confirm_payment(gift.gift_code, gift.amount)

        assert await services.lock.lock_gift(gift.gift_code) is False
        assert "below principal plus fee" in (await services.db.get_gift(gift.gift_code)).last_lock_error

    @pytest.mark.asyncio
    async def test_held_lease_blocks_second_submission(self, services):
        gift = await paid_gift(services)
        assert await services.db.acquire_lock_lease(gift.gift_code, config.lock_lease_seconds)

        assert await services.lock.lock_gift(gift.gift_code) is False
        assert services.chain.locks == []

    @pytest.mark.asyncio
    async def test_operator_retry_after_failure(self, services):
        gift = await paid_gift(services)
        services.chain.lock_error = ContractError("execution reverted")
        for _ in range(config.max_lock_attempts):
            await services.lock.lock_gift(gift.gift_code)
        assert (await services.db.get_gift(gift.gift_code)).status == "failed"

        services.chain.lock_error = None
        retried = await services.lock.retry_lock(gift.gift_code)

        assert retried.status == "active"
        assert retried.contract_locked is True

    @pytest.mark.asyncio
    async def test_operator_retry_failure_raises(self, services):
        gift = await paid_gift(services)
        services.chain.lock_error = ContractError("execution reverted")

        with pytest.raises(ContractError):
            await services.lock.retry_lock(gift.gift_code)

    @pytest.mark.asyncio
    async def test_operator_retry_rejects_ineligible(self, services):
        gift = await create_test_gift(services)

        with pytest.raises(ConflictError):
            await services.lock.retry_lock(gift.gift_code)
        with pytest.raises(NotFoundError):
            await services.lock.retry_lock("GIFT-00000000")

    @pytest.mark.asyncio
    async def test_mined_earlier_lock_is_reused(self, services):
        gift = await paid_gift(services)
        earlier = services.chain.add_receipt()
        await services.db.update_gift_fields(gift.gift_code, lock_tx_hash=earlier)

        assert await services.lock.lock_gift(gift.gift_code) is True
        assert services.chain.locks == []
        assert (await services.db.get_gift(gift.gift_code)).lock_tx_hash == earlier

    @pytest.mark.asyncio
    async def test_pending_earlier_lock_is_not_resubmitted(self, services):
        gift = await paid_gift(services)
        await services.db.update_gift_fields(gift.gift_code, lock_tx_hash="0x" + "99" * 32)

        assert await services.lock.lock_gift(gift.gift_code) is False

        stored = await services.db.get_gift(gift.gift_code)
        assert services.chain.locks == []
        assert stored.lock_attempts == 0
        assert stored.lock_started_at is None

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_attempt_and_frees_lease(self, services):
        gift = await paid_gift(services)
        services.chain.lock_error = Web3ValidationError("Could not identify the intended function")

        with pytest.raises(Web3ValidationError):
            await services.lock.lock_gift(gift.gift_code)

        stored = await services.db.get_gift(gift.gift_code)
        assert stored.lock_attempts == 1
        assert stored.lock_started_at is None
        assert "Could not identify" in stored.last_lock_error

        # The lease is free, so the next attempt can proceed
        services.chain.lock_error = None
        assert await services.lock.lock_gift(gift.gift_code) is True

    @pytest.mark.asyncio
    async def test_lock_recorded_elsewhere_is_settled_once(self, services):
        gift = await paid_gift(services)
        wallet = await services.pool.get_wallet(gift.wallet_address)
        private_key, _ = services.pool.decrypt_keys(wallet)
        tx_hash = await services.chain.lock_funds(private_key, to_wei(gift.amount), gift.recipient_wallet, 0)
        assert await services.db.mark_contract_locked(gift.gift_code, lock_tx_hash=tx_hash)

        assert await services.lock.settle_fee(gift.gift_code) is True
        assert await services.lock.settle_fee(gift.gift_code) is False

        stored = await services.db.get_gift(gift.gift_code)
        assert stored.actual_gas_cost == Decimal("0.003")
        assert stored.fee_tx_hash is not None
        fee_transfers = [tx for tx in services.chain.sent if tx["to"] == config.company_wallet.lower()]
        assert len(fee_transfers) == 1

    @pytest.mark.asyncio
    async def test_settlement_waits_for_lock_receipt(self, services):
        gift = await paid_gift(services)
        await services.db.mark_contract_locked(gift.gift_code, lock_tx_hash="0x" + "77" * 32)

        assert await services.lock.settle_fee(gift.gift_code) is False
        assert (await services.db.get_gift(gift.gift_code)).actual_gas_cost is None
        assert services.chain.sent == []
