"""Unit tests for wallet pool allocation."""

import asyncio
from decimal import Decimal

import pytest
from eth_account import Account

from src.database import Database
from src.giftlock.crypto import decrypt_secret
from src.giftlock.wallet_pool import WalletPool
from tests.fakes import FakeChainClient


@pytest.mark.unit
class TestWalletPool:
    """Generation, exclusive reservation and release."""

    @pytest.fixture
    async def pool(self, test_db):
        return WalletPool(test_db, FakeChainClient())

    @pytest.mark.asyncio
    async def test_generate_stores_encrypted_keys(self, pool, test_db):
        assert await pool.generate(2) == 2

        wallet = await test_db.reserve_wallet()
        assert wallet.address == wallet.address.lower()
        assert wallet.index == 0
        private_key = decrypt_secret(wallet.encrypted_private_key)
        assert private_key.startswith("0x") and len(private_key) == 66
        assert len(decrypt_secret(wallet.encrypted_mnemonic).split()) == 12

    @pytest.mark.asyncio
    async def test_indexes_are_monotonic(self, pool, test_db):
        await pool.generate(2)
        await pool.generate(2)

        assert await test_db.get_last_wallet_index() == 3

    @pytest.mark.asyncio
    async def test_reserve_takes_lowest_index(self, pool):
        await pool.generate(3)

        first = await pool.reserve()
        second = await pool.reserve()

        assert (first.index, second.index) == (0, 1)
        assert first.reserved and second.reserved
        assert await pool.count_available() == 1

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_share_an_address(self, pool, test_db):
        await pool.generate(5)

        # Separate store instances, as separate processes would have
        stores = [Database(test_db.db_path) for _ in range(12)]
        results = await asyncio.gather(*(store.reserve_wallet() for store in stores))

        reserved = [wallet.address for wallet in results if wallet is not None]
        assert len(reserved) == 5
        assert len(set(reserved)) == 5
        assert results.count(None) == 7

    @pytest.mark.asyncio
    async def test_empty_pool_generates_batch_and_retries(self, pool):
        wallet = await pool.reserve()

        assert wallet is not None
        # batch size is 3 in the test environment
        assert await pool.count_available() == 2

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, pool):
        await pool.generate(1)
        wallet = await pool.reserve()

        assert await pool.release(wallet.address) is True
        assert await pool.release(wallet.address) is False
        assert await pool.count_available() == 1

    @pytest.mark.asyncio
    async def test_released_wallet_can_be_reserved_again(self, pool):
        await pool.generate(1)
        wallet = await pool.reserve()
        await pool.release(wallet.address)

        again = await pool.reserve()
        assert again.address == wallet.address

    @pytest.mark.asyncio
    async def test_ensure_minimum_tops_up(self, pool):
        await pool.generate(1)

        assert await pool.ensure_minimum(4) == 3
        assert await pool.ensure_minimum(4) == 0
        assert await pool.count_available() == 4

    @pytest.mark.asyncio
    async def test_get_balance_caches_and_falls_back(self, pool):
        await pool.generate(1)
        wallet = await pool.reserve()
        pool.chain.deposit(wallet.address, Decimal("0.5"))

        assert await pool.get_balance(wallet.address) == Decimal("0.5")

        pool.chain.network_down = True
        assert await pool.get_balance(wallet.address) == Decimal("0.5")

        stored = await pool.get_wallet(wallet.address)
        assert stored.balance == Decimal("0.5")
        assert stored.last_balance_update is not None

    @pytest.mark.asyncio
    async def test_decrypt_keys(self, pool):
        await pool.generate(1)
        wallet = await pool.reserve()

        private_key, mnemonic = pool.decrypt_keys(wallet)

        assert Account.from_key(private_key).address.lower() == wallet.address
        assert Account.from_mnemonic(mnemonic).address.lower() == wallet.address
