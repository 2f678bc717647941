"""Custodial wallet pool.

Owns wallet generation, exclusive reservation and release, and the cached
balance for each address. Reservation goes through a single conditional UPDATE
in the store, so concurrent gift creations in one or many processes can never
receive the same address.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from eth_account import Account

from src.config import config
from src.database import Database
from src.errors import NetworkError
from src.giftlock.chain import ChainClient, from_wei
from src.giftlock.crypto import decrypt_secret, encrypt_secret
from src.logging_utils import get_logger
from src.models import Wallet

logger = get_logger(__name__)

Account.enable_unaudited_hdwallet_features()


class WalletPool:
    """Allocation contract over the stored custodial wallets."""

    def __init__(self, database: Database, chain: ChainClient, secret: Optional[str] = None):
        self.db = database
        self.chain = chain
        self.secret = secret

    async def generate(self, count: int) -> int:
        """Generate ``count`` mnemonic-backed wallets and add them to the pool.

        Returns:
            Number of wallets actually inserted.
        """
        created = 0
        next_index = await self.db.get_last_wallet_index() + 1

        for _ in range(count):
            account, mnemonic = Account.create_with_mnemonic()
            wallet = Wallet(
                address=account.address.lower(),
                encrypted_private_key=encrypt_secret(account.key.to_0x_hex(), self.secret),
                encrypted_mnemonic=encrypt_secret(mnemonic, self.secret),
                index=next_index,
                created_at=datetime.utcnow(),
            )
            if await self.db.insert_wallet(wallet):
                created += 1
                next_index += 1
            else:
                # Another process allocated this index first
                next_index = await self.db.get_last_wallet_index() + 1

        logger.info(f"Generated {created} new wallets")
        return created

    async def reserve(self) -> Optional[Wallet]:
        """Reserve one wallet, generating a batch and retrying once if the pool is empty."""
        wallet = await self.db.reserve_wallet()
        if wallet is None:
            logger.warning("No wallets available, generating a new batch")
            await self.generate(config.wallet_pool_batch_size)
            wallet = await self.db.reserve_wallet()

        if wallet is not None:
            logger.info(f"Reserved wallet {wallet.address} (index {wallet.index})")
        return wallet

    async def release(self, address: str) -> bool:
        return await self.db.release_wallet(address)

    async def ensure_minimum(self, minimum: Optional[int] = None) -> int:
        """Top the pool up so at least ``minimum`` wallets are unreserved."""
        minimum = minimum if minimum is not None else config.wallet_pool_minimum
        available = await self.db.count_available_wallets()
        if available >= minimum:
            logger.info(f"Wallet pool healthy: {available} available")
            return 0

        logger.info(f"Wallet pool below minimum ({available} < {minimum}), generating {minimum - available}")
        return await self.generate(minimum - available)

    async def count_available(self) -> int:
        return await self.db.count_available_wallets()

    async def get_wallet(self, address: str) -> Optional[Wallet]:
        return await self.db.get_wallet(address)

    async def get_balance(self, address: str) -> Decimal:
        """Current on-chain balance; on RPC failure, the last cached value."""
        try:
            balance = from_wei(await self.chain.get_balance(address))
        except NetworkError as e:
            wallet = await self.db.get_wallet(address)
            cached = wallet.balance if wallet else Decimal("0")
            logger.warning(f"Balance lookup failed for {address}, using cached {cached}: {e}")
            return cached

        await self.db.update_wallet_balance(address, balance)
        return balance

    def decrypt_keys(self, wallet: Wallet) -> Tuple[str, Optional[str]]:
        """Return ``(private_key, mnemonic)`` for a stored wallet."""
        private_key = decrypt_secret(wallet.encrypted_private_key, self.secret)
        mnemonic = decrypt_secret(wallet.encrypted_mnemonic, self.secret) if wallet.encrypted_mnemonic else None
        return private_key, mnemonic
