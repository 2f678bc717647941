"""Gift creation and buyer-facing lifecycle operations."""

import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from web3 import Web3

from src.config import config
from src.database import Database
from src.errors import (
    ConflictError,
    GiftlockError,
    NetworkError,
    NoWalletAvailableError,
    NotFoundError,
    ValidationError,
)
from src.giftlock.chain import ChainClient, from_wei
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import get_logger
from src.models import Gift, Wallet

logger = get_logger(__name__)

WEI_QUANTUM = Decimal("0.000000000000000001")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
MAX_CODE_ATTEMPTS = 5
MAX_PAGE_SIZE = 100


def generate_gift_code() -> str:
    """Human-shareable code: ``GIFT-`` followed by 8 uppercase hex characters."""
    return f"GIFT-{secrets.token_hex(4).upper()}"


def parse_unlock_date(value: Union[str, datetime, None]) -> datetime:
    """Parse an ISO-8601 unlock date into a naive UTC datetime."""
    if value is None or value == "":
        raise ValidationError("Unlock date is required")
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (TypeError, ValueError):
            raise ValidationError("Invalid unlock date format", {"unlockDate": value})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def unlock_timestamp(gift: Gift) -> int:
    return int(gift.unlock_date.replace(tzinfo=timezone.utc).timestamp())


def validate_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


class GiftService:
    """Creates gifts and applies buyer-initiated transitions."""

    def __init__(self, database: Database, wallet_pool: WalletPool, chain: ChainClient):
        self.db = database
        self.wallet_pool = wallet_pool
        self.chain = chain

    async def estimate_gas_fee(self) -> Decimal:
        """Network cost passed to the buyer: gas price times the lock plus fee-transfer gas limits."""
        try:
            gas_price = await self.chain.get_gas_price()
        except NetworkError as e:
            logger.warning(f"Gas price unavailable, using fallback {config.fallback_gas_price_gwei} gwei: {e}")
            gas_price = int(Decimal(str(config.fallback_gas_price_gwei)) * 10**9)
        gas_units = config.lock_gas_limit + config.transfer_gas_limit
        return from_wei(gas_price * gas_units).quantize(WEI_QUANTUM)

    @staticmethod
    def compute_fee(amount: Decimal) -> Decimal:
        return (amount * Decimal(str(config.platform_fee_percentage))).quantize(WEI_QUANTUM)

    async def _assign_wallet(self, wallet_address: Optional[str]) -> Wallet:
        if wallet_address is None:
            wallet = await self.wallet_pool.reserve()
            if wallet is None:
                raise NoWalletAvailableError("No wallets available. Please try again later.")
            return wallet

        wallet = await self.wallet_pool.get_wallet(wallet_address)
        if wallet is None:
            raise ValidationError("Unknown wallet address", {"walletAddress": wallet_address})
        if not wallet.reserved:
            raise ValidationError("Wallet address has not been reserved", {"walletAddress": wallet_address})
        if await self.db.get_live_gift_by_wallet(wallet.address):
            raise ConflictError("Wallet is already assigned to another gift", {"walletAddress": wallet_address})
        return wallet

    async def create_gift(
        self,
        *,
        recipient_first_name: str,
        amount: Union[str, Decimal, float],
        unlock_date: Union[str, datetime, None],
        buyer_email: str,
        recipient_last_name: str = "",
        currency: str = "MATIC",
        wallet_address: Optional[str] = None,
        recipient_wallet: Optional[str] = None,
        message: str = "",
    ) -> Gift:
        """Validate the request, assign a custodial wallet and persist a pending gift.

        Raises:
            ValidationError: Bad input, or an unlock date under the minimum lead time.
            NoWalletAvailableError: The pool is exhausted even after replenishment.
            ConflictError: The supplied wallet already backs a live gift.
        """
        now = datetime.utcnow()
        unlock_at = parse_unlock_date(unlock_date)
        if unlock_at < now + timedelta(hours=config.min_unlock_lead_hours):
            raise ValidationError(
                f"Unlock date must be at least {config.min_unlock_lead_hours} hours from now",
                {"unlockDate": unlock_at.isoformat()},
            )

        try:
            principal = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a number", {"amount": amount})
        if not principal.is_finite() or principal <= 0:
            raise ValidationError("Amount must be greater than zero", {"amount": str(amount)})
        if principal < Decimal(str(config.minimum_gift_amount)):
            raise ValidationError(f"Amount must be at least {config.minimum_gift_amount}", {"amount": str(amount)})

        if not buyer_email or not EMAIL_PATTERN.match(buyer_email):
            raise ValidationError("A valid buyer email is required")
        if not recipient_first_name or not recipient_first_name.strip():
            raise ValidationError("Recipient first name is required")
        if recipient_wallet and not Web3.is_address(recipient_wallet):
            raise ValidationError("Invalid recipient wallet address", {"recipientWallet": recipient_wallet})

        wallet = await self._assign_wallet(wallet_address.lower() if wallet_address else None)
        try:
            gift = await self._persist(
                wallet=wallet,
                principal=principal.quantize(WEI_QUANTUM),
                unlock_at=unlock_at,
                now=now,
                buyer_email=buyer_email.strip().lower(),
                recipient_first_name=recipient_first_name.strip(),
                recipient_last_name=(recipient_last_name or "").strip(),
                currency=(currency or "MATIC").upper(),
                recipient_wallet=recipient_wallet,
                message=message or "",
            )
        except GiftlockError:
            if wallet_address is None:
                await self.wallet_pool.release(wallet.address)
            raise

        # created -> pending: wallet assigned, waiting for the buyer transfer
        await self.db.transition_status(gift.gift_code, ["created"], "pending")
        gift.status = "pending"
        logger.info(
            f"Gift {gift.gift_code} awaiting {gift.total_amount} {gift.currency} at {gift.wallet_address}"
        )
        return gift

    async def _persist(self, *, wallet: Wallet, principal: Decimal, unlock_at: datetime, now: datetime, **fields) -> Gift:
        fee = self.compute_fee(principal)
        gas_fee = await self.estimate_gas_fee()
        recipient_wallet = fields.pop("recipient_wallet") or wallet.address

        for _ in range(MAX_CODE_ATTEMPTS):
            gift = Gift(
                gift_code=generate_gift_code(),
                gift_id=f"gift-{uuid.uuid4().hex[:12]}",
                token_address=config.native_token_address,
                amount=principal,
                fee=fee,
                gas_fee=gas_fee,
                total_amount=principal + fee + gas_fee,
                wallet_address=wallet.address,
                recipient_wallet=recipient_wallet.lower(),
                contract_address=config.gift_contract_address or None,
                unlock_date=unlock_at,
                expiry_date=now + timedelta(minutes=config.reservation_window_minutes),
                created_at=now,
                updated_at=now,
                status="created",
                payment_status="pending",
                **fields,
            )
            if await self.db.create_gift(gift):
                return gift

        raise ConflictError("Could not allocate a unique gift code")

    async def get_gift(self, gift_code: str) -> Gift:
        gift = await self.db.get_gift(gift_code.strip().upper())
        if gift is None:
            raise NotFoundError("Gift not found", {"giftCode": gift_code})
        return gift

    async def report_payment(self, gift_code: str, tx_hash: str) -> Gift:
        """Record the buyer's payment transaction: paymentStatus pending -> paid.

        Calling again with the same hash, or after the payment has already been
        confirmed, returns the current record unchanged.
        """
        if not tx_hash or not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Invalid transaction hash", {"txHash": tx_hash})

        gift = await self.get_gift(gift_code)
        if gift.payment_status in ("expired", "failed"):
            raise ConflictError(
                f"Gift payment is {gift.payment_status}", {"giftCode": gift.gift_code}
            )
        if gift.payment_status == "received":
            return gift
        if gift.payment_status == "paid":
            if gift.payment_tx_hash and gift.payment_tx_hash.lower() != tx_hash.lower():
                raise ConflictError("A different payment transaction is already recorded")
            return gift

        advanced = await self.db.advance_payment_status(
            gift.gift_code, ["pending"], "paid", payment_tx_hash=tx_hash.lower()
        )
        if advanced:
            logger.info(f"Gift {gift.gift_code} payment reported: {tx_hash}")
        return await self.get_gift(gift.gift_code)

    async def cancel_gift(self, gift_code: str) -> Gift:
        """Cancel a gift before payment and return its wallet to the pool.

        Raises:
            ConflictError: The gift is past payment, or funds already sit at its wallet.
            NetworkError: The wallet balance could not be read; nothing is cancelled.
        """
        gift = await self.get_gift(gift_code)
        if gift.status == "pending" and gift.payment_status == "pending":
            balance_wei = await self.chain.get_balance(gift.wallet_address)
            if balance_wei > 0:
                raise ConflictError(
                    "A payment has already arrived at the gift wallet",
                    {"walletAddress": gift.wallet_address, "balance": str(from_wei(balance_wei))},
                )

        cancelled = await self.db.transition_status(
            gift.gift_code, ["pending"], "cancelled", payment_statuses=["pending"], payment_status="expired"
        )
        if not cancelled:
            raise ConflictError(
                "Only unpaid pending gifts can be cancelled",
                {"status": gift.status, "paymentStatus": gift.payment_status},
            )

        await self.wallet_pool.release(gift.wallet_address)
        logger.info(f"Gift {gift.gift_code} cancelled, wallet {gift.wallet_address} released")
        return await self.get_gift(gift.gift_code)

    async def list_gifts_by_buyer(self, buyer_email: str, page: int = 1, limit: int = 10) -> List[Gift]:
        validate_page(page, limit)
        return await self.db.list_gifts_by_buyer(buyer_email, page, limit)

    async def list_claimed_gifts(self, user_email: str, page: int = 1, limit: int = 10) -> List[Gift]:
        validate_page(page, limit)
        return await self.db.list_claimed_gifts(user_email, page, limit)
