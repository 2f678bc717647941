"""Recipient-facing verification, preview and one-time claim of gift key material."""

from datetime import datetime

from src.database import Database
from src.errors import (
    AlreadyClaimedError,
    ConflictError,
    GiftNotLockedError,
    NotFoundError,
    PaymentPendingError,
    ValidationError,
)
from src.giftlock.gifts import EMAIL_PATTERN
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import ClaimAction, ClaimDisclosure, ClaimEvent, Gift, GiftSummary, Wallet, is_gift_ready

logger = get_logger(__name__)


def _normalize_code(gift_code: str) -> str:
    if not gift_code or not gift_code.strip():
        raise ValidationError("Gift code is required")
    return gift_code.strip().upper()


class ClaimHandler:
    """Checks claim eligibility and discloses recipient key material exactly once."""

    def __init__(self, database: Database, wallet_pool: WalletPool):
        self.db = database
        self.wallet_pool = wallet_pool

    async def verify(self, gift_code: str) -> GiftSummary:
        gift = await self.db.get_gift(_normalize_code(gift_code))
        if gift is None:
            raise NotFoundError("Gift not found", {"giftCode": gift_code})

        return GiftSummary(
            gift_code=gift.gift_code,
            is_claimed=gift.is_claimed,
            payment_status=gift.payment_status,
            status=gift.status,
            recipient_name=gift.recipient_name,
            amount=gift.amount,
            currency=gift.currency,
            unlock_date=gift.unlock_date,
            wallet_address=gift.wallet_address,
            gift_ready=gift.payment_status == "received" and gift.contract_locked and not gift.is_claimed,
        )

    async def _eligible(self, gift_code: str, claimant: str) -> Gift:
        """Shared checks, in order: unknown code, already claimed, payment pending, not locked."""
        if not claimant or not EMAIL_PATTERN.match(claimant):
            raise ValidationError("A valid user email is required")

        gift = await self.db.get_gift(_normalize_code(gift_code))
        if gift is None:
            raise NotFoundError("Gift not found", {"giftCode": gift_code})
        if gift.is_claimed:
            raise AlreadyClaimedError("Gift has already been claimed", {"giftCode": gift.gift_code})
        if gift.payment_status != "received":
            raise PaymentPendingError("Gift is not ready yet. Payment is still pending.", {"giftCode": gift.gift_code})
        if not gift.contract_locked:
            raise GiftNotLockedError(
                "Gift is not ready yet. Funds are not locked yet.", {"giftCode": gift.gift_code}
            )
        return gift

    async def _recipient_wallet(self, gift: Gift) -> Wallet:
        wallet = await self.wallet_pool.get_wallet(gift.recipient_wallet)
        if wallet is None:
            raise ConflictError(
                "Gift is delivered to an external wallet; there is no key material to disclose",
                {"giftCode": gift.gift_code},
            )
        return wallet

    def _disclose(self, gift: Gift, wallet: Wallet, action: ClaimAction) -> ClaimDisclosure:
        private_key, mnemonic = self.wallet_pool.decrypt_keys(wallet)
        return ClaimDisclosure(
            gift_code=gift.gift_code,
            action=action,
            wallet_address=wallet.address,
            mnemonic=mnemonic,
            private_key=private_key,
            amount=gift.amount,
            total_amount=gift.total_amount,
            fee=gift.fee,
            currency=gift.currency,
            unlock_date=gift.unlock_date,
            recipient_name=gift.recipient_name,
        )

    async def preclaim(self, gift_code: str, claimant: str) -> ClaimDisclosure:
        """Preview the key material without consuming the claim. May be repeated."""
        gift = await self._eligible(gift_code, claimant)
        with CorrelationIdContext(gift.gift_code):
            wallet = await self._recipient_wallet(gift)
            disclosure = self._disclose(gift, wallet, "preclaim")
            await self.db.record_claim_event(
                ClaimEvent(gift_code=gift.gift_code, action="preclaim", claimant=claimant.lower())
            )
            logger.info(f"Preclaim of {gift.gift_code} by {claimant.lower()}")
        return disclosure

    async def claim(self, gift_code: str, claimant: str) -> ClaimDisclosure:
        """Flip the claim flag and disclose the key material. Succeeds once per gift.

        Raises:
            NotFoundError, AlreadyClaimedError, PaymentPendingError, GiftNotLockedError: In that check order.
        """
        gift = await self._eligible(gift_code, claimant)
        with CorrelationIdContext(gift.gift_code):
            wallet = await self._recipient_wallet(gift)

            if not await self.db.claim_gift(gift.gift_code, claimant.lower()):
                # Lost the race to a concurrent claim
                raise AlreadyClaimedError("Gift has already been claimed", {"giftCode": gift.gift_code})

            await self.db.record_claim_event(
                ClaimEvent(gift_code=gift.gift_code, action="claim", claimant=claimant.lower())
            )
            if not is_gift_ready(gift, datetime.utcnow()):
                logger.info(f"Gift {gift.gift_code} claimed before its unlock date {gift.unlock_date}")
            logger.info(f"Gift {gift.gift_code} claimed by {claimant.lower()}")
            return self._disclose(gift, wallet, "claim")
