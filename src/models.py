"""Shared data models for the Giftlock service.

Pydantic models for the two stored entities (Gift, Wallet), the chain
observations the reconciliation code consumes, and the plain functions that
encode the gift state machine.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Literal, Optional, Tuple

from pydantic import BaseModel, Field

GiftStatus = Literal["created", "pending", "active", "claimed", "cancelled", "expired", "failed"]
PaymentStatus = Literal["pending", "paid", "received", "expired", "failed"]
ClaimAction = Literal["preclaim", "claim"]

# Forward-only transitions. The store derives every status guard from this
# table. "created" -> "active" covers a lock seen on-chain before the gift left
# "created"; "failed" -> "active" is reachable only through an operator lock retry.
STATUS_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "created": frozenset({"pending", "active", "cancelled", "expired", "failed"}),
    "pending": frozenset({"active", "cancelled", "expired", "failed"}),
    "active": frozenset({"claimed", "expired", "failed"}),
    "failed": frozenset({"active"}),
    "claimed": frozenset(),
    "cancelled": frozenset(),
    "expired": frozenset(),
}

# paymentStatus rank; a write may only move to a higher rank
PAYMENT_RANK: Dict[str, int] = {
    "pending": 0,
    "paid": 1,
    "received": 2,
    "expired": 3,
    "failed": 3,
}


class Wallet(BaseModel):
    """Custodial keypair owned by the wallet pool."""

    address: str = Field(description="Lowercase address")
    encrypted_private_key: str = Field(description="iv_hex:ciphertext_hex")
    encrypted_mnemonic: Optional[str] = Field(default=None)
    reserved: bool = Field(default=False)
    reserved_at: Optional[datetime] = Field(default=None)
    balance: Decimal = Field(default=Decimal("0"), description="Cached balance in native units")
    last_balance_update: Optional[datetime] = Field(default=None)
    index: int = Field(description="Monotonic allocation order")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Gift(BaseModel):
    """Off-chain record of a gift's lifecycle; source of truth for API responses."""

    gift_code: str = Field(description="Human-shareable code, GIFT-XXXXXXXX")
    gift_id: Optional[str] = Field(default=None, description="Internal identifier")

    # Parties
    buyer_email: str
    recipient_first_name: str
    recipient_last_name: str = Field(default="")
    claimed_by: Optional[str] = Field(default=None)
    message: str = Field(default="")

    # Financial, in native units of `currency`
    currency: str = Field(default="MATIC")
    token_address: str
    amount: Decimal
    fee: Decimal
    gas_fee: Decimal
    total_amount: Decimal
    total_received: Optional[Decimal] = Field(default=None)
    actual_gas_cost: Optional[Decimal] = Field(default=None)
    platform_profit: Optional[Decimal] = Field(default=None)

    # Addressing
    wallet_address: str = Field(description="Custodial address awaiting buyer funds")
    recipient_wallet: str = Field(description="Destination for the unlocked funds")
    contract_address: Optional[str] = Field(default=None)

    # Timing
    unlock_date: datetime
    expiry_date: datetime = Field(description="End of the pre-payment reservation window")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    claimed_at: Optional[datetime] = Field(default=None)

    # Status axes
    status: GiftStatus = Field(default="created")
    payment_status: PaymentStatus = Field(default="pending")
    is_claimed: bool = Field(default=False)
    review_reason: Optional[str] = Field(default=None, description="Set when manual review is required")

    # Payment and lock bookkeeping
    payment_tx_hash: Optional[str] = Field(default=None)
    diverted_tx_hash: Optional[str] = Field(default=None)
    contract_locked: bool = Field(default=False)
    lock_tx_hash: Optional[str] = Field(default=None)
    fee_tx_hash: Optional[str] = Field(default=None)
    lock_attempts: int = Field(default=0)
    lock_started_at: Optional[datetime] = Field(default=None)
    last_lock_error: Optional[str] = Field(default=None)

    # Auto-transfer bookkeeping
    auto_transfer_attempts: int = Field(default=0)
    last_auto_transfer_attempt: Optional[datetime] = Field(default=None)
    auto_transfer_tx_hash: Optional[str] = Field(default=None)
    last_auto_transfer_error: Optional[str] = Field(default=None)

    @property
    def recipient_name(self) -> str:
        return f"{self.recipient_first_name} {self.recipient_last_name}".strip()


class ClaimEvent(BaseModel):
    """Audit record for preclaim and claim calls."""

    gift_code: str
    action: ClaimAction
    claimant: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TxReceipt(BaseModel):
    """Chain-neutral view of a transaction receipt."""

    tx_hash: str
    status: int = Field(description="1 success, 0 reverted")
    block_number: int
    gas_used: int
    effective_gas_price: int = Field(description="Wei per gas unit")
    confirmations: int = Field(default=0)

    @property
    def gas_cost_wei(self) -> int:
        return self.gas_used * self.effective_gas_price


class ChainEvent(BaseModel):
    """Decoded contract event."""

    name: str
    args: dict
    tx_hash: str
    block_number: int
    log_index: int = 0


class GiftSummary(BaseModel):
    """Read-only view returned by gift verification."""

    gift_code: str
    exists: bool = True
    is_claimed: bool
    payment_status: PaymentStatus
    status: GiftStatus
    recipient_name: str
    amount: Decimal
    currency: str
    unlock_date: datetime
    wallet_address: str
    gift_ready: bool = Field(description="Payment cleared and not yet claimed")


class ClaimDisclosure(BaseModel):
    """Recipient key material plus the gift facts shown alongside it."""

    gift_code: str
    action: ClaimAction
    wallet_address: str
    mnemonic: Optional[str]
    private_key: str
    amount: Decimal
    total_amount: Decimal
    fee: Decimal
    currency: str
    unlock_date: datetime
    recipient_name: str


class SweepResult(BaseModel):
    """Outcome counters for a background sweep."""

    name: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


def can_transition(current: str, target: str) -> bool:
    """Return True if `current` -> `target` is a legal status transition."""
    return target in STATUS_TRANSITIONS.get(current, frozenset())


def payment_can_advance(current: str, target: str) -> bool:
    """Return True if paymentStatus may move from `current` to `target`."""
    if current in ("expired", "failed"):
        return False
    return PAYMENT_RANK[target] > PAYMENT_RANK[current]


def is_gift_ready(gift: Gift, now: Optional[datetime] = None) -> bool:
    """Payment received, unlock date reached and not yet claimed."""
    now = now or datetime.utcnow()
    return gift.payment_status == "received" and gift.unlock_date <= now and not gift.is_claimed


def statuses_into(target: str) -> Tuple[str, ...]:
    """Every status from which `target` is a legal next status, in table order."""
    return tuple(status for status in STATUS_TRANSITIONS if can_transition(status, target))


# Statuses the expiry sweep may still act on
OPEN_STATUSES = statuses_into("expired")
# Paid but not yet locked; lock failures count against these
PRE_LOCK_STATUSES = tuple(status for status in statuses_into("failed") if status != "active")
