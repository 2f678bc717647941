import os
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("WALLET_ENCRYPTION_KEY", "test-encryption-secret")
os.environ.setdefault("COMPANY_WALLET", "0x1111111111111111111111111111111111111111")
os.environ.setdefault("CHARITY_WALLET", "0x2222222222222222222222222222222222222222")
os.environ.setdefault("GIFT_CONTRACT_ADDRESS", "0x3333333333333333333333333333333333333333")
os.environ.setdefault("ADMIN_PRIVATE_KEY", "0x" + "0123456789abcdef" * 4)
os.environ.setdefault("WALLET_POOL_BATCH_SIZE", "3")
os.environ.setdefault("WALLET_POOL_MINIMUM", "2")
os.environ.setdefault("RPC_RETRY_BACKOFF_SECONDS", "0.01")
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Database  # noqa: E402
from src.giftlock.claims import ClaimHandler  # noqa: E402
from src.giftlock.gifts import GiftService  # noqa: E402
from src.giftlock.locking import LockCoordinator  # noqa: E402
from src.giftlock.payments import PaymentObserver  # noqa: E402
from src.giftlock.reaper import ExpiryReaper  # noqa: E402
from src.giftlock.wallet_pool import WalletPool  # noqa: E402
from src.models import Gift  # noqa: E402
from tests.fakes import FakeChainClient  # noqa: E402


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
def fake_chain():
    return FakeChainClient()


@pytest.fixture
async def services(test_db, fake_chain):
    """Full service graph over a temporary store and the in-memory chain."""
    pool = WalletPool(test_db, fake_chain)
    await pool.generate(3)
    lock = LockCoordinator(test_db, pool, fake_chain)
    return SimpleNamespace(
        db=test_db,
        chain=fake_chain,
        pool=pool,
        gifts=GiftService(test_db, pool, fake_chain),
        lock=lock,
        observer=PaymentObserver(test_db, pool, fake_chain, lock),
        reaper=ExpiryReaper(test_db, pool, fake_chain),
        claims=ClaimHandler(test_db, pool),
    )


def unlock_in(hours: float) -> str:
    return (datetime.utcnow() + timedelta(hours=hours)).isoformat()


async def create_test_gift(services, amount: str = "1.0", hours: float = 3) -> Gift:
    return await services.gifts.create_gift(
        recipient_first_name="Ada",
        recipient_last_name="Lovelace",
        amount=amount,
        currency="MATIC",
        unlock_date=unlock_in(hours),
        buyer_email="buyer@example.com",
    )


def make_gift(**overrides) -> Gift:
    """Gift record built directly, bypassing creation-time validation."""
    now = datetime.utcnow()
    wallet = overrides.pop("wallet_address", "0x" + uuid.uuid4().hex + "0" * 8)
    fields = dict(
        gift_code=f"GIFT-{uuid.uuid4().hex[:8].upper()}",
        buyer_email="buyer@example.com",
        recipient_first_name="Grace",
        recipient_last_name="Hopper",
        token_address="0x0000000000000000000000000000000000000000",
        amount=Decimal("1"),
        fee=Decimal("0.05"),
        gas_fee=Decimal("0.0159"),
        total_amount=Decimal("1.0659"),
        wallet_address=wallet,
        recipient_wallet=wallet,
        unlock_date=now + timedelta(hours=3),
        expiry_date=now + timedelta(hours=1),
        status="pending",
        payment_status="pending",
    )
    fields.update(overrides)
    return Gift(**fields)
