"""Unit tests for the scheduled sweeps."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from src.config import config
from src.errors import ContractError
from tests.conftest import create_test_gift, make_gift


@pytest.mark.unit
class TestExpirySweep:
    """Bulk expiry of unclaimed gifts past the grace window."""

    @pytest.mark.asyncio
    async def test_gift_31_days_past_unlock_expires(self, test_db, services):
        now = datetime.utcnow()
        stale = make_gift(unlock_date=now - timedelta(days=31), status="active", payment_status="received")
        recent = make_gift(unlock_date=now - timedelta(days=29), status="active", payment_status="received")
        await test_db.create_gift(stale)
        await test_db.create_gift(recent)

        result = await services.reaper.expire_gifts(now)

        assert result.succeeded == 1
        assert (await test_db.get_gift(stale.gift_code)).status == "expired"
        assert (await test_db.get_gift(recent.gift_code)).status == "active"

    @pytest.mark.asyncio
    async def test_claimed_and_terminal_gifts_untouched(self, test_db, services):
        old = datetime.utcnow() - timedelta(days=40)
        claimed = make_gift(unlock_date=old, status="claimed", is_claimed=True, payment_status="received")
        cancelled = make_gift(unlock_date=old, status="cancelled", payment_status="expired")
        claimed_flag_only = make_gift(unlock_date=old, status="active", is_claimed=True, payment_status="received")
        for gift in (claimed, cancelled, claimed_flag_only):
            await test_db.create_gift(gift)

        result = await services.reaper.expire_gifts()

        assert result.succeeded == 0
        assert (await test_db.get_gift(claimed.gift_code)).status == "claimed"
        assert (await test_db.get_gift(cancelled.gift_code)).status == "cancelled"
        stored = await test_db.get_gift(claimed_flag_only.gift_code)
        assert stored.status == "active" and stored.is_claimed is True


@pytest.mark.unit
class TestAutoTransfer:
    """Release of locked gifts once unlocked."""

    async def _locked(self, test_db, **overrides):
        fields = dict(
            unlock_date=datetime.utcnow() - timedelta(hours=1),
            status="active",
            payment_status="received",
            contract_locked=True,
        )
        fields.update(overrides)
        gift = make_gift(**fields)
        await test_db.create_gift(gift)
        return gift

    @pytest.mark.asyncio
    async def test_unlocked_gift_is_released(self, test_db, services):
        gift = await self._locked(test_db)
        not_yet = await self._locked(test_db, unlock_date=datetime.utcnow() + timedelta(days=1))

        result = await services.reaper.run_auto_transfers()

        assert result.succeeded == 1
        assert services.chain.releases == [gift.recipient_wallet]
        assert (await test_db.get_gift(gift.gift_code)).auto_transfer_tx_hash is not None
        assert (await test_db.get_gift(not_yet.gift_code)).auto_transfer_tx_hash is None

        # Released gifts drop out of eligibility
        again = await services.reaper.run_auto_transfers()
        assert again.processed == 0

    @pytest.mark.asyncio
    async def test_unlocked_but_not_locked_is_skipped(self, test_db, services):
        await self._locked(test_db, contract_locked=False, status="pending")

        result = await services.reaper.run_auto_transfers()

        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_failure_is_recorded_without_aborting(self, test_db, services):
        first = await self._locked(test_db)
        second = await self._locked(test_db)
        services.chain.release_error = ContractError("not unlocked")

        result = await services.reaper.run_auto_transfers()

        assert result.processed == 2
        assert result.failed == 2
        for gift in (first, second):
            stored = await test_db.get_gift(gift.gift_code)
            assert stored.auto_transfer_attempts == 1
            assert "not unlocked" in stored.last_auto_transfer_error
            assert stored.last_auto_transfer_attempt is not None

    @pytest.mark.asyncio
    async def test_attempt_cap_moves_gift_to_failed(self, test_db, services):
        gift = await self._locked(test_db)
        services.chain.release_error = ContractError("not unlocked")

        for _ in range(config.max_auto_transfer_attempts + 2):
            await services.reaper.run_auto_transfers()

        stored = await test_db.get_gift(gift.gift_code)
        assert stored.auto_transfer_attempts == config.max_auto_transfer_attempts
        assert stored.status == "failed"


@pytest.mark.unit
class TestStaleReservations:
    """Unpaid gifts past their reservation window."""

    @pytest.mark.asyncio
    async def test_unfunded_reservation_released(self, services):
        gift = await create_test_gift(services)
        later = datetime.utcnow() + timedelta(hours=2)

        result = await services.reaper.release_stale_reservations(later)

        stored = await services.db.get_gift(gift.gift_code)
        assert result.succeeded == 1
        assert stored.status == "cancelled"
        assert stored.payment_status == "expired"
        assert (await services.pool.get_wallet(gift.wallet_address)).reserved is False

    @pytest.mark.asyncio
    async def test_funded_reservation_kept(self, services):
        gift = await create_test_gift(services)
        services.chain.deposit(gift.wallet_address, Decimal("0.1"))

        result = await services.reaper.release_stale_reservations(datetime.utcnow() + timedelta(hours=2))

        assert result.skipped == 1
        assert (await services.db.get_gift(gift.gift_code)).status == "pending"

    @pytest.mark.asyncio
    async def test_reservation_inside_window_kept(self, services):
        gift = await create_test_gift(services)

        result = await services.reaper.release_stale_reservations()

        assert result.processed == 0
        assert (await services.db.get_gift(gift.gift_code)).status == "pending"

    @pytest.mark.asyncio
    async def test_released_wallet_backs_a_new_gift(self, services):
        gift = await create_test_gift(services)
        await services.reaper.release_stale_reservations(datetime.utcnow() + timedelta(hours=2))

        wallet = await services.pool.reserve()
        reused = await services.gifts.create_gift(
            recipient_first_name="Ada",
            amount="1",
            unlock_date=(datetime.utcnow() + timedelta(hours=3)).isoformat(),
            buyer_email="buyer@example.com",
            wallet_address=wallet.address,
        )

        assert wallet.address == gift.wallet_address
        assert reused.wallet_address == gift.wallet_address

    @pytest.mark.asyncio
    async def test_idle_reserved_wallet_released(self, services):
        wallet = await services.pool.reserve()
        available = await services.pool.count_available()

        assert (await services.reaper.release_stale_reservations()).processed == 0
        result = await services.reaper.release_stale_reservations(datetime.utcnow() + timedelta(hours=2))

        assert result.succeeded == 1
        assert (await services.pool.get_wallet(wallet.address)).reserved is False
        assert await services.pool.count_available() == available + 1

    @pytest.mark.asyncio
    async def test_idle_reserved_wallet_with_funds_kept(self, services):
        wallet = await services.pool.reserve()
        services.chain.deposit(wallet.address, Decimal("0.5"))

        result = await services.reaper.release_stale_reservations(datetime.utcnow() + timedelta(hours=2))

        assert result.skipped == 1
        assert (await services.pool.get_wallet(wallet.address)).reserved is True

    @pytest.mark.asyncio
    async def test_wallet_backing_a_gift_is_not_idle(self, services):
        wallet = await services.pool.reserve()
        gift = await services.gifts.create_gift(
            recipient_first_name="Ada",
            amount="1",
            unlock_date=(datetime.utcnow() + timedelta(days=3)).isoformat(),
            buyer_email="buyer@example.com",
            wallet_address=wallet.address,
        )
        services.chain.deposit(gift.wallet_address, gift.total_amount)
        await services.observer.poll_cycle()

        result = await services.reaper.release_stale_reservations(datetime.utcnow() + timedelta(hours=2))

        assert result.processed == 0
        assert (await services.pool.get_wallet(wallet.address)).reserved is True
