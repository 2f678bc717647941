"""Background job scheduling for reconciliation and sweeps.

Schedule:
- Payment poll: every ``payment_poll_interval_seconds``
- Auto-transfer sweep: every ``auto_transfer_interval_minutes``
- Expiry sweep: daily at ``expiry_sweep_hour``:00 UTC
- Stale reservation release: every 15 minutes
- Wallet pool top-up: hourly
"""

from typing import Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.config import config
from src.giftlock.payments import EventSubscription, PaymentObserver
from src.giftlock.reaper import ExpiryReaper
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import CorrelationIdContext, get_logger

logger = get_logger(__name__)


class GiftlockScheduler:
    """Owns the APScheduler instance and the long-lived event subscription task."""

    def __init__(
        self,
        observer: PaymentObserver,
        reaper: ExpiryReaper,
        wallet_pool: WalletPool,
        subscription: Optional[EventSubscription] = None,
    ):
        self.observer = observer
        self.reaper = reaper
        self.wallet_pool = wallet_pool
        self.subscription = subscription

        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 120,
            },
            timezone="UTC",
        )

    @staticmethod
    def _job(name: str, func: Callable[[], Awaitable]) -> Callable[[], Awaitable[None]]:
        async def run() -> None:
            with CorrelationIdContext(prefix="job"):
                try:
                    await func()
                except Exception as e:
                    logger.error(f"Job {name} failed: {e}", exc_info=True)

        return run

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self._job("payment_poll", self.observer.poll_cycle),
            trigger=IntervalTrigger(seconds=config.payment_poll_interval_seconds),
            id="payment_poll",
            name="Payment reconciliation poll",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._job("auto_transfer", self.reaper.run_auto_transfers),
            trigger=IntervalTrigger(minutes=config.auto_transfer_interval_minutes),
            id="auto_transfer",
            name="Auto-transfer of unlocked gifts",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._job("expiry_sweep", self.reaper.expire_gifts),
            trigger=CronTrigger(hour=config.expiry_sweep_hour, minute=0),
            id="expiry_sweep",
            name="Expire unclaimed gifts",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._job("stale_reservations", self.reaper.release_stale_reservations),
            trigger=IntervalTrigger(minutes=15),
            id="stale_reservations",
            name="Release stale wallet reservations",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._job("wallet_pool", self.wallet_pool.ensure_minimum),
            trigger=IntervalTrigger(hours=1),
            id="wallet_pool",
            name="Wallet pool top-up",
            replace_existing=True,
        )
        logger.info(f"Scheduled {len(self.scheduler.get_jobs())} background jobs")

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        if self.subscription is not None:
            self.subscription.start()
        logger.info("Background scheduler started")

    async def shutdown(self) -> None:
        if self.subscription is not None:
            await self.subscription.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
