"""Run one payment reconciliation cycle.

Useful when the service is down or the event subscription missed something:
checks every unresolved gift against the chain, confirms payments and submits
pending locks, exactly as the scheduled poll does.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.database import db
from src.giftlock.chain import ChainClient
from src.giftlock.locking import LockCoordinator
from src.giftlock.payments import PaymentObserver
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    validate_config_for_service("scripts")
    await db.initialize()

    chain = ChainClient()
    pool = WalletPool(db, chain)
    observer = PaymentObserver(db, pool, chain, LockCoordinator(db, pool, chain))

    result = await observer.poll_cycle()
    logger.info(
        f"Checked {result.processed} gifts: {result.succeeded} confirmed, "
        f"{result.failed} failed, {result.skipped} unchanged"
    )
    if result.failed:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
