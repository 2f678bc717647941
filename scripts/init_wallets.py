"""Wallet pool initialization script.

Run this to create the Giftlock schema and top up the custodial wallet pool.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.database import db
from src.giftlock.chain import ChainClient
from src.giftlock.wallet_pool import WalletPool
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main(minimum: int):
    """Initialize the database and ensure the pool holds ``minimum`` free wallets."""
    validate_config_for_service("scripts")
    logger.info("Initializing Giftlock database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    pool = WalletPool(db, ChainClient())
    created = await pool.ensure_minimum(minimum)
    available = await pool.count_available()

    if available < minimum:
        logger.error(f"Wallet pool has {available} available wallets, expected at least {minimum}")
        sys.exit(1)

    logger.info(f"Wallet pool ready: {available} available ({created} generated)")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize the Giftlock wallet pool")
    parser.add_argument("--minimum", type=int, default=config.wallet_pool_minimum)
    args = parser.parse_args()
    asyncio.run(main(args.minimum))
