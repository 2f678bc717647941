"""Centralized configuration management for the Giftlock service.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()

DEV_ENCRYPTION_KEY = "default-key-for-development-only-change-me"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Config(BaseSettings):
    """Main configuration class for the service and its background jobs."""

    # Chain
    rpc_url: str = Field(default="http://127.0.0.1:8545", description="JSON-RPC endpoint")
    chain_id: int = Field(default=31337)
    gift_contract_address: str = Field(default="", description="Time-lock contract address")
    admin_private_key: str = Field(default="", description="Operator key used for release calls")
    native_token_address: str = Field(default=ZERO_ADDRESS)

    # Operator wallets
    company_wallet: str = Field(default=ZERO_ADDRESS, description="Platform fee destination")
    charity_wallet: str = Field(default=ZERO_ADDRESS, description="Destination for incorrect payments")

    # Custody
    wallet_encryption_key: str = Field(default=DEV_ENCRYPTION_KEY)

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Database
    database_path: str = Field(default="./giftlock.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Fees and gas
    platform_fee_percentage: float = Field(default=0.05)
    minimum_gift_amount: float = Field(default=0.01)
    lock_gas_limit: int = Field(default=500000)
    transfer_gas_limit: int = Field(default=30000)
    gas_reserve_per_tx: float = Field(default=0.01, description="Native units kept back per fee transfer")
    fallback_gas_price_gwei: float = Field(default=30.0)

    # Payment reconciliation
    payment_tolerance: float = Field(default=0.01, description="Accepted deviation from totalAmount")
    min_confirmations: int = Field(default=1)
    payment_poll_interval_seconds: int = Field(default=300)
    event_poll_interval_seconds: int = Field(default=15)
    event_reconnect_max_attempts: int = Field(default=5)
    event_reconnect_backoff_seconds: float = Field(default=2.0)
    max_lock_attempts: int = Field(default=3)
    lock_lease_seconds: int = Field(default=600)
    receipt_timeout_seconds: int = Field(default=120)

    # Gift lifecycle
    min_unlock_lead_hours: int = Field(default=2)
    reservation_window_minutes: int = Field(default=60)
    expiry_grace_days: int = Field(default=30)
    max_auto_transfer_attempts: int = Field(default=3)
    auto_transfer_interval_minutes: int = Field(default=30)
    expiry_sweep_hour: int = Field(default=2)

    # Wallet pool
    wallet_pool_minimum: int = Field(default=10)
    wallet_pool_batch_size: int = Field(default=20)

    # RPC resilience
    rpc_timeout_seconds: float = Field(default=30.0)
    rpc_max_retries: int = Field(default=3)
    rpc_retry_backoff_seconds: float = Field(default=1.0)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["server", "scripts"]) -> None:
    """Validate that required configuration is present for a specific entry point.

    Args:
        service: The entry point to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service in ["server", "scripts"]:
        if not config.wallet_encryption_key:
            errors.append("WALLET_ENCRYPTION_KEY must be set")

    if service == "server":
        if config.wallet_encryption_key == DEV_ENCRYPTION_KEY:
            errors.append("WALLET_ENCRYPTION_KEY is still the development default")
        if not config.gift_contract_address:
            errors.append("GIFT_CONTRACT_ADDRESS must be set")
        if not config.admin_private_key:
            errors.append("ADMIN_PRIVATE_KEY must be set for release transactions")
        if config.company_wallet == ZERO_ADDRESS:
            errors.append("COMPANY_WALLET must be set to collect platform fees")

    if errors:
        error_msg = f"Configuration errors for {service}:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
