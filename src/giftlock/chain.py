"""Chain client used by every component that touches the network.

An explicitly constructed wrapper over ``AsyncWeb3`` so the wallet pool, the
observer, the lock coordinator and the reaper all receive the same collaborator
instead of reaching for a module-level provider. Read calls are bounded by a
timeout and retried with exponential backoff; exhausting the retries raises
``NetworkError``. Reverts and RPC rejections raise ``ContractError`` and are
never retried.
"""

import asyncio
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

import aiohttp
from eth_account import Account
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError, Web3ValidationError

from src.config import config
from src.errors import ContractError, NetworkError
from src.giftlock.abi import GIFT_CONTRACT_ABI
from src.logging_utils import get_logger
from src.models import ChainEvent, TxReceipt

logger = get_logger(__name__)

T = TypeVar("T")

# Rejections raised while building or awaiting a transaction; never retried
REJECTION_ERRORS = (Web3RPCError, ContractLogicError, Web3ValidationError)

# Failures worth another attempt; anything else is a definitive answer.
TRANSIENT_ERRORS = (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)

BlockId = Union[int, str]


def to_wei(amount: Decimal) -> int:
    """Convert a native-unit decimal amount to wei."""
    return int(Web3.to_wei(amount, "ether"))


def from_wei(value: int) -> Decimal:
    """Convert wei to a native-unit decimal amount."""
    return Decimal(Web3.from_wei(value, "ether"))


def account_address(private_key: str) -> str:
    return Account.from_key(private_key).address


class ChainClient:
    """Balance reads, value transfers and time-lock contract calls."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        admin_private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.rpc_url = rpc_url or config.rpc_url
        self.chain_id = chain_id or config.chain_id
        self.admin_private_key = admin_private_key or config.admin_private_key
        self.timeout = timeout or config.rpc_timeout_seconds
        self.max_retries = max_retries or config.rpc_max_retries
        self.backoff = backoff or config.rpc_retry_backoff_seconds

        self.w3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))

        contract_address = contract_address or config.gift_contract_address
        self.contract = None
        if contract_address:
            self.contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(contract_address), abi=GIFT_CONTRACT_ABI
            )

    async def _rpc(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run one RPC call with a timeout and bounded exponential-backoff retries."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff, min=self.backoff, max=8),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(f"Retrying {label} (attempt {attempt.retry_state.attempt_number})")
                    return await asyncio.wait_for(call(), timeout=self.timeout)
        except TRANSIENT_ERRORS as e:
            logger.error(f"{label} failed after {self.max_retries} attempts: {e!r}")
            raise NetworkError(f"Chain RPC unavailable during {label}", {"reason": repr(e)}) from e
        except Web3RPCError as e:
            raise ContractError(f"{label} rejected by node: {e}") from e

    def _require_contract(self):
        if self.contract is None:
            raise ContractError("Gift contract address is not configured")
        return self.contract

    # Reads
    async def get_balance(self, address: str, block_identifier: BlockId = "latest") -> int:
        checksum = Web3.to_checksum_address(address)
        return await self._rpc("get_balance", lambda: self.w3.eth.get_balance(checksum, block_identifier))

    async def get_block_number(self) -> int:
        return await self._rpc("get_block_number", lambda: self.w3.eth.block_number)

    async def get_gas_price(self) -> int:
        return await self._rpc("get_gas_price", lambda: self.w3.eth.gas_price)

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt with its current confirmation count, or None while still pending."""

        async def fetch():
            try:
                return await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._rpc("get_receipt", fetch)
        if receipt is None:
            return None
        head = await self.get_block_number()
        return self._to_receipt(receipt, head)

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> TxReceipt:
        """Block until the transaction is mined.

        Raises:
            NetworkError: If the receipt does not appear within ``timeout``.
            ContractError: If the transaction reverted.
        """
        timeout = timeout or config.receipt_timeout_seconds
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise NetworkError(f"Transaction {tx_hash} not mined within {timeout}s") from e
        except TRANSIENT_ERRORS as e:
            raise NetworkError(f"Chain RPC unavailable while waiting for {tx_hash}") from e
        except REJECTION_ERRORS as e:
            raise ContractError(f"Node rejected receipt lookup for {tx_hash}: {e}") from e

        head = await self.get_block_number()
        result = self._to_receipt(receipt, head)
        if result.status != 1:
            raise ContractError(f"Transaction {tx_hash} reverted", {"txHash": tx_hash})
        return result

    @staticmethod
    def _to_receipt(receipt, head: int) -> TxReceipt:
        tx_hash = receipt["transactionHash"]
        return TxReceipt(
            tx_hash=tx_hash.to_0x_hex() if hasattr(tx_hash, "to_0x_hex") else str(tx_hash),
            status=receipt["status"],
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            effective_gas_price=receipt.get("effectiveGasPrice", 0),
            confirmations=max(head - receipt["blockNumber"] + 1, 0),
        )

    # Writes
    async def _sign_and_send(self, private_key: str, tx: dict) -> str:
        signed = Account.sign_transaction(tx, private_key)
        tx_hash = await self._rpc(
            "send_raw_transaction", lambda: self.w3.eth.send_raw_transaction(signed.raw_transaction)
        )
        return tx_hash.to_0x_hex()

    async def _base_tx(self, sender: str, gas_limit: int, value: int) -> dict:
        nonce = await self._rpc("get_transaction_count", lambda: self.w3.eth.get_transaction_count(sender, "pending"))
        return {
            "from": sender,
            "value": value,
            "gas": gas_limit,
            "gasPrice": await self.get_gas_price(),
            "nonce": nonce,
            "chainId": self.chain_id,
        }

    async def send_value(self, private_key: str, to: str, value_wei: int, gas_limit: Optional[int] = None) -> str:
        """Plain native-value transfer signed by ``private_key``."""
        sender = account_address(private_key)
        tx = await self._base_tx(sender, gas_limit or config.transfer_gas_limit, value_wei)
        tx["to"] = Web3.to_checksum_address(to)
        tx_hash = await self._sign_and_send(private_key, tx)
        logger.info(f"Sent {value_wei} wei from {sender} to {to}: {tx_hash}")
        return tx_hash

    async def lock_funds(self, private_key: str, amount_wei: int, recipient: str, unlock_timestamp: int) -> str:
        """Call ``lockFunds`` from the custodial wallet, attaching the principal as value."""
        contract = self._require_contract()
        sender = account_address(private_key)
        base = await self._base_tx(sender, config.lock_gas_limit, amount_wei)
        try:
            call = contract.functions.lockFunds(
                Web3.to_checksum_address(config.native_token_address),
                amount_wei,
                Web3.to_checksum_address(recipient),
                unlock_timestamp,
            )
            tx = await call.build_transaction(base)
        except (*REJECTION_ERRORS, ValueError) as e:
            raise ContractError(f"lockFunds rejected: {e}") from e
        tx_hash = await self._sign_and_send(private_key, tx)
        logger.info(f"Submitted lockFunds for {recipient} ({amount_wei} wei): {tx_hash}")
        return tx_hash

    async def release_funds(self, recipient: str) -> str:
        """Call ``transferFunds`` with the operator key to release an unlocked gift."""
        contract = self._require_contract()
        if not self.admin_private_key:
            raise ContractError("Admin key is not configured; cannot release funds")
        sender = account_address(self.admin_private_key)
        base = await self._base_tx(sender, config.lock_gas_limit, 0)
        try:
            tx = await contract.functions.transferFunds(Web3.to_checksum_address(recipient)).build_transaction(base)
        except REJECTION_ERRORS as e:
            raise ContractError(f"transferFunds rejected: {e}") from e
        tx_hash = await self._sign_and_send(self.admin_private_key, tx)
        logger.info(f"Submitted transferFunds for {recipient}: {tx_hash}")
        return tx_hash

    # Events
    async def get_events(self, event_name: str, from_block: int, to_block: BlockId = "latest") -> List[ChainEvent]:
        """Decoded contract logs for one event type over a block range."""
        contract = self._require_contract()
        event = contract.events[event_name]
        logs = await self._rpc(
            f"get_logs({event_name})", lambda: event.get_logs(from_block=from_block, to_block=to_block)
        )
        return [
            ChainEvent(
                name=log["event"],
                args={
                    key: value.lower() if isinstance(value, str) and value.startswith("0x") else value
                    for key, value in dict(log["args"]).items()
                },
                tx_hash=log["transactionHash"].to_0x_hex(),
                block_number=log["blockNumber"],
                log_index=log["logIndex"],
            )
            for log in logs
        ]
