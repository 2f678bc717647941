"""Unit tests for RPC timeouts, retries and error mapping in the chain client."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from hexbytes import HexBytes
from web3.exceptions import TransactionNotFound, Web3RPCError

from src.errors import ContractError, NetworkError
from src.giftlock.chain import ChainClient, from_wei, to_wei

ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def receipt(status: int = 1, block: int = 90) -> dict:
    return {
        "transactionHash": HexBytes("0x" + "ab" * 32),
        "status": status,
        "blockNumber": block,
        "gasUsed": 21000,
        "effectiveGasPrice": 30 * 10**9,
    }


@pytest.mark.unit
class TestChainClient:
    """Resilience behaviour without a live node."""

    @pytest.fixture
    def client(self):
        return ChainClient(rpc_url="http://127.0.0.1:1", max_retries=3, backoff=0.01, timeout=1)

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_into_network_error(self, client):
        failing = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with patch.object(client.w3.eth, "get_balance", failing):
            with pytest.raises(NetworkError):
                await client.get_balance(ADDRESS)

        assert failing.call_count == 3

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, client):
        flaky = AsyncMock(side_effect=[aiohttp.ClientConnectionError("reset"), 5])
        with patch.object(client.w3.eth, "get_balance", flaky):
            assert await client.get_balance(ADDRESS) == 5

        assert flaky.call_count == 2

    @pytest.mark.asyncio
    async def test_timeout_maps_to_network_error(self, client):
        slow = AsyncMock(side_effect=asyncio.TimeoutError())
        with patch.object(client.w3.eth, "get_balance", slow):
            with pytest.raises(NetworkError):
                await client.get_balance(ADDRESS)

    @pytest.mark.asyncio
    async def test_rpc_rejection_is_not_retried(self, client):
        rejected = AsyncMock(side_effect=Web3RPCError("execution reverted"))
        with patch.object(client.w3.eth, "get_balance", rejected):
            with pytest.raises(ContractError):
                await client.get_balance(ADDRESS)

        assert rejected.call_count == 1

    @pytest.mark.asyncio
    async def test_pending_transaction_has_no_receipt(self, client):
        missing = AsyncMock(side_effect=TransactionNotFound("not found"))
        with patch.object(client.w3.eth, "get_transaction_receipt", missing):
            assert await client.get_receipt("0x" + "ab" * 32) is None

    @pytest.mark.asyncio
    async def test_receipt_confirmations(self, client):
        with patch.object(client.w3.eth, "get_transaction_receipt", AsyncMock(return_value=receipt(block=90))), \
             patch.object(client, "get_block_number", AsyncMock(return_value=92)):
            result = await client.get_receipt("0x" + "ab" * 32)

        assert result.confirmations == 3
        assert result.gas_cost_wei == 21000 * 30 * 10**9
        assert result.tx_hash == "0x" + "ab" * 32

    @pytest.mark.asyncio
    async def test_reverted_receipt_raises_contract_error(self, client):
        with patch.object(client.w3.eth, "wait_for_transaction_receipt", AsyncMock(return_value=receipt(status=0))), \
             patch.object(client, "get_block_number", AsyncMock(return_value=92)):
            with pytest.raises(ContractError):
                await client.wait_for_receipt("0x" + "ab" * 32, timeout=1)

    @pytest.mark.asyncio
    async def test_rejected_receipt_lookup_raises_contract_error(self, client):
        rejected = AsyncMock(side_effect=Web3RPCError("unknown block"))
        with patch.object(client.w3.eth, "wait_for_transaction_receipt", rejected):
            with pytest.raises(ContractError):
                await client.wait_for_receipt("0x" + "ab" * 32, timeout=1)

    @pytest.mark.asyncio
    async def test_bad_lock_arguments_raise_contract_error(self, client):
        base_tx = {"from": ADDRESS, "value": 1, "gas": 500000, "gasPrice": 1, "nonce": 0, "chainId": 137}
        with patch.object(client, "_base_tx", AsyncMock(return_value=base_tx)):
            with pytest.raises(ContractError, match="lockFunds rejected"):
                await client.lock_funds("0x" + "01" * 32, 1, "not-an-address", 0)

    @pytest.mark.asyncio
    async def test_release_requires_admin_key(self, client):
        client.admin_private_key = ""
        with pytest.raises(ContractError):
            await client.release_funds(ADDRESS)

    def test_unit_conversion(self):
        assert to_wei(Decimal("1.5")) == 1_500_000_000_000_000_000
        assert from_wei(10**16) == Decimal("0.01")
