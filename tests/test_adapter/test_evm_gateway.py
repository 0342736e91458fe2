"""
EVM Chain Gateway Test Suite

Runs ``EVMChainGateway`` against a mocked ``AsyncWeb3``: retries and
``NodeUnavailable`` on transport failures, simulation reverts, broadcast
error mapping and receipt normalization (including decoding a real
``MetaTransactionExecuted`` log).
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, PropertyMock

import aiohttp
import pytest
from eth_abi import encode
from eth_utils import keccak
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from conftest import COUNTER_TARGET, RELAYER, RELAYER_KEY, REQUESTER, signed_request
from metarelay.adapters.evm.adapter import EVMChainGateway
from metarelay.adapters.evm.RELAY_ABI import get_relay_abi
from metarelay.engine.exceptions import (
    NodeUnavailable,
    RelayerUnderfunded,
    RelayTransactionFailed,
    SimulationFailed,
    StaleRelayerNonce,
)
from metarelay.schemas.bases import TransactionStatus

RELAY = Web3.to_checksum_address("0x" + "ab" * 20)
RPC_URL = "https://node.example/v3/SECRETKEY"
TX_HASH = "0x" + "12" * 32
EXECUTED_TOPIC = keccak(text="MetaTransactionExecuted(address,address,uint256,bool,uint256,bytes)")


def _returns(value):
    """Property whose every read yields a fresh awaitable of ``value``."""
    async def _coro():
        return value
    return PropertyMock(side_effect=lambda: _coro())


@pytest.fixture
def w3():
    return MagicMock()


@pytest.fixture
def gateway(w3):
    return EVMChainGateway(
        relay_address=RELAY,
        chain_id=31337,
        rpc_url=RPC_URL,
        private_key=RELAYER_KEY,
        max_attempts=3,
        backoff_seconds=0,
        web3=w3,
    )


def _address_topic(address):
    return b"\x00" * 12 + bytes.fromhex(address[2:])


def _executed_log(*, success=True, charged=1010, nonce=0, return_data=b""):
    return {
        "address": RELAY,
        "topics": [EXECUTED_TOPIC, _address_topic(REQUESTER), _address_topic(COUNTER_TARGET)],
        "data": encode(["uint256", "bool", "uint256", "bytes"], [nonce, success, charged, return_data]),
        "blockHash": b"\x01" * 32,
        "blockNumber": 10,
        "transactionHash": bytes.fromhex(TX_HASH[2:]),
        "transactionIndex": 0,
        "logIndex": 0,
    }


class TestInitialization:

    def test_addresses_are_checksummed(self, gateway):
        assert gateway.relayer_address == RELAYER
        assert gateway.relay_address == RELAY

    def test_missing_key_raises(self, w3, monkeypatch):
        monkeypatch.delenv("METARELAY_RELAYER_PRIVATE_KEY", raising=False)
        with pytest.raises(ValueError, match="Private key"):
            EVMChainGateway(relay_address=RELAY, chain_id=1, rpc_url=RPC_URL, web3=w3)

    def test_missing_rpc_raises(self, monkeypatch):
        monkeypatch.delenv("METARELAY_RPC_URL", raising=False)
        with pytest.raises(ValueError, match="RPC URL"):
            EVMChainGateway(relay_address=RELAY, chain_id=1, private_key=RELAYER_KEY)


class TestReads:

    @pytest.mark.asyncio
    async def test_relay_nonce(self, gateway):
        gateway._relay.functions.nonces.return_value.call = AsyncMock(return_value=3)

        assert await gateway.relay_nonce(REQUESTER.lower()) == 3
        gateway._relay.functions.nonces.assert_called_with(REQUESTER)

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, gateway, w3):
        w3.eth.get_balance = AsyncMock(side_effect=[asyncio.TimeoutError(), 5])

        assert await gateway.native_balance(RELAYER) == 5
        assert w3.eth.get_balance.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_node_unavailable(self, gateway, w3, caplog):
        w3.eth.get_balance = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(NodeUnavailable) as exc:
            await gateway.native_balance(RELAYER)

        assert exc.value.system_wide
        assert exc.value.details == {"operation": "get_balance", "attempts": 3}
        assert w3.eth.get_balance.await_count == 3
        assert "SECRETKEY" not in str(exc.value)
        assert "SECRETKEY" not in caplog.text

    @pytest.mark.asyncio
    async def test_gas_price(self, gateway, w3):
        type(w3.eth).gas_price = _returns(2_000_000_000)

        assert await gateway.gas_price() == 2_000_000_000


class TestSimulation:

    @pytest.mark.asyncio
    async def test_estimate_from_relay(self, gateway, w3):
        w3.eth.estimate_gas = AsyncMock(return_value=47_064)

        assert await gateway.estimate_call_gas(COUNTER_TARGET, b"\xd0\x9d\xe0\x8a") == 47_064
        tx = w3.eth.estimate_gas.await_args.args[0]
        assert tx["from"] == RELAY
        assert tx["data"] == "0xd09de08a"

    @pytest.mark.asyncio
    async def test_revert_raises_simulation_failed(self, gateway, w3):
        w3.eth.estimate_gas = AsyncMock(side_effect=ContractLogicError("execution reverted: Counter: paused"))

        with pytest.raises(SimulationFailed) as exc:
            await gateway.estimate_call_gas(COUNTER_TARGET, b"")

        assert "Counter: paused" in exc.value.details["reason"]
        assert exc.value.details["target"] == COUNTER_TARGET


class TestBroadcast:

    def _prepare(self, gateway):
        gateway._relay.functions.executeAuthorizedCall.return_value.build_transaction = AsyncMock(
            return_value={
                "from": RELAYER,
                "to": RELAY,
                "data": "0x",
                "value": 0,
                "gas": 200_000,
                "gasPrice": 1_000_000_000,
                "nonce": 4,
                "chainId": 31337,
            }
        )

    @pytest.mark.asyncio
    async def test_submit_execution_returns_hash(self, gateway, w3, chain):
        self._prepare(gateway)
        w3.eth.send_raw_transaction = AsyncMock(return_value=bytes.fromhex(TX_HASH[2:]))

        tx_hash = await gateway.submit_execution(
            signed_request(chain), 1010, tx_nonce=4, gas_limit=200_000, gas_price=1_000_000_000
        )

        assert tx_hash == TX_HASH
        params = gateway._relay.functions.executeAuthorizedCall.return_value.build_transaction.await_args.args[0]
        assert params["nonce"] == 4
        assert params["gas"] == 200_000

    @pytest.mark.asyncio
    async def test_nonce_too_low_is_stale(self, gateway, w3, chain):
        self._prepare(gateway)
        w3.eth.send_raw_transaction = AsyncMock(side_effect=ValueError({"code": -32000, "message": "nonce too low"}))

        with pytest.raises(StaleRelayerNonce):
            await gateway.submit_execution(signed_request(chain), 0, tx_nonce=4, gas_limit=200_000, gas_price=1)

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_relayer_underfunded(self, gateway, w3, chain):
        self._prepare(gateway)
        w3.eth.send_raw_transaction = AsyncMock(
            side_effect=ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"})
        )

        with pytest.raises(RelayerUnderfunded) as exc:
            await gateway.submit_execution(signed_request(chain), 0, tx_nonce=4, gas_limit=200_000, gas_price=1)

        assert exc.value.system_wide
        assert exc.value.details["required"] == str(200_000 * 1_000_000_000)

    @pytest.mark.asyncio
    async def test_transport_failure_is_not_rebroadcast(self, gateway, w3, chain):
        self._prepare(gateway)
        w3.eth.send_raw_transaction = AsyncMock(side_effect=aiohttp.ClientConnectionError("reset"))

        with pytest.raises(RelayTransactionFailed) as exc:
            await gateway.submit_execution(signed_request(chain), 0, tx_nonce=4, gas_limit=200_000, gas_price=1)

        assert not isinstance(exc.value, StaleRelayerNonce)
        assert w3.eth.send_raw_transaction.await_count == 1


class TestReceipts:

    @pytest.fixture
    def decoding_gateway(self, gateway):
        # event decoding is offline, a provider-less contract is enough
        gateway._relay = Web3().eth.contract(address=RELAY, abi=get_relay_abi())
        return gateway

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_none(self, gateway, w3):
        w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("not found"))

        assert await gateway.get_receipt(TX_HASH) is None

    @pytest.mark.asyncio
    async def test_receipt_with_execution_event(self, decoding_gateway, w3):
        w3.eth.get_transaction_receipt = AsyncMock(return_value={
            "status": 1,
            "blockNumber": 10,
            "gasUsed": 107_000,
            "effectiveGasPrice": 1_000_000_000,
            "logs": [_executed_log(charged=1010, nonce=7)],
        })
        type(w3.eth).block_number = _returns(12)

        receipt = await decoding_gateway.get_receipt(TX_HASH)

        assert receipt.status == TransactionStatus.SUCCESS
        assert receipt.confirmations == 3
        assert receipt.gas_used == 107_000
        assert receipt.execution.requester == REQUESTER
        assert receipt.execution.target == COUNTER_TARGET
        assert receipt.execution.nonce == 7
        assert receipt.execution.success
        assert receipt.execution.charged == 1010

    @pytest.mark.asyncio
    async def test_failed_receipt_has_no_execution(self, decoding_gateway, w3):
        w3.eth.get_transaction_receipt = AsyncMock(return_value={
            "status": 0,
            "blockNumber": 10,
            "gasUsed": 21_000,
            "logs": [],
        })
        type(w3.eth).block_number = _returns(10)

        receipt = await decoding_gateway.get_receipt(TX_HASH)

        assert receipt.status == TransactionStatus.FAILED
        assert receipt.execution is None
        assert receipt.confirmations == 1
