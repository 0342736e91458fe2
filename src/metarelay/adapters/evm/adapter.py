"""
EVM Chain Gateway

Provides the chain side of the facilitation pipeline against a JSON-RPC node
and a deployed ``MetaTxRelay`` contract.

Key Features:
    - Relay contract views (nonces, payment token, fee rate, domain separator)
    - Payment-token balance / allowance and native balance queries
    - Target call simulation with the relay contract as sender
    - Signing and broadcasting ``executeAuthorizedCall`` and faucet mints
    - Receipt normalization and ``MetaTransactionExecuted`` decoding

Every read is bounded by the request timeout and retried with exponential
backoff on transport failures; exhausted retries raise ``NodeUnavailable``.
Error messages never carry the RPC URL, which may embed a provider key.

Dependencies:
    - web3.py: For blockchain RPC interaction
    - eth_account: For transaction signing
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from ...engine.exceptions import (
    NodeUnavailable,
    RelayTransactionFailed,
    RelayerUnderfunded,
    SimulationFailed,
    StaleRelayerNonce,
)
from ...schemas.bases import ExecutionReceipt, FacilitationRequest, RelayExecution, TransactionStatus
from ..bases import ChainGateway
from .constants import get_private_key_from_env, get_rpc_url_from_env, redact_rpc_url
from .RELAY_ABI import get_erc20_abi, get_mint_abi, get_relay_abi
from .standards import MetaTransactionMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Failures worth retrying: the node may answer on the next attempt.
_TRANSIENT_ERRORS = (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError, OSError)

_NONCE_TOO_LOW_MARKERS = ("nonce too low", "already known", "nonce has already been used")
_INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds",)


def _error_text(exc: BaseException) -> str:
    # web3 puts the node's JSON-RPC error dict in args[0]
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message", ""))
    return str(exc)


class EVMChainGateway(ChainGateway):
    """
    ``ChainGateway`` over web3.py's ``AsyncWeb3``.

    Attributes:
        account: Relayer account (from ``private_key`` or METARELAY_RELAYER_PRIVATE_KEY)
        relayer_address: Checksummed relayer address
        relay_address: Checksummed relay contract address
        chain_id: Chain id the relay is deployed on

    Example:
        gateway = EVMChainGateway(
            rpc_url="https://sepolia.infura.io/v3/<key>",
            relay_address="0xRelay",
            chain_id=11155111,
        )
        nonce = await gateway.relay_nonce("0xRequester")
    """

    def __init__(
        self,
        *,
        relay_address: str,
        chain_id: int,
        rpc_url: Optional[str] = None,
        private_key: Optional[str] = None,
        request_timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        explorer_url: Optional[str] = None,
        web3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize the gateway.

        Args:
            relay_address: Deployed MetaTxRelay address.
            chain_id: Chain id of the deployment.
            rpc_url: JSON-RPC endpoint; falls back to METARELAY_RPC_URL.
            private_key: Relayer key; falls back to METARELAY_RELAYER_PRIVATE_KEY.
            request_timeout: Per-call timeout in seconds.
            max_attempts: Attempts per read before ``NodeUnavailable``.
            backoff_seconds: First retry delay, doubled on each attempt.
            explorer_url: Block explorer override.
            web3: Pre-built ``AsyncWeb3`` (tests inject a double here).

        Raises:
            ValueError: If no private key or RPC endpoint can be resolved.
        """
        resolved_pk = private_key or get_private_key_from_env()
        if not resolved_pk:
            raise ValueError(
                "Private key not provided. Either pass 'private_key' or set "
                "'METARELAY_RELAYER_PRIVATE_KEY'."
            )
        self._rpc_url = rpc_url or get_rpc_url_from_env()
        if web3 is None and not self._rpc_url:
            raise ValueError("RPC URL not provided. Either pass 'rpc_url' or set 'METARELAY_RPC_URL'.")

        self.account = Account.from_key(resolved_pk)
        self.relayer_address = AsyncWeb3.to_checksum_address(self.account.address)
        self.relay_address = AsyncWeb3.to_checksum_address(relay_address)
        self.chain_id = chain_id
        self.explorer_url = explorer_url
        self._request_timeout = request_timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds

        self.w3 = web3 or self._get_web3_instance()
        self._relay = self.w3.eth.contract(address=self.relay_address, abi=get_relay_abi())

    def _get_web3_instance(self) -> AsyncWeb3:
        """Create an AsyncWeb3 instance on the configured endpoint."""
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            self._rpc_url,
            request_kwargs={"timeout": self._request_timeout}
        ))

    def _token(self, token: str):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=get_erc20_abi())

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run one read against the node with timeout and bounded retries.

        Args:
            operation: Name used in logs and in the ``NodeUnavailable`` details.
            factory: Zero-argument callable returning a fresh awaitable per attempt.

        Raises:
            NodeUnavailable: When every attempt failed with a transport error.
        """
        delay = self._backoff_seconds
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.wait_for(factory(), timeout=self._request_timeout)
            except _TRANSIENT_ERRORS as e:
                logger.warning(
                    "RPC %s failed on %s (attempt %d/%d): %s",
                    operation, redact_rpc_url(self._rpc_url), attempt, self._max_attempts, type(e).__name__,
                )
                if attempt == self._max_attempts:
                    raise NodeUnavailable(
                        "Chain node unavailable",
                        details={"operation": operation, "attempts": attempt},
                    ) from e
                await asyncio.sleep(delay)
                delay *= 2
        raise NodeUnavailable("Chain node unavailable", details={"operation": operation})

    # ------------------------------------------------------------------
    # Relay contract views
    # ------------------------------------------------------------------

    async def domain_separator(self) -> bytes:
        return bytes(await self._call(
            "DOMAIN_SEPARATOR", lambda: self._relay.functions.DOMAIN_SEPARATOR().call()
        ))

    async def relay_nonce(self, requester: str) -> int:
        requester = AsyncWeb3.to_checksum_address(requester)
        return int(await self._call("nonces", lambda: self._relay.functions.nonces(requester).call()))

    async def payment_token(self) -> str:
        token = await self._call("paymentToken", lambda: self._relay.functions.paymentToken().call())
        return AsyncWeb3.to_checksum_address(token)

    async def fee_rate_bps(self) -> int:
        return int(await self._call("feeBps", lambda: self._relay.functions.feeBps().call()))

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def token_balance(self, token: str, owner: str) -> int:
        owner = AsyncWeb3.to_checksum_address(owner)
        contract = self._token(token)
        return int(await self._call("balanceOf", lambda: contract.functions.balanceOf(owner).call()))

    async def token_allowance(self, token: str, owner: str, spender: str) -> int:
        owner = AsyncWeb3.to_checksum_address(owner)
        spender = AsyncWeb3.to_checksum_address(spender)
        contract = self._token(token)
        return int(await self._call("allowance", lambda: contract.functions.allowance(owner, spender).call()))

    async def native_balance(self, address: str) -> int:
        address = AsyncWeb3.to_checksum_address(address)
        return int(await self._call("get_balance", lambda: self.w3.eth.get_balance(address)))

    # ------------------------------------------------------------------
    # Gas
    # ------------------------------------------------------------------

    async def gas_price(self) -> int:
        return int(await self._call("gas_price", lambda: self.w3.eth.gas_price))

    async def estimate_call_gas(self, target: str, payload: bytes) -> int:
        tx = {
            "from": self.relay_address,
            "to": AsyncWeb3.to_checksum_address(target),
            "data": AsyncWeb3.to_hex(payload),
        }
        try:
            return int(await self._call("estimate_gas", lambda: self.w3.eth.estimate_gas(tx)))
        except ContractLogicError as e:
            raise SimulationFailed(
                "Target call reverts in simulation",
                details={"target": tx["to"], "reason": getattr(e, "message", None) or _error_text(e)},
            ) from e
        except (Web3Exception, ValueError) as e:
            text = _error_text(e)
            if "revert" in text.lower():
                raise SimulationFailed(
                    "Target call reverts in simulation", details={"target": tx["to"], "reason": text}
                ) from e
            raise

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def relayer_tx_count(self) -> int:
        return int(await self._call(
            "get_transaction_count",
            lambda: self.w3.eth.get_transaction_count(self.relayer_address, "pending"),
        ))

    async def _sign_and_send(self, tx_dict: Dict[str, Any], operation: str) -> str:
        signed_tx = self.account.sign_transaction(tx_dict)
        try:
            tx_hash = await asyncio.wait_for(
                self.w3.eth.send_raw_transaction(signed_tx.raw_transaction),
                timeout=self._request_timeout,
            )
        except _TRANSIENT_ERRORS as e:
            # not retried: a second broadcast could race the first one
            raise RelayTransactionFailed(
                "Failed to broadcast transaction",
                details={"operation": operation, "error": type(e).__name__},
            ) from e
        except (Web3Exception, ValueError) as e:
            text = _error_text(e)
            if any(marker in text.lower() for marker in _NONCE_TOO_LOW_MARKERS):
                raise StaleRelayerNonce(text, details={"nonce": tx_dict.get("nonce")}) from e
            if any(marker in text.lower() for marker in _INSUFFICIENT_FUNDS_MARKERS):
                raise RelayerUnderfunded(
                    "Relayer cannot front the gas for this transaction",
                    details={"required": str(tx_dict.get("gas", 0) * tx_dict.get("gasPrice", 0))},
                ) from e
            raise RelayTransactionFailed(
                "Failed to broadcast transaction",
                details={"operation": operation, "error": text},
            ) from e
        return AsyncWeb3.to_hex(tx_hash)

    async def submit_execution(
        self,
        request: FacilitationRequest,
        charge_amount: int,
        *,
        tx_nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> str:
        call = MetaTransactionMessage(
            requester=request.requester,
            target=request.target,
            payload=request.payload,
            tier=request.tier.code,
            nonce=request.nonce,
            deadline=request.deadline,
        )
        tx_fn = self._relay.functions.executeAuthorizedCall(
            call.to_call_tuple(),
            request.signature,
            charge_amount,
        )
        tx_dict = await tx_fn.build_transaction({
            "from": self.relayer_address,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": tx_nonce,
            "chainId": self.chain_id,
        })
        tx_hash = await self._sign_and_send(tx_dict, "executeAuthorizedCall")
        logger.info("Broadcast relay tx %s (requester=%s nonce=%d)", tx_hash, request.requester, request.nonce)
        return tx_hash

    async def submit_mint(self, recipient: str, amount: int, *, tx_nonce: int) -> str:
        token = await self.payment_token()
        contract = self.w3.eth.contract(address=token, abi=get_mint_abi())
        tx_fn = contract.functions.mint(AsyncWeb3.to_checksum_address(recipient), amount)
        gas_estimate = await self._call(
            "estimate_gas", lambda: tx_fn.estimate_gas({"from": self.relayer_address})
        )
        gas_price = await self.gas_price()
        tx_dict = await tx_fn.build_transaction({
            "from": self.relayer_address,
            "gas": int(gas_estimate * 1.2),
            "gasPrice": gas_price,
            "nonce": tx_nonce,
            "chainId": self.chain_id,
        })
        return await self._sign_and_send(tx_dict, "mint")

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def get_receipt(self, tx_hash: str) -> Optional[ExecutionReceipt]:
        try:
            receipt = await self._call("get_transaction_receipt", lambda: self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        if not receipt:
            return None

        current_block = await self._call("block_number", lambda: self.w3.eth.block_number)
        status = TransactionStatus.SUCCESS if receipt.get("status") == 1 else TransactionStatus.FAILED
        return ExecutionReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            status=status,
            gas_used=receipt.get("gasUsed", 0),
            effective_gas_price=receipt.get("effectiveGasPrice", 0),
            confirmations=max(0, current_block - receipt["blockNumber"] + 1),
            execution=self._decode_execution(receipt) if status == TransactionStatus.SUCCESS else None,
        )

    def _decode_execution(self, receipt: Any) -> Optional[RelayExecution]:
        events = self._relay.events.MetaTransactionExecuted().process_receipt(receipt, errors=DISCARD)
        if not events:
            return None
        args = events[-1]["args"]
        return RelayExecution(
            requester=AsyncWeb3.to_checksum_address(args["requester"]),
            target=AsyncWeb3.to_checksum_address(args["target"]),
            nonce=int(args["nonce"]),
            success=bool(args["success"]),
            charged=int(args["charged"]),
            return_data=bytes(args["returnData"]),
        )

    async def close(self) -> None:
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
