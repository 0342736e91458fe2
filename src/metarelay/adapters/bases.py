"""
Abstract Base Class for Chain Gateways

Defines the interface every chain backend must implement. The facilitation
pipeline never talks to a node directly; it reads relay and token state,
simulates calls, submits relay transactions and polls receipts through a
``ChainGateway``.

Core Classes:
    - ChainGateway: Read, simulate, submit and confirm operations against one
      relay deployment on one chain

Implementations:
    - EVMChainGateway (adapters.evm.adapter): web3.py against a JSON-RPC node
    - LocalChainGateway (onchain.local): in-process chain running the Python
      model of the relay contract
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Optional

from ..schemas.bases import ExecutionReceipt, FacilitationRequest


class ChainGateway(ABC):
    """
    Abstract Base Class for chain access.

    A gateway is bound to one chain, one relay contract and one relayer
    account. Only the transaction submitter may call the ``submit_*``
    methods; everything else is safe to call concurrently.

    Attributes:
        chain_id: EIP-155 chain id.
        relay_address: Checksummed relay contract address.
        relayer_address: Checksummed address of the relayer account.
        explorer_url: Block explorer base URL, if the chain has one.
    """

    chain_id: int
    relay_address: str
    relayer_address: str
    explorer_url: Optional[str] = None

    # ------------------------------------------------------------------
    # Relay contract views
    # ------------------------------------------------------------------

    @abstractmethod
    async def domain_separator(self) -> bytes:
        """Return the relay contract's ``DOMAIN_SEPARATOR()``."""
        pass

    @abstractmethod
    async def relay_nonce(self, requester: str) -> int:
        """Return ``nonces(requester)``, the next nonce the relay will accept."""
        pass

    @abstractmethod
    async def payment_token(self) -> str:
        """Return the payment token address configured in the relay."""
        pass

    @abstractmethod
    async def fee_rate_bps(self) -> int:
        """Return the relayer fee rate in basis points."""
        pass

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    @abstractmethod
    async def token_balance(self, token: str, owner: str) -> int:
        pass

    @abstractmethod
    async def token_allowance(self, token: str, owner: str, spender: str) -> int:
        pass

    @abstractmethod
    async def native_balance(self, address: str) -> int:
        pass

    # ------------------------------------------------------------------
    # Gas
    # ------------------------------------------------------------------

    @abstractmethod
    async def gas_price(self) -> int:
        """Return the current network gas price in wei."""
        pass

    @abstractmethod
    async def estimate_call_gas(self, target: str, payload: bytes) -> int:
        """
        Dry-run ``payload`` on ``target`` with the relay contract as sender.

        Returns:
            int: Gas units the target call consumes.

        Raises:
            SimulationFailed: If the call reverts.
        """
        pass

    # ------------------------------------------------------------------
    # Submission (single writer)
    # ------------------------------------------------------------------

    @abstractmethod
    async def relayer_tx_count(self) -> int:
        """Return the relayer account's pending transaction count."""
        pass

    @abstractmethod
    async def submit_execution(
        self,
        request: FacilitationRequest,
        charge_amount: int,
        *,
        tx_nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> str:
        """
        Sign and broadcast ``executeAuthorizedCall`` for ``request``.

        Returns:
            str: 0x-prefixed transaction hash.

        Raises:
            StaleRelayerNonce: If the node rejects ``tx_nonce`` as already used.
            RelayTransactionFailed: If the transaction could not be broadcast.
        """
        pass

    @abstractmethod
    async def submit_mint(self, recipient: str, amount: int, *, tx_nonce: int) -> str:
        """Sign and broadcast a payment-token ``mint`` (faucet)."""
        pass

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[ExecutionReceipt]:
        """Return the normalized receipt of ``tx_hash`` or None while unmined."""
        pass

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        timeout: float,
        poll_interval: float,
        confirmations: int = 1,
    ) -> Optional[ExecutionReceipt]:
        """
        Poll for a receipt until it reaches ``confirmations`` or ``timeout`` expires.

        Returns:
            The last receipt seen (possibly with fewer confirmations than
            requested), or None if the transaction was never mined in time.
        """
        deadline = time.monotonic() + timeout
        receipt: Optional[ExecutionReceipt] = None
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None and receipt.confirmations >= confirmations:
                return receipt
            if time.monotonic() >= deadline:
                return receipt
            await asyncio.sleep(poll_interval)

    def explorer_reference(self, tx_hash: str) -> Optional[str]:
        """Block explorer URL of ``tx_hash``, or None when the chain has no explorer."""
        from .evm.constants import explorer_tx_url

        return explorer_tx_url(tx_hash, chain_id=self.chain_id, explorer_url=self.explorer_url)

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None
