"""
Relay Contract Administration

Owner-only operations on a deployed ``MetaTxRelay``: rotating the relayer,
switching the payment token, setting the fee rate, pausing and transferring
ownership. Each call signs with the owner key, broadcasts, and waits for the
receipt.
"""

import asyncio
import logging
from typing import Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from .constants import MAX_FEE_BPS
from .RELAY_ABI import get_relay_abi

logger = logging.getLogger(__name__)


class RelayAdmin:
    """
    Drives the owner entry points of a relay deployment.

    Example:
        admin = RelayAdmin(w3, relay_address="0xRelay", owner_private_key="0x...")
        await admin.set_fee_rate(150)
        await admin.set_relayer("0xNewRelayer")
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        *,
        relay_address: str,
        owner_private_key: str,
        receipt_timeout: float = 120.0,
        poll_interval: float = 2.0,
    ):
        self.w3 = w3
        self.account = Account.from_key(owner_private_key)
        self.owner_address = AsyncWeb3.to_checksum_address(self.account.address)
        self.relay = w3.eth.contract(address=AsyncWeb3.to_checksum_address(relay_address), abi=get_relay_abi())
        self._receipt_timeout = receipt_timeout
        self._poll_interval = poll_interval

    async def set_relayer(self, new_relayer: str) -> str:
        return await self._transact("setRelayer", AsyncWeb3.to_checksum_address(new_relayer))

    async def set_payment_token(self, new_token: str) -> str:
        return await self._transact("setPaymentToken", AsyncWeb3.to_checksum_address(new_token))

    async def set_fee_rate(self, fee_bps: int) -> str:
        """
        Set the relayer fee rate.

        Raises:
            ValueError: If ``fee_bps`` exceeds ``MAX_FEE_BPS`` (the contract would revert).
        """
        if not 0 <= fee_bps <= MAX_FEE_BPS:
            raise ValueError(f"fee_bps must be within [0, {MAX_FEE_BPS}], got {fee_bps}")
        return await self._transact("setFeeRate", fee_bps)

    async def pause(self) -> str:
        return await self._transact("pause")

    async def unpause(self) -> str:
        return await self._transact("unpause")

    async def transfer_ownership(self, new_owner: str) -> str:
        return await self._transact("transferOwnership", AsyncWeb3.to_checksum_address(new_owner))

    async def _transact(self, function_name: str, *args) -> str:
        tx_fn = getattr(self.relay.functions, function_name)(*args)
        gas_estimate = await tx_fn.estimate_gas({"from": self.owner_address})
        tx_dict = await tx_fn.build_transaction({
            "from": self.owner_address,
            "gas": int(gas_estimate * 1.2),
            "gasPrice": await self.w3.eth.gas_price,
            "nonce": await self.w3.eth.get_transaction_count(self.owner_address, "pending"),
        })
        signed_tx = self.account.sign_transaction(tx_dict)
        tx_hash = AsyncWeb3.to_hex(await self.w3.eth.send_raw_transaction(signed_tx.raw_transaction))
        logger.info("Admin %s broadcast: %s", function_name, tx_hash)

        receipt = await self._wait_for_receipt(tx_hash)
        if receipt is None:
            raise TimeoutError(f"{function_name} not mined within {self._receipt_timeout}s: {tx_hash}")
        if receipt.get("status") != 1:
            raise RuntimeError(f"{function_name} reverted on-chain: {tx_hash}")
        return tx_hash

    async def _wait_for_receipt(self, tx_hash: str) -> Optional[dict]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._receipt_timeout
        while loop.time() < deadline:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
                if receipt:
                    return receipt
            except TransactionNotFound:
                pass  # still pending
            await asyncio.sleep(self._poll_interval)
        return None
