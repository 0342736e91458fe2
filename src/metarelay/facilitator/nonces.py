"""
Nonce Ledger

Off-chain cache of each requester's next expected relay nonce. The relay
contract's ``nonces`` mapping is authoritative: the cache starts empty,
fills from chain on first use, and is resynced whenever a request disagrees
with it. The cache only ever moves forward after an execution was observed
on-chain.
"""

import logging
from typing import Dict

from eth_utils import to_checksum_address

from ..adapters.bases import ChainGateway
from ..engine.exceptions import NonceMismatch

logger = logging.getLogger(__name__)


class NonceLedger:
    """
    Requester -> next expected nonce.

    Callers serialize per requester (see ``KeyedLocks``); the ledger itself
    does not lock.
    """

    def __init__(self, gateway: ChainGateway):
        self._gateway = gateway
        self._expected: Dict[str, int] = {}

    async def expected_nonce(self, requester: str) -> int:
        """Return the cached next nonce, reading it from chain on a miss."""
        key = to_checksum_address(requester)
        if key not in self._expected:
            self._expected[key] = await self._gateway.relay_nonce(key)
        return self._expected[key]

    async def resync(self, requester: str) -> int:
        """Drop the cached value and re-read it from chain."""
        key = to_checksum_address(requester)
        self._expected[key] = await self._gateway.relay_nonce(key)
        return self._expected[key]

    async def check(self, requester: str, nonce: int) -> int:
        """
        Accept ``nonce`` only if it is the requester's next expected nonce.

        A disagreement with the cache triggers one resync from chain before
        rejecting, so a stale cache never turns away a valid request.

        Returns:
            int: The accepted nonce.

        Raises:
            NonceMismatch: With ``expectedNonce`` / ``providedNonce`` details.
        """
        expected = await self.expected_nonce(requester)
        if expected != nonce:
            expected = await self.resync(requester)
        if expected != nonce:
            raise NonceMismatch(
                "Nonce does not match the next expected nonce",
                details={"expectedNonce": expected, "providedNonce": nonce},
            )
        return nonce

    def advance(self, requester: str, executed_nonce: int) -> None:
        """Record that ``executed_nonce`` was consumed on-chain."""
        key = to_checksum_address(requester)
        current = self._expected.get(key)
        if current is None or executed_nonce + 1 > current:
            self._expected[key] = executed_nonce + 1

    def invalidate(self, requester: str) -> None:
        self._expected.pop(to_checksum_address(requester), None)

    def clear(self) -> None:
        self._expected.clear()

    def __len__(self) -> int:
        return len(self._expected)
