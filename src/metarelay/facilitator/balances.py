"""
Balance Guard

Pre-submission economic checks: the requester must be able to pay the quoted
charge, and the relayer must be able to front the gas.
"""

import logging
from typing import Optional

from ..adapters.bases import ChainGateway
from ..adapters.evm.constants import BPS_DENOMINATOR
from ..engine.exceptions import (
    InsufficientRequesterAllowance,
    InsufficientRequesterBalance,
    RelayerUnderfunded,
)
from ..schemas.bases import FacilitationRequest, GasQuote

logger = logging.getLogger(__name__)


class RelayerHealth:
    """Tracks whether the relayer was last seen underfunded."""

    def __init__(self) -> None:
        self.underfunded = False
        self.reason: Optional[str] = None

    def mark_underfunded(self, reason: str) -> None:
        if not self.underfunded:
            logger.error("Relayer underfunded: %s", reason)
        self.underfunded = True
        self.reason = reason

    def mark_funded(self) -> None:
        if self.underfunded:
            logger.info("Relayer funding restored")
        self.underfunded = False
        self.reason = None


class BalanceGuard:
    """
    Checks both sides of a relay before submission.

    Args:
        gateway: Chain access.
        health: Shared relayer health flag.
        buffer_bps: Safety margin on the relayer gas check (11000 = 1.1x). The
            requirement never drops below the upfront amount the node
            reserves for the relay transaction (gas limit * gas price).
    """

    def __init__(self, gateway: ChainGateway, health: RelayerHealth, *, buffer_bps: int = 11000):
        self._gateway = gateway
        self._health = health
        self._buffer_bps = buffer_bps

    async def check(self, request: FacilitationRequest, quote: GasQuote) -> None:
        """
        Raises:
            InsufficientRequesterBalance: Requester balance < total charge.
            InsufficientRequesterAllowance: Allowance to the relay < total charge.
            RelayerUnderfunded: Relayer native balance < max(cost * buffer, upfront).
        """
        total = quote.total_charge

        balance = await self._gateway.token_balance(quote.payment_token, request.requester)
        if balance < total:
            raise InsufficientRequesterBalance(
                "Requester balance does not cover the charge",
                details={"required": str(total), "available": str(balance)},
            )

        allowance = await self._gateway.token_allowance(
            quote.payment_token, request.requester, self._gateway.relay_address
        )
        if allowance < total:
            raise InsufficientRequesterAllowance(
                "Requester allowance to the relay does not cover the charge",
                details={"required": str(total), "available": str(allowance)},
            )

        required = max(
            quote.estimated_cost_wei * self._buffer_bps // BPS_DENOMINATOR,
            quote.gas_limit * quote.effective_gas_price,
        )
        relayer_balance = await self._gateway.native_balance(self._gateway.relayer_address)
        if relayer_balance < required:
            self._health.mark_underfunded(f"relayer balance {relayer_balance} wei < required {required} wei")
            raise RelayerUnderfunded(
                "Relayer cannot front the gas for this request",
                details={"required": str(required), "available": str(relayer_balance)},
            )
        self._health.mark_funded()
