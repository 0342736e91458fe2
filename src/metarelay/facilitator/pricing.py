"""
Gas Pricer

Turns a facilitation request into a ``GasQuote``: how much gas the relay
transaction needs, what it costs the relayer in native tokens, and what the
requester is charged in payment-token units.

Quote steps:
    0. refuse targets the relay must never call (payment token, relay)
    1. simulate the target call (a revert raises ``SimulationFailed``)
    2. gas units = simulated units + relay overhead
    3. estimated cost (wei) = units * network gas price * tier multiplier
    4. base charge = cost converted to payment-token units (rounded up)
    5. fee = base * fee rate / 10000 (rounded down); total = base + fee
    6. gas limit = gas units * margin; the relayer fronts gas limit * effective price
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional

from ..adapters.bases import ChainGateway
from ..adapters.evm.constants import BPS_DENOMINATOR, wei_to_token_units
from ..engine.exceptions import MalformedRequest
from ..schemas.bases import FacilitationRequest, GasQuote, PriorityTier

logger = logging.getLogger(__name__)


DEFAULT_TIER_MULTIPLIERS_BPS: Dict[PriorityTier, int] = {
    PriorityTier.LOW: 8000,
    PriorityTier.STANDARD: 10000,
    PriorityTier.HIGH: 13000,
}


@dataclass
class _CachedRelayTerms:
    fee_bps: int
    payment_token: str
    fetched_at: float


class GasPricer:
    """
    Prices requests against current network conditions.

    The relay's fee rate and payment token change rarely; they are cached for
    ``cache_ttl_seconds``.

    Args:
        gateway: Chain access.
        native_token_price: Whole payment tokens per whole native token.
        token_decimals: Payment token decimals.
        relay_gas_overhead: Gas the relay spends around the target call.
        gas_limit_margin_bps: Gas limit of the relay transaction relative to
            the quoted units (12000 = 1.2x).
        tier_multipliers_bps: Multiplier per tier; must increase strictly
            from low to high.
        cache_ttl_seconds: Lifetime of cached relay terms.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        *,
        native_token_price: Decimal,
        token_decimals: int,
        relay_gas_overhead: int = 60_000,
        gas_limit_margin_bps: int = 12_000,
        tier_multipliers_bps: Optional[Dict[PriorityTier, int]] = None,
        cache_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        multipliers = dict(tier_multipliers_bps or DEFAULT_TIER_MULTIPLIERS_BPS)
        ordered = [multipliers[PriorityTier.LOW], multipliers[PriorityTier.STANDARD], multipliers[PriorityTier.HIGH]]
        if not ordered[0] < ordered[1] < ordered[2]:
            raise ValueError("tier multipliers must be strictly increasing")
        self._gateway = gateway
        self._native_token_price = Decimal(native_token_price)
        self._token_decimals = token_decimals
        self._relay_gas_overhead = relay_gas_overhead
        self._gas_limit_margin_bps = gas_limit_margin_bps
        self._multipliers = multipliers
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._terms: Optional[_CachedRelayTerms] = None

    def multiplier_bps(self, tier: PriorityTier) -> int:
        return self._multipliers[tier]

    async def relay_terms(self) -> _CachedRelayTerms:
        """Fee rate and payment token, refreshed when the cache expired."""
        now = self._clock()
        if self._terms is None or now - self._terms.fetched_at >= self._cache_ttl:
            fee_bps = await self._gateway.fee_rate_bps()
            token = await self._gateway.payment_token()
            self._terms = _CachedRelayTerms(fee_bps=fee_bps, payment_token=token, fetched_at=now)
        return self._terms

    def invalidate(self) -> None:
        self._terms = None

    async def quote(self, request: FacilitationRequest) -> GasQuote:
        """
        Price ``request``.

        Raises:
            MalformedRequest: If the target is the payment token or the relay
                itself. Raised before simulation.
            SimulationFailed: If the target call reverts in simulation. Raised
                before any balance is read.
            NodeUnavailable: If the node cannot be reached.
        """
        terms = await self.relay_terms()
        self._check_target(request.target, terms)

        simulated = await self._gateway.estimate_call_gas(request.target, request.payload)
        gas_units = simulated + self._relay_gas_overhead
        network_gas_price = await self._gateway.gas_price()
        multiplier = self._multipliers[request.tier]
        effective_gas_price = network_gas_price * multiplier // BPS_DENOMINATOR
        estimated_cost = gas_units * network_gas_price * multiplier // BPS_DENOMINATOR

        base = wei_to_token_units(
            wei=estimated_cost,
            native_token_price=self._native_token_price,
            token_decimals=self._token_decimals,
        )
        fee = base * terms.fee_bps // BPS_DENOMINATOR

        quote = GasQuote(
            tier=request.tier,
            gas_units=gas_units,
            gas_limit=gas_units * self._gas_limit_margin_bps // BPS_DENOMINATOR,
            network_gas_price=network_gas_price,
            effective_gas_price=effective_gas_price,
            estimated_cost_wei=estimated_cost,
            base_charge=base,
            fee_charge=fee,
            total_charge=base + fee,
            fee_bps=terms.fee_bps,
            payment_token=terms.payment_token,
        )
        logger.debug(
            "Quoted requester=%s tier=%s units=%d cost_wei=%d total=%d",
            request.requester, request.tier.value, gas_units, estimated_cost, quote.total_charge,
        )
        return quote

    def _check_target(self, target: str, terms: _CachedRelayTerms) -> None:
        # the relay holds every requester's payment-token approval
        forbidden = {terms.payment_token.lower(), self._gateway.relay_address.lower()}
        if target.lower() in forbidden:
            raise MalformedRequest(
                "target must not be the payment token or the relay contract",
                details={"field": "target"},
            )
