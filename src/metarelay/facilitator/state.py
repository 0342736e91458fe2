"""
Facilitator State

Everything the facilitator keeps between requests, bundled so the server
can build it once at startup and tests can reset it in one call.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict

from ..adapters.bases import ChainGateway
from ..config import Settings
from .balances import BalanceGuard, RelayerHealth
from .nonces import NonceLedger
from .pricing import GasPricer
from .ratelimit import FixedWindowRateLimiter
from .settlement import SettlementRecorder


class KeyedLocks:
    """
    One ``asyncio.Lock`` per key, created on demand and dropped once no
    task holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class RelayState:
    """
    Attributes:
        request_limiter: Per-requester cap on ``/facilitate``.
        faucet_client_limiter: Per-client cap on ``/faucet``.
        faucet_recipient_limiter: Per-recipient cap on ``/faucet``.
        nonces: Requester nonce cache.
        locks: Per-requester serialization of the execution stage.
        health: Relayer funding flag.
        settlements: Recorded settlements.
        pricer: Gas pricer.
        guard: Balance guard.
    """
    request_limiter: FixedWindowRateLimiter
    faucet_client_limiter: FixedWindowRateLimiter
    faucet_recipient_limiter: FixedWindowRateLimiter
    nonces: NonceLedger
    locks: KeyedLocks
    health: RelayerHealth
    settlements: SettlementRecorder
    pricer: GasPricer
    guard: BalanceGuard

    @classmethod
    def create(cls, settings: Settings, gateway: ChainGateway) -> "RelayState":
        health = RelayerHealth()
        return cls(
            request_limiter=FixedWindowRateLimiter(
                settings.rate_limit_requests, settings.rate_limit_window_seconds
            ),
            faucet_client_limiter=FixedWindowRateLimiter(
                settings.faucet_rate_limit_requests, settings.faucet_window_seconds
            ),
            faucet_recipient_limiter=FixedWindowRateLimiter(
                settings.faucet_rate_limit_requests, settings.faucet_window_seconds
            ),
            nonces=NonceLedger(gateway),
            locks=KeyedLocks(),
            health=health,
            settlements=SettlementRecorder(
                required_confirmations=settings.required_confirmations,
                history_size=settings.settlement_history_size,
            ),
            pricer=GasPricer(
                gateway,
                native_token_price=settings.native_token_price,
                token_decimals=settings.payment_token_decimals,
                relay_gas_overhead=settings.relay_gas_overhead,
                gas_limit_margin_bps=settings.gas_limit_margin_bps,
                tier_multipliers_bps=settings.tier_multipliers(),
                cache_ttl_seconds=settings.fee_cache_ttl_seconds,
            ),
            guard=BalanceGuard(gateway, health, buffer_bps=settings.relayer_balance_buffer_bps),
        )

    def clear(self) -> None:
        self.request_limiter.clear()
        self.faucet_client_limiter.clear()
        self.faucet_recipient_limiter.clear()
        self.nonces.clear()
        self.settlements.clear()
        self.pricer.invalidate()
        self.health.mark_funded()
