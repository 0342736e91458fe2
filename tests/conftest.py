"""
Shared fixtures and helpers for the metarelay test suite.

Key Components:
    - Deterministic test accounts (requester, intruder, relayer)
    - A local chain with a counter target and a target that reverts on-chain
    - Settings tuned for fast receipt polling
    - Helpers that sign facilitation bodies the way a real client does
"""

import time
from typing import Any, Dict, Optional

import pytest
from eth_account import Account
from eth_utils import to_checksum_address

from metarelay.adapters.evm.signatures import sign_meta_transaction
from metarelay.config import Settings
from metarelay.onchain.local import LocalChainGateway, LocalTarget
from metarelay.onchain.relay import TargetReverted
from metarelay.schemas.bases import FacilitationRequest, PriorityTier


# ========================================================================
# Accounts
# ========================================================================

REQUESTER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
INTRUDER_KEY = "0x8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"
RELAYER_KEY = "0x6370fd033278c143179d81c5526140625662b8daa446c22ee2d73db3707e620c"

REQUESTER = Account.from_key(REQUESTER_KEY).address
INTRUDER = Account.from_key(INTRUDER_KEY).address
RELAYER = Account.from_key(RELAYER_KEY).address

COUNTER_TARGET = to_checksum_address("0x" + "c0" * 20)
REVERTING_TARGET = to_checksum_address("0x" + "de" * 20)

INCREMENT_CALLDATA = bytes.fromhex("d09de08a")  # increment()
COUNTER_GAS = 26_000


class Counter:
    """Local target that counts successful calls."""

    def __init__(self) -> None:
        self.value = 0

    def increment(self, caller: str, payload: bytes) -> bytes:
        self.value += 1
        return self.value.to_bytes(32, "big")

    def peek(self, caller: str, payload: bytes) -> bytes:
        return (self.value + 1).to_bytes(32, "big")


def _reverting_handler(caller: str, payload: bytes) -> bytes:
    raise TargetReverted("Counter: paused")


def _passing_simulation(caller: str, payload: bytes) -> bytes:
    return b""


# ========================================================================
# Fixtures
# ========================================================================

@pytest.fixture
def counter() -> Counter:
    return Counter()


@pytest.fixture
def chain(counter: Counter) -> LocalChainGateway:
    """Local chain with a counter and a target that passes simulation but reverts on-chain."""
    gateway = LocalChainGateway(relayer_private_key=RELAYER_KEY, fee_bps=100)
    gateway.register_target(
        COUNTER_TARGET,
        LocalTarget(handler=counter.increment, gas=COUNTER_GAS, simulate=counter.peek),
    )
    gateway.register_target(
        REVERTING_TARGET,
        LocalTarget(handler=_reverting_handler, gas=COUNTER_GAS, simulate=_passing_simulation),
    )
    return gateway


@pytest.fixture
def settings(chain: LocalChainGateway) -> Settings:
    return Settings(
        chain_id=chain.chain_id,
        receipt_timeout_seconds=0.05,
        receipt_poll_interval=0.01,
        rpc_backoff_seconds=0,
    )


# ========================================================================
# Helpers
# ========================================================================

def future_deadline(seconds: int = 600) -> int:
    return int(time.time()) + seconds


def signed_body(
    chain: LocalChainGateway,
    *,
    key: str = REQUESTER_KEY,
    requester: Optional[str] = None,
    target: str = COUNTER_TARGET,
    payload: bytes = INCREMENT_CALLDATA,
    tier: PriorityTier = PriorityTier.STANDARD,
    nonce: int = 0,
    deadline: Optional[int] = None,
) -> Dict[str, Any]:
    """JSON body of a facilitation request signed with ``key``.

    ``requester`` defaults to the key's address; passing another address
    produces a request whose signer does not match.
    """
    deadline = future_deadline() if deadline is None else deadline
    signature = sign_meta_transaction(
        private_key=key,
        chain_id=chain.chain_id,
        relay_address=chain.relay_address,
        target=target,
        payload=payload,
        tier=tier.code,
        nonce=nonce,
        deadline=deadline,
    )
    return {
        "requester": requester or Account.from_key(key).address,
        "target": target,
        "payload": "0x" + payload.hex(),
        "tier": tier.value,
        "nonce": nonce,
        "deadline": deadline,
        "signature": "0x" + signature.hex(),
    }


def signed_request(chain: LocalChainGateway, **kwargs: Any) -> FacilitationRequest:
    """Same as ``signed_body`` but returns the validated request model."""
    body = signed_body(chain, **kwargs)
    return FacilitationRequest(
        requester=to_checksum_address(body["requester"]),
        target=to_checksum_address(body["target"]),
        payload=bytes.fromhex(body["payload"][2:]),
        tier=PriorityTier(body["tier"]),
        nonce=body["nonce"],
        deadline=body["deadline"],
        signature=bytes.fromhex(body["signature"][2:]),
    )
