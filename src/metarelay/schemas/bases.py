"""
Base Schema Models for the metarelay Facilitation Engine

This module defines the fundamental models that flow through the facilitation
pipeline. They are immutable once constructed and serialize deterministically.

Core Classes:
    - CanonicalModel: Pydantic base model with canonical JSON serialization
    - PriorityTier: Priority tier a requester pays for (low / standard / high)
    - SettlementStatus: Final or interim state of a facilitated call
    - FacilitationRequest: Validated request for a meta-transaction
    - GasQuote: Priced cost of executing one request
    - PaymentRecord: Frozen record of what a requester was charged
    - ExecutionReceipt: Normalized on-chain receipt of a relay transaction

Dependencies:
    - pydantic: For data validation and serialization
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class CanonicalModel(BaseModel):
    """
    Pydantic base model with canonical JSON serialization.

    Features:
        - Enums, bytes and Decimals rendered as plain JSON types
        - Deterministic key sorting in JSON output
        - No extra whitespace, so equal models hash equally

    Example:
        class MyModel(CanonicalModel):
            name: str
            value: int

        model = MyModel(name="test", value=123)
        canonical_json = model.to_canonical_json()  # '{"name":"test","value":123}'
    """

    model_config = ConfigDict(populate_by_name=True)

    def to_canonical_json(self) -> str:
        """
        Convert model to a canonical JSON string (sorted keys, compact separators).

        Returns:
            str: JSON string with sorted keys and no extra whitespace.
        """
        data = self.model_dump(mode="json")
        return json.dumps(
            data,
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model to dictionary representation.

        Returns:
            Dict[str, Any]: Dictionary with all model fields.
        """
        return self.model_dump()


class PriorityTier(str, Enum):
    """
    Priority tier selected by the requester.

    The tier scales the effective gas price. Its on-chain encoding is the
    ``uint8`` returned by ``code``.
    """
    LOW = "low"
    STANDARD = "standard"
    HIGH = "high"

    @property
    def code(self) -> int:
        return _TIER_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "PriorityTier":
        for tier, tier_code in _TIER_CODES.items():
            if tier_code == code:
                return tier
        raise ValueError(f"Unknown tier code: {code}")


_TIER_CODES = {
    PriorityTier.LOW: 0,
    PriorityTier.STANDARD: 1,
    PriorityTier.HIGH: 2,
}


class SettlementStatus(str, Enum):
    """
    Enumeration of settlement outcomes reported to the requester.

    Attributes:
        CONFIRMED: Target call succeeded and the charge was collected
        PENDING: Relay transaction broadcast but not yet final
        REVERTED: Target call failed on-chain; nonce consumed, nothing charged
        FAILED: Relay transaction itself reverted; nothing consumed or charged
    """
    CONFIRMED = "confirmed"
    PENDING = "pending"
    REVERTED = "reverted"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    """Receipt-level status of the relay transaction itself."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class SystemHealth(str, Enum):
    """Service health as reported by ``GET /health``."""
    OK = "ok"
    DEGRADED = "degraded"


class FacilitationRequest(CanonicalModel):
    """
    A structurally valid request to relay one authorized call.

    Produced only by the request validator; addresses are checksummed and all
    numeric fields are range checked. Lives for the duration of one request.

    Attributes:
        requester: Account that signed the authorization and pays the charge
        target: Contract the relay calls on the requester's behalf
        payload: Calldata forwarded to ``target``
        tier: Priority tier
        nonce: Requester nonce the authorization is bound to
        deadline: Unix timestamp after which the authorization is void
        signature: 65-byte r || s || v signature over the typed data
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    requester: str = Field(..., description="Checksummed requester address")
    target: str = Field(..., description="Checksummed target contract address")
    payload: bytes = Field(..., description="Calldata forwarded to the target")
    tier: PriorityTier = Field(..., description="Priority tier")
    nonce: int = Field(..., ge=0, description="Requester nonce")
    deadline: int = Field(..., ge=0, description="Unix deadline in seconds")
    signature: bytes = Field(..., min_length=65, max_length=65, description="r || s || v signature")

    def __repr__(self) -> str:
        return (
            f"FacilitationRequest(requester={self.requester}, target={self.target}, "
            f"tier={self.tier.value}, nonce={self.nonce})"
        )


class GasQuote(CanonicalModel):
    """
    Priced cost of executing one request.

    Native amounts are in wei; charge amounts are in the payment token's
    smallest units.
    """
    model_config = ConfigDict(frozen=True)

    tier: PriorityTier
    gas_units: int = Field(..., ge=0)
    gas_limit: int = Field(..., ge=0)
    network_gas_price: int = Field(..., ge=0)
    effective_gas_price: int = Field(..., ge=0)
    estimated_cost_wei: int = Field(..., ge=0)
    base_charge: int = Field(..., ge=0)
    fee_charge: int = Field(..., ge=0)
    total_charge: int = Field(..., ge=0)
    fee_bps: int = Field(..., ge=0)
    payment_token: str


class RelayExecution(CanonicalModel):
    """Decoded ``MetaTransactionExecuted`` event of a relay transaction."""
    model_config = ConfigDict(frozen=True)

    requester: str
    target: str
    nonce: int
    success: bool
    charged: int
    return_data: bytes = b""


class ExecutionReceipt(CanonicalModel):
    """
    Normalized receipt of a relay transaction.

    Attributes:
        tx_hash: 0x-prefixed transaction hash
        block_number: Block the transaction was included in
        status: Receipt status of the relay transaction
        gas_used: Gas consumed
        effective_gas_price: Price per gas actually paid (wei)
        confirmations: Blocks mined on top of the inclusion block, plus one
        execution: Decoded relay event, None when the event is missing
    """
    model_config = ConfigDict(frozen=True)

    tx_hash: str
    block_number: int
    status: TransactionStatus
    gas_used: int = 0
    effective_gas_price: int = 0
    confirmations: int = 0
    execution: Optional[RelayExecution] = None


class PaymentRecord(CanonicalModel):
    """
    Frozen record of one settled facilitation.

    ``amount_charged`` is zero unless the target call succeeded.
    """
    model_config = ConfigDict(frozen=True)

    requester: str
    nonce: int
    amount_charged: int = Field(..., ge=0)
    base_component: int = Field(..., ge=0)
    fee_component: int = Field(..., ge=0)
    outcome: SettlementStatus
    transaction_id: str
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
