"""
HTTP Request/Response Schema Models for the Facilitation Endpoint

This module defines the Pydantic models used on the wire between a requester
and the facilitator server. JSON field names are camelCase; Python attribute
names are snake_case, and either is accepted on input.

The facilitation flow consists of:
1. Client reads its current relay nonce (GET /nonces/{address})
2. Client signs the MetaTransaction typed data with its own key
3. Client posts the signed request (POST /facilitate)
4. Server answers with the settlement outcome and the amounts charged
"""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .bases import SettlementStatus, SystemHealth


# ============================================================================
# Facilitation
# ============================================================================

class FacilitationRequestBody(BaseModel):
    """Raw facilitation request as posted by the client.

    Values are kept loosely typed here; the request validator owns all
    structural checks so that every rejection carries the same error shape.

    Attributes:
        target: Target contract address.
        payload: 0x-prefixed calldata.
        tier: Priority tier (low, standard, high).
        requester: Address of the signing requester.
        signature: 0x-prefixed 65-byte signature.
        deadline: Unix deadline, integer or decimal string.
        nonce: Requester nonce, integer or decimal string.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target: Any = Field(None, description="Target contract address")
    payload: Any = Field(None, description="0x-prefixed calldata")
    tier: Any = Field(None, description="Priority tier")
    requester: Any = Field(None, description="Requester address")
    signature: Any = Field(None, description="0x-prefixed 65-byte signature")
    deadline: Any = Field(None, description="Unix deadline (seconds)")
    nonce: Any = Field(None, description="Requester nonce")


class ChargedAmount(BaseModel):
    """Amounts withdrawn from the requester, in payment-token smallest units.

    Serialized as decimal strings so that 256-bit values survive JSON clients
    with float-only numbers.
    """
    base: str = Field(..., description="Gas reimbursement component")
    fee: str = Field(..., description="Relayer fee component")
    total: str = Field(..., description="base + fee")


class FacilitationResponse(BaseModel):
    """Outcome of a facilitated call.

    Attributes:
        success: True only when the target call succeeded.
        status: confirmed, pending or reverted.
        transaction_id: Relay transaction hash.
        explorer_reference: Block explorer URL of the transaction, if known.
        gas_used: Gas consumed by the relay transaction (0 while pending).
        charged_amount: Amounts withdrawn from the requester.
        requester: Requester address.
        nonce: Nonce consumed by this call.
        revert_reason: Decoded revert reason of the target call, if any.
    """
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status: SettlementStatus
    transaction_id: str = Field(..., alias="transactionId")
    explorer_reference: Optional[str] = Field(None, alias="explorerReference")
    gas_used: int = Field(0, alias="gasUsed")
    charged_amount: ChargedAmount = Field(..., alias="chargedAmount")
    requester: str
    nonce: int
    revert_reason: Optional[str] = Field(None, alias="revertReason")

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ErrorBody(BaseModel):
    """Body of the ``error`` member of an error response."""
    model_config = ConfigDict(populate_by_name=True)

    code: str
    category: str
    message: str
    system_wide: bool = Field(False, alias="systemWide")
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Uniform error envelope: ``{"error": {...}}``.

    Reverted executions additionally carry the settlement record.
    """
    error: ErrorBody
    settlement: Optional[FacilitationResponse] = None


# ============================================================================
# Auxiliary endpoints
# ============================================================================

class NonceResponse(BaseModel):
    """Advisory next nonce of an address."""
    address: str
    nonce: int


class FaucetRequest(BaseModel):
    """Request test payment tokens for an address.

    Attributes:
        address: Recipient address.
        amount: Smallest-unit amount; defaults to the configured faucet amount.
    """
    address: str = Field(..., description="Recipient address")
    amount: Optional[Union[int, str]] = Field(None, description="Smallest-unit amount")


class FaucetResponse(BaseModel):
    """Outcome of a faucet mint."""
    model_config = ConfigDict(populate_by_name=True)

    address: str
    amount: str
    transaction_id: str = Field(..., alias="transactionId")
    explorer_reference: Optional[str] = Field(None, alias="explorerReference")


class HealthResponse(BaseModel):
    """Service health snapshot."""
    model_config = ConfigDict(populate_by_name=True)

    status: SystemHealth
    relayer: str
    relay_address: str = Field(..., alias="relayAddress")
    chain_id: int = Field(..., alias="chainId")
    reason: Optional[str] = None
