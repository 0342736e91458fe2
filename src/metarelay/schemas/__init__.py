from .bases import (
    CanonicalModel,
    PriorityTier,
    SettlementStatus,
    TransactionStatus,
    SystemHealth,
    FacilitationRequest,
    GasQuote,
    RelayExecution,
    ExecutionReceipt,
    PaymentRecord,
)
from .https import (
    FacilitationRequestBody,
    ChargedAmount,
    FacilitationResponse,
    ErrorBody,
    ErrorResponse,
    NonceResponse,
    FaucetRequest,
    FaucetResponse,
    HealthResponse,
)

__all__ = [
    "CanonicalModel",
    "PriorityTier",
    "SettlementStatus",
    "TransactionStatus",
    "SystemHealth",
    "FacilitationRequest",
    "GasQuote",
    "RelayExecution",
    "ExecutionReceipt",
    "PaymentRecord",
    "FacilitationRequestBody",
    "ChargedAmount",
    "FacilitationResponse",
    "ErrorBody",
    "ErrorResponse",
    "NonceResponse",
    "FaucetRequest",
    "FaucetResponse",
    "HealthResponse",
]
