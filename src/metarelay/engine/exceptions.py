"""
Exception and Error Definitions Module

Defines the error taxonomy of the facilitation pipeline. Every error a request
can end with derives from ``RelayError`` and carries enough metadata for the
HTTP layer to render it without knowing the concrete class.

Exception Hierarchy:
    RelayError (root)
    ├── MalformedRequest
    │   └── RequestExpired
    ├── InvalidSignature
    ├── NonceMismatch
    ├── RateLimited
    ├── SimulationFailed
    ├── EconomicError
    │   ├── InsufficientRequesterBalance
    │   ├── InsufficientRequesterAllowance
    │   └── RelayerUnderfunded
    ├── InfrastructureError
    │   ├── NodeUnavailable
    │   └── RelayerBusy
    ├── ExecutionError
    │   ├── ExecutionReverted
    │   └── RelayTransactionFailed
    │       └── StaleRelayerNonce
    └── TransactionNotFound
    ConfigurationError
"""

from typing import Any, Dict, Optional


class RelayError(Exception):
    """
    Root exception class for every per-request failure of the pipeline.

    Attributes:
        code: Stable machine-readable error code (snake_case).
        category: Taxonomy bucket the error belongs to.
        http_status: Status code the facilitation endpoint answers with.
        system_wide: True when the condition blocks every request, not just
            the current one (relayer underfunding, node outage).
        retryable: True when the same request may succeed later unchanged.
        details: Structured, non-secret diagnostic fields.
    """

    code: str = "relay_error"
    category: str = "internal"
    http_status: int = 500
    system_wide: bool = False
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "systemWide": self.system_wide,
            "retryable": self.retryable,
            "details": self.details,
        }


class MalformedRequest(RelayError):
    """
    Raised when a facilitation request fails structural validation.

    This includes scenarios such as:
    - Requester or target is not a well-formed address
    - Payload is not valid hex or exceeds the size limit
    - Tier is not one of the enumerated values
    - Deadline / nonce are not non-negative integers
    - Signature is not exactly 65 bytes
    """

    code = "malformed_request"
    category = "malformed_input"
    http_status = 400


class RequestExpired(MalformedRequest):
    """
    Raised when the request deadline is already in the past at validation time.

    Attributes:
        deadline: The signed deadline
        current_time: Validation timestamp
    """

    code = "request_expired"


class InvalidSignature(RelayError):
    """
    Raised when the recovered signer is not the claimed requester.

    Never retried automatically: a different signature is required.
    """

    code = "invalid_signature"
    category = "authentication"
    http_status = 401


class NonceMismatch(RelayError):
    """
    Raised when the signed nonce is not the requester's next expected nonce.

    The client must re-fetch the current nonce and re-sign; blindly retrying
    the same payload can never succeed.

    Attributes:
        expected_nonce: Nonce expected on-chain
        provided_nonce: Nonce in the request
    """

    code = "nonce_mismatch"
    category = "replay"
    http_status = 409


class RateLimited(RelayError):
    """
    Raised when a key exceeded its request cap in the current window.

    Attributes:
        retry_after: Seconds until the current window ends.
    """

    code = "rate_limited"
    category = "rate_limit"
    http_status = 429
    retryable = True

    def __init__(self, message: str, *, retry_after: float, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={**(details or {}), "retryAfter": retry_after})
        self.retry_after = retry_after


class SimulationFailed(RelayError):
    """
    Raised when the dry-run of the target call reverts.

    Nothing has been submitted and no balance has been read when this fires.
    """

    code = "simulation_failed"
    category = "simulation"
    http_status = 503


class EconomicError(RelayError):
    """Base exception for balance related failures."""

    category = "economic"
    http_status = 402


class InsufficientRequesterBalance(EconomicError):
    """
    Raised when the requester cannot cover the total charge.

    Attributes:
        required: Total charge in payment-token smallest units
        available: Requester payment-token balance
    """

    code = "insufficient_requester_balance"


class InsufficientRequesterAllowance(EconomicError):
    """
    Raised when the requester has not approved the relay contract for the charge.

    Attributes:
        required: Total charge in payment-token smallest units
        available: Current allowance granted to the relay contract
    """

    code = "insufficient_requester_allowance"


class RelayerUnderfunded(EconomicError):
    """
    Raised when the relayer's native balance cannot front the gas cost.

    Blocks the whole service until the relayer is funded externally. The
    relayer balance in ``details`` is an operational signal, not a secret.
    """

    code = "relayer_underfunded"
    http_status = 503
    system_wide = True


class InfrastructureError(RelayError):
    """Base exception for node / transport failures."""

    category = "infrastructure"
    http_status = 503
    retryable = True


class NodeUnavailable(InfrastructureError):
    """
    Raised when the chain node stayed unreachable after bounded retries.

    Attributes:
        operation: Gateway operation that failed (e.g. 'gas_price')
        attempts: Number of attempts made
    """

    code = "node_unavailable"
    system_wide = True


class RelayerBusy(InfrastructureError):
    """Raised when the single-writer submission queue is full."""

    code = "relayer_busy"


class ExecutionError(RelayError):
    """Base exception for failures observed after broadcast."""

    category = "execution"
    http_status = 500


class ExecutionReverted(ExecutionError):
    """
    Raised when the target call reverted on-chain.

    The nonce has been consumed, so the same authorization can not be
    retried. ``settlement`` holds the recorded response.
    """

    code = "execution_reverted"

    def __init__(self, message: str, *, settlement: Any = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.settlement = settlement


class RelayTransactionFailed(ExecutionError):
    """
    Raised when the relay transaction itself reverted or could not be broadcast.

    The whole invocation was rolled back: no nonce consumed, nothing charged.
    """

    code = "relay_transaction_failed"


class StaleRelayerNonce(RelayTransactionFailed):
    """
    Raised by a gateway when the node rejects the relayer account nonce as used.

    The submitter resyncs its account nonce from chain and retries once.
    """

    code = "stale_relayer_nonce"


class TransactionNotFound(RelayError):
    """Raised when a transaction id is not in the settlement history."""

    code = "transaction_not_found"
    category = "lookup"
    http_status = 404


class ConfigurationError(Exception):
    """
    Raised when configuration is missing or inconsistent at startup.

    This includes scenarios such as:
    - Missing relayer key or relay contract address
    - Off-chain EIP-712 domain differs from the contract's DOMAIN_SEPARATOR
    - Non-increasing tier multipliers
    """
    pass
