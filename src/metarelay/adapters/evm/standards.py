from dataclasses import dataclass, field
from typing import Dict, Any, List


# -----------------------------
# EIP-712 Domain
# -----------------------------

@dataclass
class EIP712Domain:
    """
    EIP-712 domain separator.
    Used to prevent signature replay across chains and relay deployments.
    """
    name: str
    version: str
    chainId: int
    verifyingContract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chainId,
            "verifyingContract": self.verifyingContract,
        }


EIP712_DOMAIN_FIELDS: List[Dict[str, str]] = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

META_TRANSACTION_FIELDS: List[Dict[str, str]] = [
    {"name": "requester", "type": "address"},
    {"name": "target", "type": "address"},
    {"name": "payload", "type": "bytes"},
    {"name": "tier", "type": "uint8"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]

#: Canonical encoding of the primary type; its keccak is the type hash used on-chain.
META_TRANSACTION_TYPE: str = (
    "MetaTransaction(address requester,address target,bytes payload,"
    "uint8 tier,uint256 nonce,uint256 deadline)"
)


# -----------------------------
# MetaTransaction
# -----------------------------


@dataclass
class MetaTransactionMessage:
    """
    Message payload of a "MetaTransaction" authorization.

    A signature over this message authorizes exactly one call of ``payload``
    on ``target`` at the given tier, bound to one requester nonce and valid
    until ``deadline``.

    Attributes:
        requester: Address of the signing account (pays the charge).
        target: Contract the relay calls.
        payload: Raw calldata bytes.
        tier: On-chain tier code (0 low, 1 standard, 2 high).
        nonce: Requester nonce in the relay contract.
        deadline: Unix timestamp after which the authorization is void.
    """
    requester: str
    target: str
    payload: bytes
    tier: int
    nonce: int
    deadline: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requester": self.requester,
            "target": self.target,
            "payload": self.payload,
            "tier": self.tier,
            "nonce": self.nonce,
            "deadline": self.deadline,
        }

    def to_call_tuple(self) -> tuple:
        """ABI tuple of the ``MetaCall`` struct taken by ``executeAuthorizedCall``."""
        return (
            self.requester,
            self.target,
            self.payload,
            self.tier,
            self.nonce,
            self.deadline,
        )


@dataclass
class MetaTransactionTypedData:
    """
    Container for MetaTransaction typed data usable with EIP-712 signing routines.

    The `to_dict()` helper produces the { types, primaryType, domain, message }
    layout consumed by eth-account's ``full_message`` arguments.

    Attributes:
        domain: EIP712Domain instance describing the relay deployment.
        message: MetaTransactionMessage instance carrying the authorization.
        primary_type: The primary EIP-712 type (defaults to "MetaTransaction").
        types: The typed definitions required by EIP-712 (automatically set).
    """
    domain: EIP712Domain
    message: MetaTransactionMessage

    primary_type: str = "MetaTransaction"

    types: Dict[str, List[Dict[str, str]]] = field(
        default_factory=lambda: {
            "EIP712Domain": list(EIP712_DOMAIN_FIELDS),
            "MetaTransaction": list(META_TRANSACTION_FIELDS),
        }
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": self.types,
            "primaryType": self.primary_type,
            "domain": self.domain.to_dict(),
            "message": self.message.to_dict(),
        }
