"""
EVM Signature Verification Helpers

Off-chain verification of MetaTransaction authorizations. The verifier
rebuilds the EIP-712 digest from the request fields, recovers the signer and
compares it with the claimed requester. Nothing here touches the chain; a
rejection happens before any RPC call is made.

Current coverage
----------------
compute_domain_separator
    EIP-712 domain separator of a relay deployment, compared at startup with
    the contract's ``DOMAIN_SEPARATOR()``.

hash_meta_transaction
    Full EIP-712 digest of an authorization (what ``hashMetaTransaction``
    returns on-chain).

recover_meta_transaction_signer
    Address that produced a packed signature over the typed data.

verify_meta_transaction_signature
    Reject unless the recovered signer is the requester of a
    ``FacilitationRequest``.
"""

import logging

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address

from ...engine.exceptions import InvalidSignature
from ...schemas.bases import FacilitationRequest
from .constants import RELAY_DOMAIN_NAME, RELAY_DOMAIN_VERSION
from .schemas import EVMECDSASignature
from .signatures import build_meta_transaction_typed_data
from .standards import EIP712Domain, MetaTransactionTypedData, MetaTransactionMessage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _typed_data_for_request(
    request: FacilitationRequest,
    *,
    chain_id: int,
    relay_address: str,
    domain_name: str,
    domain_version: str,
) -> MetaTransactionTypedData:
    return build_meta_transaction_typed_data(
        chain_id=chain_id,
        relay_address=relay_address,
        requester=request.requester,
        target=request.target,
        payload=request.payload,
        tier=request.tier.code,
        nonce=request.nonce,
        deadline=request.deadline,
        domain_name=domain_name,
        domain_version=domain_version,
    )


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def compute_domain_separator(
    *,
    chain_id: int,
    relay_address: str,
    domain_name: str = RELAY_DOMAIN_NAME,
    domain_version: str = RELAY_DOMAIN_VERSION,
) -> bytes:
    """
    Compute the EIP-712 domain separator of a relay deployment.

    The separator is the ``header`` of the signable message produced for any
    message under this domain, so a zero-valued placeholder message is used.

    Returns:
        The 32-byte domain separator.
    """
    typed_data = MetaTransactionTypedData(
        domain=EIP712Domain(
            name=domain_name,
            version=domain_version,
            chainId=chain_id,
            verifyingContract=to_checksum_address(relay_address),
        ),
        message=MetaTransactionMessage(
            requester=to_checksum_address(relay_address),
            target=to_checksum_address(relay_address),
            payload=b"",
            tier=0,
            nonce=0,
            deadline=0,
        ),
    )
    signable = encode_typed_data(full_message=typed_data.to_dict())
    return bytes(signable.header)


def hash_meta_transaction(typed_data: MetaTransactionTypedData) -> bytes:
    """Return the 32-byte EIP-712 digest (``keccak(0x1901 || domain || struct)``)."""
    signable = encode_typed_data(full_message=typed_data.to_dict())
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


# ---------------------------------------------------------------------------
# Recovery / verification
# ---------------------------------------------------------------------------

def recover_meta_transaction_signer(typed_data: MetaTransactionTypedData, signature: bytes) -> str:
    """
    Recover the address that signed ``typed_data``.

    Args:
        typed_data: The authorization envelope.
        signature:  Packed 65-byte ``r || s || v`` signature; ``v`` of 0/1 is
                    accepted and normalized.

    Returns:
        Checksummed signer address.

    Raises:
        InvalidSignature: On malformed components, a high-s signature or a
            failed recovery.
    """
    try:
        sig = EVMECDSASignature.from_packed(signature)
        sig.validate_format()
    except ValueError as e:
        raise InvalidSignature(f"Signature rejected: {e}") from e

    signable = encode_typed_data(full_message=typed_data.to_dict())
    try:
        recovered = Account.recover_message(signable, vrs=(sig.v, sig.r, sig.s))
    except Exception as e:
        # eth_keys raises a mix of BadSignature/ValueError for unrecoverable points
        raise InvalidSignature("Signature recovery failed") from e
    return to_checksum_address(recovered)


def verify_meta_transaction_signature(
    request: FacilitationRequest,
    *,
    chain_id: int,
    relay_address: str,
    domain_name: str = RELAY_DOMAIN_NAME,
    domain_version: str = RELAY_DOMAIN_VERSION,
) -> str:
    """
    Verify that ``request.signature`` was produced by ``request.requester``.

    The digest binds every signed field (requester, target, payload, tier,
    nonce, deadline), so changing any of them invalidates the signature.

    Args:
        request:        Structurally valid facilitation request.
        chain_id:       Chain id of the relay deployment.
        relay_address:  Relay contract address (``verifyingContract``).
        domain_name:    EIP-712 domain name.
        domain_version: EIP-712 domain version.

    Returns:
        The recovered (checksummed) signer, equal to ``request.requester``.

    Raises:
        InvalidSignature: If recovery fails or the signer is not the requester.
    """
    typed_data = _typed_data_for_request(
        request,
        chain_id=chain_id,
        relay_address=relay_address,
        domain_name=domain_name,
        domain_version=domain_version,
    )
    recovered = recover_meta_transaction_signer(typed_data, request.signature)
    if recovered.lower() != request.requester.lower():
        logger.debug("Signer mismatch for requester %s", request.requester)
        raise InvalidSignature(
            "Recovered signer does not match requester",
            details={"requester": request.requester},
        )
    return recovered
