"""
EVM Off-Chain Signing Utilities

Local EIP-712 signing helpers for MetaTransaction authorizations. All
cryptographic operations are performed in-process using ``eth_account``; no
RPC calls or on-chain state queries are made.

Exported helpers
----------------
build_meta_transaction_typed_data
    Wrap the authorization fields in a ``MetaTransactionTypedData`` envelope
    without signing. Useful when signing happens in a wallet.

sign_meta_transaction
    Build the typed data, sign it with a requester key and return the packed
    65-byte ``r || s || v`` signature.
"""

from eth_account import Account

from .constants import RELAY_DOMAIN_NAME, RELAY_DOMAIN_VERSION
from .schemas import EVMECDSASignature
from .standards import EIP712Domain, MetaTransactionMessage, MetaTransactionTypedData


# ---------------------------------------------------------------------------
# Low-level typed-data builder
# ---------------------------------------------------------------------------

def build_meta_transaction_typed_data(
    *,
    chain_id: int,
    relay_address: str,
    requester: str,
    target: str,
    payload: bytes,
    tier: int,
    nonce: int,
    deadline: int,
    domain_name: str = RELAY_DOMAIN_NAME,
    domain_version: str = RELAY_DOMAIN_VERSION,
) -> MetaTransactionTypedData:
    """
    Wrap the authorization fields in an EIP-712 ``MetaTransactionTypedData``
    envelope without signing.

    Args:
        chain_id:       EVM network ID the relay is deployed on.
        relay_address:  Relay contract address (EIP-712 ``verifyingContract``).
        requester:      Address of the signing account.
        target:         Contract the relay will call.
        payload:        Raw calldata bytes.
        tier:           On-chain tier code (0 low, 1 standard, 2 high).
        nonce:          Requester's current relay nonce.
        deadline:       Unix timestamp after which the authorization is void.
        domain_name:    EIP-712 domain ``name`` of the relay deployment.
        domain_version: EIP-712 domain ``version`` of the relay deployment.

    Returns:
        ``MetaTransactionTypedData`` whose ``to_dict()`` is accepted by
        ``eth_account`` and ``eth_signTypedData_v4``.
    """
    domain = EIP712Domain(
        name=domain_name,
        version=domain_version,
        chainId=chain_id,
        verifyingContract=relay_address,
    )
    message = MetaTransactionMessage(
        requester=requester,
        target=target,
        payload=payload,
        tier=tier,
        nonce=nonce,
        deadline=deadline,
    )
    return MetaTransactionTypedData(domain=domain, message=message)


# ---------------------------------------------------------------------------
# MetaTransaction signer
# ---------------------------------------------------------------------------

def sign_meta_transaction(
    *,
    private_key: str,
    chain_id: int,
    relay_address: str,
    target: str,
    payload: bytes,
    tier: int,
    nonce: int,
    deadline: int,
    domain_name: str = RELAY_DOMAIN_NAME,
    domain_version: str = RELAY_DOMAIN_VERSION,
) -> bytes:
    """
    Sign a MetaTransaction authorization and return the packed signature.

    The requester address is derived from ``private_key``.

    Args:
        private_key: Hex-encoded secp256k1 key of the requester.
        (remaining arguments as in ``build_meta_transaction_typed_data``)

    Returns:
        65-byte ``r || s || v`` signature with ``v`` in {27, 28}.

    Example::

        signature = sign_meta_transaction(
            private_key="0xYOUR_PRIVATE_KEY",
            chain_id=11155111,
            relay_address="0xRelay",
            target="0xTarget",
            payload=bytes.fromhex("a9059cbb..."),
            tier=1,
            nonce=0,
            deadline=int(time.time()) + 600,
        )
    """
    requester = Account.from_key(private_key).address
    typed_data = build_meta_transaction_typed_data(
        chain_id=chain_id,
        relay_address=relay_address,
        requester=requester,
        target=target,
        payload=payload,
        tier=tier,
        nonce=nonce,
        deadline=deadline,
        domain_name=domain_name,
        domain_version=domain_version,
    )
    signed = Account.sign_typed_data(private_key, full_message=typed_data.to_dict())

    return EVMECDSASignature(v=signed.v, r=signed.r, s=signed.s).to_packed_bytes()
