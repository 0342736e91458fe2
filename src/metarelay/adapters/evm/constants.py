"""
EVM Chain Configuration and Relay Constants

Provides the EIP-712 domain constants shared by every component that signs or
checks a meta-transaction, static chain metadata (public RPC endpoints and
block explorers), environment-aware key/RPC loading, and unit conversions.
"""

import os
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from typing import Dict, Optional
from urllib.parse import urlsplit

import dotenv
from pydantic import BaseModel, Field

dotenv.load_dotenv()


# ---------------------------------------------------------------------------
# Relay EIP-712 domain
# ---------------------------------------------------------------------------

#: EIP-712 domain name of the relay contract. Passed to the Solidity
#: constructor, so changing it requires a redeployment.
RELAY_DOMAIN_NAME: str = "MetaRelay"

#: EIP-712 domain version of the relay contract.
RELAY_DOMAIN_VERSION: str = "1"

#: Upper bound of the relayer fee rate enforced by ``setFeeRate``.
MAX_FEE_BPS: int = 2000

#: Basis-point denominator.
BPS_DENOMINATOR: int = 10_000

#: Largest value representable as a Solidity ``uint256``.
UINT256_MAX: int = 2**256 - 1

#: Half of the secp256k1 group order; canonical signatures have ``s`` at or below it.
SECP256K1_N: int = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N: int = SECP256K1_N // 2

#: Intrinsic gas of any transaction.
BASE_TX_GAS: int = 21_000

ZERO_ADDRESS: str = "0x0000000000000000000000000000000000000000"

#: Selectors of Solidity's built-in revert payloads.
ERROR_STRING_SELECTOR: bytes = bytes.fromhex("08c379a0")
PANIC_SELECTOR: bytes = bytes.fromhex("4e487b71")


class EvmChainConfig(BaseModel):
    """EVM network metadata."""
    caip2: str
    chain_id: int
    name: str
    public_rpc_url: str = Field(..., description="Public RPC endpoint")
    explorer_url: str = Field(..., description="Block explorer URL")
    native_symbol: str = Field(default="ETH", description="Native gas token symbol")


_EVM_CHAINS_DATA: Dict = {
    "eip155:1": {
        "name": "Ethereum Mainnet",
        "public_rpc_url": "https://ethereum-rpc.publicnode.com",
        "explorer_url": "https://etherscan.io",
        "native_symbol": "ETH",
    },
    "eip155:8453": {
        "name": "Base Mainnet",
        "public_rpc_url": "https://base.gateway.tenderly.co",
        "explorer_url": "https://basescan.org",
        "native_symbol": "ETH",
    },
    "eip155:137": {
        "name": "Polygon Mainnet",
        "public_rpc_url": "https://polygon-rpc.com",
        "explorer_url": "https://polygonscan.com",
        "native_symbol": "POL",
    },
    "eip155:84532": {
        "name": "Base Sepolia",
        "public_rpc_url": "https://sepolia.base.org",
        "explorer_url": "https://sepolia.basescan.org",
        "native_symbol": "ETH",
    },
    "eip155:11155111": {
        "name": "Sepolia Testnet",
        "public_rpc_url": "https://rpc.sepolia.org",
        "explorer_url": "https://sepolia.etherscan.io",
        "native_symbol": "ETH",
    },
}


def get_chain_config(chain_id: int) -> Optional[EvmChainConfig]:
    """
    Look up static metadata of a known EVM chain.

    Args:
        chain_id: Numeric EIP-155 chain id.

    Returns:
        EvmChainConfig or None for chains without bundled metadata (local devnets).
    """
    caip2 = f"eip155:{chain_id}"
    data = _EVM_CHAINS_DATA.get(caip2)
    if data is None:
        return None
    return EvmChainConfig(caip2=caip2, chain_id=chain_id, **data)


def explorer_tx_url(tx_hash: str, *, chain_id: int, explorer_url: Optional[str] = None) -> Optional[str]:
    """Build the block explorer link of a transaction, or None if the chain has no explorer."""
    base = explorer_url
    if base is None:
        config = get_chain_config(chain_id)
        base = config.explorer_url if config else None
    if not base:
        return None
    return f"{base.rstrip('/')}/tx/{tx_hash}"


def redact_rpc_url(url: Optional[str]) -> str:
    """
    Reduce an RPC URL to scheme and host.

    Provider URLs often embed API keys in the path or query string, so only
    the host is ever logged or returned in an error.
    """
    if not url:
        return "<unset>"
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return "<redacted>"
    return f"{parts.scheme}://{parts.hostname}/…"


def get_private_key_from_env() -> Optional[str]:
    """
    Load the relayer private key from the environment.

    Environment Variable:
        - METARELAY_RELAYER_PRIVATE_KEY: 0x-prefixed hex key of the relayer account

    Returns:
        str: Private key from environment, or None if not configured
    """
    return os.getenv("METARELAY_RELAYER_PRIVATE_KEY")


def get_rpc_url_from_env() -> Optional[str]:
    """
    Load the JSON-RPC endpoint from the environment.

    Environment Variable:
        - METARELAY_RPC_URL: Full provider URL, possibly embedding an API key
    """
    return os.getenv("METARELAY_RPC_URL")


def amount_to_value(*, amount: float | int | str | Decimal, decimals: int) -> int:
    """Convert a human-readable token `amount` into smallest-unit integer `value`.

    Args:
        amount: Human-readable amount (e.g. 1.23 for USDC). Accepts float/int/str/Decimal.
        decimals: Token decimals (e.g. 6 for USDC).

    Returns:
        int: Smallest-unit integer value.

    Raises:
        ValueError: If inputs are invalid or the amount cannot be represented in smallest units.
    """
    if not isinstance(decimals, int) or decimals < 0:
        raise ValueError("decimals must be a non-negative int")

    try:
        # str() avoids binary-float artifacts (0.1 -> 0.1000000000000000055...)
        dec_amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e

    if dec_amount < 0:
        raise ValueError("amount must be non-negative")

    scaled = dec_amount * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"amount {amount!r} is not representable with decimals={decimals} "
            f"(would create fractional smallest units)"
        )

    return int(scaled)


def wei_to_token_units(*, wei: int, native_token_price: Decimal, token_decimals: int) -> int:
    """
    Convert a native-token cost in wei into payment-token smallest units.

    ``native_token_price`` is the price of one whole native token expressed in
    whole payment tokens (e.g. 3000 for ETH priced in a USD stable coin). The
    result is rounded up so the relayer is never under-reimbursed.
    """
    if wei < 0:
        raise ValueError("wei must be non-negative")
    if native_token_price <= 0:
        raise ValueError("native_token_price must be positive")

    native = Decimal(wei) / (Decimal(10) ** 18)
    units = native * native_token_price * (Decimal(10) ** token_decimals)
    return int(units.to_integral_value(rounding=ROUND_CEILING))
