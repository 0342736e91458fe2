"""
MetaTxRelay + Payment Token Smart Contract ABI Module

ABI fragments for the relay contract in ``contracts/MetaTxRelay.sol`` and the
ERC-20 functions the facilitator needs on the payment token.

Usage:
    from RELAY_ABI import get_relay_abi, get_erc20_abi

    relay = web3.eth.contract(address=relay_address, abi=get_relay_abi())
    token = web3.eth.contract(address=token_address, abi=get_erc20_abi())
"""

from typing import Dict, Any, List


META_CALL_COMPONENTS: List[Dict[str, Any]] = [
    {"name": "requester", "type": "address"},
    {"name": "target", "type": "address"},
    {"name": "payload", "type": "bytes"},
    {"name": "tier", "type": "uint8"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]


def _view(name: str, inputs: List[Dict[str, Any]], output_type: str) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": [{"name": "", "type": output_type}],
    }


def _owner_only(name: str, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": inputs,
        "outputs": [],
    }


def get_execute_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ``executeAuthorizedCall(MetaCall, bytes, uint256)``.

    Returns:
        List[Dict[str, Any]]: ABI for the relayer entry point.

    Example:
        contract = web3.eth.contract(address=relay_address, abi=get_execute_abi())
        contract.functions.executeAuthorizedCall(call_tuple, signature, charge)
    """
    return [
        {
            "name": "executeAuthorizedCall",
            "type": "function",
            "stateMutability": "nonpayable",
            "inputs": [
                {"name": "call", "type": "tuple", "components": META_CALL_COMPONENTS},
                {"name": "signature", "type": "bytes"},
                {"name": "chargeAmount", "type": "uint256"},
            ],
            "outputs": [
                {"name": "success", "type": "bool"},
                {"name": "returnData", "type": "bytes"},
            ],
        }
    ]


def get_relay_views_abi() -> List[Dict[str, Any]]:
    """Get ABI for the relay contract's view functions."""
    return [
        _view("nonces", [{"name": "requester", "type": "address"}], "uint256"),
        _view("relayer", [], "address"),
        _view("owner", [], "address"),
        _view("paymentToken", [], "address"),
        _view("feeBps", [], "uint256"),
        _view("paused", [], "bool"),
        _view("DOMAIN_SEPARATOR", [], "bytes32"),
        _view("MAX_FEE_BPS", [], "uint256"),
        {
            "name": "hashMetaTransaction",
            "type": "function",
            "stateMutability": "view",
            "inputs": [{"name": "call", "type": "tuple", "components": META_CALL_COMPONENTS}],
            "outputs": [{"name": "", "type": "bytes32"}],
        },
    ]


def get_relay_admin_abi() -> List[Dict[str, Any]]:
    """Get ABI for the owner-only administration functions."""
    return [
        _owner_only("setRelayer", [{"name": "newRelayer", "type": "address"}]),
        _owner_only("setPaymentToken", [{"name": "newToken", "type": "address"}]),
        _owner_only("setFeeRate", [{"name": "newFeeBps", "type": "uint256"}]),
        _owner_only("pause", []),
        _owner_only("unpause", []),
        _owner_only("transferOwnership", [{"name": "newOwner", "type": "address"}]),
    ]


def get_relay_events_abi() -> List[Dict[str, Any]]:
    """Get ABI for the events emitted by the relay contract."""
    return [
        {
            "name": "MetaTransactionExecuted",
            "type": "event",
            "anonymous": False,
            "inputs": [
                {"name": "requester", "type": "address", "indexed": True},
                {"name": "target", "type": "address", "indexed": True},
                {"name": "nonce", "type": "uint256", "indexed": False},
                {"name": "success", "type": "bool", "indexed": False},
                {"name": "charged", "type": "uint256", "indexed": False},
                {"name": "returnData", "type": "bytes", "indexed": False},
            ],
        },
        {
            "name": "RelayerChanged",
            "type": "event",
            "anonymous": False,
            "inputs": [
                {"name": "previousRelayer", "type": "address", "indexed": True},
                {"name": "newRelayer", "type": "address", "indexed": True},
            ],
        },
        {
            "name": "FeeRateChanged",
            "type": "event",
            "anonymous": False,
            "inputs": [{"name": "newFeeBps", "type": "uint256", "indexed": False}],
        },
    ]


def get_relay_abi() -> List[Dict[str, Any]]:
    """Complete relay contract ABI."""
    return get_execute_abi() + get_relay_views_abi() + get_relay_admin_abi() + get_relay_events_abi()


def get_erc20_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for the ERC-20 functions used on the payment token.

    Returns:
        List[Dict[str, Any]]: ``balanceOf``, ``allowance``, ``decimals`` and ``approve``.
    """
    return [
        _view("balanceOf", [{"name": "account", "type": "address"}], "uint256"),
        _view(
            "allowance",
            [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
            "uint256",
        ),
        _view("decimals", [], "uint8"),
        {
            "name": "approve",
            "type": "function",
            "stateMutability": "nonpayable",
            "inputs": [
                {"name": "spender", "type": "address"},
                {"name": "amount", "type": "uint256"},
            ],
            "outputs": [{"name": "", "type": "bool"}],
        },
    ]


def get_mint_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ``mint(address,uint256)`` of the test payment token used by the faucet.
    """
    return [
        {
            "name": "mint",
            "type": "function",
            "stateMutability": "nonpayable",
            "inputs": [
                {"name": "to", "type": "address"},
                {"name": "amount", "type": "uint256"},
            ],
            "outputs": [],
        }
    ]
