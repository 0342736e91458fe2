"""
Request Validator

Structural validation of incoming facilitation requests. Runs before any
cryptographic check or chain read and has no side effects.
"""

import re
from typing import Any, Mapping

from eth_utils import is_checksum_address, to_checksum_address

from ..adapters.evm.constants import UINT256_MAX
from ..engine.exceptions import MalformedRequest, RequestExpired
from ..schemas.bases import FacilitationRequest, PriorityTier

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})*$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")

SIGNATURE_LENGTH = 65


def _reject(field_name: str, message: str) -> MalformedRequest:
    return MalformedRequest(message, details={"field": field_name})


def parse_address(value: Any, field_name: str) -> str:
    """
    Validate an address and return its checksummed form.

    All-lowercase and all-uppercase hex is accepted as is; mixed-case input
    must carry a valid EIP-55 checksum.
    """
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise _reject(field_name, f"{field_name} must be a 0x-prefixed 20-byte hex address")
    digits = value[2:]
    if digits != digits.lower() and digits != digits.upper() and not is_checksum_address(value):
        raise _reject(field_name, f"{field_name} has an invalid EIP-55 checksum")
    return to_checksum_address(value)


def parse_hex_bytes(value: Any, field_name: str) -> bytes:
    if not isinstance(value, str) or not _HEX_RE.match(value):
        raise _reject(field_name, f"{field_name} must be 0x-prefixed, even-length hex")
    return bytes.fromhex(value[2:])


def parse_uint(value: Any, field_name: str, *, maximum: int = UINT256_MAX) -> int:
    """
    Accept a non-negative integer given as a JSON integer or a decimal string.

    Booleans and floats are rejected even when integral.
    """
    if isinstance(value, bool):
        raise _reject(field_name, f"{field_name} must be a non-negative integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _DECIMAL_RE.match(value):
        parsed = int(value)
    else:
        raise _reject(field_name, f"{field_name} must be a non-negative integer")
    if parsed < 0 or parsed > maximum:
        raise _reject(field_name, f"{field_name} is out of range")
    return parsed


def parse_tier(value: Any) -> PriorityTier:
    try:
        return PriorityTier(value)
    except ValueError:
        raise _reject("tier", "tier must be one of: low, standard, high")


def parse_facilitation_request(
    raw: Mapping[str, Any],
    *,
    now: int,
    max_payload_bytes: int,
) -> FacilitationRequest:
    """
    Validate a raw request body and build a ``FacilitationRequest``.

    Args:
        raw: Decoded JSON body.
        now: Current Unix time, used for the deadline check.
        max_payload_bytes: Largest accepted calldata size.

    Returns:
        FacilitationRequest with checksummed addresses and decoded bytes.

    Raises:
        MalformedRequest: On the first field that fails validation.
        RequestExpired: If every field is well formed but ``deadline < now``.
    """
    if not isinstance(raw, Mapping):
        raise _reject("body", "request body must be a JSON object")

    requester = parse_address(raw.get("requester"), "requester")
    target = parse_address(raw.get("target"), "target")

    payload = parse_hex_bytes(raw.get("payload"), "payload")
    if len(payload) > max_payload_bytes:
        raise MalformedRequest(
            "payload exceeds the maximum size",
            details={"field": "payload", "size": len(payload), "maximum": max_payload_bytes},
        )

    tier = parse_tier(raw.get("tier"))
    deadline = parse_uint(raw.get("deadline"), "deadline")
    nonce = parse_uint(raw.get("nonce"), "nonce")

    signature = parse_hex_bytes(raw.get("signature"), "signature")
    if len(signature) != SIGNATURE_LENGTH:
        raise _reject("signature", f"signature must be exactly {SIGNATURE_LENGTH} bytes")

    if deadline < now:
        raise RequestExpired(
            "request deadline has passed",
            details={"deadline": deadline, "currentTime": now},
        )

    return FacilitationRequest(
        requester=requester,
        target=target,
        payload=payload,
        tier=tier,
        nonce=nonce,
        deadline=deadline,
        signature=signature,
    )
