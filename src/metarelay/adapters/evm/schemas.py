"""
EVM Adapter Schema Models

Pydantic models for the ECDSA signature carried by a meta-transaction.

Signature classes:
    - EVMECDSASignature: v/r/s signature with packed ``r || s || v`` codec,
      recovery-id normalization and the low-s canonical form check.
"""

from pydantic import Field

from ...schemas.bases import CanonicalModel
from .constants import SECP256K1_HALF_N


class EVMECDSASignature(CanonicalModel):
    """
    EVM ECDSA signature (v, r, s).

    Attributes:
        v: ECDSA recovery ID (27 or 28).
        r: r component as an integer.
        s: s component as an integer.

    Example::

        sig = EVMECDSASignature.from_packed(signature_bytes)
        sig.validate_format()
        packed = sig.to_packed_bytes()
    """

    v: int = Field(..., description="ECDSA recovery ID (27 or 28)")
    r: int = Field(..., ge=0, description="Signature r component")
    s: int = Field(..., ge=0, description="Signature s component")

    @classmethod
    def from_packed(cls, signature: bytes) -> "EVMECDSASignature":
        """
        Split a packed 65-byte ``r || s || v`` signature.

        Recovery ids 0/1 (as produced by some signers) are normalized to 27/28;
        any other value is kept so that ``validate_format`` can reject it.

        Raises:
            ValueError: If ``signature`` is not exactly 65 bytes.
        """
        if len(signature) != 65:
            raise ValueError(f"Invalid signature length: expected 65 bytes, got {len(signature)}")
        r = int.from_bytes(signature[0:32], "big")
        s = int.from_bytes(signature[32:64], "big")
        v = signature[64]
        if v in (0, 1):
            v += 27
        return cls(v=v, r=r, s=s)

    def is_low_s(self) -> bool:
        return 0 < self.s <= SECP256K1_HALF_N

    def validate_format(self) -> bool:
        """
        Validate v/r/s components.

        Checks v is 27 or 28, r is non-zero and s lies in the lower half of the
        curve order (malleable high-s signatures are rejected).

        Returns:
            True when all components pass.

        Raises:
            ValueError: Descriptive message on the first failed check.
        """
        if self.v not in (27, 28):
            raise ValueError(f"Invalid recovery ID: {self.v}. Must be 27 or 28")
        if self.r == 0 or self.r >= 2**256:
            raise ValueError("Invalid r: out of range")
        if not self.is_low_s():
            raise ValueError("Invalid s: not in the lower half of the curve order")
        return True

    def to_packed_bytes(self) -> bytes:
        """Encode into the 65-byte ``r || s || v`` form accepted by the relay contract."""
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])

    def to_packed_hex(self) -> str:
        """0x-prefixed 132-character hex of ``to_packed_bytes()``."""
        return "0x" + self.to_packed_bytes().hex()
