"""
Python Model of the MetaTxRelay Contract

Executable model of ``contracts/MetaTxRelay.sol`` and of the mintable ERC-20
payment token it charges in. The local chain gateway runs facilitation
requests against these objects, so every rule the Solidity contract enforces
is enforced here in the same order:

    0. caller is the relayer, contract not paused, deadline not passed,
       target is neither the payment token nor the relay itself
    1. signer recovered from the EIP-712 digest equals the requester
    2. nonce equals ``nonces[requester]``; the nonce then advances
       whatever the target call does
    3. target is called; its failure is captured, not propagated
    4. on success the charge is pulled with ``transferFrom``; a failed pull
       reverts the whole invocation
    5. ``MetaTransactionExecuted`` is emitted

State changes of a reverted invocation are rolled back by the caller through
``snapshot()`` / ``restore()``.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from ..adapters.evm.constants import (
    ERROR_STRING_SELECTOR,
    MAX_FEE_BPS,
    RELAY_DOMAIN_NAME,
    RELAY_DOMAIN_VERSION,
    ZERO_ADDRESS,
)
from ..adapters.evm.signatures import build_meta_transaction_typed_data
from ..adapters.evm.standards import MetaTransactionMessage
from ..adapters.evm.verifies import (
    compute_domain_separator,
    hash_meta_transaction,
    recover_meta_transaction_signer,
)
from ..engine.exceptions import InvalidSignature


def encode_error_string(reason: str) -> bytes:
    """ABI-encode ``reason`` as Solidity ``Error(string)`` revert data."""
    return ERROR_STRING_SELECTOR + encode(["string"], [reason])


class ContractRevert(Exception):
    """A contract call reverted; all of its state changes must be discarded."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TargetReverted(Exception):
    """
    Raised by a local target to model a reverting call.

    Attributes:
        data: Revert data returned to the relay (``Error(string)`` encoded).
    """

    def __init__(self, reason: str = "", data: Optional[bytes] = None):
        super().__init__(reason)
        self.reason = reason
        self.data = data if data is not None else (encode_error_string(reason) if reason else b"")


# ==================== Payment Token ====================

class PaymentToken:
    """
    Minimal mintable ERC-20 (balances, allowances, transferFrom, mint).

    ``handle_call`` dispatches ABI-encoded calldata so the token can be
    deployed as a target on the local chain like any other contract.
    """

    SELECTORS = {
        bytes.fromhex("a9059cbb"): ("transfer", ["address", "uint256"]),
        bytes.fromhex("095ea7b3"): ("approve", ["address", "uint256"]),
        bytes.fromhex("23b872dd"): ("transferFrom", ["address", "address", "uint256"]),
        bytes.fromhex("70a08231"): ("balanceOf", ["address"]),
        bytes.fromhex("dd62ed3e"): ("allowance", ["address", "address"]),
    }

    def __init__(self, *, address: str, minter: str, name: str = "Test USD", symbol: str = "tUSD", decimals: int = 6):
        self.address = to_checksum_address(address)
        self.minter = to_checksum_address(minter)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.total_supply = 0
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}

    def balance_of(self, account: str) -> int:
        return self._balances.get(to_checksum_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((to_checksum_address(owner), to_checksum_address(spender)), 0)

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        self._allowances[(to_checksum_address(owner), to_checksum_address(spender))] = amount
        return True

    def mint(self, sender: str, to: str, amount: int) -> None:
        if to_checksum_address(sender) != self.minter:
            raise ContractRevert("PaymentToken: caller is not the minter")
        if to_checksum_address(to) == ZERO_ADDRESS:
            raise ContractRevert("PaymentToken: mint to the zero address")
        self._credit(to, amount)
        self.total_supply += amount

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        if self.balance_of(sender) < amount:
            raise ContractRevert("ERC20: transfer amount exceeds balance")
        self._balances[to_checksum_address(sender)] = self.balance_of(sender) - amount
        self._credit(to, amount)
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise ContractRevert("ERC20: insufficient allowance")
        if self.balance_of(owner) < amount:
            raise ContractRevert("ERC20: transfer amount exceeds balance")
        self._allowances[(to_checksum_address(owner), to_checksum_address(spender))] = allowed - amount
        self._balances[to_checksum_address(owner)] = self.balance_of(owner) - amount
        self._credit(to, amount)
        return True

    def handle_call(self, caller: str, payload: bytes) -> bytes:
        """Execute ABI-encoded ``payload`` sent by ``caller``.

        Raises:
            TargetReverted: On an unknown selector, malformed arguments or a
                failing transfer.
        """
        entry = self.SELECTORS.get(bytes(payload[:4]))
        if entry is None:
            raise TargetReverted()
        name, types = entry
        try:
            args = decode(types, bytes(payload[4:]))
        except DecodingError as e:
            raise TargetReverted() from e
        try:
            if name == "transfer":
                result = self.transfer(caller, args[0], args[1])
            elif name == "approve":
                result = self.approve(caller, args[0], args[1])
            elif name == "transferFrom":
                result = self.transfer_from(caller, args[0], args[1], args[2])
            elif name == "balanceOf":
                return encode(["uint256"], [self.balance_of(args[0])])
            else:
                return encode(["uint256"], [self.allowance(args[0], args[1])])
        except ContractRevert as e:
            raise TargetReverted(e.reason) from e
        return encode(["bool"], [result])

    def _credit(self, account: str, amount: int) -> None:
        key = to_checksum_address(account)
        self._balances[key] = self._balances.get(key, 0) + amount

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total_supply": self.total_supply,
            "balances": dict(self._balances),
            "allowances": dict(self._allowances),
        }

    def restore(self, state: Dict[str, Any]) -> None:
        self.total_supply = state["total_supply"]
        self._balances = dict(state["balances"])
        self._allowances = dict(state["allowances"])


# ==================== Relay Contract ====================

@dataclass(frozen=True)
class RelayLog:
    """One emitted event: name plus decoded arguments."""
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallOutcome:
    """Return value of ``execute_authorized_call``."""
    success: bool
    return_data: bytes
    charged: int
    logs: List[RelayLog]


TargetInvoker = Callable[[str, bytes], bytes]


class RelayContract:
    """
    Model of ``MetaTxRelay``.

    Attributes:
        address: Relay contract address (EIP-712 ``verifyingContract``).
        chain_id: Chain the contract is deployed on.
        owner: Administrator account.
        relayer: The only account allowed to call ``execute_authorized_call``.
        payment_token: Token the charge is pulled in.
        fee_bps: Relayer fee rate, at most ``MAX_FEE_BPS``.
        paused: When set, executions revert.
        nonces: Next expected nonce per requester.
    """

    MAX_FEE_BPS = MAX_FEE_BPS

    def __init__(
        self,
        *,
        address: str,
        chain_id: int,
        owner: str,
        relayer: str,
        payment_token: str,
        fee_bps: int = 0,
        domain_name: str = RELAY_DOMAIN_NAME,
        domain_version: str = RELAY_DOMAIN_VERSION,
    ):
        if fee_bps > MAX_FEE_BPS:
            raise ContractRevert("MetaTxRelay: fee too high")
        self.address = to_checksum_address(address)
        self.chain_id = chain_id
        self.owner = to_checksum_address(owner)
        self.relayer = to_checksum_address(relayer)
        self.payment_token = to_checksum_address(payment_token)
        self.fee_bps = fee_bps
        self.paused = False
        self.domain_name = domain_name
        self.domain_version = domain_version
        self.nonces: Dict[str, int] = {}
        self.DOMAIN_SEPARATOR = compute_domain_separator(
            chain_id=chain_id,
            relay_address=self.address,
            domain_name=domain_name,
            domain_version=domain_version,
        )

    # ---- views ----

    def nonce_of(self, requester: str) -> int:
        return self.nonces.get(to_checksum_address(requester), 0)

    def hash_meta_transaction(self, call: MetaTransactionMessage) -> bytes:
        return hash_meta_transaction(self._typed_data(call))

    def _typed_data(self, call: MetaTransactionMessage):
        return build_meta_transaction_typed_data(
            chain_id=self.chain_id,
            relay_address=self.address,
            requester=call.requester,
            target=call.target,
            payload=call.payload,
            tier=call.tier,
            nonce=call.nonce,
            deadline=call.deadline,
            domain_name=self.domain_name,
            domain_version=self.domain_version,
        )

    # ---- relayer entry point ----

    def execute_authorized_call(
        self,
        sender: str,
        call: MetaTransactionMessage,
        signature: bytes,
        charge_amount: int,
        *,
        timestamp: int,
        token: PaymentToken,
        invoke_target: TargetInvoker,
    ) -> CallOutcome:
        """
        Execute one authorized call on behalf of ``call.requester``.

        Args:
            sender: ``msg.sender`` of the relay transaction.
            call: The signed MetaCall fields.
            signature: Packed 65-byte signature of the requester.
            charge_amount: Total charge computed off-chain (base + fee).
            timestamp: ``block.timestamp``.
            token: Payment token contract.
            invoke_target: Performs the low-level call ``(target, payload) -> returnData``;
                raises ``TargetReverted`` when the target fails.

        Raises:
            ContractRevert: For any check failure or a failed payment pull.
                Callers must restore the pre-call snapshot.
        """
        if to_checksum_address(sender) != self.relayer:
            raise ContractRevert("MetaTxRelay: caller is not the relayer")
        if self.paused:
            raise ContractRevert("MetaTxRelay: paused")
        if timestamp > call.deadline:
            raise ContractRevert("MetaTxRelay: authorization expired")
        if to_checksum_address(call.target) in (self.payment_token, self.address):
            raise ContractRevert("MetaTxRelay: forbidden target")

        try:
            signer = recover_meta_transaction_signer(self._typed_data(call), signature)
        except InvalidSignature:
            raise ContractRevert("MetaTxRelay: invalid signature")
        requester = to_checksum_address(call.requester)
        if signer != requester:
            raise ContractRevert("MetaTxRelay: invalid signature")

        if self.nonce_of(requester) != call.nonce:
            raise ContractRevert("MetaTxRelay: invalid nonce")
        self.nonces[requester] = call.nonce + 1

        try:
            return_data = invoke_target(to_checksum_address(call.target), call.payload)
            success = True
        except TargetReverted as e:
            return_data = e.data
            success = False

        charged = 0
        if success and charge_amount > 0:
            # a ContractRevert here unwinds the nonce advance as well
            token.transfer_from(self.address, requester, self.relayer, charge_amount)
            charged = charge_amount

        log = RelayLog(
            name="MetaTransactionExecuted",
            args={
                "requester": requester,
                "target": to_checksum_address(call.target),
                "nonce": call.nonce,
                "success": success,
                "charged": charged,
                "returnData": return_data,
            },
        )
        return CallOutcome(
            success=success,
            return_data=return_data,
            charged=charged,
            logs=[log],
        )

    # ---- administration ----

    def _only_owner(self, sender: str) -> None:
        if to_checksum_address(sender) != self.owner:
            raise ContractRevert("MetaTxRelay: caller is not the owner")

    def set_relayer(self, sender: str, new_relayer: str) -> RelayLog:
        self._only_owner(sender)
        if to_checksum_address(new_relayer) == ZERO_ADDRESS:
            raise ContractRevert("MetaTxRelay: zero relayer")
        previous, self.relayer = self.relayer, to_checksum_address(new_relayer)
        return RelayLog("RelayerChanged", {"previousRelayer": previous, "newRelayer": self.relayer})

    def set_payment_token(self, sender: str, new_token: str) -> None:
        self._only_owner(sender)
        if to_checksum_address(new_token) == ZERO_ADDRESS:
            raise ContractRevert("MetaTxRelay: zero token")
        self.payment_token = to_checksum_address(new_token)

    def set_fee_rate(self, sender: str, new_fee_bps: int) -> RelayLog:
        self._only_owner(sender)
        if new_fee_bps > MAX_FEE_BPS:
            raise ContractRevert("MetaTxRelay: fee too high")
        self.fee_bps = new_fee_bps
        return RelayLog("FeeRateChanged", {"newFeeBps": new_fee_bps})

    def pause(self, sender: str) -> None:
        self._only_owner(sender)
        self.paused = True

    def unpause(self, sender: str) -> None:
        self._only_owner(sender)
        self.paused = False

    def transfer_ownership(self, sender: str, new_owner: str) -> None:
        self._only_owner(sender)
        if to_checksum_address(new_owner) == ZERO_ADDRESS:
            raise ContractRevert("MetaTxRelay: zero owner")
        self.owner = to_checksum_address(new_owner)

    # ---- state ----

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "owner": self.owner,
            "relayer": self.relayer,
            "payment_token": self.payment_token,
            "fee_bps": self.fee_bps,
            "paused": self.paused,
            "nonces": self.nonces,
        })

    def restore(self, state: Dict[str, Any]) -> None:
        self.owner = state["owner"]
        self.relayer = state["relayer"]
        self.payment_token = state["payment_token"]
        self.fee_bps = state["fee_bps"]
        self.paused = state["paused"]
        self.nonces = dict(state["nonces"])
