"""
In-Process Local Chain

``LocalChainGateway`` implements ``ChainGateway`` on top of the Python model
of the relay contract. It keeps native balances, account transaction
counters, blocks and receipts in memory, meters gas with a simple model and
can either mine every transaction immediately or hold them until ``mine()``
is called (to exercise the pending path).

Gas model:
    target call    = 21000 + calldata gas + target gas       (what estimation returns)
    relay tx       = target call + relay overhead            (what the receipt reports)
    failed relay   = 21000 + calldata gas
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from eth_account import Account
from eth_utils import keccak, to_checksum_address

from ..adapters.bases import ChainGateway
from ..adapters.evm.constants import BASE_TX_GAS
from ..adapters.evm.standards import MetaTransactionMessage
from ..engine.exceptions import RelayerUnderfunded, RelayTransactionFailed, SimulationFailed, StaleRelayerNonce
from ..schemas.bases import ExecutionReceipt, FacilitationRequest, RelayExecution, TransactionStatus
from .relay import ContractRevert, PaymentToken, RelayContract, TargetReverted

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_CHAIN_ID = 31337
TOKEN_CALL_GAS = 35_000


def calldata_gas(data: bytes) -> int:
    """EIP-2028 calldata cost: 4 per zero byte, 16 per non-zero byte."""
    zeros = data.count(0)
    return zeros * 4 + (len(data) - zeros) * 16


def _derive_address(label: str) -> str:
    return to_checksum_address(keccak(text=label)[-20:])


@dataclass
class LocalTarget:
    """
    A contract deployed on the local chain.

    Attributes:
        handler: ``(caller, payload) -> returnData``; raises ``TargetReverted``
            to revert.
        gas: Gas the call consumes.
        simulate: Side-effect free variant used for gas estimation. Defaults
            to ``handler``, so targets that mutate state should supply one.
    """
    handler: Callable[[str, bytes], bytes]
    gas: int = 30_000
    simulate: Optional[Callable[[str, bytes], bytes]] = None


@dataclass
class _PendingTx:
    tx_hash: str
    kind: str
    gas_limit: int
    gas_price: int
    request: Optional[FacilitationRequest] = None
    charge_amount: int = 0
    recipient: Optional[str] = None
    amount: int = 0


@dataclass
class _MinedTx:
    block_number: int
    status: TransactionStatus
    gas_used: int
    gas_price: int
    execution: Optional[RelayExecution] = None


class LocalChainGateway(ChainGateway):
    """
    ``ChainGateway`` backed by an in-memory chain.

    Example:
        chain = LocalChainGateway(fee_bps=100)
        chain.register_target(counter_address, LocalTarget(handler=increment))
        chain.fund_requester(alice, 10_000_000)  # mint + approve relay
    """

    def __init__(
        self,
        *,
        chain_id: int = DEFAULT_LOCAL_CHAIN_ID,
        relayer_private_key: Optional[str] = None,
        owner_address: Optional[str] = None,
        fee_bps: int = 100,
        relayer_native_balance: int = 10**18,
        gas_price: int = 1_000_000_000,
        relay_gas_overhead: int = 60_000,
        token_decimals: int = 6,
        auto_mine: bool = True,
        clock: Callable[[], float] = time.time,
        explorer_url: Optional[str] = None,
    ):
        account = Account.from_key(relayer_private_key) if relayer_private_key else Account.create()
        self.chain_id = chain_id
        self.relayer_address = account.address
        self.explorer_url = explorer_url
        self.relay_gas_overhead = relay_gas_overhead
        self.auto_mine = auto_mine
        self._clock = clock
        self._gas_price = gas_price

        self.token = PaymentToken(
            address=_derive_address(f"metarelay:{chain_id}:payment-token"),
            minter=self.relayer_address,
            decimals=token_decimals,
        )
        self.relay = RelayContract(
            address=_derive_address(f"metarelay:{chain_id}:relay"),
            chain_id=chain_id,
            owner=owner_address or self.relayer_address,
            relayer=self.relayer_address,
            payment_token=self.token.address,
            fee_bps=fee_bps,
        )
        self.relay_address = self.relay.address

        self.targets: Dict[str, LocalTarget] = {
            self.token.address: LocalTarget(
                handler=self.token.handle_call,
                gas=TOKEN_CALL_GAS,
                simulate=self._simulate_token_call,
            ),
        }
        self.native_balances: Dict[str, int] = {self.relayer_address: relayer_native_balance}
        self.tx_counts: Dict[str, int] = {}
        self.block_number = 0
        self.calls: List[str] = []
        self._pending: List[_PendingTx] = []
        self._mined: Dict[str, _MinedTx] = {}

    # ------------------------------------------------------------------
    # Test / development helpers
    # ------------------------------------------------------------------

    def register_target(self, address: str, target: LocalTarget) -> str:
        address = to_checksum_address(address)
        self.targets[address] = target
        return address

    def fund_requester(self, requester: str, amount: int, *, approve: Optional[int] = None) -> None:
        """Mint ``amount`` payment tokens to ``requester`` and approve the relay for ``approve`` (default: amount)."""
        self.token.mint(self.relayer_address, requester, amount)
        self.token.approve(requester, self.relay_address, amount if approve is None else approve)

    def set_native_balance(self, address: str, wei: int) -> None:
        self.native_balances[to_checksum_address(address)] = wei

    def set_gas_price(self, wei: int) -> None:
        self._gas_price = wei

    def mine(self, blocks: int = 1) -> None:
        """Include every pending transaction in the next block, then mine ``blocks - 1`` empty blocks."""
        for _ in range(blocks):
            self.block_number += 1
            pending, self._pending = self._pending, []
            for tx in pending:
                self._include(tx)

    def _record(self, name: str) -> None:
        self.calls.append(name)

    def _simulate_token_call(self, caller: str, payload: bytes) -> bytes:
        state = self.token.snapshot()
        try:
            return self.token.handle_call(caller, payload)
        finally:
            self.token.restore(state)

    # ------------------------------------------------------------------
    # Relay contract views
    # ------------------------------------------------------------------

    async def domain_separator(self) -> bytes:
        self._record("domain_separator")
        return self.relay.DOMAIN_SEPARATOR

    async def relay_nonce(self, requester: str) -> int:
        self._record("relay_nonce")
        return self.relay.nonce_of(requester)

    async def payment_token(self) -> str:
        self._record("payment_token")
        return self.relay.payment_token

    async def fee_rate_bps(self) -> int:
        self._record("fee_rate_bps")
        return self.relay.fee_bps

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def token_balance(self, token: str, owner: str) -> int:
        self._record("token_balance")
        self._require_token(token)
        return self.token.balance_of(owner)

    async def token_allowance(self, token: str, owner: str, spender: str) -> int:
        self._record("token_allowance")
        self._require_token(token)
        return self.token.allowance(owner, spender)

    async def native_balance(self, address: str) -> int:
        self._record("native_balance")
        return self.native_balances.get(to_checksum_address(address), 0)

    def _require_token(self, token: str) -> None:
        if to_checksum_address(token) != self.token.address:
            raise ValueError(f"Unknown token on local chain: {token}")

    # ------------------------------------------------------------------
    # Gas
    # ------------------------------------------------------------------

    async def gas_price(self) -> int:
        self._record("gas_price")
        return self._gas_price

    async def estimate_call_gas(self, target: str, payload: bytes) -> int:
        self._record("estimate_call_gas")
        contract = self.targets.get(to_checksum_address(target))
        if contract is None:
            # call to an account without code succeeds and does nothing
            return BASE_TX_GAS + calldata_gas(payload)
        simulate = contract.simulate or contract.handler
        try:
            simulate(self.relay_address, payload)
        except TargetReverted as e:
            raise SimulationFailed(
                "Target call reverts in simulation",
                details={"target": to_checksum_address(target), "reason": e.reason or None},
            ) from e
        return BASE_TX_GAS + calldata_gas(payload) + contract.gas

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def relayer_tx_count(self) -> int:
        self._record("relayer_tx_count")
        return self.tx_counts.get(self.relayer_address, 0)

    def _take_tx_nonce(self, tx_nonce: int) -> str:
        expected = self.tx_counts.get(self.relayer_address, 0)
        if tx_nonce < expected:
            raise StaleRelayerNonce("nonce too low", details={"expected": expected, "provided": tx_nonce})
        if tx_nonce > expected:
            raise RelayTransactionFailed("nonce too high", details={"expected": expected, "provided": tx_nonce})
        self.tx_counts[self.relayer_address] = expected + 1
        return "0x" + keccak(
            self.chain_id.to_bytes(32, "big")
            + bytes.fromhex(self.relayer_address[2:])
            + tx_nonce.to_bytes(32, "big")
        ).hex()

    def _submit(self, tx: _PendingTx) -> str:
        self._pending.append(tx)
        if self.auto_mine:
            self.mine()
        return tx.tx_hash

    async def submit_execution(
        self,
        request: FacilitationRequest,
        charge_amount: int,
        *,
        tx_nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> str:
        self._record("submit_execution")
        upfront = gas_limit * gas_price
        balance = self.native_balances.get(self.relayer_address, 0)
        if balance < upfront:
            raise RelayerUnderfunded(
                "insufficient funds for gas * price",
                details={"required": str(upfront), "available": str(balance)},
            )
        tx_hash = self._take_tx_nonce(tx_nonce)
        return self._submit(_PendingTx(
            tx_hash=tx_hash,
            kind="execute",
            gas_limit=gas_limit,
            gas_price=gas_price,
            request=request,
            charge_amount=charge_amount,
        ))

    async def submit_mint(self, recipient: str, amount: int, *, tx_nonce: int) -> str:
        self._record("submit_mint")
        tx_hash = self._take_tx_nonce(tx_nonce)
        return self._submit(_PendingTx(
            tx_hash=tx_hash,
            kind="mint",
            gas_limit=100_000,
            gas_price=self._gas_price,
            recipient=recipient,
            amount=amount,
        ))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _include(self, tx: _PendingTx) -> None:
        if tx.kind == "mint":
            try:
                self.token.mint(self.relayer_address, tx.recipient, tx.amount)
                status = TransactionStatus.SUCCESS
            except ContractRevert as e:
                logger.warning("Local mint reverted: %s", e.reason)
                status = TransactionStatus.FAILED
            self._charge_gas(BASE_TX_GAS + 30_000, tx.gas_price)
            self._mined[tx.tx_hash] = _MinedTx(self.block_number, status, BASE_TX_GAS + 30_000, tx.gas_price)
            return

        request = tx.request
        call = MetaTransactionMessage(
            requester=request.requester,
            target=request.target,
            payload=request.payload,
            tier=request.tier.code,
            nonce=request.nonce,
            deadline=request.deadline,
        )
        intrinsic = BASE_TX_GAS + calldata_gas(request.payload) + calldata_gas(request.signature)
        target_gas = 0
        target = self.targets.get(to_checksum_address(request.target))

        def invoke(address: str, payload: bytes) -> bytes:
            nonlocal target_gas
            if target is None:
                return b""
            target_gas = target.gas
            return target.handler(self.relay_address, payload)

        relay_state = self.relay.snapshot()
        token_state = self.token.snapshot()
        try:
            outcome = self.relay.execute_authorized_call(
                self.relayer_address,
                call,
                request.signature,
                tx.charge_amount,
                timestamp=int(self._clock()),
                token=self.token,
                invoke_target=invoke,
            )
        except ContractRevert as e:
            self.relay.restore(relay_state)
            self.token.restore(token_state)
            logger.warning("Local relay transaction %s reverted: %s", tx.tx_hash, e.reason)
            self._charge_gas(intrinsic, tx.gas_price)
            self._mined[tx.tx_hash] = _MinedTx(self.block_number, TransactionStatus.FAILED, intrinsic, tx.gas_price)
            return

        gas_used = intrinsic + self.relay_gas_overhead + target_gas
        if gas_used > tx.gas_limit:
            self.relay.restore(relay_state)
            self.token.restore(token_state)
            logger.warning("Local relay transaction %s ran out of gas", tx.tx_hash)
            self._charge_gas(tx.gas_limit, tx.gas_price)
            self._mined[tx.tx_hash] = _MinedTx(self.block_number, TransactionStatus.FAILED, tx.gas_limit, tx.gas_price)
            return

        self._charge_gas(gas_used, tx.gas_price)
        event = outcome.logs[-1].args
        self._mined[tx.tx_hash] = _MinedTx(
            self.block_number,
            TransactionStatus.SUCCESS,
            gas_used,
            tx.gas_price,
            execution=RelayExecution(
                requester=event["requester"],
                target=event["target"],
                nonce=event["nonce"],
                success=event["success"],
                charged=event["charged"],
                return_data=event["returnData"],
            ),
        )

    def _charge_gas(self, gas_used: int, gas_price: int) -> None:
        balance = self.native_balances.get(self.relayer_address, 0)
        self.native_balances[self.relayer_address] = max(0, balance - gas_used * gas_price)

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def get_receipt(self, tx_hash: str) -> Optional[ExecutionReceipt]:
        self._record("get_receipt")
        mined = self._mined.get(tx_hash)
        if mined is None:
            return None
        return ExecutionReceipt(
            tx_hash=tx_hash,
            block_number=mined.block_number,
            status=mined.status,
            gas_used=mined.gas_used,
            effective_gas_price=mined.gas_price,
            confirmations=self.block_number - mined.block_number + 1,
            execution=mined.execution,
        )
