"""
Relay Contract Model Test Suite

Exercises ``RelayContract`` directly (check ordering, nonce consumption,
charging rules, administration) and through ``LocalChainGateway`` (state
rollback of reverted transactions, pending transactions, relayer nonces).
"""

import time

import pytest
from eth_abi import decode, encode

from conftest import (
    COUNTER_TARGET,
    INCREMENT_CALLDATA,
    INTRUDER,
    INTRUDER_KEY,
    REQUESTER,
    REVERTING_TARGET,
    signed_request,
)
from metarelay.adapters.evm.signatures import build_meta_transaction_typed_data
from metarelay.adapters.evm.standards import MetaTransactionMessage
from metarelay.adapters.evm.verifies import hash_meta_transaction
from metarelay.engine.exceptions import RelayerUnderfunded, SimulationFailed, StaleRelayerNonce
from metarelay.onchain.local import TOKEN_CALL_GAS
from metarelay.onchain.relay import ContractRevert, RelayContract, TargetReverted
from metarelay.schemas.bases import TransactionStatus

NOW = int(time.time())


def _call(request):
    return MetaTransactionMessage(
        requester=request.requester,
        target=request.target,
        payload=request.payload,
        tier=request.tier.code,
        nonce=request.nonce,
        deadline=request.deadline,
    )


def _execute(chain, request, charge=0, *, sender=None, timestamp=NOW, invoke=None):
    return chain.relay.execute_authorized_call(
        sender or chain.relayer_address,
        _call(request),
        request.signature,
        charge,
        timestamp=timestamp,
        token=chain.token,
        invoke_target=invoke or (lambda target, payload: b"\x01"),
    )


def _reverting(target, payload):
    raise TargetReverted("Counter: paused")


def _token_call(selector, types, args):
    return bytes.fromhex(selector) + encode(types, args)


class TestExecuteAuthorizedCall:

    def test_success_advances_nonce_and_charges(self, chain):
        chain.fund_requester(REQUESTER, 5000)
        request = signed_request(chain)

        outcome = _execute(chain, request, 1000)

        assert outcome.success
        assert outcome.charged == 1000
        assert chain.relay.nonce_of(REQUESTER) == 1
        assert chain.token.balance_of(REQUESTER) == 4000
        assert chain.token.balance_of(chain.relayer_address) == 1000
        log = outcome.logs[-1]
        assert log.name == "MetaTransactionExecuted"
        assert log.args["nonce"] == 0
        assert log.args["success"] is True

    def test_target_revert_consumes_nonce_without_charge(self, chain):
        chain.fund_requester(REQUESTER, 5000)
        request = signed_request(chain)

        outcome = _execute(chain, request, 1000, invoke=_reverting)

        assert not outcome.success
        assert outcome.charged == 0
        assert chain.relay.nonce_of(REQUESTER) == 1
        assert chain.token.balance_of(REQUESTER) == 5000
        assert outcome.return_data.startswith(bytes.fromhex("08c379a0"))

    def test_only_relayer_may_call(self, chain):
        with pytest.raises(ContractRevert, match="not the relayer"):
            _execute(chain, signed_request(chain), sender=INTRUDER)

    def test_paused_rejects(self, chain):
        chain.relay.pause(chain.relay.owner)
        with pytest.raises(ContractRevert, match="paused"):
            _execute(chain, signed_request(chain))

    def test_expired_rejects(self, chain):
        request = signed_request(chain, deadline=NOW - 1)
        with pytest.raises(ContractRevert, match="expired"):
            _execute(chain, request)

    def test_deadline_equal_to_block_time_accepted(self, chain):
        assert _execute(chain, signed_request(chain, deadline=NOW), timestamp=NOW).success

    def test_wrong_signer_rejects(self, chain):
        request = signed_request(chain, key=INTRUDER_KEY, requester=REQUESTER)
        with pytest.raises(ContractRevert, match="invalid signature"):
            _execute(chain, request)

    @pytest.mark.parametrize("target", ["token", "relay"])
    def test_relay_owned_targets_reject(self, chain, target):
        chain.fund_requester(REQUESTER, 5000)
        address = chain.token.address if target == "token" else chain.relay_address
        request = signed_request(chain, target=address)

        with pytest.raises(ContractRevert, match="forbidden target"):
            _execute(chain, request)
        assert chain.relay.nonce_of(REQUESTER) == 0

    def test_expiry_checked_before_signature(self, chain):
        request = signed_request(chain, key=INTRUDER_KEY, requester=REQUESTER, deadline=NOW - 1)
        with pytest.raises(ContractRevert, match="expired"):
            _execute(chain, request)

    def test_wrong_nonce_rejects(self, chain):
        chain.relay.nonces[REQUESTER] = 6
        with pytest.raises(ContractRevert, match="invalid nonce"):
            _execute(chain, signed_request(chain, nonce=5))
        assert chain.relay.nonce_of(REQUESTER) == 6

    def test_replay_rejects(self, chain):
        request = signed_request(chain)
        _execute(chain, request)
        with pytest.raises(ContractRevert, match="invalid nonce"):
            _execute(chain, request)

    def test_failed_charge_reverts_everything(self, chain):
        chain.fund_requester(REQUESTER, 5000, approve=10)
        request = signed_request(chain)
        snapshot = chain.relay.snapshot()

        with pytest.raises(ContractRevert, match="insufficient allowance"):
            _execute(chain, request, 1000)
        chain.relay.restore(snapshot)

        assert chain.relay.nonce_of(REQUESTER) == 0

    def test_hash_matches_off_chain_digest(self, chain):
        request = signed_request(chain)
        typed = build_meta_transaction_typed_data(
            chain_id=chain.chain_id,
            relay_address=chain.relay_address,
            requester=request.requester,
            target=request.target,
            payload=request.payload,
            tier=request.tier.code,
            nonce=request.nonce,
            deadline=request.deadline,
        )
        assert chain.relay.hash_meta_transaction(_call(request)) == hash_meta_transaction(typed)


class TestAdministration:

    def test_fee_cap_enforced(self, chain):
        owner = chain.relay.owner
        chain.relay.set_fee_rate(owner, RelayContract.MAX_FEE_BPS)
        with pytest.raises(ContractRevert, match="fee too high"):
            chain.relay.set_fee_rate(owner, RelayContract.MAX_FEE_BPS + 1)
        assert chain.relay.fee_bps == RelayContract.MAX_FEE_BPS

    def test_constructor_rejects_high_fee(self):
        with pytest.raises(ContractRevert):
            RelayContract(
                address=COUNTER_TARGET,
                chain_id=1,
                owner=REQUESTER,
                relayer=REQUESTER,
                payment_token=INTRUDER,
                fee_bps=2001,
            )

    @pytest.mark.parametrize("action", [
        lambda relay: relay.set_fee_rate(INTRUDER, 1),
        lambda relay: relay.set_relayer(INTRUDER, INTRUDER),
        lambda relay: relay.set_payment_token(INTRUDER, INTRUDER),
        lambda relay: relay.pause(INTRUDER),
        lambda relay: relay.transfer_ownership(INTRUDER, INTRUDER),
    ])
    def test_owner_only(self, chain, action):
        with pytest.raises(ContractRevert, match="not the owner"):
            action(chain.relay)

    def test_rotate_relayer(self, chain):
        log = chain.relay.set_relayer(chain.relay.owner, INTRUDER)

        assert chain.relay.relayer == INTRUDER
        assert log.args["previousRelayer"] == chain.relayer_address
        with pytest.raises(ContractRevert, match="not the relayer"):
            _execute(chain, signed_request(chain))

    def test_zero_relayer_rejected(self, chain):
        with pytest.raises(ContractRevert, match="zero relayer"):
            chain.relay.set_relayer(chain.relay.owner, "0x" + "00" * 20)

    def test_transfer_ownership(self, chain):
        chain.relay.transfer_ownership(chain.relay.owner, INTRUDER)

        assert chain.relay.owner == INTRUDER
        chain.relay.unpause(INTRUDER)


class TestLocalChain:

    @pytest.mark.asyncio
    async def test_reverting_target_is_included_without_charge(self, chain):
        chain.fund_requester(REQUESTER, 10**9)
        request = signed_request(chain, target=REVERTING_TARGET)

        tx_hash = await chain.submit_execution(request, 1000, tx_nonce=0, gas_limit=500_000, gas_price=1)
        receipt = await chain.get_receipt(tx_hash)

        assert receipt.status == TransactionStatus.SUCCESS
        assert receipt.execution.success is False
        assert receipt.execution.charged == 0
        assert chain.relay.nonce_of(REQUESTER) == 1
        assert chain.token.balance_of(REQUESTER) == 10**9

    @pytest.mark.asyncio
    async def test_failed_relay_tx_rolls_back(self, chain):
        chain.fund_requester(REQUESTER, 10**9, approve=0)
        request = signed_request(chain)

        tx_hash = await chain.submit_execution(request, 1000, tx_nonce=0, gas_limit=500_000, gas_price=1)
        receipt = await chain.get_receipt(tx_hash)

        assert receipt.status == TransactionStatus.FAILED
        assert receipt.execution is None
        assert chain.relay.nonce_of(REQUESTER) == 0

    @pytest.mark.asyncio
    async def test_out_of_gas_rolls_back(self, chain):
        request = signed_request(chain)

        tx_hash = await chain.submit_execution(request, 0, tx_nonce=0, gas_limit=30_000, gas_price=1)
        receipt = await chain.get_receipt(tx_hash)

        assert receipt.status == TransactionStatus.FAILED
        assert receipt.gas_used == 30_000
        assert chain.relay.nonce_of(REQUESTER) == 0

    @pytest.mark.asyncio
    async def test_pending_until_mined(self, chain, counter):
        chain.auto_mine = False
        request = signed_request(chain)

        tx_hash = await chain.submit_execution(request, 0, tx_nonce=0, gas_limit=500_000, gas_price=1)
        assert await chain.get_receipt(tx_hash) is None
        assert counter.value == 0

        chain.mine()
        assert (await chain.get_receipt(tx_hash)).confirmations == 1
        chain.mine(2)
        assert (await chain.get_receipt(tx_hash)).confirmations == 3
        assert counter.value == 1

    @pytest.mark.asyncio
    async def test_relayer_nonce_too_low_is_stale(self, chain):
        await chain.submit_mint(REQUESTER, 1, tx_nonce=0)

        with pytest.raises(StaleRelayerNonce):
            await chain.submit_mint(REQUESTER, 1, tx_nonce=0)
        assert await chain.relayer_tx_count() == 1

    @pytest.mark.asyncio
    async def test_estimate_counter_call(self, chain):
        # 21000 intrinsic + 4 non-zero calldata bytes + target gas
        assert await chain.estimate_call_gas(COUNTER_TARGET, INCREMENT_CALLDATA) == 21_000 + 64 + 26_000

    @pytest.mark.asyncio
    async def test_mint_credits_recipient(self, chain):
        tx_hash = await chain.submit_mint(INTRUDER, 500, tx_nonce=0)

        assert (await chain.get_receipt(tx_hash)).status == TransactionStatus.SUCCESS
        assert chain.token.balance_of(INTRUDER) == 500

    @pytest.mark.asyncio
    async def test_underfunded_relayer_cannot_broadcast(self, chain):
        chain.set_native_balance(chain.relayer_address, 499_999)
        request = signed_request(chain)

        with pytest.raises(RelayerUnderfunded) as exc:
            await chain.submit_execution(request, 0, tx_nonce=0, gas_limit=500_000, gas_price=1)

        assert exc.value.details["required"] == "500000"
        assert await chain.relayer_tx_count() == 0

    @pytest.mark.asyncio
    async def test_payment_token_is_a_callable_target(self, chain):
        payload = _token_call("70a08231", ["address"], [REQUESTER])

        estimate = await chain.estimate_call_gas(chain.token.address, payload)

        assert estimate > 21_000 + TOKEN_CALL_GAS

    @pytest.mark.asyncio
    async def test_token_simulation_leaves_balances_untouched(self, chain):
        chain.fund_requester(REQUESTER, 5000)
        pull = _token_call("23b872dd", ["address", "address", "uint256"], [REQUESTER, INTRUDER, 5000])

        await chain.estimate_call_gas(chain.token.address, pull)

        assert chain.token.balance_of(REQUESTER) == 5000
        assert chain.token.balance_of(INTRUDER) == 0

    @pytest.mark.asyncio
    async def test_token_call_without_allowance_fails_simulation(self, chain):
        chain.token.mint(chain.relayer_address, INTRUDER, 5000)
        pull = _token_call("23b872dd", ["address", "address", "uint256"], [INTRUDER, REQUESTER, 5000])

        with pytest.raises(SimulationFailed):
            await chain.estimate_call_gas(chain.token.address, pull)


class TestPaymentTokenCalls:

    def test_transfer_moves_balance(self, chain):
        chain.token.mint(chain.relayer_address, REQUESTER, 900)

        result = chain.token.handle_call(
            REQUESTER, _token_call("a9059cbb", ["address", "uint256"], [INTRUDER, 400])
        )

        assert decode(["bool"], result) == (True,)
        assert chain.token.balance_of(REQUESTER) == 500
        assert chain.token.balance_of(INTRUDER) == 400

    def test_transfer_from_without_allowance_reverts(self, chain):
        chain.token.mint(chain.relayer_address, REQUESTER, 900)
        pull = _token_call("23b872dd", ["address", "address", "uint256"], [REQUESTER, INTRUDER, 1])

        with pytest.raises(TargetReverted, match="insufficient allowance"):
            chain.token.handle_call(INTRUDER, pull)

    def test_allowance_query(self, chain):
        chain.fund_requester(REQUESTER, 10, approve=7)

        result = chain.token.handle_call(
            INTRUDER, _token_call("dd62ed3e", ["address", "address"], [REQUESTER, chain.relay_address])
        )

        assert decode(["uint256"], result) == (7,)

    @pytest.mark.parametrize("payload", [b"", bytes.fromhex("deadbeef"), bytes.fromhex("a9059cbb") + b"\x01"])
    def test_unknown_or_truncated_call_reverts(self, chain, payload):
        with pytest.raises(TargetReverted):
            chain.token.handle_call(REQUESTER, payload)
