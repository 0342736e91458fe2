"""
Single-writer submitter tests: relayer nonce sequencing, stale nonce
recovery, back-pressure and shutdown.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import REQUESTER
from metarelay.engine.exceptions import RelayerBusy, RelayTransactionFailed, StaleRelayerNonce
from metarelay.facilitator.submitter import TransactionSubmitter


def _gateway(tx_counts, mint_results):
    gateway = AsyncMock()
    gateway.relayer_tx_count = AsyncMock(side_effect=list(tx_counts))
    gateway.submit_mint = AsyncMock(side_effect=list(mint_results))
    return gateway


def _tx_nonces(gateway):
    return [call.kwargs["tx_nonce"] for call in gateway.submit_mint.await_args_list]


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestTransactionSubmitter:

    @pytest.mark.asyncio
    async def test_sequential_jobs_use_consecutive_nonces(self):
        gateway = _gateway([5], ["0x1", "0x2", "0x3"])
        submitter = TransactionSubmitter(gateway)
        try:
            hashes = [await submitter.submit_mint(REQUESTER, 1) for _ in range(3)]
        finally:
            await submitter.stop()

        assert hashes == ["0x1", "0x2", "0x3"]
        assert _tx_nonces(gateway) == [5, 6, 7]
        assert gateway.relayer_tx_count.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_jobs_never_share_a_nonce(self):
        gateway = _gateway([0], [f"0x{i}" for i in range(10)])
        submitter = TransactionSubmitter(gateway)
        try:
            await asyncio.gather(*(submitter.submit_mint(REQUESTER, 1) for _ in range(10)))
        finally:
            await submitter.stop()

        assert sorted(_tx_nonces(gateway)) == list(range(10))

    @pytest.mark.asyncio
    async def test_stale_nonce_resyncs_and_retries_once(self):
        gateway = _gateway([3, 7], [StaleRelayerNonce("nonce too low"), "0xabc"])
        submitter = TransactionSubmitter(gateway)
        try:
            tx_hash = await submitter.submit_mint(REQUESTER, 1)
        finally:
            await submitter.stop()

        assert tx_hash == "0xabc"
        assert _tx_nonces(gateway) == [3, 7]

    @pytest.mark.asyncio
    async def test_failed_broadcast_rereads_nonce_next_time(self):
        gateway = _gateway([0, 4], [RelayTransactionFailed("rejected"), "0x2"])
        submitter = TransactionSubmitter(gateway)
        try:
            with pytest.raises(RelayTransactionFailed):
                await submitter.submit_mint(REQUESTER, 1)
            assert await submitter.submit_mint(REQUESTER, 1) == "0x2"
        finally:
            await submitter.stop()

        assert _tx_nonces(gateway) == [0, 4]

    @pytest.mark.asyncio
    async def test_full_queue_fails_fast(self):
        release = asyncio.Event()

        async def slow_mint(recipient, amount, *, tx_nonce):
            await release.wait()
            return f"0x{tx_nonce}"

        gateway = AsyncMock()
        gateway.relayer_tx_count = AsyncMock(return_value=0)
        gateway.submit_mint = AsyncMock(side_effect=slow_mint)
        submitter = TransactionSubmitter(gateway, queue_size=1)
        try:
            in_flight = asyncio.create_task(submitter.submit_mint(REQUESTER, 1))
            await _settle()
            queued = asyncio.create_task(submitter.submit_mint(REQUESTER, 1))
            await _settle()

            with pytest.raises(RelayerBusy) as exc:
                await submitter.submit_mint(REQUESTER, 1)
            assert exc.value.details == {"queueSize": 1}

            release.set()
            assert await in_flight == "0x0"
            assert await queued == "0x1"
        finally:
            await submitter.stop()

    @pytest.mark.asyncio
    async def test_stop_fails_waiting_jobs(self):
        release = asyncio.Event()

        async def slow_mint(recipient, amount, *, tx_nonce):
            await release.wait()
            return "0x0"

        gateway = AsyncMock()
        gateway.relayer_tx_count = AsyncMock(return_value=0)
        gateway.submit_mint = AsyncMock(side_effect=slow_mint)
        submitter = TransactionSubmitter(gateway, queue_size=4)

        in_flight = asyncio.create_task(submitter.submit_mint(REQUESTER, 1))
        await _settle()
        queued = asyncio.create_task(submitter.submit_mint(REQUESTER, 1))
        await _settle()

        await submitter.stop()

        assert not submitter.running
        with pytest.raises(RelayerBusy):
            await queued
        in_flight.cancel()
        with pytest.raises(asyncio.CancelledError):
            await in_flight
