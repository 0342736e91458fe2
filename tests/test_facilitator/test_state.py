"""
Tests for per-requester locks and the bundled facilitator state.
"""

import asyncio

import pytest

from metarelay.facilitator.state import KeyedLocks, RelayState


class TestKeyedLocks:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("alice"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        entered = asyncio.Event()

        async with locks.hold("alice"):
            async with locks.hold("bob"):
                entered.set()

        assert entered.is_set()

    @pytest.mark.asyncio
    async def test_locks_are_dropped_when_idle(self):
        locks = KeyedLocks()
        async with locks.hold("alice"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("alice"):
                raise RuntimeError("boom")

        async with locks.hold("alice"):
            pass
        assert len(locks) == 0


class TestRelayState:

    def test_create_uses_settings(self, settings, chain):
        state = RelayState.create(settings, chain)

        assert state.request_limiter.limit == settings.rate_limit_requests
        assert state.request_limiter.window_seconds == settings.rate_limit_window_seconds
        assert not state.health.underfunded

    def test_clear_resets_counters(self, settings, chain):
        state = RelayState.create(settings, chain)
        state.request_limiter.hit("alice")
        state.health.mark_underfunded("test")

        state.clear()

        assert len(state.request_limiter) == 0
        assert not state.health.underfunded
