"""Tests for the per-key lock registry."""
import asyncio

import pytest

from agentic_checkout.services.locks import KeyedLocks


class TestKeyedLocks:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        """Should never let two holders of one key overlap."""
        locks = KeyedLocks("test")
        active = 0
        max_active = 0

        async def worker():
            nonlocal active, max_active
            async with locks.hold("cs_1"):
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        """Should not block holders of unrelated keys."""
        locks = KeyedLocks("test")
        entered = asyncio.Event()

        async def first():
            async with locks.hold("a"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def second():
            async with locks.hold("b"):
                entered.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_registry_is_emptied_after_release(self):
        """Should drop locks nobody holds or waits on."""
        locks = KeyedLocks("test")
        async with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        """Should release the key when the body raises."""
        locks = KeyedLocks("test")
        with pytest.raises(ValueError):
            async with locks.hold("a"):
                raise ValueError("boom")
        assert len(locks) == 0
        async with locks.hold("a"):
            pass
