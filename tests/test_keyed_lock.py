"""
Tests for KeyedLock - per-user serialization.
"""
import asyncio

import pytest

from app.core.keyed_lock import KeyedLock


class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        events = []

        async def worker(name):
            async with locks.hold("user_1"):
                events.append(f"{name}:in")
                await asyncio.sleep(0.01)
                events.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a:in", "a:out", "b:in", "b:out"]

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("user_1"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def other():
            async with locks.hold("user_2"):
                inside.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = KeyedLock()

        async with locks.hold("user_1"):
            assert locks.is_locked("user_1")
            assert len(locks) == 1

        assert not locks.is_locked("user_1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(ValueError):
            async with locks.hold("user_1"):
                raise ValueError("boom")

        assert len(locks) == 0
