"""Unit tests for keyed locks."""

import asyncio

import pytest

from hydro.infrastructure.locking import AsyncKeyedLock, KeyedLock


@pytest.mark.unit
class TestKeyedLock:
    def test_reentrant_and_released(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("a"):
                assert len(locks) == 1
        assert len(locks) == 0


@pytest.mark.unit
class TestAsyncKeyedLock:
    """Test per-key serialization of coroutines."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = AsyncKeyedLock()
        events = []

        async def worker(name: str):
            async with locks.hold("instance"):
                events.append(f"{name}-enter")
                await asyncio.sleep(0.01)
                events.append(f"{name}-exit")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (
            ["a-enter", "a-exit", "b-enter", "b-exit"],
            ["b-enter", "b-exit", "a-enter", "a-exit"],
        )
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        locks = AsyncKeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("one"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await inside.wait()
        assert locks.locked("one")

        async with locks.hold("two"):
            assert locks.locked("two")

        release.set()
        await task
        assert not locks.locked("one")

    @pytest.mark.asyncio
    async def test_release_from_another_task(self):
        locks = AsyncKeyedLock()
        await locks.acquire("instance")

        async def release():
            locks.release("instance")

        await asyncio.create_task(release())
        assert not locks.locked("instance")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_timed_out_waiter_leaves_no_entry(self):
        locks = AsyncKeyedLock()
        async with locks.hold("instance"):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(locks.acquire("instance"), 0.01)
        assert len(locks) == 0
