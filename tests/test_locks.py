import asyncio

import pytest

from companion.core.errors import ConversationBusy
from companion.orchestrator.locks import TurnLockRegistry


async def test_same_conversation_is_serialized():
    locks = TurnLockRegistry(timeout=1.0)
    order = []

    async def turn(name: str):
        async with locks.hold("c1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.02)
            order.append(f"{name}-end")

    await asyncio.gather(turn("a"), turn("b"))
    assert order in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )


async def test_different_conversations_run_concurrently():
    locks = TurnLockRegistry(timeout=1.0)
    inside = asyncio.Event()
    release = asyncio.Event()

    async def first():
        async with locks.hold("c1"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(first())
    await inside.wait()

    async with locks.hold("c2"):
        assert locks.is_locked("c1")
        assert locks.is_locked("c2")

    release.set()
    await task


async def test_timeout_raises_busy():
    locks = TurnLockRegistry(timeout=0.05)
    release = asyncio.Event()
    inside = asyncio.Event()

    async def holder():
        async with locks.hold("c1"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await inside.wait()

    with pytest.raises(ConversationBusy):
        async with locks.hold("c1"):
            pass

    release.set()
    await task


async def test_entries_are_dropped_when_idle():
    locks = TurnLockRegistry(timeout=1.0)
    async with locks.hold("c1"):
        pass
    assert not locks.is_locked("c1")
    assert locks._entries == {}


async def test_lock_released_on_error():
    locks = TurnLockRegistry(timeout=0.1)
    with pytest.raises(RuntimeError):
        async with locks.hold("c1"):
            raise RuntimeError("boom")

    async with locks.hold("c1"):
        assert locks.is_locked("c1")


async def test_redis_outage_falls_back_to_local_lock():
    from redis.exceptions import ConnectionError as RedisConnectionError

    async def factory():
        raise RedisConnectionError("connection refused")

    locks = TurnLockRegistry(timeout=0.5, redis_factory=factory)
    async with locks.hold("c1"):
        assert locks.is_locked("c1")


async def test_acquire_racing_the_deadline_never_leaks_the_lock():
    locks = TurnLockRegistry(timeout=0)
    lock = asyncio.Lock()
    for _ in range(20):
        if await locks._acquire(lock):
            lock.release()
        assert not lock.locked()


async def test_timed_out_waiter_leaves_lock_to_holder():
    locks = TurnLockRegistry(timeout=0.01)
    lock = asyncio.Lock()
    await lock.acquire()

    assert not await locks._acquire(lock)
    assert lock.locked()

    lock.release()
    await asyncio.sleep(0)
    assert not lock.locked()


async def test_cancelled_waiter_does_not_block_later_turns():
    locks = TurnLockRegistry(timeout=1.0)
    release = asyncio.Event()
    inside = asyncio.Event()

    async def holder():
        async with locks.hold("c1"):
            inside.set()
            await release.wait()

    async def waiter():
        async with locks.hold("c1"):
            pass

    held = asyncio.create_task(holder())
    await inside.wait()
    waiting = asyncio.create_task(waiter())
    await asyncio.sleep(0.01)
    waiting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting

    release.set()
    await held
    async with locks.hold("c1"):
        assert locks.is_locked("c1")
