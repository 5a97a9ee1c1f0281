import asyncio

from scriptvault.core.locks import KeyedLock


def test_same_key_is_serialized_and_released():
    locks = KeyedLock()
    events = []

    async def worker(name):
        async with locks.hold("orders"):
            events.append(f"{name}:start")
            await asyncio.sleep(0.01)
            events.append(f"{name}:end")

    async def scenario():
        await asyncio.gather(worker("a"), worker("b"))

    asyncio.run(scenario())

    assert events in (
        ["a:start", "a:end", "b:start", "b:end"],
        ["b:start", "b:end", "a:start", "a:end"],
    )
    assert len(locks) == 0


def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    events = []

    async def worker(key):
        async with locks.hold(key):
            events.append(f"{key}:start")
            await asyncio.sleep(0.01)
            events.append(f"{key}:end")

    async def scenario():
        await asyncio.gather(worker("orders"), worker("invoices"))

    asyncio.run(scenario())

    assert events[:2] == ["orders:start", "invoices:start"]
    assert len(locks) == 0


def test_lock_is_released_when_body_raises():
    locks = KeyedLock()

    async def scenario():
        try:
            async with locks.hold("orders"):
                raise ValueError("boom")
        except ValueError:
            pass
        async with locks.hold("orders"):
            return True

    assert asyncio.run(scenario()) is True
    assert len(locks) == 0
