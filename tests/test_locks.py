import asyncio

from inbox.core.locks import KeyedLock


def test_same_key_serializes_and_releases():
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str, delay: float) -> None:
        async with locks.hold(("cfg", "web_chat", "s-1")):
            order.append(f"{name}:start")
            await asyncio.sleep(delay)
            order.append(f"{name}:end")

    async def scenario() -> None:
        await asyncio.gather(worker("a", 0.02), worker("b", 0.0))

    asyncio.run(scenario())

    assert order == ["a:start", "a:end", "b:start", "b:end"]
    assert len(locks) == 0


def test_different_keys_do_not_contend():
    locks = KeyedLock()
    order: list[str] = []

    async def worker(key: str, delay: float) -> None:
        async with locks.hold(key):
            order.append(f"{key}:start")
            await asyncio.sleep(delay)
            order.append(f"{key}:end")

    async def scenario() -> None:
        await asyncio.gather(worker("slow", 0.05), worker("fast", 0.0))

    asyncio.run(scenario())

    assert order.index("fast:end") < order.index("slow:end")


def test_lock_released_when_body_raises():
    locks = KeyedLock()

    async def scenario() -> bool:
        try:
            async with locks.hold("k"):
                assert locks.locked("k")
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        return locks.locked("k")

    assert asyncio.run(scenario()) is False
    assert len(locks) == 0
