import asyncio

import httpx

from signal_engine.clock import ManualClock
from signal_engine.registry import ClientRegistry


def _registry(clock, max_clients=2, max_age=60):
    return ClientRegistry(max_clients=max_clients, max_age_seconds=max_age, factory=httpx.AsyncClient, clock=clock)


def test_same_key_reuses_client():
    async def run():
        registry = _registry(ManualClock())
        a = await registry.get("http://a")
        assert await registry.get("http://a") is a
        assert len(registry) == 1
        await registry.aclose()
        assert len(registry) == 0
        assert a.is_closed
    asyncio.run(run())


def test_capacity_evicts_least_recently_used():
    async def run():
        clock = ManualClock()
        registry = _registry(clock)
        a = await registry.get("http://a")
        clock.advance(1)
        await registry.get("http://b")
        clock.advance(1)
        await registry.get("http://a")
        clock.advance(1)
        await registry.get("http://c")

        assert "http://a" in registry
        assert "http://b" not in registry
        assert "http://c" in registry
        assert not a.is_closed
        await registry.aclose()
    asyncio.run(run())


def test_idle_clients_are_closed():
    async def run():
        clock = ManualClock()
        registry = _registry(clock, max_clients=4)
        a = await registry.get("http://a")
        clock.advance(30)
        await registry.get("http://b")
        clock.advance(45)
        await registry.get("http://b")

        assert "http://a" not in registry
        assert a.is_closed
        assert len(registry) == 1
        await registry.aclose()
    asyncio.run(run())
