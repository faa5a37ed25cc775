"""
Tick coalescing and the movers TTL cache.
"""
import asyncio

import pytest

from daybot.runtime.single_flight import SingleFlight, TTLCache


class _Clock:
    def __init__(self):
        self.value = 100.0

    def __call__(self):
        return self.value


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_run():
    flight = SingleFlight()
    calls = 0
    gate = asyncio.Event()

    async def work():
        nonlocal calls
        calls += 1
        await gate.wait()
        return {"n": calls}

    first = asyncio.ensure_future(flight.run(work))
    await asyncio.sleep(0)
    assert flight.in_flight
    others = [asyncio.ensure_future(flight.run(work)) for _ in range(4)]
    await asyncio.sleep(0)
    gate.set()

    results = await asyncio.gather(first, *others)
    assert calls == 1
    assert all(r is results[0] for r in results)
    assert flight.shared_count == 4
    assert not flight.in_flight


@pytest.mark.asyncio
async def test_min_interval_serves_last_result():
    clock = _Clock()
    flight = SingleFlight(min_interval_seconds=0.3, clock=clock)
    calls = []

    async def work():
        calls.append(clock.value)
        return len(calls)

    assert await flight.run(work) == 1
    clock.value += 0.1
    assert await flight.run(work) == 1
    assert flight.cached_count == 1

    clock.value += 0.5
    assert await flight.run(work) == 2


@pytest.mark.asyncio
async def test_failures_propagate_and_are_not_cached():
    flight = SingleFlight(min_interval_seconds=60)
    attempts = 0

    async def work():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("boom")
        return "ok"

    with pytest.raises(RuntimeError):
        await flight.run(work)
    assert await flight.run(work) == "ok"
    assert flight.last_result() == "ok"


@pytest.mark.asyncio
async def test_ttl_cache_expires():
    clock = _Clock()
    cache = TTLCache(clock=clock)
    loads = 0

    async def loader():
        nonlocal loads
        loads += 1
        return [loads]

    assert await cache.get_or_set("movers", 15, loader) == [1]
    clock.value += 10
    assert await cache.get_or_set("movers", 15, loader) == [1]
    clock.value += 10
    assert await cache.get_or_set("movers", 15, loader) == [2]


@pytest.mark.asyncio
async def test_ttl_cache_shares_inflight_load():
    cache = TTLCache()
    loads = 0
    gate = asyncio.Event()

    async def loader():
        nonlocal loads
        loads += 1
        await gate.wait()
        return "value"

    tasks = [asyncio.ensure_future(cache.get_or_set("k", 5, loader)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    assert await asyncio.gather(*tasks) == ["value"] * 3
    assert loads == 1


def test_ttl_cache_trims_when_full():
    clock = _Clock()
    cache = TTLCache(max_size=4, clock=clock)
    for i in range(5):
        clock.value += 1
        cache.set(i, i, ttl_seconds=100)
    assert cache.get(4) == 4
    assert cache.get(0) is None
