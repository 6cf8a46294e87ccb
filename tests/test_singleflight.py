from __future__ import annotations

import asyncio

import pytest

from stratus.cache.singleflight import SingleFlight


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_execution() -> None:
    flight = SingleFlight()
    calls = 0
    release = asyncio.Event()

    async def work() -> str:
        nonlocal calls
        calls += 1
        await release.wait()
        return "payload"

    waiters = [asyncio.create_task(flight.run("key", work)) for _ in range(5)]
    await asyncio.sleep(0)
    assert flight.in_flight() == 1
    release.set()

    assert await asyncio.gather(*waiters) == ["payload"] * 5
    assert calls == 1
    await asyncio.sleep(0)
    assert flight.in_flight() == 0


@pytest.mark.asyncio
async def test_waiters_share_the_same_exception() -> None:
    flight = SingleFlight()
    release = asyncio.Event()

    async def work() -> str:
        await release.wait()
        raise LookupError("origin missing")

    waiters = [asyncio.create_task(flight.run("key", work)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()

    results = await asyncio.gather(*waiters, return_exceptions=True)
    assert all(isinstance(result, LookupError) for result in results)
    assert results[0] is results[1] is results[2]


@pytest.mark.asyncio
async def test_different_keys_run_independently() -> None:
    flight = SingleFlight()
    calls: list[str] = []

    async def work(name: str) -> str:
        calls.append(name)
        await asyncio.sleep(0)
        return name

    results = await asyncio.gather(flight.run("a", lambda: work("a")), flight.run("b", lambda: work("b")))
    assert results == ["a", "b"]
    assert sorted(calls) == ["a", "b"]


@pytest.mark.asyncio
async def test_cancelling_one_waiter_keeps_work_running_for_others() -> None:
    flight = SingleFlight()
    release = asyncio.Event()

    async def work() -> int:
        await release.wait()
        return 42

    first = asyncio.create_task(flight.run("key", work))
    second = asyncio.create_task(flight.run("key", work))
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.sleep(0)
    release.set()

    assert await second == 42
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.asyncio
async def test_work_is_cancelled_when_every_waiter_leaves() -> None:
    flight = SingleFlight()
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def work() -> None:
        started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    waiters = [asyncio.create_task(flight.run("key", work)) for _ in range(2)]
    await started.wait()
    for waiter in waiters:
        waiter.cancel()
    await asyncio.gather(*waiters, return_exceptions=True)

    await asyncio.wait_for(cancelled.wait(), timeout=1)
    assert flight.in_flight() == 0
    assert "key" not in flight


@pytest.mark.asyncio
async def test_key_is_reusable_after_completion() -> None:
    flight = SingleFlight()
    calls = 0

    async def work() -> int:
        nonlocal calls
        calls += 1
        return calls

    assert await flight.run("key", work) == 1
    assert await flight.run("key", work) == 2
