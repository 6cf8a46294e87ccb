"""Collapse concurrent work for the same key into one shared execution."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Hashable, TypeVar

import structlog

LOGGER = structlog.get_logger("stratus.singleflight")

T = TypeVar("T")


class _Flight:
    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task
        self.waiters = 0


class SingleFlight:
    """Registry of shared in-flight tasks keyed by caller-chosen keys.

    Every caller for a key awaits the same task and receives its result or its
    exception. The task is shielded from individual waiter cancellation and is
    cancelled only once the last waiter has gone away.
    """

    def __init__(self) -> None:
        self._flights: dict[Hashable, _Flight] = {}

    def in_flight(self) -> int:
        return len(self._flights)

    async def run(self, key: Hashable, work: Callable[[], Awaitable[T]]) -> T:
        flight = self._flights.get(key)
        if flight is None or flight.task.done():
            task = asyncio.ensure_future(work())
            flight = _Flight(task)
            self._flights[key] = flight
            task.add_done_callback(lambda _task, key=key, flight=flight: self._release(key, flight))
        else:
            LOGGER.debug("singleflight_joined", key=str(key), waiters=flight.waiters + 1)
        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                flight.task.cancel()
                self._release(key, flight)
                LOGGER.info("singleflight_abandoned", key=str(key))

    def _release(self, key: Hashable, flight: _Flight) -> None:
        if self._flights.get(key) is flight:
            del self._flights[key]
