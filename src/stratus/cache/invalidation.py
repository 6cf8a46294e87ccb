"""Purges cached variants when the origin copy of a file changes."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from opentelemetry import trace

from ..common.errors import CacheInvalidationError
from ..common.metrics import INVALIDATION_COUNTER
from .tier import CacheTier

LOGGER = structlog.get_logger("stratus.invalidation")
TRACER = trace.get_tracer("stratus.invalidation")


class InvalidationCoordinator:
    def __init__(self, cache: CacheTier) -> None:
        self._cache = cache
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: defaultdict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def mutation(self, file_name: str) -> AsyncIterator[None]:
        """Serialize mutations of one file name; origin write and purge run inside."""

        lock = self._locks.setdefault(file_name, asyncio.Lock())
        self._lock_refs[file_name] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[file_name] -= 1
            if self._lock_refs[file_name] <= 0:
                self._lock_refs.pop(file_name, None)
                self._locks.pop(file_name, None)

    async def invalidate(self, file_name: str) -> int:
        """Drop every cached variant of ``file_name``; raises ``CacheInvalidationError`` on failure."""

        with TRACER.start_as_current_span("cache.invalidate", attributes={"stratus.file": file_name}) as span:
            try:
                removed = await self._cache.evict(file_name)
            except CacheInvalidationError as exc:
                LOGGER.error("invalidation_failed", file=file_name, error=exc.detail)
                raise
            except OSError as exc:
                LOGGER.error("invalidation_failed", file=file_name, error=str(exc))
                raise CacheInvalidationError(f"Failed to purge cached variants of {file_name}") from exc
            span.set_attribute("stratus.entries_removed", removed)
        INVALIDATION_COUNTER.inc()
        LOGGER.info("invalidation_completed", file=file_name, entries=removed)
        return removed
