"""Two-level variant cache: a bounded memory tier with an optional disk overflow tier."""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import os
import time
from collections import defaultdict
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, NamedTuple, Optional
from uuid import uuid4

import structlog

from ..common.errors import CacheInvalidationError
from ..common.metrics import (
    DISK_BYTES_GAUGE,
    DISK_HIT_COUNTER,
    EVICTION_COUNTER,
    MEMORY_BYTES_GAUGE,
    MEMORY_HIT_COUNTER,
    MISS_COUNTER,
)
from ..delivery.context import RequestContext

LOGGER = structlog.get_logger("stratus.cache")

Clock = Callable[[], float]


class Encoding(str, Enum):
    IDENTITY = "identity"
    GZIP = "gzip"
    BROTLI = "br"


class CacheKey(NamedTuple):
    file_name: str
    encoding: Encoding

    def __str__(self) -> str:
        return f"{self.file_name}@{self.encoding.value}"


class Tier(str, Enum):
    MEMORY = "memory"
    DISK = "disk"


@dataclass
class CacheEntry:
    """One cached payload. Memory entries carry bytes, disk entries a file path."""

    key: CacheKey
    content_hash: str
    size: int
    tier: Tier
    inserted_at: float
    last_access: float
    expires_at: Optional[float] = None
    payload: Optional[bytes] = None
    path: Optional[Path] = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    async def iter_chunks(self, chunk_size: int, context: Optional[RequestContext] = None) -> AsyncIterator[bytes]:
        if self.payload is not None:
            view = memoryview(self.payload)
            for offset in range(0, len(view), chunk_size):
                if context is not None:
                    context.raise_if_cancelled()
                yield bytes(view[offset : offset + chunk_size])
            return
        if self.path is None:
            return
        handle = await asyncio.to_thread(self.path.open, "rb")
        try:
            while True:
                if context is not None:
                    context.raise_if_cancelled()
                chunk = await asyncio.to_thread(handle.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()


@dataclass(frozen=True)
class StoreResult:
    ok: bool
    reason: Optional[str] = None
    entry: Optional[CacheEntry] = None

    @classmethod
    def stored(cls, entry: CacheEntry) -> "StoreResult":
        return cls(ok=True, entry=entry)

    @classmethod
    def rejected(cls, reason: str) -> "StoreResult":
        return cls(ok=False, reason=reason)


class MemoryTier:
    """LRU byte cache. Pure bookkeeping, never awaits."""

    def __init__(
        self,
        *,
        max_bytes: int,
        max_entries: int,
        max_entry_bytes: int,
        ttl_seconds: Optional[float] = None,
        clock: Clock = time.time,
    ) -> None:
        self.max_bytes = max(0, max_bytes)
        self.max_entries = max(1, max_entries)
        self.max_entry_bytes = max(0, min(max_entry_bytes, self.max_bytes))
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._bytes = 0

    @property
    def total_bytes(self) -> int:
        return self._bytes

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.expired(now):
            self.pop(key)
            return None
        entry.last_access = now
        return entry

    def put(self, key: CacheKey, payload: bytes, content_hash: str) -> tuple[CacheEntry, list[CacheEntry]]:
        """Insert ``payload`` and return it with the entries evicted to make room."""

        if len(payload) > self.max_entry_bytes:
            raise ValueError("payload exceeds memory entry bound")
        self.pop(key)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            content_hash=content_hash,
            size=len(payload),
            tier=Tier.MEMORY,
            inserted_at=now,
            last_access=now,
            expires_at=now + self._ttl if self._ttl else None,
            payload=payload,
        )
        victims: list[CacheEntry] = []
        while self._entries and (
            self._bytes + entry.size > self.max_bytes or len(self._entries) + 1 > self.max_entries
        ):
            victims.append(self._evict_one())
        self._entries[key] = entry
        self._bytes += entry.size
        MEMORY_BYTES_GAUGE.set(float(self._bytes))
        return entry, victims

    def _evict_one(self) -> CacheEntry:
        # least recently used first; on equal access time the smaller payload goes first
        victim_key = min(self._entries, key=lambda k: (self._entries[k].last_access, self._entries[k].size))
        victim = self.pop(victim_key)
        assert victim is not None
        EVICTION_COUNTER.inc()
        LOGGER.debug("cache_evicted", tier="memory", key=str(victim_key), bytes=victim.size)
        return victim

    def pop(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._bytes -= entry.size
            MEMORY_BYTES_GAUGE.set(float(self._bytes))
        return entry

    def keys_for(self, file_name: str) -> list[CacheKey]:
        return [key for key in self._entries if key.file_name == file_name]

    def stats(self) -> dict[str, object]:
        return {
            "entries": len(self._entries),
            "bytes": self._bytes,
            "max_bytes": self.max_bytes,
            "max_entries": self.max_entries,
        }


class DiskTier:
    """File-per-entry overflow cache with a JSON index record beside every payload."""

    INDEX_SUFFIX = ".json"
    PAYLOAD_SUFFIX = ".bin"

    def __init__(self, root: Path, *, max_bytes: int, ttl_seconds: Optional[float] = None, clock: Clock = time.time):
        self.root = Path(root).expanduser().resolve()
        self.max_bytes = max(0, max_bytes)
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._bytes = 0
        self._lock = asyncio.Lock()
        self.root.mkdir(parents=True, exist_ok=True)
        self._load_index()

    @property
    def total_bytes(self) -> int:
        return self._bytes

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def _slot(self, key: CacheKey) -> Path:
        digest = hashlib.sha256(f"{key.file_name}\x00{key.encoding.value}".encode("utf-8")).hexdigest()
        return self.root / digest[:2] / digest

    def _load_index(self) -> None:
        for leftover in self.root.rglob("*.partial"):
            leftover.unlink(missing_ok=True)
        for index_path in self.root.rglob(f"*{self.INDEX_SUFFIX}"):
            payload_path = index_path.with_suffix(self.PAYLOAD_SUFFIX)
            try:
                record = json.loads(index_path.read_text(encoding="utf-8"))
                key = CacheKey(record["file_name"], Encoding(record["encoding"]))
                size = payload_path.stat().st_size
                if size != int(record["size"]):
                    raise ValueError("size mismatch")
            except (OSError, ValueError, KeyError, TypeError):
                index_path.unlink(missing_ok=True)
                payload_path.unlink(missing_ok=True)
                continue
            inserted_at = float(record.get("inserted_at", self._clock()))
            self._entries[key] = CacheEntry(
                key=key,
                content_hash=str(record["content_hash"]),
                size=size,
                tier=Tier.DISK,
                inserted_at=inserted_at,
                last_access=inserted_at,
                expires_at=inserted_at + self._ttl if self._ttl else None,
                path=payload_path,
            )
            self._bytes += size
        DISK_BYTES_GAUGE.set(float(self._bytes))
        if self._entries:
            LOGGER.info("disk_cache_loaded", entries=len(self._entries), bytes=self._bytes)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.expired(now):
            return None
        entry.last_access = now
        return entry

    def keys_for(self, file_name: str) -> list[CacheKey]:
        return [key for key in self._entries if key.file_name == file_name]

    async def read(self, entry: CacheEntry) -> bytes:
        assert entry.path is not None
        return await asyncio.to_thread(entry.path.read_bytes)

    async def put_bytes(self, key: CacheKey, payload: bytes, content_hash: str) -> Optional[CacheEntry]:
        if len(payload) > self.max_bytes:
            return None

        async def _single() -> AsyncIterator[bytes]:
            yield payload

        return await self.put_stream(key, _single(), content_hash)

    async def put_stream(
        self, key: CacheKey, chunks: AsyncIterator[bytes], content_hash: str
    ) -> Optional[CacheEntry]:
        """Spool ``chunks`` into the tier. Returns ``None`` when the payload outgrows the tier."""

        slot = self._slot(key)
        slot.parent.mkdir(parents=True, exist_ok=True)
        partial = slot.with_name(f"{slot.name}.{uuid4().hex}.partial")
        size = 0
        committed = False
        try:
            async with aclosing(chunks) as source:
                with partial.open("wb") as handle:
                    async for chunk in source:
                        size += len(chunk)
                        if size > self.max_bytes:
                            return None
                        await asyncio.to_thread(handle.write, chunk)
            now = self._clock()
            entry = CacheEntry(
                key=key,
                content_hash=content_hash,
                size=size,
                tier=Tier.DISK,
                inserted_at=now,
                last_access=now,
                expires_at=now + self._ttl if self._ttl else None,
                path=slot.with_suffix(self.PAYLOAD_SUFFIX),
            )
            async with self._lock:
                await self._remove_locked(key)
                await self._make_room(size)
                await asyncio.to_thread(self._commit, partial, entry)
                self._entries[key] = entry
                self._bytes += size
                DISK_BYTES_GAUGE.set(float(self._bytes))
            committed = True
            return entry
        finally:
            if not committed:
                partial.unlink(missing_ok=True)

    def _commit(self, partial: Path, entry: CacheEntry) -> None:
        assert entry.path is not None
        os.replace(partial, entry.path)
        record = {
            "file_name": entry.key.file_name,
            "encoding": entry.key.encoding.value,
            "content_hash": entry.content_hash,
            "size": entry.size,
            "inserted_at": entry.inserted_at,
        }
        entry.path.with_suffix(self.INDEX_SUFFIX).write_text(json.dumps(record), encoding="utf-8")

    async def _make_room(self, incoming: int) -> None:
        while self._entries and self._bytes + incoming > self.max_bytes:
            victim_key = min(self._entries, key=lambda k: (self._entries[k].last_access, self._entries[k].size))
            victim = await self._remove_locked(victim_key)
            EVICTION_COUNTER.inc()
            LOGGER.debug("cache_evicted", tier="disk", key=str(victim_key), bytes=victim.size if victim else 0)

    async def remove(self, key: CacheKey) -> Optional[CacheEntry]:
        async with self._lock:
            return await self._remove_locked(key)

    async def _remove_locked(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        assert entry.path is not None
        path = entry.path
        await asyncio.to_thread(self._unlink, path)
        del self._entries[key]
        self._bytes -= entry.size
        DISK_BYTES_GAUGE.set(float(self._bytes))
        return entry

    def _unlink(self, path: Path) -> None:
        # an open reader keeps its handle after unlink, so streams already in progress finish
        path.unlink(missing_ok=True)
        path.with_suffix(self.INDEX_SUFFIX).unlink(missing_ok=True)

    def stats(self) -> dict[str, object]:
        return {
            "entries": len(self._entries),
            "bytes": self._bytes,
            "max_bytes": self.max_bytes,
            "path": str(self.root),
        }


class CacheTier:
    """Memory tier in front of an optional disk tier, serialized per key."""

    def __init__(self, memory: Optional[MemoryTier], disk: Optional[DiskTier] = None) -> None:
        self.memory = memory
        self.disk = disk
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._lock_refs: defaultdict[CacheKey, int] = defaultdict(int)
        self._generations: defaultdict[str, int] = defaultdict(int)

    @property
    def enabled(self) -> bool:
        return self.memory is not None or self.disk is not None

    @asynccontextmanager
    async def _locked(self, key: CacheKey):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[key] -= 1
            if self._lock_refs[key] <= 0:
                self._lock_refs.pop(key, None)
                self._locks.pop(key, None)

    async def lookup(self, key: CacheKey, content_hash: str) -> Optional[CacheEntry]:
        """Return a valid entry for ``key`` at ``content_hash``; stale or expired entries count as misses."""

        found: Optional[CacheEntry] = None
        victims: list[CacheEntry] = []
        async with self._locked(key):
            if self.memory is not None:
                entry = self.memory.get(key)
                if entry is not None:
                    if entry.content_hash == content_hash:
                        MEMORY_HIT_COUNTER.inc()
                        return entry
                    self.memory.pop(key)
                    LOGGER.info("cache_stale_dropped", key=str(key), tier="memory")
            if self.disk is not None:
                found, victims = await self._disk_lookup(key, content_hash)
        # promotion may have pushed other keys out of memory; demote them outside this key's lock
        await self._demote(victims)
        if found is not None:
            DISK_HIT_COUNTER.inc()
            return found
        MISS_COUNTER.inc()
        return None

    async def _disk_lookup(self, key: CacheKey, content_hash: str) -> tuple[Optional[CacheEntry], list[CacheEntry]]:
        assert self.disk is not None
        entry = self.disk.get(key)
        try:
            if entry is None:
                if key in self.disk:
                    await self.disk.remove(key)
                return None, []
            if entry.content_hash != content_hash:
                await self.disk.remove(key)
                LOGGER.info("cache_stale_dropped", key=str(key), tier="disk")
                return None, []
            if self.memory is None or entry.size > self.memory.max_entry_bytes:
                return entry, []
            payload = await self.disk.read(entry)
        except OSError as exc:
            LOGGER.warning("disk_cache_error", key=str(key), error=str(exc))
            await self._drop_broken(key)
            return None, []
        _, victims = self.memory.put(key, payload, content_hash)
        return dataclasses.replace(entry, payload=payload), victims

    async def _drop_broken(self, key: CacheKey) -> None:
        assert self.disk is not None
        try:
            await self.disk.remove(key)
        except OSError as exc:
            LOGGER.warning("disk_cache_error", key=str(key), error=str(exc))

    async def store(self, key: CacheKey, payload: bytes, content_hash: str) -> StoreResult:
        if not self.enabled:
            return StoreResult.rejected("disabled")
        async with self._locked(key):
            if self.memory is not None and len(payload) <= self.memory.max_entry_bytes:
                entry, victims = self.memory.put(key, payload, content_hash)
            elif self.disk is not None and len(payload) <= self.disk.max_bytes:
                try:
                    disk_entry = await self.disk.put_bytes(key, payload, content_hash)
                except OSError as exc:
                    LOGGER.warning("disk_cache_error", key=str(key), error=str(exc))
                    return StoreResult.rejected("disk_error")
                if disk_entry is None:
                    return StoreResult.rejected("entry_too_large")
                return StoreResult.stored(disk_entry)
            else:
                return StoreResult.rejected("entry_too_large")
        # demote outside the key lock; victims are other keys with their own locks
        await self._demote(victims)
        return StoreResult.stored(entry)

    async def store_stream(
        self, key: CacheKey, chunks: AsyncIterator[bytes], content_hash: str
    ) -> Optional[CacheEntry]:
        """Spool an oversized payload into the disk tier; ``None`` when there is no room for it."""

        if self.disk is None:
            return None
        async with self._locked(key):
            try:
                return await self.disk.put_stream(key, chunks, content_hash)
            except OSError as exc:
                LOGGER.warning("disk_cache_error", key=str(key), error=str(exc))
                return None

    async def _demote(self, victims: list[CacheEntry]) -> None:
        if self.disk is None or not victims:
            return
        for victim in victims:
            generation = self._generations[victim.key.file_name]
            async with self._locked(victim.key):
                if generation != self._generations[victim.key.file_name]:
                    continue
                if self.memory is not None and victim.key in self.memory:
                    continue
                assert victim.payload is not None
                try:
                    await self.disk.put_bytes(victim.key, victim.payload, victim.content_hash)
                except OSError as exc:
                    LOGGER.warning("disk_cache_error", key=str(victim.key), error=str(exc))

    async def discard(self, key: CacheKey) -> None:
        """Drop a single entry, logging rather than raising on disk errors."""

        async with self._locked(key):
            if self.memory is not None:
                self.memory.pop(key)
            if self.disk is not None:
                try:
                    await self.disk.remove(key)
                except OSError as exc:
                    LOGGER.warning("disk_cache_error", key=str(key), error=str(exc))

    async def evict(self, file_name: str) -> int:
        """Remove every variant of ``file_name`` from every tier."""

        self._generations[file_name] += 1
        keys = {CacheKey(file_name, encoding) for encoding in Encoding}
        if self.memory is not None:
            keys.update(self.memory.keys_for(file_name))
        if self.disk is not None:
            keys.update(self.disk.keys_for(file_name))
        removed = 0
        failures: list[str] = []
        for key in sorted(keys, key=lambda k: k.encoding.value):
            async with self._locked(key):
                if self.memory is not None and self.memory.pop(key) is not None:
                    removed += 1
                if self.disk is not None:
                    try:
                        if await self.disk.remove(key) is not None:
                            removed += 1
                    except OSError as exc:
                        failures.append(f"{key}: {exc}")
        if failures:
            raise CacheInvalidationError(f"Failed to purge cached variants of {file_name}: {'; '.join(failures)}")
        return removed

    def entries_for(self, file_name: str) -> list[CacheKey]:
        keys: list[CacheKey] = []
        if self.memory is not None:
            keys.extend(self.memory.keys_for(file_name))
        if self.disk is not None:
            keys.extend(self.disk.keys_for(file_name))
        return keys

    def stats(self) -> dict[str, object]:
        return {
            "memory": self.memory.stats() if self.memory is not None else None,
            "disk": self.disk.stats() if self.disk is not None else None,
        }
