"""Request-private spools for files too large for the cache tier.

When no cache tier can hold a file, concurrent readers still share a single
origin stream: the first reader fills an anonymous temporary file and every
reader streams from it at its own offset. A reader leases the spool before it
joins the fill and releases it once its body is done; the last release closes
the file.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
from typing import AsyncIterator, BinaryIO, Hashable, Optional

from ..common.metrics import SPOOL_BYTES_GAUGE
from .context import RequestContext


class SharedSpool:
    def __init__(self) -> None:
        self._handle: Optional[BinaryIO] = None
        self._leases = 0
        self.closed = False
        self.size = 0
        self.content_hash: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self._handle is not None

    async def fill(self, chunks: AsyncIterator[bytes]) -> None:
        """Write ``chunks`` to a fresh temporary file, hashing as they arrive."""

        if self.ready or self.closed:
            return
        handle = await asyncio.to_thread(tempfile.TemporaryFile, prefix="stratus-spool-")
        hasher = hashlib.sha256()
        size = 0
        try:
            async for chunk in chunks:
                hasher.update(chunk)
                size += len(chunk)
                await asyncio.to_thread(handle.write, chunk)
            await asyncio.to_thread(handle.flush)
        except BaseException:
            handle.close()
            raise
        if self.closed:
            # every reader left while the last chunk was being written
            handle.close()
            return
        self._handle = handle
        self.size = size
        self.content_hash = hasher.hexdigest()
        SPOOL_BYTES_GAUGE.inc(size)

    async def iter_chunks(
        self, chunk_size: int, context: Optional[RequestContext] = None
    ) -> AsyncIterator[bytes]:
        if self._handle is None:
            raise RuntimeError("spool is not filled")
        fd = self._handle.fileno()
        offset = 0
        while offset < self.size:
            if context is not None:
                context.raise_if_cancelled()
            # positional reads let every reader share the descriptor
            chunk = await asyncio.to_thread(os.pread, fd, min(chunk_size, self.size - offset), offset)
            if not chunk:
                break
            offset += len(chunk)
            yield chunk

    def acquire(self) -> None:
        self._leases += 1

    def release(self) -> None:
        self._leases -= 1
        if self._leases <= 0 and not self.closed:
            self.closed = True
            if self._handle is not None:
                self._handle.close()
                self._handle = None
                SPOOL_BYTES_GAUGE.dec(self.size)


class SpoolRegistry:
    """Spools still being filled, keyed like the single-flight guard.

    A key maps to a spool only while its fill may still be joined; finished
    spools live on through the leases of the readers that hold them.
    """

    def __init__(self) -> None:
        self._filling: dict[Hashable, SharedSpool] = {}

    def __len__(self) -> int:
        return len(self._filling)

    def lease(self, key: Hashable) -> SharedSpool:
        spool = self._filling.get(key)
        if spool is None or spool.closed:
            spool = SharedSpool()
            self._filling[key] = spool
        spool.acquire()
        return spool

    def settle(self, key: Hashable, spool: SharedSpool) -> None:
        if self._filling.get(key) is spool:
            del self._filling[key]
