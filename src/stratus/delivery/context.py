"""Per-request cancellation token threaded through origin reads, compression and streaming."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from uuid import uuid4

from ..common.errors import RequestCancelled


@dataclass
class RequestContext:
    request_id: str = field(default_factory=lambda: uuid4().hex)
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise RequestCancelled(self.request_id)
