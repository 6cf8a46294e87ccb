"""Read and mutation pipelines for the delivery server.

A read runs through explicit stages, in order:

1. resolve the file name and fetch its current metadata from the origin,
2. answer conditional requests (``If-None-Match``) without a body,
3. negotiate the content encoding (a ``Range`` request forces identity),
4. claim the ``(file, encoding, hash)`` key in the single-flight guard,
5. serve from the cache tier or fetch/compress/store on a miss,
6. stream the payload in bounded chunks,
7. attach the delivery headers.

Mutations authorize, write to the origin and purge the cache before they are
acknowledged.
"""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import format_datetime
from pathlib import PurePosixPath
from typing import AsyncIterator, Awaitable, Optional, TypeVar
from urllib.parse import quote

import structlog
from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError

from ..cache.compression import CompressionVariantManager, Encoding, negotiate_encoding
from ..cache.invalidation import InvalidationCoordinator
from ..cache.singleflight import SingleFlight
from ..cache.tier import CacheEntry, CacheKey, CacheTier, Tier
from ..common.errors import (
    CompressionFailure,
    InvalidRequest,
    NotFound,
    OriginUnavailable,
    PayloadTooLarge,
    RangeNotSatisfiable,
    RequestCancelled,
)
from ..common.metrics import BYTES_SERVED_COUNTER, ORIGIN_FETCH_COUNTER, REQUEST_COUNTER
from ..common.security import DELETE_PERMISSION, UPLOAD_PERMISSION, Identity, JwtAuthorizer
from ..common.settings import CdnSettings
from ..edge.stats import DeliveryStats
from ..origin.store import FileObject, OriginStore, validate_file_name
from .context import RequestContext
from .spool import SharedSpool, SpoolRegistry

LOGGER = structlog.get_logger("stratus.delivery")
TRACER = trace.get_tracer("stratus.delivery")

T = TypeVar("T")

HIT_MEMORY = "HIT-MEMORY"
HIT_DISK = "HIT-DISK"
MISS = "MISS"
BYPASS = "BYPASS"

_HIT_STATUS = {Tier.MEMORY: HIT_MEMORY, Tier.DISK: HIT_DISK}
_PLAIN_TEXT = "text/plain; charset=utf-8"
_NEVER_RENDERED = {"text/html", "application/xhtml+xml"}
_IGNORED_UPLOAD_TYPES = {"application/x-www-form-urlencoded"}
_REJECTED_UPLOAD_TYPES = {"multipart/form-data"}


@dataclass(frozen=True)
class ReadRequest:
    file_name: str
    method: str = "GET"
    accept_encoding: Optional[str] = None
    if_none_match: Optional[str] = None
    range_header: Optional[str] = None
    download: bool = False

    @property
    def head(self) -> bool:
        return self.method.upper() == "HEAD"


@dataclass
class Delivery:
    """Outcome of a read: status, headers and an optional chunked body."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[AsyncIterator[bytes]] = None
    file: Optional[FileObject] = None
    encoding: Encoding = Encoding.IDENTITY
    cache_status: str = BYPASS


class ContentChanged(Exception):
    """The origin returned content newer than the metadata the request started with."""

    def __init__(self, file_obj: FileObject, payload: bytes) -> None:
        super().__init__(file_obj.name)
        self.file_obj = file_obj
        self.payload = payload


def etag_matches(if_none_match: str, content_hash: str) -> bool:
    for item in if_none_match.split(","):
        tag = item.strip()
        if tag == "*":
            return True
        if tag.startswith("W/"):
            tag = tag[2:]
        if tag.strip().strip('"') == content_hash:
            return True
    return False


def parse_range(header: str, size: int) -> Optional[tuple[int, int]]:
    """Return the inclusive byte range requested by ``header``.

    Multi-range and syntactically invalid headers are ignored (``None``) so the
    full representation is served; unsatisfiable ranges raise.
    """

    unit, sep, byte_spec = header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return None
    byte_spec = byte_spec.strip()
    if "," in byte_spec:
        return None
    first, dash, last = byte_spec.partition("-")
    first, last = first.strip(), last.strip()
    if not dash or (first and not first.isdigit()) or (last and not last.isdigit()):
        return None
    if not first:
        if not last:
            return None
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return max(0, size - suffix), size - 1
    start = int(first)
    end = int(last) if last else size - 1
    if end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiable(size)
    return start, min(end, size - 1)


def delivery_content_type(content_type: str) -> str:
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type in _NEVER_RENDERED:
        return _PLAIN_TEXT
    if media_type.startswith("text/") and "charset" not in content_type.lower():
        return f"{media_type}; charset=utf-8"
    return content_type


def content_disposition(file_name: str) -> str:
    base = PurePosixPath(file_name).name
    fallback = base.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(base)}"


async def _payload_chunks(payload: bytes, start: int, end: int, chunk_size: int) -> AsyncIterator[bytes]:
    view = memoryview(payload)
    for offset in range(start, end + 1, chunk_size):
        yield bytes(view[offset : min(offset + chunk_size, end + 1)])


async def _slice_chunks(chunks: AsyncIterator[bytes], start: int, end: int) -> AsyncIterator[bytes]:
    position = 0
    try:
        async for chunk in chunks:
            chunk_end = position + len(chunk)
            if chunk_end > start:
                yield chunk[max(0, start - position) : end + 1 - position]
            position = chunk_end
            if position > end:
                break
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


class RequestPipeline:
    def __init__(
        self,
        *,
        settings: CdnSettings,
        origin: OriginStore,
        cache: CacheTier,
        compression: CompressionVariantManager,
        guard: SingleFlight,
        invalidation: InvalidationCoordinator,
        authorizer: JwtAuthorizer,
        stats: Optional[DeliveryStats] = None,
    ) -> None:
        self._settings = settings
        self._origin = origin
        self._cache = cache
        self._compression = compression
        self._guard = guard
        self._invalidation = invalidation
        self._authorizer = authorizer
        self._stats = stats
        self._spools = SpoolRegistry()

    @property
    def guard(self) -> SingleFlight:
        return self._guard

    @property
    def _chunk_size(self) -> int:
        return self._settings.stream_chunk_bytes

    @property
    def _buffer_limit(self) -> int:
        return self._settings.memory_cache_max_entry_bytes

    # -- reads -----------------------------------------------------------------

    async def serve(self, request: ReadRequest, context: RequestContext) -> Delivery:
        REQUEST_COUNTER.inc()
        with TRACER.start_as_current_span(
            "delivery.serve",
            attributes={"stratus.file": request.file_name, "stratus.request_id": context.request_id},
        ) as span:
            name = validate_file_name(request.file_name)
            file_obj = await self._origin_call(name, self._origin.stat(name))

            if request.if_none_match and etag_matches(request.if_none_match, file_obj.content_hash):
                span.set_attribute("stratus.status", 304)
                return Delivery(status=304, headers=self._validator_headers(file_obj), file=file_obj)

            byte_range = parse_range(request.range_header, file_obj.size) if request.range_header else None
            encoding = self._negotiate(request, file_obj)

            if file_obj.size > self._buffer_limit:
                delivery = await self._serve_streamed(name, file_obj, request, byte_range, context)
            else:
                delivery = await self._serve_buffered(name, file_obj, encoding, request, context)

            span.set_attribute("stratus.status", delivery.status)
            span.set_attribute("stratus.encoding", delivery.encoding.value)
            span.set_attribute("stratus.cache", delivery.cache_status)
        self._record(name, delivery)
        return delivery

    def _negotiate(self, request: ReadRequest, file_obj: FileObject) -> Encoding:
        if request.range_header or not self._settings.compression_enabled or file_obj.size > self._buffer_limit:
            return Encoding.IDENTITY
        return negotiate_encoding(
            request.accept_encoding,
            size=file_obj.size,
            content_type=file_obj.content_type,
            min_bytes=self._settings.compression_min_bytes,
            max_bytes=self._settings.compression_max_bytes,
        )

    async def _serve_buffered(
        self,
        name: str,
        file_obj: FileObject,
        encoding: Encoding,
        request: ReadRequest,
        context: RequestContext,
    ) -> Delivery:
        try:
            file_obj, payload, cache_status = await self._load(name, file_obj, encoding)
        except CompressionFailure:
            encoding = Encoding.IDENTITY
            file_obj, payload, cache_status = await self._load(name, file_obj, encoding)
        except ContentChanged as changed:
            encoding = Encoding.IDENTITY
            file_obj, payload, cache_status = changed.file_obj, changed.payload, MISS

        # the payload may belong to newer content than the range was checked against
        byte_range = parse_range(request.range_header, len(payload)) if request.range_header else None
        start, end = byte_range if byte_range is not None else (0, len(payload) - 1)
        length = end - start + 1 if payload else 0
        headers = self._headers(file_obj, encoding, length, request.download, cache_status)
        status_code = 200
        if byte_range is not None:
            status_code = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{len(payload)}"
        body = None
        if not request.head:
            body = self._stream(name, _payload_chunks(payload, start, end, self._chunk_size), context)
        return Delivery(
            status=status_code,
            headers=headers,
            body=body,
            file=file_obj,
            encoding=encoding,
            cache_status=cache_status,
        )

    async def _load(self, name: str, file_obj: FileObject, encoding: Encoding) -> tuple[FileObject, bytes, str]:
        if encoding is Encoding.IDENTITY:
            return await self._load_identity(name, file_obj)

        async def raw_provider() -> bytes:
            fetched, payload, _ = await self._load_identity(name, file_obj)
            if fetched.content_hash != file_obj.content_hash:
                raise ContentChanged(fetched, payload)
            return payload

        variant = await self._guard.run(
            (name, encoding.value, file_obj.content_hash),
            lambda: self._compression.get_or_compute(name, file_obj.content_hash, encoding, raw_provider),
        )
        return file_obj, variant.payload, _HIT_STATUS[variant.hit] if variant.hit else MISS

    async def _load_identity(self, name: str, file_obj: FileObject) -> tuple[FileObject, bytes, str]:
        entry = await self._cache.lookup(CacheKey(name, Encoding.IDENTITY), file_obj.content_hash)
        if entry is not None:
            payload = entry.payload
            if payload is None:
                payload = await self._read_entry(entry)
            if payload is not None:
                return file_obj, payload, _HIT_STATUS[entry.tier]
        fetched, payload = await self._guard.run(
            (name, Encoding.IDENTITY.value, file_obj.content_hash),
            lambda: self._fetch_identity(name),
        )
        return fetched, payload, MISS

    async def _read_entry(self, entry: CacheEntry) -> Optional[bytes]:
        try:
            return b"".join([chunk async for chunk in entry.iter_chunks(self._chunk_size)])
        except OSError as exc:
            LOGGER.warning("disk_cache_error", key=str(entry.key), error=str(exc))
            await self._cache.discard(entry.key)
            return None

    async def _fetch_identity(self, name: str) -> tuple[FileObject, bytes]:
        with TRACER.start_as_current_span("origin.fetch", attributes={"stratus.file": name}) as span:
            fetched, payload = await self._origin_call(name, self._origin.get(name))
            span.set_attribute("stratus.bytes", len(payload))
        ORIGIN_FETCH_COUNTER.inc()
        LOGGER.info("origin_fetch", file=name, bytes=len(payload), hash=fetched.content_hash)
        result = await self._cache.store(CacheKey(name, Encoding.IDENTITY), payload, fetched.content_hash)
        if not result.ok:
            LOGGER.debug("cache_store_rejected", file=name, reason=result.reason)
        return fetched, payload

    async def _serve_streamed(
        self,
        name: str,
        file_obj: FileObject,
        request: ReadRequest,
        byte_range: Optional[tuple[int, int]],
        context: RequestContext,
    ) -> Delivery:
        """Serve a file too large to buffer.

        The disk tier is used when it holds or can take the file. Otherwise
        concurrent readers share one origin stream through a private spool, and
        only a spool that no longer matches the metadata falls back to a direct
        origin read.
        """

        key = CacheKey(name, Encoding.IDENTITY)
        flight_key = (name, Encoding.IDENTITY.value, file_obj.content_hash)
        entry: Optional[CacheEntry] = None
        spool: Optional[SharedSpool] = None
        cache_status = BYPASS
        if self._cache.disk is not None:
            entry = await self._cache.lookup(key, file_obj.content_hash)
            if entry is not None:
                cache_status = _HIT_STATUS[entry.tier]
            elif not request.head:
                entry = await self._guard.run(flight_key, lambda: self._spool(name, file_obj))
                cache_status = MISS if entry is not None else BYPASS
        if entry is None and not request.head:
            spool = await self._share_origin_stream(flight_key, name, file_obj)

        start, end = byte_range if byte_range is not None else (0, file_obj.size - 1)
        length = end - start + 1 if file_obj.size else 0
        headers = self._headers(file_obj, Encoding.IDENTITY, length, request.download, cache_status)
        status_code = 200
        if byte_range is not None:
            status_code = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{file_obj.size}"
        body = None
        if not request.head:
            if entry is not None:
                chunks = self._entry_chunks(name, entry, context)
            elif spool is not None:
                chunks = self._spool_chunks(spool, context)
            else:
                chunks = self._origin_stream(name, context)
            if byte_range is not None:
                chunks = _slice_chunks(chunks, start, end)
            body = self._stream(name, chunks, context)
        return Delivery(status=status_code, headers=headers, body=body, file=file_obj, cache_status=cache_status)

    async def _spool(self, name: str, file_obj: FileObject) -> Optional[CacheEntry]:
        key = CacheKey(name, Encoding.IDENTITY)
        hasher = hashlib.sha256()

        async def hashed() -> AsyncIterator[bytes]:
            async with aclosing(self._origin_stream(name)) as chunks:
                async for chunk in chunks:
                    hasher.update(chunk)
                    yield chunk

        with TRACER.start_as_current_span("origin.spool", attributes={"stratus.file": name, "stratus.spool": "disk"}):
            entry = await self._cache.store_stream(key, hashed(), file_obj.content_hash)
        ORIGIN_FETCH_COUNTER.inc()
        if entry is None:
            LOGGER.info("cache_store_rejected", file=name, reason="entry_too_large")
            return None
        if hasher.hexdigest() != file_obj.content_hash:
            # replaced while spooling; the spooled bytes do not match the metadata we serve
            await self._cache.discard(key)
            LOGGER.warning("origin_changed_during_spool", file=name)
            return None
        LOGGER.info("origin_fetch", file=name, bytes=entry.size, hash=file_obj.content_hash, spooled="disk")
        return entry

    async def _share_origin_stream(
        self, flight_key: tuple[str, str, str], name: str, file_obj: FileObject
    ) -> Optional[SharedSpool]:
        spool_key = (*flight_key, "spool")
        spool = self._spools.lease(spool_key)
        try:
            await self._guard.run(spool_key, lambda: self._fill_spool(spool_key, spool, name))
        except BaseException:
            spool.release()
            raise
        if spool.ready and spool.content_hash == file_obj.content_hash:
            return spool
        spool.release()
        if spool.content_hash is not None:
            LOGGER.warning("origin_changed_during_spool", file=name)
        return None

    async def _fill_spool(self, spool_key: tuple[str, ...], spool: SharedSpool, name: str) -> None:
        try:
            with TRACER.start_as_current_span("origin.spool", attributes={"stratus.file": name, "stratus.spool": "private"}):
                async with aclosing(self._origin_stream(name)) as chunks:
                    await spool.fill(chunks)
        finally:
            self._spools.settle(spool_key, spool)
        if spool.ready:
            ORIGIN_FETCH_COUNTER.inc()
            LOGGER.info("origin_fetch", file=name, bytes=spool.size, hash=spool.content_hash, spooled="private")

    async def _spool_chunks(self, spool: SharedSpool, context: RequestContext) -> AsyncIterator[bytes]:
        try:
            async for chunk in spool.iter_chunks(self._chunk_size, context):
                yield chunk
        finally:
            spool.release()

    async def _origin_stream(self, name: str, context: Optional[RequestContext] = None) -> AsyncIterator[bytes]:
        """Chunks of ``name`` from the origin; opening and every read are bounded by the origin timeout."""

        timeout = self._settings.origin_timeout_seconds
        async with aclosing(self._origin.open_stream(name, self._chunk_size, context)) as chunks:
            while True:
                try:
                    chunk = await asyncio.wait_for(anext(chunks), timeout=timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    LOGGER.error("origin_timeout", file=name, timeout=timeout, streaming=True)
                    raise OriginUnavailable(f"Origin timed out for {name}", timeout=True) from exc
                yield chunk

    async def _entry_chunks(self, name: str, entry: CacheEntry, context: RequestContext) -> AsyncIterator[bytes]:
        started = False
        try:
            async for chunk in entry.iter_chunks(self._chunk_size, context):
                started = True
                yield chunk
        except OSError as exc:
            if started:
                raise
            LOGGER.warning("disk_cache_error", key=str(entry.key), error=str(exc))
            await self._cache.discard(entry.key)
            async with aclosing(self._origin_stream(name, context)) as chunks:
                async for chunk in chunks:
                    yield chunk

    async def _stream(self, name: str, chunks: AsyncIterator[bytes], context: RequestContext) -> AsyncIterator[bytes]:
        sent = 0
        try:
            async for chunk in chunks:
                context.raise_if_cancelled()
                sent += len(chunk)
                yield chunk
        except RequestCancelled:
            LOGGER.info("delivery_cancelled", file=name, bytes_sent=sent, request_id=context.request_id)
        except (asyncio.CancelledError, GeneratorExit):
            context.cancel()
            raise
        finally:
            BYTES_SERVED_COUNTER.inc(sent)
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    def _validator_headers(self, file_obj: FileObject) -> dict[str, str]:
        return {
            "ETag": file_obj.content_hash,
            "Cache-Control": f"public, max-age={self._settings.cache_control_max_age}",
            "Vary": "Accept-Encoding",
            "Last-Modified": format_datetime(file_obj.last_modified.astimezone(timezone.utc), usegmt=True),
        }

    def _headers(
        self, file_obj: FileObject, encoding: Encoding, length: int, download: bool, cache_status: str
    ) -> dict[str, str]:
        headers = self._validator_headers(file_obj)
        headers.update(
            {
                "Content-Type": delivery_content_type(file_obj.content_type),
                "Content-Length": str(length),
                "Accept-Ranges": "bytes",
                "X-Cache": cache_status,
            }
        )
        if encoding is not Encoding.IDENTITY:
            headers["Content-Encoding"] = encoding.value
        if download:
            headers["Content-Type"] = "application/octet-stream"
            headers["Content-Disposition"] = content_disposition(file_obj.name)
        return headers

    def _record(self, name: str, delivery: Delivery) -> None:
        if self._stats is None or delivery.status == 304:
            return
        served = int(delivery.headers.get("Content-Length", "0")) if delivery.body is not None else 0
        try:
            self._stats.record(
                name,
                hit=delivery.cache_status in (HIT_MEMORY, HIT_DISK),
                bytes_served=served,
                cache_status=delivery.cache_status,
            )
        except SQLAlchemyError as exc:
            LOGGER.warning("delivery_stats_failed", file=name, error=str(exc))

    async def _origin_call(self, name: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._settings.origin_timeout_seconds)
        except asyncio.TimeoutError as exc:
            LOGGER.error("origin_timeout", file=name, timeout=self._settings.origin_timeout_seconds)
            raise OriginUnavailable(f"Origin timed out for {name}", timeout=True) from exc

    # -- mutations -------------------------------------------------------------

    async def upsert(
        self,
        file_name: str,
        chunks: AsyncIterator[bytes],
        *,
        authorization: Optional[str],
        content_type: Optional[str] = None,
        declared_length: Optional[int] = None,
    ) -> tuple[FileObject, bool]:
        """Store new content for ``file_name``; returns its metadata and whether it was created.

        The body is the raw file. ``declared_length`` (the request's
        ``Content-Length``) is checked against the upload limit after authorization.
        """

        identity = self._authorizer.authorize(authorization, UPLOAD_PERMISSION)
        name = validate_file_name(file_name)
        limit = self._settings.max_upload_bytes
        if declared_length is not None and declared_length > limit:
            raise PayloadTooLarge(f"Upload exceeds max size: {limit} bytes")
        media_type = content_type.split(";", 1)[0].strip().lower() if content_type else ""
        if media_type in _REJECTED_UPLOAD_TYPES:
            raise InvalidRequest("Multipart form uploads are not accepted; send the file as the raw request body")
        if media_type in _IGNORED_UPLOAD_TYPES:
            content_type = None
        with TRACER.start_as_current_span("delivery.upsert", attributes={"stratus.file": name}) as span:
            async with self._invalidation.mutation(name):
                file_obj, created = await self._origin.put_stream(name, chunks, content_type, limit)
                await self._invalidation.invalidate(name)
            span.set_attribute("stratus.bytes", file_obj.size)
            span.set_attribute("stratus.created", created)
        self._log_mutation("file_upserted", name, identity, bytes=file_obj.size, hash=file_obj.content_hash, created=created)
        return file_obj, created

    async def delete(self, file_name: str, *, authorization: Optional[str]) -> None:
        identity = self._authorizer.authorize(authorization, DELETE_PERMISSION)
        name = validate_file_name(file_name)
        with TRACER.start_as_current_span("delivery.delete", attributes={"stratus.file": name}):
            async with self._invalidation.mutation(name):
                try:
                    await self._origin_call(name, self._origin.delete(name))
                except NotFound:
                    # nothing to serve, but stale variants may still be cached
                    await self._invalidation.invalidate(name)
                    raise
                await self._invalidation.invalidate(name)
        if self._stats is not None:
            try:
                self._stats.forget(name)
            except SQLAlchemyError as exc:
                LOGGER.warning("delivery_stats_failed", file=name, error=str(exc))
        self._log_mutation("file_deleted", name, identity)

    @staticmethod
    def _log_mutation(event: str, name: str, identity: Identity, **fields: object) -> None:
        LOGGER.info(event, file=name, subject=identity.subject, **fields)
