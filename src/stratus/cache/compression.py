"""Encoding negotiation and lazily computed compressed variants."""

from __future__ import annotations

import asyncio
import gzip
import re
import zlib
from typing import Awaitable, Callable, NamedTuple, Optional

import brotli
import structlog
from opentelemetry import trace

from ..common.errors import CompressionFailure, InvalidRequest
from ..common.metrics import COMPRESSION_COUNTER, COMPRESSION_FAILURE_COUNTER
from .tier import CacheEntry, CacheKey, CacheTier, Encoding, Tier

__all__ = [
    "CompressionVariantManager",
    "Encoding",
    "Variant",
    "compress",
    "is_compressible",
    "negotiate_encoding",
]

LOGGER = structlog.get_logger("stratus.compression")
TRACER = trace.get_tracer("stratus.compression")

# server preference when q-values tie
PREFERENCE = (Encoding.BROTLI, Encoding.GZIP, Encoding.IDENTITY)

_TOKEN_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+.^_`|~-]+$")
_QVALUE_RE = re.compile(r"^(?:0(?:\.\d{0,3})?|1(?:\.0{0,3})?)$")
_ALIASES = {"x-gzip": "gzip"}
# identity stays acceptable when unlisted but ranks below any listed coding
_IMPLICIT_IDENTITY_Q = 0.001
_DISK_READ_CHUNK = 1024 * 1024

_COMPRESSED_PREFIXES = ("image/", "audio/", "video/")
_COMPRESSIBLE_IMAGES = {"image/svg+xml", "image/x-icon", "image/bmp"}
_COMPRESSED_TYPES = {
    "application/zip",
    "application/gzip",
    "application/x-gzip",
    "application/x-bzip2",
    "application/x-xz",
    "application/x-7z-compressed",
    "application/x-rar-compressed",
    "application/vnd.rar",
    "application/zstd",
    "application/x-tar+gzip",
    "font/woff",
    "font/woff2",
}


def parse_accept_encoding(header: str) -> dict[str, float]:
    """Parse an ``Accept-Encoding`` value into ``{coding: q}``."""

    preferences: dict[str, float] = {}
    for item in header.split(","):
        item = item.strip()
        if not item:
            continue
        coding, *params = [part.strip() for part in item.split(";")]
        if not _TOKEN_RE.match(coding):
            raise InvalidRequest(f"Malformed Accept-Encoding: {header!r}")
        quality = 1.0
        for param in params:
            name, sep, value = param.partition("=")
            if not sep or name.strip().lower() != "q" or not _QVALUE_RE.match(value.strip()):
                raise InvalidRequest(f"Malformed Accept-Encoding: {header!r}")
            quality = float(value)
        coding = coding.lower()
        preferences[_ALIASES.get(coding, coding)] = quality
    return preferences


def is_compressible(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type in _COMPRESSIBLE_IMAGES:
        return True
    if media_type.startswith(_COMPRESSED_PREFIXES):
        return False
    return media_type not in _COMPRESSED_TYPES


def negotiate_encoding(
    accept_encoding: Optional[str],
    *,
    size: int,
    content_type: str,
    min_bytes: int = 0,
    max_bytes: Optional[int] = None,
) -> Encoding:
    """Pick the response encoding for a payload of ``size`` bytes.

    Codings are ranked by descending q-value, then by server preference
    (br, gzip, identity). Identity is served when nothing better is acceptable,
    even if the client excluded it.
    """

    if not accept_encoding:
        return Encoding.IDENTITY
    preferences = parse_accept_encoding(accept_encoding)
    eligible = size >= min_bytes and (max_bytes is None or size <= max_bytes) and is_compressible(content_type)
    wildcard = preferences.get("*")

    def quality(encoding: Encoding) -> float:
        if encoding.value in preferences:
            return preferences[encoding.value]
        if wildcard is not None:
            return wildcard
        return _IMPLICIT_IDENTITY_Q if encoding is Encoding.IDENTITY else 0.0

    candidates = [enc for enc in PREFERENCE if enc is Encoding.IDENTITY or eligible]
    ranked = sorted(
        (enc for enc in candidates if quality(enc) > 0),
        key=lambda enc: (-quality(enc), PREFERENCE.index(enc)),
    )
    return ranked[0] if ranked else Encoding.IDENTITY


def compress(payload: bytes, encoding: Encoding, *, gzip_level: int = 6, brotli_quality: int = 5) -> bytes:
    try:
        if encoding is Encoding.GZIP:
            # fixed mtime keeps the output identical for identical input
            return gzip.compress(payload, compresslevel=gzip_level, mtime=0)
        if encoding is Encoding.BROTLI:
            return brotli.compress(payload, quality=brotli_quality)
    except (brotli.error, zlib.error, ValueError) as exc:
        raise CompressionFailure(f"{encoding.value} compression failed: {exc}") from exc
    raise CompressionFailure(f"Unsupported encoding: {encoding.value}")


class Variant(NamedTuple):
    payload: bytes
    hit: Optional[Tier]


class CompressionVariantManager:
    """Serves compressed variants from the cache tier, computing and storing them on a miss.

    Callers collapse concurrent misses for one ``(file, encoding, hash)`` through
    a single-flight guard, so each variant is computed once per content hash.
    """

    def __init__(self, cache: CacheTier, *, gzip_level: int = 6, brotli_quality: int = 5) -> None:
        self._cache = cache
        self._gzip_level = gzip_level
        self._brotli_quality = brotli_quality

    async def get_or_compute(
        self,
        file_name: str,
        content_hash: str,
        encoding: Encoding,
        raw_provider: Callable[[], Awaitable[bytes]],
    ) -> Variant:
        if encoding is Encoding.IDENTITY:
            raise ValueError("identity is not a compressed variant")
        key = CacheKey(file_name, encoding)
        entry = await self._cache.lookup(key, content_hash)
        if entry is not None:
            payload = entry.payload
            if payload is None:
                payload = await self._read_disk_variant(entry)
            if payload is not None:
                return Variant(payload, entry.tier)
        payload = await self._compute(key, content_hash, raw_provider)
        return Variant(payload, None)

    async def _read_disk_variant(self, entry: CacheEntry) -> Optional[bytes]:
        try:
            return b"".join([chunk async for chunk in entry.iter_chunks(_DISK_READ_CHUNK)])
        except OSError as exc:
            # an unreadable slot is dropped and the variant recomputed
            LOGGER.warning("disk_cache_error", key=str(entry.key), error=str(exc))
            await self._cache.discard(entry.key)
            return None

    async def _compute(self, key: CacheKey, content_hash: str, raw_provider: Callable[[], Awaitable[bytes]]) -> bytes:
        raw = await raw_provider()
        with TRACER.start_as_current_span(
            "compression.compute",
            attributes={"stratus.file": key.file_name, "stratus.encoding": key.encoding.value, "stratus.bytes_in": len(raw)},
        ) as span:
            try:
                payload = await asyncio.to_thread(
                    compress,
                    raw,
                    key.encoding,
                    gzip_level=self._gzip_level,
                    brotli_quality=self._brotli_quality,
                )
            except CompressionFailure:
                COMPRESSION_FAILURE_COUNTER.inc()
                LOGGER.warning("compression_failed", file=key.file_name, encoding=key.encoding.value)
                raise
            span.set_attribute("stratus.bytes_out", len(payload))
        COMPRESSION_COUNTER.inc()
        LOGGER.info(
            "compression_computed",
            file=key.file_name,
            encoding=key.encoding.value,
            bytes_in=len(raw),
            bytes_out=len(payload),
        )
        result = await self._cache.store(key, payload, content_hash)
        if not result.ok:
            LOGGER.debug("cache_store_rejected", key=str(key), reason=result.reason)
        return payload
