from __future__ import annotations

import asyncio
import gzip
from pathlib import Path

import pytest

from conftest import SECRET, CountingOrigin, bearer, sha256
from stratus.cache import compression as compression_module
from stratus.common.errors import (
    AuthFailure,
    CompressionFailure,
    InvalidRequest,
    NotFound,
    OriginUnavailable,
    PayloadTooLarge,
    RangeNotSatisfiable,
)
from stratus.common.metrics import COMPRESSION_COUNTER, SPOOL_BYTES_GAUGE
from stratus.common.security import DELETE_PERMISSION, UPLOAD_PERMISSION
from stratus.common.settings import CdnSettings
from stratus.delivery.context import RequestContext
from stratus.delivery.pipeline import (
    BYPASS,
    HIT_DISK,
    HIT_MEMORY,
    MISS,
    ReadRequest,
    content_disposition,
    delivery_content_type,
    etag_matches,
    parse_range,
)
from stratus.edge.app import build_state
from stratus.edge.stats import DeliveryStats
from stratus.origin.store import FileObject

TEXT = b"the quick brown fox jumps over the lazy dog\n" * 200


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _seed(origin: CountingOrigin, name: str, payload: bytes) -> FileObject:
    file_obj, _ = await origin.put_stream(name, _chunks(payload))
    return file_obj


def _state(tmp_path: Path, origin: CountingOrigin, **overrides):
    options = {"storage_path": tmp_path / "files", "jwt_secret": SECRET}
    options.update(overrides)
    return build_state(CdnSettings(**options), origin)


async def _body(delivery) -> bytes:
    if delivery.body is None:
        return b""
    return b"".join([chunk async for chunk in delivery.body])


@pytest.fixture
def origin(tmp_path: Path) -> CountingOrigin:
    return CountingOrigin(tmp_path / "files")


def test_etag_matching_accepts_common_forms() -> None:
    assert etag_matches("abc", "abc")
    assert etag_matches('"abc"', "abc")
    assert etag_matches('W/"abc"', "abc")
    assert etag_matches('"zzz", "abc"', "abc")
    assert etag_matches("*", "abc")
    assert not etag_matches('"abd"', "abc")


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("bytes=0-9", (0, 9)),
        ("bytes=10-", (10, 99)),
        ("bytes=-10", (90, 99)),
        ("bytes=90-500", (90, 99)),
        ("bytes=0-1,5-6", None),
        ("items=0-1", None),
        ("bytes=abc", None),
        ("bytes=9-3", None),
    ],
)
def test_parse_range(header: str, expected) -> None:
    assert parse_range(header, 100) == expected


def test_unsatisfiable_range_raises() -> None:
    with pytest.raises(RangeNotSatisfiable) as exc_info:
        parse_range("bytes=100-", 100)
    assert exc_info.value.headers["Content-Range"] == "bytes */100"


def test_delivery_content_type_never_renders_html() -> None:
    assert delivery_content_type("text/html") == "text/plain; charset=utf-8"
    assert delivery_content_type("application/xhtml+xml") == "text/plain; charset=utf-8"
    assert delivery_content_type("text/css") == "text/css; charset=utf-8"
    assert delivery_content_type("image/png") == "image/png"


def test_content_disposition_quotes_unicode_names() -> None:
    header = content_disposition("reports/résumé.pdf")
    assert header.startswith('attachment; filename="rsum.pdf"')
    assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in header


@pytest.mark.asyncio
async def test_identity_miss_then_memory_hit(tmp_path: Path, origin: CountingOrigin) -> None:
    file_obj = await _seed(origin, "logo.png", b"\x89PNG" + b"\x00" * 4092)
    state = _state(tmp_path, origin)

    first = await state.pipeline.serve(ReadRequest("logo.png", accept_encoding="gzip, br"), RequestContext())
    assert await _body(first) == b"\x89PNG" + b"\x00" * 4092
    assert first.status == 200
    assert first.cache_status == MISS
    assert first.headers["ETag"] == file_obj.content_hash
    assert first.headers["Content-Type"] == "image/png"
    assert "Content-Encoding" not in first.headers

    second = await state.pipeline.serve(ReadRequest("logo.png"), RequestContext())
    assert await _body(second) == b"\x89PNG" + b"\x00" * 4092
    assert second.cache_status == HIT_MEMORY
    assert origin.gets == 1


@pytest.mark.asyncio
async def test_gzip_variant_is_cached(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "notes.txt", TEXT)
    state = _state(tmp_path, origin)

    first = await state.pipeline.serve(ReadRequest("notes.txt", accept_encoding="gzip"), RequestContext())
    body = await _body(first)
    assert first.headers["Content-Encoding"] == "gzip"
    assert first.headers["Content-Length"] == str(len(body))
    assert first.headers["Vary"] == "Accept-Encoding"
    assert gzip.decompress(body) == TEXT

    second = await state.pipeline.serve(ReadRequest("notes.txt", accept_encoding="gzip"), RequestContext())
    assert await _body(second) == body
    assert second.cache_status == HIT_MEMORY

    plain = await state.pipeline.serve(ReadRequest("notes.txt"), RequestContext())
    assert await _body(plain) == TEXT
    assert plain.cache_status == HIT_MEMORY
    assert origin.gets == 1


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch_and_one_compression(tmp_path: Path) -> None:
    origin = CountingOrigin(tmp_path / "files", delay=0.05)
    await _seed(origin, "shared.txt", TEXT)
    state = _state(tmp_path, origin)
    before = COMPRESSION_COUNTER.value

    deliveries = await asyncio.gather(
        *[state.pipeline.serve(ReadRequest("shared.txt", accept_encoding="br"), RequestContext()) for _ in range(6)]
    )
    bodies = [await _body(delivery) for delivery in deliveries]

    assert len(set(bodies)) == 1
    assert origin.gets == 1
    assert COMPRESSION_COUNTER.value - before == 1
    await asyncio.sleep(0)
    assert state.pipeline.guard.in_flight() == 0


@pytest.mark.asyncio
async def test_conditional_request_returns_304(tmp_path: Path, origin: CountingOrigin) -> None:
    file_obj = await _seed(origin, "a.txt", b"content")
    state = _state(tmp_path, origin)

    delivery = await state.pipeline.serve(ReadRequest("a.txt", if_none_match=f'"{file_obj.content_hash}"'), RequestContext())

    assert delivery.status == 304
    assert delivery.body is None
    assert delivery.headers["ETag"] == file_obj.content_hash
    assert origin.gets == 0


@pytest.mark.asyncio
async def test_range_request_is_served_identity(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "notes.txt", TEXT)
    state = _state(tmp_path, origin)

    delivery = await state.pipeline.serve(
        ReadRequest("notes.txt", accept_encoding="gzip", range_header="bytes=4-8"), RequestContext()
    )

    assert delivery.status == 206
    assert await _body(delivery) == TEXT[4:9]
    assert delivery.headers["Content-Range"] == f"bytes 4-8/{len(TEXT)}"
    assert delivery.headers["Content-Length"] == "5"
    assert "Content-Encoding" not in delivery.headers


@pytest.mark.asyncio
async def test_head_request_has_headers_but_no_body(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "a.txt", b"content")
    state = _state(tmp_path, origin)

    delivery = await state.pipeline.serve(ReadRequest("a.txt", method="HEAD"), RequestContext())

    assert delivery.status == 200
    assert delivery.body is None
    assert delivery.headers["Content-Length"] == "7"


@pytest.mark.asyncio
async def test_missing_file_raises_not_found(tmp_path: Path, origin: CountingOrigin) -> None:
    state = _state(tmp_path, origin)
    with pytest.raises(NotFound):
        await state.pipeline.serve(ReadRequest("nope.txt"), RequestContext())


@pytest.mark.asyncio
async def test_large_file_streams_from_origin_in_chunks(tmp_path: Path, origin: CountingOrigin) -> None:
    payload = bytes(range(256)) * 16
    await _seed(origin, "big.bin", payload)
    state = _state(tmp_path, origin, memory_cache_max_entry_bytes=1024, stream_chunk_bytes=256)

    delivery = await state.pipeline.serve(ReadRequest("big.bin", accept_encoding="gzip"), RequestContext())
    chunks = [chunk async for chunk in delivery.body]

    assert b"".join(chunks) == payload
    assert max(len(chunk) for chunk in chunks) <= 256
    assert delivery.cache_status == BYPASS
    assert "Content-Encoding" not in delivery.headers
    assert origin.gets == 0
    assert origin.streams == 1


@pytest.mark.asyncio
async def test_large_file_is_spooled_once_to_disk(tmp_path: Path) -> None:
    origin = CountingOrigin(tmp_path / "files", delay=0.05)
    payload = b"z" * 8192
    await _seed(origin, "bigfile.bin", payload)
    state = _state(
        tmp_path,
        origin,
        memory_cache_max_entry_bytes=1024,
        stream_chunk_bytes=512,
        disk_cache_path=tmp_path / "disk",
    )

    first, second = await asyncio.gather(
        state.pipeline.serve(ReadRequest("bigfile.bin"), RequestContext()),
        state.pipeline.serve(ReadRequest("bigfile.bin"), RequestContext()),
    )
    assert await _body(first) == payload
    assert await _body(second) == payload
    assert origin.streams == 1

    third = await state.pipeline.serve(ReadRequest("bigfile.bin", range_header="bytes=100-199"), RequestContext())
    assert third.cache_status == HIT_DISK
    assert await _body(third) == payload[100:200]
    assert origin.streams == 1


@pytest.mark.asyncio
async def test_concurrent_large_reads_share_one_origin_stream_without_disk_tier(tmp_path: Path) -> None:
    origin = CountingOrigin(tmp_path / "files", delay=0.05)
    payload = bytes(range(256)) * 32
    await _seed(origin, "bigfile.bin", payload)
    state = _state(tmp_path, origin, memory_cache_max_entry_bytes=1024, stream_chunk_bytes=512)
    spooled_before = SPOOL_BYTES_GAUGE.value

    first, second, ranged = await asyncio.gather(
        state.pipeline.serve(ReadRequest("bigfile.bin"), RequestContext()),
        state.pipeline.serve(ReadRequest("bigfile.bin"), RequestContext()),
        state.pipeline.serve(ReadRequest("bigfile.bin", range_header="bytes=1000-1999"), RequestContext()),
    )
    assert SPOOL_BYTES_GAUGE.value - spooled_before == len(payload)

    assert await _body(first) == payload
    assert await _body(second) == payload
    assert await _body(ranged) == payload[1000:2000]
    assert ranged.status == 206
    assert first.cache_status == BYPASS
    assert origin.gets == 0
    assert origin.streams == 1
    assert SPOOL_BYTES_GAUGE.value == spooled_before
    assert state.pipeline.guard.in_flight() == 0


@pytest.mark.asyncio
async def test_large_read_after_shared_spool_fetches_again(tmp_path: Path, origin: CountingOrigin) -> None:
    payload = b"q" * 4096
    await _seed(origin, "bigfile.bin", payload)
    state = _state(tmp_path, origin, memory_cache_max_entry_bytes=1024)

    for _ in range(2):
        assert await _body(await state.pipeline.serve(ReadRequest("bigfile.bin"), RequestContext())) == payload

    assert origin.streams == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("with_disk", [False, True])
async def test_stalled_origin_stream_times_out(tmp_path: Path, origin: CountingOrigin, with_disk: bool) -> None:
    await _seed(origin, "bigfile.bin", b"s" * 4096)
    origin.delay = 5.0
    overrides = {"memory_cache_max_entry_bytes": 1024, "origin_timeout_seconds": 0.1}
    if with_disk:
        overrides["disk_cache_path"] = tmp_path / "disk"
    state = _state(tmp_path, origin, **overrides)

    with pytest.raises(OriginUnavailable) as exc_info:
        await asyncio.wait_for(state.pipeline.serve(ReadRequest("bigfile.bin"), RequestContext()), 2)

    assert exc_info.value.status_code == 504
    await asyncio.sleep(0)
    assert state.pipeline.guard.in_flight() == 0
    assert list((tmp_path / "disk").rglob("*.partial")) == []


@pytest.mark.asyncio
async def test_unreadable_disk_variant_is_recomputed(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "doc.txt", TEXT)
    state = _state(tmp_path, origin, memory_cache_enabled=False, disk_cache_path=tmp_path / "disk")
    request = ReadRequest("doc.txt", accept_encoding="gzip")

    first = await state.pipeline.serve(request, RequestContext())
    assert gzip.decompress(await _body(first)) == TEXT
    slots = list((tmp_path / "disk").rglob("*.bin"))
    assert slots
    for slot in slots:
        slot.unlink()
    before = COMPRESSION_COUNTER.value

    second = await state.pipeline.serve(request, RequestContext())

    assert second.status == 200
    assert second.headers["Content-Encoding"] == "gzip"
    assert gzip.decompress(await _body(second)) == TEXT
    assert COMPRESSION_COUNTER.value - before == 1
    assert origin.gets == 2


@pytest.mark.asyncio
async def test_cancelled_request_stops_streaming(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "data.bin", b"d" * 4096)
    state = _state(tmp_path, origin, stream_chunk_bytes=512)
    context = RequestContext()

    delivery = await state.pipeline.serve(ReadRequest("data.bin"), context)
    received = [await delivery.body.__anext__()]
    context.cancel()
    received.extend([chunk async for chunk in delivery.body])

    assert sum(len(chunk) for chunk in received) == 512


@pytest.mark.asyncio
async def test_content_replaced_mid_request_serves_fresh_identity(tmp_path: Path, origin: CountingOrigin) -> None:
    old = await _seed(origin, "doc.txt", TEXT)
    await _seed(origin, "doc.txt", TEXT.upper())
    origin.stale = old
    state = _state(tmp_path, origin)

    delivery = await state.pipeline.serve(ReadRequest("doc.txt", accept_encoding="gzip"), RequestContext())

    assert await _body(delivery) == TEXT.upper()
    assert "Content-Encoding" not in delivery.headers
    assert delivery.headers["ETag"] == sha256(TEXT.upper())


@pytest.mark.asyncio
async def test_compression_failure_falls_back_to_identity(
    tmp_path: Path, origin: CountingOrigin, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed(origin, "doc.txt", TEXT)
    state = _state(tmp_path, origin)

    def broken(*_args, **_kwargs):
        raise CompressionFailure("codec exploded")

    monkeypatch.setattr(compression_module, "compress", broken)

    delivery = await state.pipeline.serve(ReadRequest("doc.txt", accept_encoding="gzip"), RequestContext())

    assert delivery.status == 200
    assert await _body(delivery) == TEXT
    assert "Content-Encoding" not in delivery.headers


@pytest.mark.asyncio
async def test_origin_timeout_maps_to_gateway_timeout(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "slow.txt", TEXT)
    origin.delay = 1.0
    state = _state(tmp_path, origin, origin_timeout_seconds=0.05)

    with pytest.raises(OriginUnavailable) as exc_info:
        await state.pipeline.serve(ReadRequest("slow.txt"), RequestContext())
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_upsert_requires_upload_permission(tmp_path: Path, origin: CountingOrigin) -> None:
    state = _state(tmp_path, origin)

    with pytest.raises(AuthFailure) as missing:
        await state.pipeline.upsert("a.txt", _chunks(b"x"), authorization=None)
    assert missing.value.status_code == 401

    with pytest.raises(AuthFailure) as forbidden:
        await state.pipeline.upsert(
            "a.txt", _chunks(b"x"), authorization=bearer([DELETE_PERMISSION])["Authorization"]
        )
    assert forbidden.value.status_code == 403
    assert not await origin.exists("a.txt")


@pytest.mark.asyncio
async def test_upsert_purges_cached_variants(tmp_path: Path, origin: CountingOrigin) -> None:
    state = _state(tmp_path, origin)
    token = bearer([UPLOAD_PERMISSION])["Authorization"]

    _, created = await state.pipeline.upsert("doc.txt", _chunks(TEXT), authorization=token)
    assert created is True
    await _body(await state.pipeline.serve(ReadRequest("doc.txt", accept_encoding="gzip"), RequestContext()))
    assert state.cache.entries_for("doc.txt") != []

    file_obj, created = await state.pipeline.upsert(
        "doc.txt", _chunks(b"v2"), authorization=token, content_type="application/x-www-form-urlencoded"
    )
    assert created is False
    assert state.cache.entries_for("doc.txt") == []
    assert file_obj.content_type.startswith("text/plain")

    delivery = await state.pipeline.serve(ReadRequest("doc.txt", accept_encoding="gzip"), RequestContext())
    assert await _body(delivery) == b"v2"
    assert delivery.headers["ETag"] == sha256(b"v2")


@pytest.mark.asyncio
async def test_delete_purges_and_then_reports_not_found(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "gone.txt", TEXT)
    state = _state(tmp_path, origin)
    token = bearer()["Authorization"]
    await _body(await state.pipeline.serve(ReadRequest("gone.txt"), RequestContext()))

    await state.pipeline.delete("gone.txt", authorization=token)

    assert state.cache.entries_for("gone.txt") == []
    with pytest.raises(NotFound):
        await state.pipeline.serve(ReadRequest("gone.txt"), RequestContext())
    with pytest.raises(NotFound):
        await state.pipeline.delete("gone.txt", authorization=token)


@pytest.mark.asyncio
async def test_deliveries_are_recorded_in_stats(tmp_path: Path, origin: CountingOrigin) -> None:
    await _seed(origin, "a.txt", b"counted")
    state = _state(tmp_path, origin, stats_database_url=f"sqlite+pysqlite:///{(tmp_path / 'stats.db').as_posix()}")
    assert isinstance(state.stats, DeliveryStats)

    for _ in range(3):
        await _body(await state.pipeline.serve(ReadRequest("a.txt"), RequestContext()))

    row = state.stats.get("a.txt")
    assert row is not None
    assert row["misses"] == 1
    assert row["hits"] == 2
    assert row["bytes_served"] == 3 * len(b"counted")
    assert row["last_cache_status"] == HIT_MEMORY


@pytest.mark.asyncio
async def test_upsert_checks_declared_length_after_authorization(tmp_path: Path, origin: CountingOrigin) -> None:
    state = _state(tmp_path, origin, max_upload_bytes=16)

    with pytest.raises(AuthFailure):
        await state.pipeline.upsert("big.txt", _chunks(b"x" * 64), authorization=None, declared_length=64)

    with pytest.raises(PayloadTooLarge):
        await state.pipeline.upsert(
            "big.txt", _chunks(b"x" * 64), authorization=bearer()["Authorization"], declared_length=64
        )
    assert not await origin.exists("big.txt")


@pytest.mark.asyncio
async def test_upsert_rejects_multipart_bodies(tmp_path: Path, origin: CountingOrigin) -> None:
    state = _state(tmp_path, origin)
    envelope = b'--b\r\nContent-Disposition: form-data; name="file"; filename="a.txt"\r\n\r\nhello\r\n--b--\r\n'

    with pytest.raises(InvalidRequest):
        await state.pipeline.upsert(
            "a.txt",
            _chunks(envelope),
            authorization=bearer()["Authorization"],
            content_type="multipart/form-data; boundary=b",
        )
    assert not await origin.exists("a.txt")
