from __future__ import annotations

import asyncio
import gzip
import os

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import METRICS_TOKEN, CountingOrigin, bearer, sha256
from stratus.common.metrics import COMPRESSION_COUNTER
from stratus.common.security import DELETE_PERMISSION, UPLOAD_PERMISSION
from stratus.edge.app import create_app

LOGO = bytes(range(256)) * 16
REPORT = b"%PDF-1.7 quarterly report body " * 300
IDENTITY = {"Accept-Encoding": "identity"}


def _upload(client: TestClient, name: str, payload: bytes, **headers: str) -> httpx.Response:
    return client.post(f"/{name}", content=payload, headers={**bearer(), **headers})


def test_upload_then_fetch_round_trip(client: TestClient) -> None:
    created = _upload(client, "logo.png", LOGO)
    assert created.status_code == 201
    assert created.json()["content_hash"] == sha256(LOGO)
    assert created.json()["size"] == len(LOGO)
    assert created.headers["etag"] == sha256(LOGO)

    response = client.get("/logo.png", headers=IDENTITY)
    assert response.status_code == 200
    assert response.headers["etag"] == sha256(LOGO)
    assert response.headers["content-type"] == "image/png"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.content == LOGO

    replaced = _upload(client, "logo.png", LOGO[::-1])
    assert replaced.status_code == 200
    assert client.get("/logo.png", headers=IDENTITY).content == LOGO[::-1]


def test_matching_etag_returns_not_modified(client: TestClient) -> None:
    _upload(client, "logo.png", LOGO)

    response = client.get("/logo.png", headers={"If-None-Match": sha256(LOGO)})

    assert response.status_code == 304
    assert response.content == b""
    assert response.headers["etag"] == sha256(LOGO)

    stale = client.get("/logo.png", headers={**IDENTITY, "If-None-Match": '"deadbeef"'})
    assert stale.status_code == 200


def test_delete_then_fetch_is_not_found(client: TestClient) -> None:
    _upload(client, "logo.png", LOGO)
    client.get("/logo.png", headers=IDENTITY)

    deleted = client.delete("/logo.png", headers=bearer())
    assert deleted.status_code == 204

    missing = client.get("/logo.png")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"
    assert client.delete("/logo.png", headers=bearer()).status_code == 404


def test_gzip_variant_is_reused_byte_for_byte(client: TestClient) -> None:
    _upload(client, "report.pdf", REPORT)
    before = COMPRESSION_COUNTER.value

    bodies = []
    cache_states = []
    for _ in range(2):
        with client.stream("GET", "/report.pdf", headers={"Accept-Encoding": "gzip"}) as response:
            assert response.status_code == 200
            assert response.headers["content-encoding"] == "gzip"
            assert response.headers["vary"] == "Accept-Encoding"
            bodies.append(b"".join(response.iter_raw()))
            cache_states.append(response.headers["x-cache"])

    assert bodies[0] == bodies[1]
    assert gzip.decompress(bodies[0]) == REPORT
    assert cache_states == ["MISS", "HIT-MEMORY"]
    assert COMPRESSION_COUNTER.value - before == 1


@pytest.mark.anyio
@pytest.mark.parametrize("memory_entry_limit", [None, "65536"])
async def test_concurrent_first_reads_hit_origin_once(stratus_env, monkeypatch, memory_entry_limit) -> None:
    if memory_entry_limit is not None:
        # above the limit the file is streamed rather than buffered
        monkeypatch.setenv("STRATUS_MEMORY_CACHE_MAX_ENTRY_BYTES", memory_entry_limit)
    origin = CountingOrigin(stratus_env["storage"], delay=0.05)
    payload = os.urandom(256 * 1024)

    async def chunks():
        yield payload

    await origin.put_stream("bigfile.bin", chunks())
    app = create_app(origin=origin)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://stratus.test") as http:
        first, second = await asyncio.gather(http.get("/bigfile.bin"), http.get("/bigfile.bin"))

    assert first.status_code == second.status_code == 200
    assert first.content == second.content == payload
    assert origin.gets + origin.streams == 1
    assert app.state.edge_state.pipeline.guard.in_flight() == 0


def test_mutations_require_credentials(client: TestClient) -> None:
    missing = client.post("/a.txt", content=b"x")
    assert missing.status_code == 401
    assert missing.headers["www-authenticate"].startswith("Bearer")
    assert missing.json()["code"] == "auth_failure"

    wrong_secret = client.post("/a.txt", content=b"x", headers=bearer(secret="not-the-secret"))
    assert wrong_secret.status_code == 401

    expired = client.post("/a.txt", content=b"x", headers=bearer(ttl_seconds=-60))
    assert expired.status_code == 401

    delete_only = client.post("/a.txt", content=b"x", headers=bearer([DELETE_PERMISSION]))
    assert delete_only.status_code == 403

    _upload(client, "a.txt", b"x")
    upload_only = client.delete("/a.txt", headers=bearer([UPLOAD_PERMISSION]))
    assert upload_only.status_code == 403
    assert client.get("/a.txt").status_code == 200


def test_oversized_upload_is_rejected(stratus_env, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STRATUS_MAX_UPLOAD_BYTES", "16")
    with TestClient(create_app()) as small_client:
        anonymous = small_client.post("/big.txt", content=b"x" * 64)
        assert anonymous.status_code == 401
        response = small_client.post("/big.txt", content=b"x" * 64, headers=bearer())
        assert response.status_code == 413
        assert response.json()["code"] == "payload_too_large"
        assert small_client.get("/big.txt").status_code == 404


def test_html_is_never_rendered(client: TestClient) -> None:
    _upload(client, "index.html", b"<script>alert(1)</script>")

    response = client.get("/index.html", headers=IDENTITY)

    assert response.headers["content-type"] == "text/plain; charset=utf-8"


def test_download_flag_sets_attachment_headers(client: TestClient) -> None:
    _upload(client, "docs/readme.txt", b"read me")

    response = client.get("/docs/readme.txt?download", headers=IDENTITY)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.headers["content-disposition"].startswith('attachment; filename="readme.txt"')


@pytest.mark.parametrize(
    ("query", "attachment"),
    [("dl", True), ("download=yes", True), ("dl=TRUE", True), ("download=false", False), ("dl=0", False)],
)
def test_download_flag_values(client: TestClient, query: str, attachment: bool) -> None:
    _upload(client, "notes.txt", b"notes")

    response = client.get(f"/notes.txt?{query}", headers=IDENTITY)

    assert response.status_code == 200
    assert ("content-disposition" in response.headers) is attachment
    expected = "application/octet-stream" if attachment else "text/plain; charset=utf-8"
    assert response.headers["content-type"] == expected


def test_byte_ranges(client: TestClient) -> None:
    _upload(client, "logo.png", LOGO)

    partial = client.get("/logo.png", headers={"Range": "bytes=10-19"})
    assert partial.status_code == 206
    assert partial.content == LOGO[10:20]
    assert partial.headers["content-range"] == f"bytes 10-19/{len(LOGO)}"

    unsatisfiable = client.get("/logo.png", headers={"Range": f"bytes={len(LOGO)}-"})
    assert unsatisfiable.status_code == 416
    assert unsatisfiable.headers["content-range"] == f"bytes */{len(LOGO)}"


def test_head_returns_headers_only(client: TestClient) -> None:
    _upload(client, "logo.png", LOGO)

    response = client.head("/logo.png", headers=IDENTITY)

    assert response.status_code == 200
    assert response.headers["content-length"] == str(len(LOGO))
    assert response.content == b""


def test_reserved_and_invalid_names_are_rejected(client: TestClient) -> None:
    assert client.get("/-/unknown").status_code == 400
    assert client.post("/-/upload", content=b"x", headers=bearer()).status_code == 400
    assert client.get("/notes.txt.metadata.json").status_code == 400


def test_cors_exposes_delivery_headers(client: TestClient) -> None:
    _upload(client, "logo.png", LOGO)

    response = client.get("/logo.png", headers={**IDENTITY, "Origin": "https://app.example"})
    assert response.headers["access-control-allow-origin"] == "*"
    assert "etag" in response.headers["access-control-expose-headers"].lower()

    preflight = client.options(
        "/logo.png",
        headers={"Origin": "https://app.example", "Access-Control-Request-Method": "GET"},
    )
    assert preflight.status_code == 200


def test_operational_endpoints(client: TestClient) -> None:
    _upload(client, "logo.png", LOGO)
    client.get("/logo.png", headers=IDENTITY)
    client.get("/logo.png", headers=IDENTITY)

    health = client.get("/-/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"

    status_payload = client.get("/-/status").json()
    assert status_payload["origin"]["backend"] == "local"
    assert status_payload["in_flight"] == 0
    assert status_payload["top_files"][0]["file_name"] == "logo.png"
    assert status_payload["top_files"][0]["hits"] == 1

    assert client.get("/-/metrics").status_code == 401
    metrics = client.get("/-/metrics", headers={"Authorization": f"Bearer {METRICS_TOKEN}"})
    assert metrics.status_code == 200
    assert "stratus_requests_total" in metrics.text
    assert "stratus_cache_memory_hits_total" in metrics.text


def test_multipart_upload_is_rejected(client: TestClient) -> None:
    response = client.post("/a.txt", files={"file": ("a.txt", b"hello")}, headers=bearer())

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"
    assert client.get("/a.txt").status_code == 404
