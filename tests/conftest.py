from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from stratus.common.security import DELETE_PERMISSION, UPLOAD_PERMISSION, mint_access_token
from stratus.edge.app import create_app
from stratus.origin.store import FileObject, LocalOriginStore

SECRET = "test-secret"
METRICS_TOKEN = "metrics-token"


def sha256(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class CountingOrigin(LocalOriginStore):
    """Local store that counts content reads and can slow them down."""

    def __init__(self, base_dir: Path, delay: float = 0.0) -> None:
        super().__init__(base_dir)
        self.delay = delay
        self.gets = 0
        self.streams = 0
        self.stale: Optional[FileObject] = None

    async def stat(self, name: str) -> FileObject:
        if self.stale is not None:
            return self.stale
        return await super().stat(name)

    async def get(self, name: str):
        self.gets += 1
        await asyncio.sleep(self.delay)
        return await super().get(name)

    async def open_stream(self, name, chunk_size, context=None):
        self.streams += 1
        await asyncio.sleep(self.delay)
        async for chunk in super().open_stream(name, chunk_size, context):
            yield chunk


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def storage_path(tmp_path: Path) -> Path:
    storage = tmp_path / "files"
    storage.mkdir()
    return storage


@pytest.fixture
def stratus_env(tmp_path: Path, storage_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
    db_path = tmp_path / "stats.db"
    monkeypatch.setenv("STRATUS_STORAGE_PATH", storage_path.as_posix())
    monkeypatch.setenv("STRATUS_JWT_SECRET", SECRET)
    monkeypatch.setenv("STRATUS_STATS_DB", f"sqlite+pysqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("STRATUS_METRICS_TOKEN", METRICS_TOKEN)
    monkeypatch.setenv("STRATUS_LOG_LEVEL", "WARNING")
    return {"storage": storage_path, "db": db_path, "secret": SECRET}


@pytest.fixture
def client(stratus_env) -> TestClient:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


def bearer(permissions=(UPLOAD_PERMISSION, DELETE_PERMISSION), secret: str = SECRET, **kwargs) -> dict[str, str]:
    token = mint_access_token(secret=secret, subject="tester", permissions=list(permissions), **kwargs)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return bearer()
