"""Origin stores holding the authoritative copy of every served file."""

from __future__ import annotations

import asyncio
import hashlib
import json
import mimetypes
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Optional
from uuid import uuid4

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..common.errors import InvalidRequest, NotFound, OriginUnavailable, PayloadTooLarge
from ..common.settings import CdnSettings
from ..delivery.context import RequestContext

LOGGER = structlog.get_logger("stratus.origin")

METADATA_SUFFIX = ".metadata.json"
UPLOAD_DIR_NAME = ".stratus-uploads"
OPERATIONAL_PREFIX = "-"
DEFAULT_CONTENT_TYPE = "text/plain; charset=utf-8"
_S3_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class FileObject:
    """Metadata of a stored file; ``content_hash`` doubles as the ETag."""

    name: str
    size: int
    content_type: str
    last_modified: datetime
    content_hash: str

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": self.size,
            "content_type": self.content_type,
            "last_modified": self.last_modified.isoformat(),
            "content_hash": self.content_hash,
        }


def validate_file_name(name: str) -> str:
    """Normalise a request path into a flat-namespace key, rejecting traversal attempts."""

    candidate = name.strip().lstrip("/")
    if not candidate or candidate.endswith("/"):
        raise InvalidRequest("Invalid file name")
    if "\x00" in candidate or "\\" in candidate:
        raise InvalidRequest("Invalid file name")
    segments = candidate.split("/")
    if any(segment in {"", ".", ".."} for segment in segments):
        raise InvalidRequest("Invalid file name")
    if segments[0] in {UPLOAD_DIR_NAME, OPERATIONAL_PREFIX} or candidate.endswith(METADATA_SUFFIX):
        raise InvalidRequest("Reserved file name")
    return candidate


def guess_content_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_CONTENT_TYPE


async def _bounded_chunks(
    chunks: AsyncIterator[bytes], max_bytes: Optional[int], sink: Callable[[bytes], None]
) -> tuple[int, str]:
    hasher = hashlib.sha256()
    size = 0
    async for chunk in chunks:
        if not chunk:
            continue
        size += len(chunk)
        if max_bytes is not None and size > max_bytes:
            raise PayloadTooLarge(f"Upload exceeds max size: {max_bytes} bytes")
        hasher.update(chunk)
        await asyncio.to_thread(sink, chunk)
    return size, hasher.hexdigest()


class OriginStore:
    """Flat key -> bytes store with per-object metadata."""

    async def stat(self, name: str) -> FileObject:  # pragma: no cover - interface
        raise NotImplementedError

    async def exists(self, name: str) -> bool:
        try:
            await self.stat(name)
        except NotFound:
            return False
        return True

    async def get(self, name: str) -> tuple[FileObject, bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    def open_stream(
        self, name: str, chunk_size: int, context: Optional[RequestContext] = None
    ) -> AsyncIterator[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put_stream(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        content_type: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> tuple[FileObject, bool]:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, name: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class LocalOriginStore(OriginStore):
    """Files on local disk with a JSON metadata sidecar next to each file."""

    def __init__(self, base_dir: Path) -> None:
        self._root = Path(base_dir).expanduser().resolve()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _path(self, name: str) -> Path:
        candidate = self._root.joinpath(*validate_file_name(name).split("/"))
        resolved = candidate.resolve(strict=False)
        if not resolved.is_relative_to(self._root):
            raise InvalidRequest("Invalid file name")
        return resolved

    @staticmethod
    def _metadata_path(path: Path) -> Path:
        return path.with_name(path.name + METADATA_SUFFIX)

    def _read_metadata(self, name: str, path: Path) -> FileObject:
        try:
            stat_result = path.stat()
        except FileNotFoundError as exc:
            raise NotFound(f"File {name} does not exist") from exc
        if not path.is_file():
            raise NotFound(f"File {name} does not exist")
        metadata_path = self._metadata_path(path)
        try:
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
            if int(raw["size_bytes"]) == stat_result.st_size:
                return FileObject(
                    name=name,
                    size=int(raw["size_bytes"]),
                    content_type=str(raw.get("content_type") or guess_content_type(name)),
                    last_modified=datetime.fromisoformat(raw["last_modified"]),
                    content_hash=str(raw["hash"]),
                )
        except (OSError, ValueError, KeyError, TypeError):
            pass
        # sidecar missing or out of date: rebuild it from the content
        hasher = hashlib.sha256()
        with path.open("rb") as handle:
            for block in iter(lambda: handle.read(1024 * 1024), b""):
                hasher.update(block)
        file_obj = FileObject(
            name=name,
            size=stat_result.st_size,
            content_type=guess_content_type(name),
            last_modified=datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc),
            content_hash=hasher.hexdigest(),
        )
        self._write_metadata(path, file_obj)
        LOGGER.info("origin_metadata_rebuilt", file=name, hash=file_obj.content_hash)
        return file_obj

    def _write_metadata(self, path: Path, file_obj: FileObject) -> None:
        metadata_path = self._metadata_path(path)
        payload = {
            "hash": file_obj.content_hash,
            "size_bytes": file_obj.size,
            "content_type": file_obj.content_type,
            "last_modified": file_obj.last_modified.isoformat(),
        }
        temp_path = metadata_path.with_name(f".{metadata_path.name}.{uuid4().hex}")
        temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(temp_path, metadata_path)

    async def stat(self, name: str) -> FileObject:
        path = self._path(name)
        async with self._lock_for(name):
            try:
                return await asyncio.to_thread(self._read_metadata, name, path)
            except (NotFound, InvalidRequest):
                raise
            except OSError as exc:
                raise OriginUnavailable(f"Origin read failed for {name}") from exc

    async def get(self, name: str) -> tuple[FileObject, bytes]:
        path = self._path(name)
        async with self._lock_for(name):
            try:
                file_obj = await asyncio.to_thread(self._read_metadata, name, path)
                data = await asyncio.to_thread(path.read_bytes)
            except FileNotFoundError as exc:
                raise NotFound(f"File {name} does not exist") from exc
            except NotFound:
                raise
            except OSError as exc:
                raise OriginUnavailable(f"Origin read failed for {name}") from exc
        actual_hash = hashlib.sha256(data).hexdigest()
        if actual_hash != file_obj.content_hash or len(data) != file_obj.size:
            LOGGER.warning("origin_metadata_mismatch", file=name, recorded=file_obj.content_hash, actual=actual_hash)
            file_obj = FileObject(
                name=name,
                size=len(data),
                content_type=file_obj.content_type,
                last_modified=file_obj.last_modified,
                content_hash=actual_hash,
            )
        return file_obj, data

    async def open_stream(
        self, name: str, chunk_size: int, context: Optional[RequestContext] = None
    ) -> AsyncIterator[bytes]:
        path = self._path(name)
        async with self._lock_for(name):
            try:
                # an open handle keeps reading the old inode even if an upload replaces the file
                handle = await asyncio.to_thread(path.open, "rb")
            except FileNotFoundError as exc:
                raise NotFound(f"File {name} does not exist") from exc
            except OSError as exc:
                raise OriginUnavailable(f"Origin read failed for {name}") from exc
        try:
            while True:
                if context is not None:
                    context.raise_if_cancelled()
                try:
                    chunk = await asyncio.to_thread(handle.read, chunk_size)
                except OSError as exc:
                    raise OriginUnavailable(f"Origin read failed for {name}") from exc
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def put_stream(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        content_type: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> tuple[FileObject, bool]:
        path = self._path(name)
        uploads_dir = self._root / UPLOAD_DIR_NAME
        uploads_dir.mkdir(parents=True, exist_ok=True)
        temp_path = uploads_dir / f"{uuid4().hex}.upload"
        handle = temp_path.open("wb")
        try:
            try:
                size, digest = await _bounded_chunks(chunks, max_bytes, handle.write)
            finally:
                handle.close()
            file_obj = FileObject(
                name=name,
                size=size,
                content_type=content_type or guess_content_type(name),
                last_modified=datetime.now(timezone.utc),
                content_hash=digest,
            )
            async with self._lock_for(name):
                created = not path.exists()
                try:
                    await asyncio.to_thread(self._commit, temp_path, path, file_obj)
                except OSError as exc:
                    raise OriginUnavailable(f"Origin write failed for {name}") from exc
        finally:
            temp_path.unlink(missing_ok=True)
        LOGGER.info("origin_write", file=name, bytes=size, hash=digest, created=created)
        return file_obj, created

    def _commit(self, temp_path: Path, path: Path, file_obj: FileObject) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(temp_path, path)
        self._write_metadata(path, file_obj)

    async def delete(self, name: str) -> None:
        path = self._path(name)
        async with self._lock_for(name):
            if not path.is_file():
                raise NotFound(f"File {name} does not exist")
            try:
                await asyncio.to_thread(self._remove, path)
            except OSError as exc:
                raise OriginUnavailable(f"Origin delete failed for {name}") from exc
        LOGGER.info("origin_delete", file=name)

    def _remove(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        self._metadata_path(path).unlink(missing_ok=True)
        parent = path.parent
        while parent != self._root and parent.exists():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


def _is_missing(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code", "") in _S3_MISSING_CODES


class S3OriginStore(OriginStore):
    """Objects in an S3-compatible bucket; the SHA-256 lives in the object metadata."""

    HASH_METADATA_KEY = "sha256"

    def __init__(self, settings: CdnSettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    @staticmethod
    def _key(name: str) -> str:
        return validate_file_name(name)

    def _file_object(self, name: str, response: dict) -> FileObject:
        metadata = response.get("Metadata") or {}
        content_hash = metadata.get(self.HASH_METADATA_KEY) or str(response.get("ETag", "")).strip('"')
        last_modified = response.get("LastModified")
        if not isinstance(last_modified, datetime):
            last_modified = datetime.now(timezone.utc)
        return FileObject(
            name=name,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or guess_content_type(name),
            last_modified=last_modified,
            content_hash=content_hash,
        )

    async def stat(self, name: str) -> FileObject:
        response = await self._call_with_retry(name, self._client.head_object, Bucket=self._bucket, Key=self._key(name))
        return self._file_object(name, response)

    async def get(self, name: str) -> tuple[FileObject, bytes]:
        response = await self._call_with_retry(name, self._client.get_object, Bucket=self._bucket, Key=self._key(name))
        try:
            data = await asyncio.to_thread(response["Body"].read)
        except (BotoCoreError, OSError) as exc:
            self._breaker.record_failure()
            raise OriginUnavailable(f"Origin read failed for {name}") from exc
        file_obj = self._file_object(name, response)
        actual_hash = hashlib.sha256(data).hexdigest()
        if actual_hash != file_obj.content_hash:
            file_obj = FileObject(
                name=name,
                size=len(data),
                content_type=file_obj.content_type,
                last_modified=file_obj.last_modified,
                content_hash=actual_hash,
            )
        return file_obj, data

    async def open_stream(
        self, name: str, chunk_size: int, context: Optional[RequestContext] = None
    ) -> AsyncIterator[bytes]:
        response = await self._call_with_retry(name, self._client.get_object, Bucket=self._bucket, Key=self._key(name))
        body = response["Body"]
        try:
            while True:
                if context is not None:
                    context.raise_if_cancelled()
                try:
                    chunk = await asyncio.to_thread(body.read, chunk_size)
                except (BotoCoreError, OSError) as exc:
                    raise OriginUnavailable(f"Origin read failed for {name}") from exc
                if not chunk:
                    break
                yield chunk
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    async def put_stream(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        content_type: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> tuple[FileObject, bool]:
        created = not await self.exists(name)
        content_type = content_type or guess_content_type(name)
        with tempfile.TemporaryFile() as spool:
            size, digest = await _bounded_chunks(chunks, max_bytes, spool.write)
            spool.seek(0)
            await self._call_with_retry(
                name,
                self._client.upload_fileobj,
                Fileobj=spool,
                Bucket=self._bucket,
                Key=self._key(name),
                ExtraArgs={"ContentType": content_type, "Metadata": {self.HASH_METADATA_KEY: digest}},
            )
        file_obj = FileObject(
            name=name,
            size=size,
            content_type=content_type,
            last_modified=datetime.now(timezone.utc),
            content_hash=digest,
        )
        LOGGER.info("origin_write", file=name, bytes=size, hash=digest, created=created, backend="s3")
        return file_obj, created

    async def delete(self, name: str) -> None:
        await self.stat(name)
        await self._call_with_retry(name, self._client.delete_object, Bucket=self._bucket, Key=self._key(name))
        LOGGER.info("origin_delete", file=name, backend="s3")

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    async def _call_with_retry(self, name: str, func: Callable[..., object], **kwargs):
        if not self._breaker.allow_request():
            raise OriginUnavailable("Origin temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except ClientError as exc:
                if _is_missing(exc):
                    self._breaker.record_success()
                    raise NotFound(f"File {name} does not exist") from exc
                failure: Exception = exc
            except Exception as exc:  # noqa: BLE001
                failure = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                LOGGER.error("origin_unavailable", file=name, attempts=attempt, error=str(failure))
                raise OriginUnavailable("Origin temporarily unavailable") from failure
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)


def build_origin(settings: CdnSettings) -> OriginStore:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url and not settings.s3_region:
            raise RuntimeError("S3 configuration incomplete for origin store")
        return S3OriginStore(settings)
    return LocalOriginStore(settings.storage_path)
