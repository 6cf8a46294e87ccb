"""Command-line client for uploading, fetching and deleting Stratus files."""

from __future__ import annotations

import argparse
import asyncio
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import httpx

UPLOAD_CHUNK_BYTES = 256 * 1024


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage files on a Stratus delivery server")
    parser.add_argument("--base-url", default="http://localhost:3000", help="Stratus server base URL")
    parser.add_argument("--token", help="Bearer token for uploads and deletes")

    subparsers = parser.add_subparsers(dest="command", required=True)

    upload_parser = subparsers.add_parser("upload", help="Upload or replace a file")
    upload_parser.add_argument("source", type=Path, help="Local file to upload")
    upload_parser.add_argument("name", nargs="?", help="Remote file name (default: source file name)")
    upload_parser.add_argument("--content-type", help="Content type to store (default: guessed)")

    fetch_parser = subparsers.add_parser("fetch", help="Download a file")
    fetch_parser.add_argument("name", help="Remote file name")
    fetch_parser.add_argument("--output", "-o", type=Path, help="Write to this path instead of stdout")

    stat_parser = subparsers.add_parser("stat", help="Show delivery headers for a file")
    stat_parser.add_argument("name", help="Remote file name")
    stat_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    delete_parser = subparsers.add_parser("delete", help="Delete a file")
    delete_parser.add_argument("name", help="Remote file name")

    return parser.parse_args(argv)


def _auth_headers(token: Optional[str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


async def _read_file(path: Path) -> AsyncIterator[bytes]:
    with path.open("rb") as handle:
        while True:
            chunk = await asyncio.to_thread(handle.read, UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            yield chunk


async def upload_file(
    client: httpx.AsyncClient,
    source: Path,
    name: str,
    token: Optional[str],
    content_type: Optional[str] = None,
) -> dict[str, Any]:
    headers = _auth_headers(token)
    content_type = content_type or mimetypes.guess_type(source.name)[0]
    if content_type:
        headers["Content-Type"] = content_type
    response = await client.post(f"/{name.lstrip('/')}", content=_read_file(source), headers=headers)
    response.raise_for_status()
    return response.json()


async def fetch_file(client: httpx.AsyncClient, name: str, sink) -> int:  # noqa: ANN001 - binary file-like
    written = 0
    async with client.stream("GET", f"/{name.lstrip('/')}") as response:
        response.raise_for_status()
        async for chunk in response.aiter_bytes():
            sink.write(chunk)
            written += len(chunk)
    return written


async def stat_file(client: httpx.AsyncClient, name: str) -> dict[str, Any]:
    response = await client.head(f"/{name.lstrip('/')}")
    response.raise_for_status()
    return {
        "name": name,
        "size": int(response.headers.get("content-length", 0)),
        "content_type": response.headers.get("content-type"),
        "etag": response.headers.get("etag"),
        "last_modified": response.headers.get("last-modified"),
        "cache": response.headers.get("x-cache"),
    }


async def delete_file(client: httpx.AsyncClient, name: str, token: Optional[str]) -> None:
    response = await client.delete(f"/{name.lstrip('/')}", headers=_auth_headers(token))
    response.raise_for_status()


async def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    async with httpx.AsyncClient(base_url=args.base_url.rstrip("/"), timeout=30.0) as client:
        if args.command == "upload":
            name = args.name or args.source.name
            metadata = await upload_file(client, args.source, name, args.token, args.content_type)
            print(json.dumps(metadata, indent=2))
        elif args.command == "fetch":
            if args.output:
                with args.output.open("wb") as handle:
                    written = await fetch_file(client, args.name, handle)
                print(f"Wrote {written} bytes to {args.output}", file=sys.stderr)
            else:
                await fetch_file(client, args.name, sys.stdout.buffer)
        elif args.command == "stat":
            details = await stat_file(client, args.name)
            if args.json:
                print(json.dumps(details, indent=2))
            else:
                for key, value in details.items():
                    print(f"{key}: {value if value is not None else '-'}")
        elif args.command == "delete":
            await delete_file(client, args.name, args.token)
            print(f"Deleted {args.name}")


def main() -> None:
    try:
        asyncio.run(run())
    except httpx.HTTPStatusError as exc:
        raise SystemExit(f"{exc.response.status_code}: {exc.response.text}") from exc


if __name__ == "__main__":
    main()
