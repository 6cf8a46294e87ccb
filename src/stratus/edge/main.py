"""Uvicorn entrypoint for the Stratus delivery server."""

from __future__ import annotations

import argparse
from pathlib import Path

import uvicorn

from ..common.settings import CdnSettings
from .app import create_app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Stratus delivery server")
    parser.add_argument("--host", help="Bind address (default: STRATUS_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Bind port (default: STRATUS_PORT or 3000)")
    parser.add_argument("--storage-path", type=Path, help="Directory holding origin files")
    parser.add_argument("--disk-cache-path", type=Path, help="Enable the disk cache tier at this directory")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> CdnSettings:
    overrides = {
        "host": args.host,
        "port": args.port,
        "storage_path": args.storage_path,
        "disk_cache_path": args.disk_cache_path,
    }
    return CdnSettings(**{key: value for key, value in overrides.items() if value is not None})


def main(argv: list[str] | None = None) -> None:
    settings = build_settings(parse_args(argv))
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
