from __future__ import annotations

import io
import json
from pathlib import Path

import httpx
import pytest

from conftest import SECRET, bearer, sha256
from stratus.cli import auth, files
from stratus.common.security import DELETE_PERMISSION, JwtAuthorizer
from stratus.edge.app import create_app


def test_cli_auth_prints_bare_token(capsys) -> None:
    auth.main(["--subject", "deployer", "--secret", SECRET])

    token = capsys.readouterr().out.strip()
    identity = JwtAuthorizer(SECRET).validate(token)
    assert identity.subject == "deployer"
    assert identity.permissions == frozenset({"upload", "delete"})


def test_cli_auth_json_output(capsys) -> None:
    auth.main(["--subject", "ops", "--secret", SECRET, "--permission", DELETE_PERMISSION, "--ttl", "60", "--json"])

    output = json.loads(capsys.readouterr().out)
    assert output["subject"] == "ops"
    assert output["permissions"] == [DELETE_PERMISSION]
    assert output["ttl_seconds"] == 60
    assert JwtAuthorizer(SECRET).validate(output["token"]).allows(DELETE_PERMISSION)


def test_cli_auth_requires_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STRATUS_JWT_SECRET", raising=False)
    with pytest.raises(SystemExit):
        auth.main(["--subject", "nobody"])


@pytest.mark.anyio
async def test_file_client_round_trip(stratus_env, tmp_path: Path) -> None:
    source = tmp_path / "site.css"
    source.write_bytes(b"body { margin: 0; }" * 1000)
    token = bearer()["Authorization"].split(" ", 1)[1]
    transport = httpx.ASGITransport(app=create_app())

    async with httpx.AsyncClient(transport=transport, base_url="http://stratus.test") as client:
        metadata = await files.upload_file(client, source, "assets/site.css", token)
        assert metadata["content_hash"] == sha256(source.read_bytes())
        assert metadata["content_type"] == "text/css"

        sink = io.BytesIO()
        written = await files.fetch_file(client, "assets/site.css", sink)
        assert written == source.stat().st_size
        assert sink.getvalue() == source.read_bytes()

        details = await files.stat_file(client, "assets/site.css")
        assert details["etag"] == metadata["content_hash"]
        assert details["content_type"] == "text/css; charset=utf-8"

        await files.delete_file(client, "assets/site.css", token)
        with pytest.raises(httpx.HTTPStatusError):
            await files.stat_file(client, "assets/site.css")


@pytest.mark.anyio
async def test_file_client_surfaces_auth_errors(stratus_env, tmp_path: Path) -> None:
    source = tmp_path / "a.txt"
    source.write_bytes(b"a")
    transport = httpx.ASGITransport(app=create_app())

    async with httpx.AsyncClient(transport=transport, base_url="http://stratus.test") as client:
        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await files.upload_file(client, source, "a.txt", None)
    assert exc_info.value.response.status_code == 401


def test_file_client_parses_subcommands(tmp_path: Path) -> None:
    args = files.parse_args(["--base-url", "http://cdn:3000", "--token", "t", "upload", str(tmp_path / "x.bin"), "remote.bin"])
    assert args.command == "upload"
    assert args.name == "remote.bin"
    assert args.token == "t"

    fetch_args = files.parse_args(["fetch", "remote.bin", "-o", str(tmp_path / "out.bin")])
    assert fetch_args.output == tmp_path / "out.bin"
