# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv
import json
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from coreason_devenv.agent import AgentConfig, create_agent_app
from coreason_devenv.agent_client import HostAgentClient
from coreason_devenv.errors import CommandTimeoutError, DriverError, TransientError, UnauthorizedError
from coreason_devenv.models.execution import CommandResult, FileWrite


def mocked(handler: Callable[[httpx.Request], httpx.Response], secret: str | None = "s3cret") -> HostAgentClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HostAgentClient("http://10.200.0.2:8080/", secret, backoff=0.0, client=client)


@pytest.mark.asyncio
async def test_exec() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"exitCode": 0, "stdout": "v24\n", "stderr": ""})

    result = await mocked(handler).exec("node --version", timeout=30.0, cwd="/app", env={"CI": "1"})

    assert result.exit_code == 0
    assert result.stdout == "v24\n"
    assert str(seen[0].url) == "http://10.200.0.2:8080/exec"
    assert seen[0].headers["Authorization"] == "Bearer s3cret"
    assert json.loads(seen[0].content) == {
        "command": "node --version",
        "timeout": 30000,
        "cwd": "/app",
        "env": {"CI": "1"},
    }


@pytest.mark.asyncio
async def test_exec_timeout() -> None:
    client = mocked(lambda request: httpx.Response(504, json={"timedOut": True, "output": "partial"}))

    with pytest.raises(CommandTimeoutError) as exc_info:
        await client.exec("sleep 100", timeout=1.0)

    assert exc_info.value.output == "partial"


@pytest.mark.asyncio
async def test_exec_errors() -> None:
    with pytest.raises(UnauthorizedError):
        await mocked(lambda request: httpx.Response(401, json={"detail": "Invalid credentials"})).exec("ls", 1.0)

    with pytest.raises(DriverError, match="500"):
        await mocked(lambda request: httpx.Response(500, json={"error": "boom"})).exec("ls", 1.0)


@pytest.mark.asyncio
async def test_unreachable_agent_is_retried() -> None:
    """
    GIVEN an agent that refuses connections
    WHEN a command is sent
    THEN the connect is retried and a TransientError is raised at the end.
    """
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError, match="unreachable"):
        await mocked(handler).exec("ls", 1.0)

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_connect_retry_then_success() -> None:
    responses: list[Any] = [httpx.ConnectError("refused"), httpx.Response(200, json={"exitCode": 0})]

    def handler(request: httpx.Request) -> httpx.Response:
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    result = await mocked(handler).exec("true", 1.0)
    assert result.exit_code == 0


@pytest.mark.asyncio
async def test_file_round_trip_against_agent(tmp_path: Path) -> None:
    workdir = tmp_path / "app"
    workdir.mkdir()
    config = AgentConfig(secret="s3cret", workdir=str(workdir), root=str(tmp_path))
    executor = MagicMock()
    executor.run = AsyncMock(return_value=CommandResult(exit_code=0))
    transport = httpx.ASGITransport(app=create_agent_app(config, executor))
    client = HostAgentClient("http://agent", "s3cret", client=httpx.AsyncClient(transport=transport))

    errors = await client.write_files([FileWrite(path=str(workdir / "logo.png"), content=b"\x89PNG\x00")])

    assert errors == []
    assert await client.read_file(str(workdir / "logo.png")) == b"\x89PNG\x00"
    assert await client.read_file(str(workdir / "missing.png")) is None
    assert await client.delete_files([str(workdir / "logo.png")]) == []
    assert not (workdir / "logo.png").exists()
    assert await client.health() is True
    await client.wait_until_up(timeout=1.0)


@pytest.mark.asyncio
async def test_health_down() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = mocked(handler)
    assert await client.health() is False
    with pytest.raises(TransientError, match="did not come up"):
        await client.wait_until_up(timeout=0.05, interval=0.01)


@pytest.mark.asyncio
async def test_read_file_plain_content() -> None:
    client = mocked(lambda request: httpx.Response(200, json={"content": "text"}))
    assert await client.read_file("/app/a.txt") == b"text"
