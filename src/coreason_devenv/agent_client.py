# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import asyncio
import base64
import time
from typing import Any

import httpx
from loguru import logger

from coreason_devenv.errors import CommandTimeoutError, DriverError, TransientError, UnauthorizedError
from coreason_devenv.models.execution import CommandResult, FileWrite


class HostAgentClient:
    """Client for the in-guest host agent's exec and file API.

    Requests that fail to connect are retried a bounded number of times; a
    request that reached the agent is never replayed, since ``/exec`` is not
    idempotent.
    """

    def __init__(
        self,
        base_url: str,
        secret: str | None,
        attempts: int = 3,
        backoff: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self._internal_client = client is None
        headers = {"Authorization": f"Bearer {secret}"} if secret else {}
        self._client = client or httpx.AsyncClient(base_url=self.base_url, headers=headers)
        if client is not None and secret:
            self._client.headers["Authorization"] = f"Bearer {secret}"

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                response = await self._client.request(method, f"{self.base_url}{path}", timeout=timeout, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = e
                if attempt < self.attempts:
                    delay = self.backoff * 2 ** (attempt - 1)
                    logger.debug(f"Host agent unreachable ({e}); retry {attempt}/{self.attempts} in {delay:.1f}s")
                    await asyncio.sleep(delay)
                continue
            if response.status_code == 401:
                raise UnauthorizedError("Host agent rejected credentials")
            return response
        raise TransientError(f"Host agent at {self.base_url} unreachable: {last_error}") from last_error

    async def exec(
        self,
        command: str,
        timeout: float,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run a shell command in the guest.

        Raises:
            CommandTimeoutError: If the agent killed the command on timeout.
        """
        payload: dict[str, Any] = {"command": command, "timeout": int(timeout * 1000)}
        if cwd:
            payload["cwd"] = cwd
        if env:
            payload["env"] = env

        start_time = time.monotonic()
        # Leave the agent room to enforce the timeout itself.
        response = await self._request("POST", "/exec", timeout=timeout + 10.0, json=payload)
        body = response.json()
        if response.status_code == 504 or body.get("timedOut"):
            raise CommandTimeoutError(command, timeout, body.get("output", ""))
        if response.status_code >= 400:
            raise DriverError(f"Host agent exec failed ({response.status_code}): {body.get('error')}")

        return CommandResult(
            stdout=body.get("stdout", ""),
            stderr=body.get("stderr", ""),
            exit_code=body.get("exitCode", -1),
            duration=time.monotonic() - start_time,
        )

    async def write_files(self, files: list[FileWrite]) -> list[dict[str, str]]:
        """Write files (base64 on the wire). Returns per-path errors."""
        payload = {
            "files": [
                {"path": f.path, "content": base64.b64encode(f.content).decode("ascii"), "encoding": "base64"}
                for f in files
            ]
        }
        response = await self._request("POST", "/files/write", timeout=60.0, json=payload)
        if response.status_code >= 400:
            raise DriverError(f"Host agent write failed ({response.status_code}): {response.text}")
        return list(response.json().get("errors", []))

    async def delete_files(self, paths: list[str]) -> list[dict[str, str]]:
        response = await self._request("POST", "/files/delete", timeout=60.0, json={"paths": paths})
        if response.status_code >= 400:
            raise DriverError(f"Host agent delete failed ({response.status_code}): {response.text}")
        return list(response.json().get("errors", []))

    async def read_file(self, path: str) -> bytes | None:
        response = await self._request("GET", "/files/read", timeout=30.0, params={"path": path})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise DriverError(f"Host agent read failed ({response.status_code}): {response.text}")
        body = response.json()
        if body.get("encoding") == "base64":
            return base64.b64decode(body["content"])
        return str(body.get("content", "")).encode("utf-8")

    async def health(self) -> bool:
        try:
            response = await self._client.get(f"{self.base_url}/health", timeout=2.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def wait_until_up(self, timeout: float, interval: float = 0.25) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if await self.health():
                return
            await asyncio.sleep(interval)
        raise TransientError(f"Host agent at {self.base_url} did not come up within {timeout:g}s")
