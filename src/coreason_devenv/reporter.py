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
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable
from uuid import uuid4

import httpx
from loguru import logger

from coreason_devenv.models.environment import BackendKind, Environment, StatusChange

STATUS_ROUTES: dict[BackendKind, str] = {
    BackendKind.MICROVM: "/callbacks/microvm-status",
    BackendKind.CONTAINER: "/callbacks/container-status",
    BackendKind.REMOTE_SANDBOX: "/callbacks/sandbox-status",
}
SNAPSHOT_ROUTE = "/callbacks/snapshot-status"
CHECKPOINT_ROUTE = "/callbacks/checkpoint-status"


@runtime_checkable
class StatusSink(Protocol):
    """Receives every status change the lifecycle controller applies."""

    async def publish(self, environment: Environment, change: StatusChange) -> None: ...


class CallbackReporter:
    """
    Delivers status reports to the callback gateway over HTTP.

    Transport errors and 5xx responses are retried with exponential backoff up
    to ``attempts`` times. 4xx responses are final. Every logical report gets
    one ``reportId`` reused across retries, so a retry of a report the gateway
    already accepted is a no-op there.
    """

    def __init__(
        self,
        base_url: str,
        attempts: int = 5,
        backoff: float = 0.5,
        backoff_max: float = 8.0,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.timeout = timeout
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient()
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    def _delay(self, attempt: int) -> float:
        return float(min(self.backoff * 2 ** (attempt - 1), self.backoff_max))

    async def send(self, route: str, payload: dict[str, Any]) -> bool:
        """POST one report. Returns True once the gateway accepted it."""
        payload = {**payload, "reportId": payload.get("reportId") or uuid4().hex}
        url = f"{self.base_url}{route}"

        for attempt in range(1, self.attempts + 1):
            try:
                response = await self._client.post(url, json=payload, timeout=self.timeout)
            except httpx.TransportError as e:
                logger.warning(f"Callback to {route} failed (attempt {attempt}/{self.attempts}): {e}")
            else:
                if response.status_code < 400:
                    return True
                if response.status_code < 500:
                    logger.error(f"Callback to {route} rejected with {response.status_code}: {response.text}")
                    return False
                logger.warning(
                    f"Callback to {route} got {response.status_code} (attempt {attempt}/{self.attempts})"
                )
            if attempt < self.attempts:
                await self._sleep(self._delay(attempt))

        logger.error(f"Callback to {route} abandoned after {self.attempts} attempts")
        return False

    async def report_status(
        self,
        backend_kind: BackendKind,
        resource_name: str,
        secret: str,
        status: str,
        error: str | None = None,
        log_tail: str | None = None,
        health_check: str | None = None,
        commit_sha: str | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"resourceName": resource_name, "secret": secret, "status": status}
        if error is not None:
            payload["error"] = error
        if log_tail is not None:
            payload["logTail"] = log_tail
        if health_check is not None:
            payload["healthCheck"] = health_check
        if commit_sha is not None:
            payload["commitSha"] = commit_sha
        return await self.send(STATUS_ROUTES[backend_kind], payload)

    async def report_snapshot(self, resource_name: str, secret: str, **fields: Any) -> bool:
        return await self.send(SNAPSHOT_ROUTE, {"resourceName": resource_name, "secret": secret, **fields})

    async def report_checkpoint(self, resource_name: str, secret: str, **fields: Any) -> bool:
        return await self.send(CHECKPOINT_ROUTE, {"resourceName": resource_name, "secret": secret, **fields})

    async def publish(self, environment: Environment, change: StatusChange) -> None:
        # stopping and stopped are decided by the control side and never reported
        if change.status.value in ("stopping", "stopped", "requested"):
            return
        await self.report_status(
            environment.backend_kind,
            environment.resource_name,
            environment.callback_secret,
            change.status.value,
            error=environment.error_message,
            log_tail=environment.log_tail,
            health_check=environment.health_check.value if environment.health_check else None,
            commit_sha=environment.commit_sha,
        )
