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
import posixpath
import shlex
import time

from e2b import CommandExitException, NotFoundException, TimeoutException
from e2b_code_interpreter import Sandbox as E2BSandbox
from loguru import logger

from coreason_devenv.config import DevEnvConfig
from coreason_devenv.drivers.base import BootRequest, EnvironmentDriver, EnvironmentHandle
from coreason_devenv.errors import CommandTimeoutError, DriverError
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import CommandResult, FileWrite
from coreason_devenv.shell import TIMEOUT_EXIT_CODE, with_timeout

KILL_AFTER = 5.0


class E2BDriver(EnvironmentDriver):
    """Remote sandbox backend on E2B cloud microVMs.

    Sandboxes cannot see the host mirror cache, so they clone from origin.
    """

    kind = BackendKind.REMOTE_SANDBOX

    def __init__(self, config: DevEnvConfig):
        super().__init__(config)
        self.api_key = config.e2b_api_key
        self._sandboxes: dict[str, E2BSandbox] = {}

    async def _sandbox(self, handle: EnvironmentHandle) -> E2BSandbox:
        sandbox = self._sandboxes.get(handle.environment_id)
        if sandbox is not None:
            return sandbox
        sandbox_id = handle.details.get("sandbox_id")
        if not sandbox_id:
            raise DriverError(f"No sandbox recorded for {handle.resource_name}")
        try:
            sandbox = await asyncio.to_thread(E2BSandbox.connect, sandbox_id, api_key=self.api_key)
        except NotFoundException as e:
            raise DriverError(f"Sandbox {handle.resource_name} no longer exists") from e
        self._sandboxes[handle.environment_id] = sandbox
        return sandbox

    async def boot(self, request: BootRequest) -> EnvironmentHandle:
        logger.info(f"Starting E2B sandbox {request.resource_name} (template: {self.config.e2b_template})")
        try:
            sandbox = await asyncio.to_thread(
                E2BSandbox.create,
                template=self.config.e2b_template,
                api_key=self.api_key,
                timeout=self.config.e2b_sandbox_timeout,
                envs=request.env_vars or None,
                metadata={"resourceName": request.resource_name, "environmentId": request.environment_id},
            )
            await asyncio.to_thread(sandbox.commands.run, f"mkdir -p {shlex.quote(self.config.workdir)}")
        except Exception as e:
            logger.error(f"Failed to start E2B sandbox: {e}")
            raise DriverError(f"Failed to start E2B sandbox: {e}") from e

        self._sandboxes[request.environment_id] = sandbox
        host = sandbox.get_host(self.config.dev_port)
        logger.info(f"E2B sandbox started: {sandbox.sandbox_id}")
        return EnvironmentHandle(
            environment_id=request.environment_id,
            resource_name=request.resource_name,
            backend_kind=self.kind,
            network_address=f"https://{host}",
            details={"sandbox_id": sandbox.sandbox_id},
        )

    async def exec(
        self,
        handle: EnvironmentHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        sandbox = await self._sandbox(handle)
        wrapped = with_timeout(command, timeout, kill_after=KILL_AFTER)

        start_time = time.monotonic()
        try:
            result = await asyncio.to_thread(
                sandbox.commands.run,
                wrapped,
                envs=env,
                cwd=cwd,
                timeout=timeout + KILL_AFTER + 5.0,
            )
            exit_code, stdout, stderr = result.exit_code, result.stdout, result.stderr
        except CommandExitException as e:
            exit_code, stdout, stderr = e.exit_code, e.stdout, e.stderr
        except TimeoutException as e:
            raise CommandTimeoutError(command, timeout) from e

        if exit_code == TIMEOUT_EXIT_CODE:
            raise CommandTimeoutError(command, timeout, (stdout or "") + (stderr or ""))

        return CommandResult(
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=exit_code,
            duration=time.monotonic() - start_time,
        )

    async def write_files(self, handle: EnvironmentHandle, files: list[FileWrite]) -> list[dict[str, str]]:
        sandbox = await self._sandbox(handle)
        errors: list[dict[str, str]] = []
        for f in files:
            path = self.resolve_path(f.path)
            try:
                await asyncio.to_thread(sandbox.commands.run, f"mkdir -p {shlex.quote(posixpath.dirname(path))}")
                await asyncio.to_thread(sandbox.files.write, path, f.content)
            except Exception as e:
                logger.warning(f"Failed to write {path} in {handle.resource_name}: {e}")
                errors.append({"path": f.path, "error": str(e)})
        return errors

    async def read_file(self, handle: EnvironmentHandle, path: str) -> bytes | None:
        sandbox = await self._sandbox(handle)
        try:
            data = await asyncio.to_thread(sandbox.files.read, self.resolve_path(path), format="bytes")
        except NotFoundException:
            return None
        return bytes(data)

    async def delete_files(self, handle: EnvironmentHandle, paths: list[str]) -> list[dict[str, str]]:
        sandbox = await self._sandbox(handle)
        errors: list[dict[str, str]] = []
        for path in paths:
            try:
                await asyncio.to_thread(sandbox.files.remove, self.resolve_path(path))
            except NotFoundException:
                continue
            except Exception as e:
                errors.append({"path": path, "error": str(e)})
        return errors

    async def destroy(self, handle: EnvironmentHandle) -> None:
        logger.info(f"Terminating E2B sandbox {handle.resource_name}")
        try:
            sandbox = await self._sandbox(handle)
            await asyncio.to_thread(sandbox.kill)
        except DriverError:
            logger.warning(f"E2B sandbox {handle.resource_name} already gone")
        except Exception as e:
            logger.warning(f"Error terminating E2B sandbox: {e}")
        finally:
            self._sandboxes.pop(handle.environment_id, None)
