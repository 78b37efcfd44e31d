# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from coreason_devenv.config import DevEnvConfig
from coreason_devenv.errors import CommandTimeoutError, SetupError
from coreason_devenv.executor import LogTail
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import CommandResult, FileWrite
from coreason_devenv import shell


@dataclass
class BootRequest:
    """What a driver needs to bring up one execution unit."""

    environment_id: str
    resource_name: str
    owner: str
    repo: str
    branch: str
    host_port: int | None = None
    image: str | None = None
    dependency_volume: str | None = None
    env_vars: dict[str, str] = field(default_factory=dict)


@dataclass
class EnvironmentHandle:
    """A running execution unit as seen by its driver.

    ``details`` holds backend-specific identifiers (container id, VM
    directory, sandbox id) that only the owning driver interprets.
    """

    environment_id: str
    resource_name: str
    backend_kind: BackendKind
    network_address: str | None = None
    host_port: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


class EnvironmentDriver(ABC):
    """
    Abstract base class for environment backends (micro-VM, container,
    remote sandbox). Follows the Strategy Pattern.

    Subclasses implement the transport (boot, exec, files, destroy); the
    setup steps (clone, install, start, probe, refresh) are shared and built
    on ``exec``.
    """

    kind: BackendKind
    # Path at which the host mirror cache is visible inside the unit, if any.
    mirror_mount: str | None = None

    def __init__(self, config: DevEnvConfig):
        self.config = config

    def mirror_path(self, handle: EnvironmentHandle) -> str | None:
        """Where ``handle`` sees the host mirror cache, or None to clone from origin."""
        return self.mirror_mount

    @abstractmethod
    async def boot(self, request: BootRequest) -> EnvironmentHandle:
        """Boot an empty execution unit.

        Args:
            request: Identity, network binding and optional base image.

        Returns:
            EnvironmentHandle: Handle to the running unit.

        Raises:
            DriverError: If the backend failed to start the unit.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def exec(
        self,
        handle: EnvironmentHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run a shell command inside the unit.

        Args:
            handle: Target unit.
            command: Shell command line.
            timeout: Hard limit in seconds; the remote process tree is killed
                when it is exceeded.
            env: Extra environment variables.
            cwd: Working directory, defaults to the configured workdir.

        Returns:
            CommandResult: Exit code and output.

        Raises:
            CommandTimeoutError: If the command outlived ``timeout``.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def write_files(self, handle: EnvironmentHandle, files: list[FileWrite]) -> list[dict[str, str]]:
        """Write files binary-safely, creating parent directories.

        Returns:
            list[dict[str, str]]: ``{"path", "error"}`` for every file that failed.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def read_file(self, handle: EnvironmentHandle, path: str) -> bytes | None:
        """Read a file, or None if it does not exist."""
        pass  # pragma: no cover

    @abstractmethod
    async def delete_files(self, handle: EnvironmentHandle, paths: list[str]) -> list[dict[str, str]]:
        pass  # pragma: no cover

    @abstractmethod
    async def destroy(self, handle: EnvironmentHandle) -> None:
        """Kill and clean up the unit. Never raises for an already-gone unit."""
        pass  # pragma: no cover

    async def list_resource_ports(self) -> list[int]:
        """Host ports held by units that survived a restart of this process."""
        return []

    def resolve_path(self, path: str) -> str:
        if path.startswith("/"):
            return path
        return f"{self.config.workdir.rstrip('/')}/{path}"

    async def _run_step(
        self,
        handle: EnvironmentHandle,
        step: str,
        command: str,
        timeout: float,
        log: LogTail | None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        try:
            result = await self.exec(handle, command, timeout=timeout, env=env)
        except CommandTimeoutError as e:
            if log is not None:
                log.section(f"{step} (timed out)", e.output)
            raise SetupError(step, str(e), log_tail=log.text() if log else "") from e

        if log is not None:
            log.section(step, result.output)
        if not result.ok:
            raise SetupError(
                step,
                f"exit code {result.exit_code}",
                exit_code=result.exit_code,
                log_tail=log.text() if log else result.output,
            )
        return result

    async def clone(
        self,
        handle: EnvironmentHandle,
        source_url: str,
        origin_url: str,
        branch: str,
        default_branch: str,
        log: LogTail | None = None,
    ) -> str | None:
        """Check out ``branch`` from ``source_url`` and return the HEAD commit."""
        logger.info(f"Cloning {branch} into {handle.resource_name}")
        script = shell.clone_script(self.config.workdir, source_url, origin_url, branch, default_branch)
        result = await self._run_step(handle, "clone", script, self.config.clone_timeout, log)
        return shell.parse_head(result.stdout)

    async def install(self, handle: EnvironmentHandle, command: str, log: LogTail | None = None) -> None:
        logger.info(f"Installing dependencies in {handle.resource_name}: {command}")
        script = f"cd {shlex.quote(self.config.workdir)} && {command}"
        await self._run_step(handle, "install", script, self.config.install_timeout, log)

    async def refresh(
        self,
        handle: EnvironmentHandle,
        branch: str,
        origin_url: str | None = None,
        log: LogTail | None = None,
    ) -> str | None:
        """Bring a restored checkout to the remote head of ``branch``."""
        logger.info(f"Refreshing {branch} in {handle.resource_name}")
        script = shell.refresh_script(self.config.workdir, branch, origin_url)
        result = await self._run_step(handle, "refresh", script, self.config.clone_timeout, log)
        return shell.parse_head(result.stdout)

    async def head_commit(self, handle: EnvironmentHandle) -> str | None:
        result = await self.exec(handle, shell.head_script(self.config.workdir), timeout=self.config.exec_timeout)
        return shell.parse_head(result.stdout) if result.ok else None

    async def write_env_file(self, handle: EnvironmentHandle, env_vars: dict[str, str]) -> None:
        if not env_vars:
            return
        content = "".join(f"{key}={value}\n" for key, value in env_vars.items())
        errors = await self.write_files(handle, [FileWrite(path=".env", content=content.encode("utf-8"))])
        if errors:
            raise SetupError("env", f"could not write .env: {errors[0].get('error')}")

    async def start_dev_server(
        self,
        handle: EnvironmentHandle,
        command: str,
        port: int,
        log: LogTail | None = None,
    ) -> None:
        logger.info(f"Starting dev server in {handle.resource_name}: {command}")
        script = shell.dev_server_script(self.config.workdir, command, self.config.dev_log_path, port)
        await self._run_step(handle, "start", script, self.config.start_timeout, log)

    async def probe(self, handle: EnvironmentHandle, port: int) -> bool:
        """One health check: does anything answer HTTP on ``port``."""
        try:
            result = await self.exec(
                handle,
                shell.probe_script(port, timeout=self.config.probe_timeout / 2),
                timeout=self.config.probe_timeout,
            )
        except CommandTimeoutError:
            return False
        return result.ok

    async def read_log_tail(self, handle: EnvironmentHandle, lines: int) -> str:
        try:
            result = await self.exec(
                handle, shell.tail_script(self.config.dev_log_path, lines), timeout=self.config.exec_timeout
            )
        except CommandTimeoutError:
            return ""
        return result.stdout


@runtime_checkable
class PausableDriver(Protocol):
    """Backends that can pause a running unit and capture memory and state."""

    async def get_pause_state(self, handle: EnvironmentHandle) -> str: ...

    async def pause(self, handle: EnvironmentHandle) -> None: ...

    async def resume(self, handle: EnvironmentHandle) -> None: ...

    async def capture(self, handle: EnvironmentHandle, memory_path: Path, state_path: Path) -> None: ...

    def disk_image(self, handle: EnvironmentHandle) -> Path: ...

    async def prepare_restore(self, request: BootRequest) -> EnvironmentHandle: ...

    async def attach_devices(self, handle: EnvironmentHandle, disk_path: Path) -> None: ...

    async def load_snapshot(self, handle: EnvironmentHandle, memory_path: Path, state_path: Path) -> None: ...

    async def destroy(self, handle: EnvironmentHandle) -> None: ...


@runtime_checkable
class CommitCapableDriver(Protocol):
    """Backends that can commit a unit's filesystem as a new image."""

    async def commit_image(self, handle: EnvironmentHandle, repository: str, tag: str) -> str: ...

    async def image_exists(self, image: str) -> bool: ...

    async def remove_image(self, image: str) -> None: ...

    def dependency_volume(self, owner: str, repo: str) -> str: ...
