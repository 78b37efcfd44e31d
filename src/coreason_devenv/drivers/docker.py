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
import io
import posixpath
import re
import shlex
import tarfile
import time

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from loguru import logger

from coreason_devenv.config import DevEnvConfig
from coreason_devenv.drivers.base import BootRequest, EnvironmentDriver, EnvironmentHandle
from coreason_devenv.errors import CommandTimeoutError, DriverError
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import CommandResult, FileWrite
from coreason_devenv.shell import TIMEOUT_EXIT_CODE, with_timeout

ENVIRONMENT_LABEL = "coreason-devenv.environment"
PORT_LABEL = "coreason-devenv.port"
KILL_AFTER = 5.0


class DockerDriver(EnvironmentDriver):
    """
    Container backend on the local Docker engine.

    The host mirror cache is bind-mounted read-only at ``/opt/repo-cache`` and
    ``node_modules`` lives on a per-repository named volume, so checkpoint
    images stay small and restored containers reuse installed dependencies.
    """

    kind = BackendKind.CONTAINER
    mirror_mount = "/opt/repo-cache"

    def __init__(self, config: DevEnvConfig, client: docker.DockerClient | None = None):
        super().__init__(config)
        self.client = client or docker.from_env()
        self._containers: dict[str, Container] = {}

    def _container(self, handle: EnvironmentHandle) -> Container:
        container = self._containers.get(handle.environment_id)
        if container is not None:
            return container
        container_id = handle.details.get("container_id")
        if not container_id:
            raise DriverError(f"No container recorded for {handle.resource_name}")
        try:
            container = self.client.containers.get(container_id)
        except NotFound as e:
            raise DriverError(f"Container {handle.resource_name} no longer exists") from e
        self._containers[handle.environment_id] = container
        return container

    def dependency_volume(self, owner: str, repo: str) -> str:
        slug = re.sub(r"[^a-z0-9_.-]", "-", f"{owner}-{repo}".lower())
        return f"devenv-deps-{slug}"

    async def boot(self, request: BootRequest) -> EnvironmentHandle:
        image = request.image or self.config.docker_image
        logger.info(f"Starting container {request.resource_name} from {image}")

        volumes: dict[str, dict[str, str]] = {}
        if self.config.mirror_root.exists():
            volumes[str(self.config.mirror_root)] = {"bind": self.mirror_mount, "mode": "ro"}
        if request.dependency_volume:
            volumes[request.dependency_volume] = {
                "bind": posixpath.join(self.config.workdir, "node_modules"),
                "mode": "rw",
            }

        ports = {f"{self.config.dev_port}/tcp": request.host_port} if request.host_port else {}
        labels = {ENVIRONMENT_LABEL: request.environment_id}
        if request.host_port:
            labels[PORT_LABEL] = str(request.host_port)

        try:
            container = await asyncio.to_thread(
                self.client.containers.run,
                image,
                command="tail -f /dev/null",
                name=request.resource_name,
                detach=True,
                labels=labels,
                ports=ports,
                volumes=volumes,
                environment=request.env_vars or None,
                network=self.config.docker_network,
                mem_limit=self.config.docker_mem_limit,
                nano_cpus=int(self.config.docker_cpu_limit * 1e9),
            )
            await asyncio.to_thread(container.exec_run, ["mkdir", "-p", self.config.workdir])
        except DockerException as e:
            logger.error(f"Failed to start container {request.resource_name}: {e}")
            raise DriverError(f"Failed to start container: {e}") from e

        self._containers[request.environment_id] = container
        logger.info(f"Container started: {container.short_id}")
        return EnvironmentHandle(
            environment_id=request.environment_id,
            resource_name=request.resource_name,
            backend_kind=self.kind,
            network_address=f"http://localhost:{request.host_port}" if request.host_port else None,
            host_port=request.host_port,
            details={"container_id": container.id, "image": image},
        )

    async def exec(
        self,
        handle: EnvironmentHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        container = self._container(handle)
        cmd = ["sh", "-c", with_timeout(command, timeout, kill_after=KILL_AFTER)]

        start_time = time.monotonic()
        try:
            exit_code, output = await asyncio.wait_for(
                asyncio.to_thread(container.exec_run, cmd, demux=True, environment=env, workdir=cwd),
                timeout=timeout + KILL_AFTER + 10.0,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Exec in {container.short_id} did not return after {timeout}s")
            raise CommandTimeoutError(command, timeout) from e
        except DockerException as e:
            logger.error(f"Exec failed in {container.short_id}: {e}")
            raise DriverError(f"Exec failed: {e}") from e
        duration = time.monotonic() - start_time

        stdout_bytes, stderr_bytes = output if output else (None, None)
        stdout_str = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr_str = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""

        if exit_code == TIMEOUT_EXIT_CODE or (exit_code == 137 and duration >= timeout):
            raise CommandTimeoutError(command, timeout, stdout_str + stderr_str)

        return CommandResult(stdout=stdout_str, stderr=stderr_str, exit_code=exit_code, duration=duration)

    async def write_files(self, handle: EnvironmentHandle, files: list[FileWrite]) -> list[dict[str, str]]:
        if not files:
            return []
        container = self._container(handle)
        paths = [self.resolve_path(f.path) for f in files]
        parents = sorted({posixpath.dirname(p) or "/" for p in paths})

        tar_stream = io.BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            for path, f in zip(paths, files):
                info = tarfile.TarInfo(name=path.lstrip("/"))
                info.size = len(f.content)
                info.mode = 0o644
                info.mtime = int(time.time())
                tar.addfile(info, io.BytesIO(f.content))
        tar_stream.seek(0)

        try:
            exit_code, output = await asyncio.to_thread(container.exec_run, ["mkdir", "-p", *parents])
            if exit_code != 0:
                message = output.decode("utf-8", errors="replace") if output else "mkdir failed"
                return [{"path": f.path, "error": message} for f in files]
            ok = await asyncio.to_thread(container.put_archive, "/", tar_stream.getvalue())
        except DockerException as e:
            logger.error(f"Upload failed: {e}")
            return [{"path": f.path, "error": str(e)} for f in files]

        if not ok:
            return [{"path": f.path, "error": "put_archive rejected the archive"} for f in files]
        return []

    async def read_file(self, handle: EnvironmentHandle, path: str) -> bytes | None:
        container = self._container(handle)
        remote_path = self.resolve_path(path)
        try:
            bits, _stat = await asyncio.to_thread(container.get_archive, remote_path)
        except NotFound:
            return None
        except DockerException as e:
            logger.error(f"Download failed: {e}")
            raise DriverError(f"Failed to read {remote_path}: {e}") from e

        tar_stream = io.BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.next()
            if member is None or not member.isfile():
                return None
            extracted = tar.extractfile(member)
            return extracted.read() if extracted else None

    async def delete_files(self, handle: EnvironmentHandle, paths: list[str]) -> list[dict[str, str]]:
        if not paths:
            return []
        command = "rm -f -- " + " ".join(shlex.quote(self.resolve_path(p)) for p in paths)
        result = await self.exec(handle, command, timeout=self.config.exec_timeout)
        if not result.ok:
            return [{"path": p, "error": result.output.strip()} for p in paths]
        return []

    async def destroy(self, handle: EnvironmentHandle) -> None:
        logger.info(f"Removing container {handle.resource_name}")
        try:
            container = self._container(handle)
            await asyncio.to_thread(container.remove, force=True)
        except (DriverError, NotFound):
            logger.warning(f"Container {handle.resource_name} already gone")
        except DockerException as e:
            logger.warning(f"Error removing container {handle.resource_name}: {e}")
        finally:
            self._containers.pop(handle.environment_id, None)

    async def list_resource_ports(self) -> list[int]:
        containers = await asyncio.to_thread(self.client.containers.list, filters={"label": ENVIRONMENT_LABEL})
        ports: list[int] = []
        for container in containers:
            port = container.labels.get(PORT_LABEL)
            if port and port.isdigit():
                ports.append(int(port))
        return ports

    async def commit_image(self, handle: EnvironmentHandle, repository: str, tag: str) -> str:
        container = self._container(handle)
        logger.info(f"Committing {container.short_id} as {repository}:{tag}")
        try:
            image = await asyncio.to_thread(container.commit, repository=repository, tag=tag)
        except DockerException as e:
            raise DriverError(f"Commit of {handle.resource_name} failed: {e}") from e
        return str(image.id)

    async def image_exists(self, image: str) -> bool:
        try:
            await asyncio.to_thread(self.client.images.get, image)
        except ImageNotFound:
            return False
        return True

    async def remove_image(self, image: str) -> None:
        try:
            await asyncio.to_thread(self.client.images.remove, image, force=True)
        except ImageNotFound:
            logger.debug(f"Image {image} already removed")
        except DockerException as e:
            logger.warning(f"Error removing image {image}: {e}")
