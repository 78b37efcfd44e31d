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
import shutil
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest
from coreason_devenv.checkpoints import CheckpointManager
from coreason_devenv.config import DevEnvConfig
from coreason_devenv.drivers.base import BootRequest, EnvironmentDriver, EnvironmentHandle
from coreason_devenv.executor import LogTail
from coreason_devenv.factory import DriverFactory
from coreason_devenv.lifecycle import LifecycleController
from coreason_devenv.mirror import RepositoryMirrorCache
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import CommandResult, FileWrite
from coreason_devenv.models.repository import Repository
from coreason_devenv.ports import PortAllocator
from coreason_devenv.reporter import StatusSink
from coreason_devenv.snapshots import SnapshotManager
from coreason_devenv.store import REPOSITORIES, InMemoryRecordStore

HEAD_SHA = "a" * 40


class FakeDriver(EnvironmentDriver):
    """In-memory driver that records every step it is asked to run.

    ``failures`` maps a step name to the exception it raises; ``gates`` maps a
    step name to an event the step waits on before returning.
    """

    kind = BackendKind.CONTAINER

    def __init__(self, config: DevEnvConfig):
        super().__init__(config)
        self.mirror_mount: str | None = None
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.probe_results: list[bool] = []
        self.probe_default = True
        self.head_sha: str | None = HEAD_SHA
        self.server_log = "Error: listen EADDRINUSE"
        self.exec_result: CommandResult | Exception = CommandResult(stdout="ok", exit_code=0)
        self.commands: list[str] = []
        self.files: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.write_errors: list[dict[str, str]] = []
        self.boot_requests: list[BootRequest] = []
        self.clone_sources: list[str] = []
        self.destroyed: list[str] = []
        self.resource_ports: list[int] = []

    async def _step(self, name: str) -> None:
        self.calls.append(name)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(name)
        if error is not None:
            raise error

    def _handle(self, request: BootRequest) -> EnvironmentHandle:
        return EnvironmentHandle(
            environment_id=request.environment_id,
            resource_name=request.resource_name,
            backend_kind=self.kind,
            network_address=f"http://localhost:{request.host_port}" if request.host_port else "https://sandbox.test",
            host_port=request.host_port,
            details={"image": request.image},
        )

    async def boot(self, request: BootRequest) -> EnvironmentHandle:
        self.boot_requests.append(request)
        await self._step("boot")
        return self._handle(request)

    async def exec(
        self,
        handle: EnvironmentHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        self.commands.append(command)
        await self._step("exec")
        if isinstance(self.exec_result, Exception):
            raise self.exec_result
        return self.exec_result

    async def write_files(self, handle: EnvironmentHandle, files: list[FileWrite]) -> list[dict[str, str]]:
        await self._step("write_files")
        if self.write_errors:
            return list(self.write_errors)
        for f in files:
            self.files[f.path] = f.content
        return []

    async def read_file(self, handle: EnvironmentHandle, path: str) -> bytes | None:
        return self.files.get(path)

    async def delete_files(self, handle: EnvironmentHandle, paths: list[str]) -> list[dict[str, str]]:
        await self._step("delete_files")
        for path in paths:
            self.files.pop(path, None)
            self.deleted.append(path)
        return []

    async def destroy(self, handle: EnvironmentHandle) -> None:
        self.calls.append("destroy")
        self.destroyed.append(handle.environment_id)

    async def list_resource_ports(self) -> list[int]:
        return list(self.resource_ports)

    async def clone(
        self,
        handle: EnvironmentHandle,
        source_url: str,
        origin_url: str,
        branch: str,
        default_branch: str,
        log: LogTail | None = None,
    ) -> str | None:
        self.clone_sources.append(source_url)
        await self._step("clone")
        if log is not None:
            log.section("clone", f"Cloning {branch}")
        return self.head_sha

    async def install(self, handle: EnvironmentHandle, command: str, log: LogTail | None = None) -> None:
        await self._step("install")
        if log is not None:
            log.section("install", "added 42 packages")

    async def refresh(
        self,
        handle: EnvironmentHandle,
        branch: str,
        origin_url: str | None = None,
        log: LogTail | None = None,
    ) -> str | None:
        await self._step("refresh")
        return self.head_sha

    async def start_dev_server(
        self, handle: EnvironmentHandle, command: str, port: int, log: LogTail | None = None
    ) -> None:
        await self._step("start")

    async def probe(self, handle: EnvironmentHandle, port: int) -> bool:
        self.calls.append("probe")
        if self.probe_results:
            return self.probe_results.pop(0)
        return self.probe_default

    async def read_log_tail(self, handle: EnvironmentHandle, lines: int) -> str:
        return self.server_log


class PausableFakeDriver(FakeDriver):
    """Fake micro-VM backend: pause, capture and restore against files under ``disk_root``."""

    kind = BackendKind.MICROVM

    def __init__(self, config: DevEnvConfig, disk_root: Path):
        super().__init__(config)
        self.disk_root = disk_root
        self.pause_state = "Running"
        self.ignores_pause = False

    def disk_image(self, handle: EnvironmentHandle) -> Path:
        return self.disk_root / handle.environment_id / "rootfs.ext4"

    async def boot(self, request: BootRequest) -> EnvironmentHandle:
        handle = await super().boot(request)
        disk = self.disk_image(handle)
        disk.parent.mkdir(parents=True, exist_ok=True)
        disk.write_bytes(b"disk:" + request.environment_id.encode())
        return handle

    async def get_pause_state(self, handle: EnvironmentHandle) -> str:
        return self.pause_state

    async def pause(self, handle: EnvironmentHandle) -> None:
        await self._step("pause")
        if not self.ignores_pause:
            self.pause_state = "Paused"

    async def resume(self, handle: EnvironmentHandle) -> None:
        await self._step("resume")
        self.pause_state = "Running"

    async def capture(self, handle: EnvironmentHandle, memory_path: Path, state_path: Path) -> None:
        await self._step("capture")
        memory_path.write_bytes(b"memory")
        state_path.write_bytes(b"state")

    async def prepare_restore(self, request: BootRequest) -> EnvironmentHandle:
        self.boot_requests.append(request)
        await self._step("prepare_restore")
        return self._handle(request)

    async def attach_devices(self, handle: EnvironmentHandle, disk_path: Path) -> None:
        await self._step("attach_devices")

    async def load_snapshot(self, handle: EnvironmentHandle, memory_path: Path, state_path: Path) -> None:
        await self._step("load_snapshot")


class CommitFakeDriver(FakeDriver):
    """Fake container backend that commits images into an in-memory registry."""

    kind = BackendKind.CONTAINER

    def __init__(self, config: DevEnvConfig):
        super().__init__(config)
        self.images: set[str] = set()

    async def commit_image(self, handle: EnvironmentHandle, repository: str, tag: str) -> str:
        await self._step("commit_image")
        self.images.add(f"{repository}:{tag}")
        return "sha256:feedface"

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def remove_image(self, image: str) -> None:
        self.images.discard(image)

    def dependency_volume(self, owner: str, repo: str) -> str:
        return f"deps-{owner}-{repo}"


class CopyingExecutor:
    """Host executor double: ``cp``-style commands copy in-process."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[list[str]] = []

    async def run(self, command: Any, **kwargs: Any) -> CommandResult:
        argv = list(command)
        self.calls.append(argv)
        if self.fail:
            return CommandResult(stderr="Operation not supported", exit_code=1)
        shutil.copyfile(argv[-2], argv[-1])
        return CommandResult(exit_code=0)


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def store() -> Any:
    return InMemoryRecordStore()


@pytest.fixture
def config(tmp_path: Path) -> Any:
    return DevEnvConfig(
        data_dir=tmp_path / "data",
        port_range_start=15000,
        port_range_end=15010,
        health_check_attempts=3,
        health_check_interval=0.0,
        snapshot_pause_settle=0.0,
        github_token=None,
        callback_url=None,
        host_agent_secret=None,
        gateway_enabled=False,
    )


@pytest.fixture
def fake_driver(config: Any) -> Any:
    return FakeDriver(config)


@pytest.fixture
def pausable_driver(config: Any, tmp_path: Path) -> Any:
    return PausableFakeDriver(config, tmp_path / "disks")


@pytest.fixture
def commit_driver(config: Any) -> Any:
    return CommitFakeDriver(config)


@pytest.fixture
def copy_executor() -> Any:
    return CopyingExecutor()


@pytest.fixture
def repository(store: Any) -> Any:
    repo = Repository(id="repo-1", owner="acme", name="web", default_branch="main")
    store.insert(REPOSITORIES, repo.id, repo.model_dump(mode="json"))
    return repo


@pytest.fixture
def snapshot_manager(config: Any, store: Any, copy_executor: Any) -> Any:
    return SnapshotManager(config.snapshot_root, store, copy_executor, pause_settle=0.0, sleep=no_sleep)


@pytest.fixture
def build_controller(config: Any, store: Any, snapshot_manager: Any, repository: Any) -> Any:
    """Factory for a LifecycleController wired to one fake driver."""

    def build(
        driver: FakeDriver, sinks: Iterable[StatusSink] = (), **overrides: Any
    ) -> LifecycleController:
        cfg = config.model_copy(update={"default_backend": driver.kind, **overrides})
        return LifecycleController(
            cfg,
            store,
            DriverFactory(cfg, {driver.kind: driver}),
            PortAllocator(cfg.port_range_start, cfg.port_range_end),
            RepositoryMirrorCache(cfg.mirror_root),
            snapshot_manager,
            CheckpointManager(store),
            sinks=sinks,
            sleep=no_sleep,
        )

    return build


@pytest.fixture
def boot_request() -> Callable[..., BootRequest]:
    def make(environment_id: str = "env-1", **fields: Any) -> BootRequest:
        defaults: dict[str, Any] = {
            "resource_name": f"devenv-{environment_id}",
            "owner": "acme",
            "repo": "web",
            "branch": "main",
            "host_port": 15001,
        }
        defaults.update(fields)
        return BootRequest(environment_id=environment_id, **defaults)

    return make
