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
from typing import Any

import uvicorn
from loguru import logger

from coreason_devenv.bridge import ExecBridge
from coreason_devenv.checkpoints import CheckpointManager
from coreason_devenv.config import DevEnvConfig
from coreason_devenv.executor import LocalExecutor
from coreason_devenv.factory import DriverFactory
from coreason_devenv.gateway import CallbackGateway, create_gateway_app
from coreason_devenv.lifecycle import LifecycleController
from coreason_devenv.mirror import RepositoryMirrorCache
from coreason_devenv.models.repository import Repository
from coreason_devenv.ports import PortAllocator
from coreason_devenv.reaper import Reaper
from coreason_devenv.reporter import CallbackReporter, StatusSink
from coreason_devenv.snapshots import SnapshotManager
from coreason_devenv.store import REPOSITORIES, InMemoryRecordStore, RecordStore


class DevEnvService:
    """
    Wires the orchestrator's components from one DevEnvConfig.

    Use as an async context manager: entering reserves ports held by units
    that survived a restart, starts the reaper and serves the callback
    gateway (unless ``gateway_enabled`` is off); leaving stops them.
    """

    def __init__(
        self,
        config: DevEnvConfig | None = None,
        store: RecordStore | None = None,
        drivers: DriverFactory | None = None,
        executor: LocalExecutor | None = None,
    ):
        self.config = config or DevEnvConfig()
        self.store = store or InMemoryRecordStore()
        self.executor = executor or LocalExecutor()
        self.drivers = drivers or DriverFactory(self.config)
        self.ports = PortAllocator(self.config.port_range_start, self.config.port_range_end)
        self.mirror = RepositoryMirrorCache(
            self.config.mirror_root,
            self.executor,
            lock_wait=self.config.mirror_lock_wait,
            retention=self.config.mirror_retention,
            fetch_timeout=self.config.clone_timeout,
            git_host=self.config.git_host,
        )
        self.snapshots = SnapshotManager(
            self.config.snapshot_root,
            self.store,
            self.executor,
            lock_stale_after=self.config.snapshot_lock_stale_after,
            pause_settle=self.config.snapshot_pause_settle,
            max_age=self.config.snapshot_max_age,
            hypervisor_version=self.config.firecracker_version,
            vcpus=self.config.firecracker_vcpus,
            memory_mib=self.config.firecracker_mem_mib,
        )
        self.checkpoints = CheckpointManager(self.store)

        sinks: list[StatusSink] = []
        self.reporter: CallbackReporter | None = None
        if self.config.callback_url:
            self.reporter = CallbackReporter(
                self.config.callback_url,
                attempts=self.config.callback_attempts,
                backoff=self.config.callback_backoff,
                backoff_max=self.config.callback_backoff_max,
            )
            sinks.append(self.reporter)

        self.controller = LifecycleController(
            self.config,
            self.store,
            self.drivers,
            self.ports,
            self.mirror,
            self.snapshots,
            self.checkpoints,
            sinks=sinks,
        )
        self.bridge = ExecBridge(self.controller, self.store, exec_timeout=self.config.exec_timeout)
        self.gateway = CallbackGateway(self.store, log_max_chars=self.config.callback_log_max_chars)
        self.reaper = Reaper(self.config, self.controller, self.mirror, self.snapshots)
        self._gateway_server: uvicorn.Server | None = None
        self._gateway_task: asyncio.Task[None] | None = None

    def register_repository(self, repository: Repository) -> Repository:
        """Insert or replace a repository record (for deployments without an external store)."""
        fields = repository.model_dump(mode="json")
        if self.store.get(REPOSITORIES, repository.id) is None:
            self.store.insert(REPOSITORIES, repository.id, fields)
        else:
            self.store.patch(REPOSITORIES, repository.id, fields)
        return repository

    async def start(self) -> None:
        try:
            self.drivers.get(self.config.default_backend)
        except Exception as e:
            logger.warning(f"Default backend {self.config.default_backend.value} unavailable: {e}")
        for kind, driver in self.drivers.active.items():
            try:
                ports = await driver.list_resource_ports()
            except Exception as e:
                logger.warning(f"Could not list surviving {kind.value} units: {e}")
                continue
            for port in ports:
                self.ports.reserve(port)
            if ports:
                logger.info(f"Reserved {len(ports)} port(s) held by surviving {kind.value} units")
        self.reaper.start()
        if self.config.gateway_enabled:
            self.start_gateway()

    def start_gateway(self) -> None:
        """Serve the callback gateway over this service's record store."""
        if self._gateway_task is not None and not self._gateway_task.done():
            return
        server = uvicorn.Server(
            uvicorn.Config(
                create_gateway_app(self.gateway),
                host=self.config.gateway_host,
                port=self.config.gateway_port,
                log_config=None,
            )
        )
        logger.info(f"Starting callback gateway on {self.config.gateway_host}:{self.config.gateway_port}")
        self._gateway_server = server
        self._gateway_task = asyncio.create_task(server.serve(), name="devenv-gateway")

    async def _stop_gateway(self) -> None:
        if self._gateway_server is not None:
            self._gateway_server.should_exit = True
        if self._gateway_task is not None:
            try:
                await self._gateway_task
            except (Exception, SystemExit) as e:
                logger.error(f"Callback gateway stopped with error: {e}")
        self._gateway_server = None
        self._gateway_task = None

    async def shutdown(self) -> None:
        await self._stop_gateway()
        await self.reaper.shutdown()
        await self.controller.flush_status(timeout=self.config.status_flush_timeout)
        await self.controller.shutdown()
        if self.reporter is not None:
            await self.reporter.aclose()

    async def __aenter__(self) -> "DevEnvService":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()
