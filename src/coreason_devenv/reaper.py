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
import time
from typing import Callable

from loguru import logger

from coreason_devenv.config import DevEnvConfig
from coreason_devenv.lifecycle import LifecycleController
from coreason_devenv.mirror import RepositoryMirrorCache
from coreason_devenv.models.environment import EnvironmentStatus
from coreason_devenv.snapshots import SnapshotManager


class Reaper:
    """Background maintenance of environments and host caches.

    Each sweep fails environments stuck in one status longer than its
    configured timeout, tears down ready environments idle past
    ``idle_timeout``, and prunes old mirrors and snapshots.
    """

    def __init__(
        self,
        config: DevEnvConfig,
        controller: LifecycleController,
        mirror: RepositoryMirrorCache,
        snapshots: SnapshotManager,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.controller = controller
        self.mirror = mirror
        self.snapshots = snapshots
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> dict[str, list[str]]:
        """Run one maintenance pass and report what it touched."""
        now = self._clock()
        failed: list[str] = []
        stopped: list[str] = []

        for environment in self.controller.list_environments():
            limit = self.config.status_timeouts.get(environment.status)
            elapsed = now - environment.status_changed_at
            if environment.status == EnvironmentStatus.READY:
                if now - environment.last_active_at > self.config.idle_timeout:
                    logger.info(f"Environment {environment.id} idle. Tearing down.")
                    await self.controller.teardown(environment.id, reason="idle")
                    stopped.append(environment.id)
            elif environment.status == EnvironmentStatus.STOPPING:
                if limit is not None and elapsed > limit:
                    logger.warning(f"Environment {environment.id} stuck stopping. Forcing stop.")
                    await self.controller.apply_status(environment.id, EnvironmentStatus.STOPPED, reason="stop timed out")
                    stopped.append(environment.id)
            elif limit is not None and elapsed > limit:
                await self.controller.fail_stuck(
                    environment.id,
                    f"Stuck in {environment.status.value} for {elapsed:.0f}s (limit {limit:g}s)",
                )
                failed.append(environment.id)

        mirrors = await self.mirror.cleanup()
        snapshots = await self.snapshots.cleanup()
        return {
            "failed": failed,
            "stopped": stopped,
            "mirrors": [str(p) for p in mirrors],
            "snapshots": snapshots,
        }

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="devenv-reaper")

    async def _loop(self) -> None:
        logger.info("Reaper started")
        try:
            while True:
                await asyncio.sleep(self.config.reaper_interval)
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error(f"Reaper sweep failed: {e}")
        except asyncio.CancelledError:
            logger.info("Reaper cancelled")

    async def shutdown(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
