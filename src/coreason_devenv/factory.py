# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

from coreason_devenv.config import DevEnvConfig
from coreason_devenv.drivers.base import EnvironmentDriver
from coreason_devenv.drivers.docker import DockerDriver
from coreason_devenv.drivers.e2b import E2BDriver
from coreason_devenv.drivers.firecracker import FirecrackerDriver
from coreason_devenv.executor import LocalExecutor
from coreason_devenv.models.environment import BackendKind


class DriverFactory:
    """
    Factory to create EnvironmentDriver instances based on backend kind.

    Drivers keep per-unit connection state, so one instance per kind is
    created lazily and reused.
    """

    def __init__(self, config: DevEnvConfig, drivers: dict[BackendKind, EnvironmentDriver] | None = None):
        self.config = config
        self._drivers: dict[BackendKind, EnvironmentDriver] = dict(drivers or {})

    @staticmethod
    def create_driver(kind: BackendKind, config: DevEnvConfig) -> EnvironmentDriver:
        """
        Returns a new driver for the given backend kind.
        """
        if kind == BackendKind.CONTAINER:
            return DockerDriver(config)
        elif kind == BackendKind.MICROVM:
            return FirecrackerDriver(config, executor=LocalExecutor())
        elif kind == BackendKind.REMOTE_SANDBOX:
            return E2BDriver(config)
        else:
            raise ValueError(f"Unknown backend: {kind}")  # pragma: no cover

    def get(self, kind: BackendKind) -> EnvironmentDriver:
        driver = self._drivers.get(kind)
        if driver is None:
            driver = self.create_driver(kind, self.config)
            self._drivers[kind] = driver
        return driver

    @property
    def active(self) -> dict[BackendKind, EnvironmentDriver]:
        return dict(self._drivers)
