# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""
coreason-devenv
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .bridge import ExecBridge
from .checkpoints import CheckpointManager, checkpoint_name
from .config import DevEnvConfig
from .drivers.base import BootRequest, EnvironmentDriver, EnvironmentHandle
from .factory import DriverFactory
from .gateway import CallbackGateway, create_gateway_app
from .lifecycle import LifecycleController
from .mirror import RepositoryMirrorCache
from .models.environment import BackendKind, Environment, EnvironmentStatus
from .ports import PortAllocator
from .service import DevEnvService
from .snapshots import SnapshotManager

__all__ = [
    "BackendKind",
    "BootRequest",
    "CallbackGateway",
    "CheckpointManager",
    "DevEnvConfig",
    "DevEnvService",
    "DriverFactory",
    "Environment",
    "EnvironmentDriver",
    "EnvironmentHandle",
    "EnvironmentStatus",
    "ExecBridge",
    "LifecycleController",
    "PortAllocator",
    "RepositoryMirrorCache",
    "SnapshotManager",
    "checkpoint_name",
    "create_gateway_app",
]
