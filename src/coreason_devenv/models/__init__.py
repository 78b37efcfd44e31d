# src/coreason_devenv/models/__init__.py

"""
Data models for environments, images, change requests and callbacks.
"""

from .environment import (
    BackendKind,
    Environment,
    EnvironmentStatus,
    HealthCheckOutcome,
    HealthCheckPolicy,
    RestoreSource,
    StatusChange,
)
from .execution import (
    ApplyResult,
    BashCommand,
    CommandOutcome,
    CommandResult,
    CommandStatus,
    FileChange,
    FileWrite,
)
from .reports import CheckpointReport, SnapshotReport, StatusReport
from .repository import Repository
from .snapshot import Checkpoint, ImageStatus, Snapshot, SnapshotSizes, safe_branch, snapshot_key

__all__ = [
    "ApplyResult",
    "BackendKind",
    "BashCommand",
    "Checkpoint",
    "CheckpointReport",
    "CommandOutcome",
    "CommandResult",
    "CommandStatus",
    "Environment",
    "EnvironmentStatus",
    "FileChange",
    "FileWrite",
    "HealthCheckOutcome",
    "HealthCheckPolicy",
    "ImageStatus",
    "Repository",
    "RestoreSource",
    "Snapshot",
    "SnapshotReport",
    "SnapshotSizes",
    "StatusChange",
    "StatusReport",
    "safe_branch",
    "snapshot_key",
]
