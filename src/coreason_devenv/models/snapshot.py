# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import re
import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coreason_devenv.models.environment import BackendKind

_UNSAFE_BRANCH_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class ImageStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


def safe_branch(branch: str) -> str:
    """Filesystem-safe form of a branch name (``feature/x`` -> ``feature_x``)."""
    return _UNSAFE_BRANCH_CHARS.sub("_", branch)


def snapshot_key(owner: str, repo: str, branch: str) -> str:
    return f"{owner}/{repo}/{safe_branch(branch)}"


class SnapshotSizes(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    memory: int = 0
    state: int = 0
    disk: int = 0

    @property
    def total(self) -> int:
        return self.memory + self.state + self.disk


class Snapshot(BaseModel):
    """Captured memory, execution state and disk of a provisioned environment."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str
    owner: str
    repo: str
    branch: str
    repo_id: str | None = None
    commit_sha: str | None = None
    backend_kind: BackendKind = BackendKind.MICROVM
    memory_path: str | None = None
    state_path: str | None = None
    disk_path: str | None = None
    size_bytes: SnapshotSizes = Field(default_factory=SnapshotSizes)
    vcpus: int | None = None
    memory_mib: int | None = None
    hypervisor_version: str | None = None
    status: ImageStatus = ImageStatus.PENDING
    usage_count: int = 0
    created_at: float = Field(default_factory=time.time)
    last_used_at: float | None = None
    error_message: str | None = None

    def is_stale(self, remote_head: str | None, max_age: float, now: float | None = None) -> bool:
        """Whether a restore from this snapshot needs a post-restore refresh.

        A stale snapshot is still restorable; the refresh step brings it to
        the branch head.
        """
        now = now if now is not None else time.time()
        if now - self.created_at > max_age:
            return True
        if remote_head is None or self.commit_sha is None:
            return True
        return remote_head != self.commit_sha


class Checkpoint(BaseModel):
    """Committed container filesystem image for backends that cannot pause."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    repo_id: str | None = None
    owner: str
    repo: str
    branch: str
    image_tag: str
    source_environment_id: str | None = None
    commit_sha: str | None = None
    status: ImageStatus = ImageStatus.PENDING
    usage_count: int = 0
    created_at: float = Field(default_factory=time.time)
    last_used_at: float | None = None
    error_message: str | None = None
