# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Environment records and their status vocabulary."""

import time
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BackendKind(str, Enum):
    MICROVM = "microvm"
    CONTAINER = "container"
    REMOTE_SANDBOX = "remote-sandbox"


class EnvironmentStatus(str, Enum):
    REQUESTED = "requested"
    RESTORING = "restoring"
    BOOTING = "booting"
    CLONING = "cloning"
    INSTALLING = "installing"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthCheckOutcome(str, Enum):
    """How an environment reached ``ready``."""

    CONFIRMED = "confirmed"
    EXHAUSTED = "exhausted"


class HealthCheckPolicy(str, Enum):
    """What happens when the dev server never answers within the probe budget."""

    DEGRADE_TO_READY = "degrade_to_ready"
    STRICT = "strict"


class RestoreSource(str, Enum):
    SNAPSHOT = "snapshot"
    CHECKPOINT = "checkpoint"


class StatusChange(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: EnvironmentStatus
    timestamp: float
    reason: str | None = None


class Environment(BaseModel):
    """One provisioned execution unit running a repository's dev server.

    ``resource_name`` is the host-assigned name remote hosts use when they
    report status; ``callback_secret`` is the only credential they present.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    backend_kind: BackendKind
    repo_id: str
    branch: str
    status: EnvironmentStatus = EnvironmentStatus.REQUESTED
    resource_name: str
    host_id: str | None = None
    network_address: str | None = None
    host_port: int | None = None
    callback_secret: str
    restored_from_snapshot: bool = False
    restore_source: RestoreSource | None = None
    commit_sha: str | None = None
    health_check: HealthCheckOutcome | None = None
    error_message: str | None = None
    log_tail: str | None = None
    status_history: list[StatusChange] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    status_changed_at: float = Field(default_factory=time.time)
    last_active_at: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status == EnvironmentStatus.STOPPED

    def public_view(self) -> dict[str, object]:
        """Wire representation without the callback secret."""
        return self.model_dump(mode="json", by_alias=True, exclude={"callback_secret"})
