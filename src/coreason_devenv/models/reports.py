# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Wire models of the host -> control callback protocol."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from coreason_devenv.models.environment import EnvironmentStatus, HealthCheckOutcome
from coreason_devenv.models.snapshot import SnapshotSizes

REPORTABLE_STATUSES = frozenset(
    {
        EnvironmentStatus.RESTORING,
        EnvironmentStatus.BOOTING,
        EnvironmentStatus.CLONING,
        EnvironmentStatus.INSTALLING,
        EnvironmentStatus.STARTING,
        EnvironmentStatus.READY,
        EnvironmentStatus.FAILED,
    }
)


class _Report(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    resource_name: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    report_id: str | None = None


class StatusReport(_Report):
    status: EnvironmentStatus
    error: str | None = None
    log_tail: str | None = None
    health_check: HealthCheckOutcome | None = None
    commit_sha: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> object:
        # Micro-VM hosts report failures as "unhealthy".
        if value == "unhealthy":
            return EnvironmentStatus.FAILED.value
        return value

    @field_validator("status")
    @classmethod
    def _reportable(cls, value: EnvironmentStatus) -> EnvironmentStatus:
        if value not in REPORTABLE_STATUSES:
            raise ValueError(f"status {value.value!r} cannot be reported by a host")
        return value


class SnapshotReport(_Report):
    status: Literal["created", "ready", "failed"]
    owner: str
    repo: str
    branch: str
    commit_sha: str | None = None
    size_bytes: SnapshotSizes | None = None
    error: str | None = None


class CheckpointReport(_Report):
    status: Literal["created", "ready", "failed"]
    owner: str
    repo: str
    branch: str
    image_tag: str | None = None
    checkpoint_name: str | None = None
    commit_sha: str | None = None
    error: str | None = None
