# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Data models for file changes, shell commands and their results."""

import time
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CommandResult(BaseModel):
    """Represents the result of a command run inside an environment."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int
    duration: float = 0.0

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class FileWrite(BaseModel):
    """One file in a change batch.

    ``existed`` and ``original_content`` describe the file before the change.
    Reverting restores files that existed and deletes files that did not; a
    file whose prior state was never captured (``existed`` is None) is left
    alone.
    """

    path: str
    content: bytes
    original_content: bytes | None = None
    existed: bool | None = None


class FileChange(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    environment_id: str | None = None
    files: list[FileWrite]
    applied: bool = False
    reverted: bool = False
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.applied or self.reverted or self.error is not None


class CommandStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BashCommand(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    environment_id: str | None = None
    command: str
    status: CommandStatus = CommandStatus.PENDING
    output: str | None = None
    exit_code: int | None = None
    error: str | None = None
    timed_out: bool = False
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (CommandStatus.COMPLETED, CommandStatus.FAILED)


class ApplyResult(BaseModel):
    success: bool
    error: str | None = None


class CommandOutcome(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    exit_code: int
    output: str
