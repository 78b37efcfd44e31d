# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import time
from typing import Callable

from loguru import logger

from coreason_devenv.errors import CommandTimeoutError, ConflictError, DriverError
from coreason_devenv.lifecycle import LifecycleController, LiveUnit
from coreason_devenv.models.execution import (
    ApplyResult,
    BashCommand,
    CommandOutcome,
    CommandStatus,
    FileChange,
    FileWrite,
)
from coreason_devenv.store import BASH_COMMANDS, FILE_CHANGES, RecordStore


def _summarize(errors: list[dict[str, str]]) -> str:
    return "; ".join(f"{e.get('path')}: {e.get('error')}" for e in errors)


class ExecBridge:
    """
    Applies file changes and runs shell commands in ready environments.

    Requests are records in the store. A record that already reached a
    terminal state is never executed again; its stored result is returned.
    """

    def __init__(
        self,
        controller: LifecycleController,
        store: RecordStore,
        exec_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.controller = controller
        self.store = store
        self.exec_timeout = exec_timeout
        self._clock = clock

    def _load_change(self, environment_id: str, change: FileChange) -> FileChange:
        record = self.store.get(FILE_CHANGES, change.id)
        if record is not None:
            return FileChange.model_validate(record)
        change.environment_id = environment_id
        try:
            self.store.insert(FILE_CHANGES, change.id, change.model_dump())
        except ConflictError:
            return FileChange.model_validate(self.store.get(FILE_CHANGES, change.id))
        return change

    async def apply_file_change(self, environment_id: str, change: FileChange) -> ApplyResult:
        """Write every file of ``change`` into the environment."""
        change = self._load_change(environment_id, change)
        if change.is_terminal:
            return ApplyResult(success=change.applied, error=change.error)

        unit = self.controller.resolve(environment_id)
        try:
            await self._capture_originals(unit, change)
        except DriverError as e:
            message = f"Could not read current files: {e}"
            self.store.patch(FILE_CHANGES, change.id, {"error": message})
            return ApplyResult(success=False, error=message)
        self.store.patch(FILE_CHANGES, change.id, {"files": [f.model_dump() for f in change.files]})

        logger.info(f"Applying {len(change.files)} file(s) to {unit.handle.resource_name}")
        try:
            errors = await unit.driver.write_files(unit.handle, change.files)
        except DriverError as e:
            errors = [{"path": f.path, "error": str(e)} for f in change.files]
        self.controller.touch(environment_id)

        if errors:
            message = _summarize(errors)
            logger.warning(f"File change {change.id} failed: {message}")
            self.store.patch(FILE_CHANGES, change.id, {"error": message})
            return ApplyResult(success=False, error=message)

        self.store.patch(FILE_CHANGES, change.id, {"applied": True})
        return ApplyResult(success=True)

    async def _capture_originals(self, unit: LiveUnit, change: FileChange) -> None:
        for f in change.files:
            if f.existed is not None:
                continue
            if f.original_content is not None:
                f.existed = True
                continue
            current = await unit.driver.read_file(unit.handle, f.path)
            f.existed = current is not None
            f.original_content = current

    async def revert_file_change(self, environment_id: str, change_id: str) -> ApplyResult:
        """Restore the files touched by an applied change.

        Files that existed get their original content back; files the change
        created are deleted.
        """
        record = self.store.get(FILE_CHANGES, change_id)
        if record is None:
            return ApplyResult(success=False, error=f"File change {change_id} not found")
        change = FileChange.model_validate(record)
        if change.reverted:
            return ApplyResult(success=True)

        unit = self.controller.resolve(environment_id)
        restore = [
            FileWrite(path=f.path, content=f.original_content)
            for f in change.files
            if f.existed is not False and f.original_content is not None
        ]
        remove = [f.path for f in change.files if f.existed is False]

        logger.info(f"Reverting file change {change_id} in {unit.handle.resource_name}")
        errors: list[dict[str, str]] = []
        try:
            if restore:
                errors.extend(await unit.driver.write_files(unit.handle, restore))
            if remove:
                errors.extend(await unit.driver.delete_files(unit.handle, remove))
        except DriverError as e:
            errors.append({"path": "*", "error": str(e)})
        self.controller.touch(environment_id)

        if errors:
            message = _summarize(errors)
            logger.warning(f"Revert of {change_id} failed: {message}")
            return ApplyResult(success=False, error=message)

        self.store.patch(FILE_CHANGES, change_id, {"reverted": True})
        return ApplyResult(success=True)

    def _load_command(self, environment_id: str, command: BashCommand) -> BashCommand:
        record = self.store.get(BASH_COMMANDS, command.id)
        if record is not None:
            return BashCommand.model_validate(record)
        command.environment_id = environment_id
        try:
            self.store.insert(BASH_COMMANDS, command.id, command.model_dump(mode="json"))
        except ConflictError:
            return BashCommand.model_validate(self.store.get(BASH_COMMANDS, command.id))
        return command

    async def execute_command(
        self,
        environment_id: str,
        command: BashCommand | str,
        timeout: float | None = None,
    ) -> CommandOutcome:
        """Run a shell command in the environment's working directory.

        Raises:
            CommandTimeoutError: If the command outlived ``timeout``; the remote
                process tree has been killed. Replays of a timed-out command
                raise again.
            ConflictError: If the command is already running.
        """
        timeout = self.exec_timeout if timeout is None else timeout
        request = BashCommand(command=command) if isinstance(command, str) else command
        record = self._load_command(environment_id, request)

        if record.is_terminal:
            if record.timed_out:
                raise CommandTimeoutError(record.command, timeout, record.output or "")
            if record.exit_code is None:
                raise DriverError(record.error or f"Command {record.id} failed")
            return CommandOutcome(exit_code=record.exit_code, output=record.output or "")

        unit = self.controller.resolve(environment_id)
        self.store.patch(
            BASH_COMMANDS,
            record.id,
            {"status": CommandStatus.RUNNING.value},
            expect={"status": CommandStatus.PENDING.value},
        )
        logger.info(f"Running in {unit.handle.resource_name}: {record.command}")

        try:
            result = await unit.driver.exec(unit.handle, record.command, timeout=timeout)
        except CommandTimeoutError as e:
            self.store.patch(
                BASH_COMMANDS,
                record.id,
                {
                    "status": CommandStatus.FAILED.value,
                    "timed_out": True,
                    "output": e.output,
                    "error": str(e),
                    "completed_at": self._clock(),
                },
            )
            self.controller.touch(environment_id)
            raise
        except DriverError as e:
            self.store.patch(
                BASH_COMMANDS,
                record.id,
                {"status": CommandStatus.FAILED.value, "error": str(e), "completed_at": self._clock()},
            )
            raise

        output = result.output
        self.store.patch(
            BASH_COMMANDS,
            record.id,
            {
                "status": (CommandStatus.COMPLETED if result.ok else CommandStatus.FAILED).value,
                "output": output,
                "exit_code": result.exit_code,
                "completed_at": self._clock(),
            },
        )
        self.controller.touch(environment_id)
        return CommandOutcome(exit_code=result.exit_code, output=output)
