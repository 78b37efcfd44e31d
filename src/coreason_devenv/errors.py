# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Typed errors raised by the orchestration core.

Lower layers raise these and never mutate environment records themselves.
The lifecycle controller decides whether an error is terminal for an
environment; the HTTP layers translate them into status codes.
"""


class DevEnvError(Exception):
    """Base class for every error raised by coreason-devenv."""


class TransientError(DevEnvError):
    """Infrastructure hiccup (network blip, lock contention). Safe to retry."""


class DriverError(DevEnvError):
    """A backend (hypervisor, container engine, sandbox API) rejected an operation."""


class SetupError(DevEnvError):
    """A setup step (clone, install, start) exited non-zero.

    Attributes:
        step: Name of the failed step.
        exit_code: Exit code of the failing command, if any.
        log_tail: Last lines of output captured for diagnostics.
    """

    def __init__(self, step: str, message: str, exit_code: int | None = None, log_tail: str = ""):
        super().__init__(f"{step} failed: {message}")
        self.step = step
        self.exit_code = exit_code
        self.log_tail = log_tail


class CommandTimeoutError(DevEnvError):
    """A command exceeded its hard timeout and its process tree was killed."""

    def __init__(self, command: str, timeout: float, output: str = ""):
        super().__init__(f"Command timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout
        self.output = output


class UnauthorizedError(DevEnvError):
    """A presented callback secret did not match the recorded one."""


class ForbiddenError(DevEnvError):
    """An authenticated caller reported on a resource its environment does not own."""


class ResourceNotFoundError(DevEnvError):
    """No environment, snapshot or checkpoint is registered under the given name."""


class InvalidTransitionError(DevEnvError):
    """A status change is not permitted by the environment state machine."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid status transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class ConflictError(TransientError):
    """A compare-and-set patch lost a race with a concurrent writer."""


class LockBusyError(TransientError):
    """A directory lock is held by a live owner."""


class PortExhaustedError(DevEnvError):
    """Every port in the configured range is in use."""


class MirrorError(DevEnvError):
    """The repository mirror could not be created or refreshed."""


class SnapshotError(DevEnvError):
    """Pause, capture, copy or resume failed while snapshotting."""


class SnapshotNotFoundError(SnapshotError):
    """No restorable snapshot (metadata present) exists for the key."""


class CheckpointError(DevEnvError):
    """Committing or restoring a container checkpoint failed."""


class ProvisioningTimeoutError(DevEnvError):
    """An environment did not reach a terminal status within the overall ceiling."""
