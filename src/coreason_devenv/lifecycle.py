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
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

from coreason_devenv.checkpoints import CheckpointManager
from coreason_devenv.config import DevEnvConfig
from coreason_devenv.drivers.base import (
    BootRequest,
    CommitCapableDriver,
    EnvironmentDriver,
    EnvironmentHandle,
    PausableDriver,
)
from coreason_devenv.errors import (
    CheckpointError,
    CommandTimeoutError,
    ConflictError,
    DriverError,
    LockBusyError,
    MirrorError,
    ProvisioningTimeoutError,
    ResourceNotFoundError,
    SetupError,
    SnapshotError,
    TransientError,
    UnauthorizedError,
)
from coreason_devenv.executor import LogTail
from coreason_devenv.factory import DriverFactory
from coreason_devenv.health import wait_for_dev_server
from coreason_devenv.mirror import RepositoryMirrorCache
from coreason_devenv.models.environment import (
    BackendKind,
    Environment,
    EnvironmentStatus,
    HealthCheckOutcome,
    HealthCheckPolicy,
    RestoreSource,
    StatusChange,
)
from coreason_devenv.models.repository import Repository
from coreason_devenv.models.snapshot import Snapshot
from coreason_devenv.ports import PortAllocator
from coreason_devenv.reporter import StatusSink
from coreason_devenv.snapshots import SnapshotManager
from coreason_devenv.state import LIVE_STATUSES, check_transition
from coreason_devenv.store import ENVIRONMENTS, REPOSITORIES, RecordStore

S = EnvironmentStatus
CAS_ATTEMPTS = 5
# Errors after which a restore falls back to a fresh boot.
RESTORE_ERRORS = (
    SnapshotError,
    CheckpointError,
    SetupError,
    DriverError,
    CommandTimeoutError,
    TransientError,
    UnauthorizedError,
)


@dataclass
class LiveUnit:
    driver: EnvironmentDriver
    handle: EnvironmentHandle
    log: LogTail


@dataclass
class _Provisioning:
    environment_id: str
    repo: Repository
    driver: EnvironmentDriver
    log: LogTail
    env_vars: dict[str, str] = field(default_factory=dict)
    handle: EnvironmentHandle | None = None


def _redact(text: str | None, credentials: Iterable[str | None]) -> str | None:
    if not text:
        return text
    for credential in credentials:
        if credential:
            text = text.replace(credential, "***")
    return text


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in fields.items()}


class LifecycleController:
    """Drives environments from ``requested`` to ``ready`` and tears them down.

    Every request gets one detached provisioning task. Status changes are
    compare-and-set patches on the environment record; each applied change is
    published to the configured status sinks.
    """

    def __init__(
        self,
        config: DevEnvConfig,
        store: RecordStore,
        drivers: DriverFactory,
        ports: PortAllocator,
        mirror: RepositoryMirrorCache,
        snapshots: SnapshotManager,
        checkpoints: CheckpointManager,
        sinks: Iterable[StatusSink] = (),
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.drivers = drivers
        self.ports = ports
        self.mirror = mirror
        self.snapshots = snapshots
        self.checkpoints = checkpoints
        self.sinks = list(sinks)
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._units: dict[str, LiveUnit] = {}
        self._logs: dict[str, LogTail] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._deliveries: dict[str, asyncio.Task[Any]] = {}

    # -- records ---------------------------------------------------------

    def get(self, environment_id: str) -> Environment:
        record = self.store.get(ENVIRONMENTS, environment_id)
        if record is None:
            raise ResourceNotFoundError(f"Environment {environment_id} not found")
        return Environment.model_validate(record)

    def list_environments(self, **filters: Any) -> list[Environment]:
        return [Environment.model_validate(r) for r in self.store.query(ENVIRONMENTS, **_jsonable(filters))]

    def _repository(self, repo_id: str) -> Repository:
        record = self.store.get(REPOSITORIES, repo_id)
        if record is None:
            raise ResourceNotFoundError(f"Repository {repo_id} not found")
        return Repository.model_validate(record)

    async def apply_status(
        self, environment_id: str, status: EnvironmentStatus, reason: str | None = None, **fields: Any
    ) -> Environment:
        """Move an environment to ``status`` along a permitted edge.

        Raises:
            InvalidTransitionError: If the edge is not in the state machine.
            ConflictError: If concurrent writers kept winning the race.
        """
        for _ in range(CAS_ATTEMPTS):
            current = self.get(environment_id)
            check_transition(current.status, status)
            now = self._clock()
            change = StatusChange(status=status, timestamp=now, reason=reason)
            history = [c.model_dump(mode="json") for c in current.status_history]
            history.append(change.model_dump(mode="json"))
            update = {"status": status.value, "status_changed_at": now, "status_history": history, **_jsonable(fields)}
            try:
                record = self.store.patch(
                    ENVIRONMENTS,
                    environment_id,
                    update,
                    expect={"status": current.status.value, "status_changed_at": current.status_changed_at},
                )
            except ConflictError:
                continue
            environment = Environment.model_validate(record)
            logger.info(f"Environment {environment_id}: {current.status.value} -> {status.value}")
            self._publish(environment, change)
            return environment
        raise ConflictError(f"Environment {environment_id} kept changing while moving to {status.value}")

    def _update(self, environment_id: str, **fields: Any) -> None:
        self.store.patch(ENVIRONMENTS, environment_id, _jsonable(fields))

    def _publish(self, environment: Environment, change: StatusChange) -> None:
        """Queue delivery of a status change to every sink without waiting for it.

        Deliveries for one environment run in order; a slow or failing sink
        never holds up the state machine.
        """
        if not self.sinks:
            return
        previous = self._deliveries.get(environment.id)
        task = self._spawn(self._deliver(previous, environment, change))
        self._deliveries[environment.id] = task

        def forget(done: asyncio.Task[Any]) -> None:
            if self._deliveries.get(environment.id) is done:
                del self._deliveries[environment.id]

        task.add_done_callback(forget)

    async def _deliver(
        self, previous: asyncio.Task[Any] | None, environment: Environment, change: StatusChange
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        for sink in self.sinks:
            try:
                await sink.publish(environment, change)
            except Exception as e:
                logger.error(f"Status sink {type(sink).__name__} failed for {environment.id}: {e}")

    async def flush_status(self, timeout: float | None = None) -> None:
        """Wait for queued status deliveries to finish."""
        pending = [t for t in self._deliveries.values() if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    def touch(self, environment_id: str) -> None:
        self._update(environment_id, last_active_at=self._clock())

    def resolve(self, environment_id: str) -> LiveUnit:
        """The running unit behind a ready environment."""
        environment = self.get(environment_id)
        unit = self._units.get(environment_id)
        if environment.status != S.READY or unit is None:
            raise ResourceNotFoundError(f"Environment {environment_id} is not ready ({environment.status.value})")
        return unit

    # -- requests ----------------------------------------------------------

    async def request_environment(
        self,
        repo_id: str,
        branch: str | None = None,
        backend_kind: BackendKind | None = None,
        env_vars: dict[str, str] | None = None,
    ) -> Environment:
        """Create an environment record and start provisioning it in the background.

        Live environments for the same repository and branch are superseded.

        Args:
            repo_id: Repository record id.
            branch: Branch to check out; defaults to the repository's default branch.
            backend_kind: Backend to use; defaults to ``config.default_backend``.
            env_vars: Written to ``.env`` before the dev server starts.

        Returns:
            Environment: The new record, in status ``requested``.

        Raises:
            ResourceNotFoundError: If the repository is unknown.
            PortExhaustedError: If no host port is free.
        """
        repo = self._repository(repo_id)
        branch = branch or repo.default_branch
        kind = backend_kind or self.config.default_backend

        for stale in self.list_environments(repo_id=repo_id, branch=branch):
            if stale.status in LIVE_STATUSES:
                logger.info(f"Superseding environment {stale.id} for {repo.full_name}@{branch}")
                self._spawn(self.teardown(stale.id, reason="superseded"))

        host_port = self.ports.allocate() if kind != BackendKind.REMOTE_SANDBOX else None
        now = self._clock()
        environment = Environment(
            backend_kind=kind,
            repo_id=repo_id,
            branch=branch,
            resource_name="",
            host_port=host_port,
            callback_secret=secrets.token_hex(32),
            status_history=[StatusChange(status=S.REQUESTED, timestamp=now, reason="requested")],
            created_at=now,
            status_changed_at=now,
            last_active_at=now,
        )
        environment.resource_name = f"devenv-{environment.id[:12]}"
        try:
            self.store.insert(ENVIRONMENTS, environment.id, environment.model_dump(mode="json"))
        except Exception:
            self.ports.release(host_port)
            raise

        logger.info(
            f"Requested {kind.value} environment {environment.id} for {repo.full_name}@{branch}"
            + (f" on port {host_port}" if host_port else "")
        )
        driver = self.drivers.get(kind)
        log = LogTail(self.config.log_tail_lines)
        self._logs[environment.id] = log
        job = _Provisioning(environment.id, repo, driver, log, dict(env_vars or {}))
        task = asyncio.create_task(self._provision(job), name=f"provision-{environment.id}")
        self._tasks[environment.id] = task
        task.add_done_callback(lambda _t, env_id=environment.id: self._tasks.pop(env_id, None))
        return environment

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task: asyncio.Task[Any] = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- provisioning --------------------------------------------------------

    def _credential(self, repo: Repository) -> str | None:
        return repo.access_token or self.config.github_token

    async def _provision(self, job: _Provisioning) -> None:
        env = self.get(job.environment_id)
        request = BootRequest(
            environment_id=env.id,
            resource_name=env.resource_name,
            owner=job.repo.owner,
            repo=job.repo.name,
            branch=env.branch,
            host_port=env.host_port,
            env_vars=job.env_vars,
        )
        try:
            restored = await self._restore(job, env, request)
            if not restored:
                await self._provision_fresh(job, env, request)
            await self._start(job)
        except asyncio.CancelledError:
            logger.info(f"Provisioning of {job.environment_id} cancelled")
            raise
        except Exception as e:
            await self._fail(job, e)

    def _register(self, job: _Provisioning, handle: EnvironmentHandle) -> None:
        job.handle = handle
        self._units[job.environment_id] = LiveUnit(job.driver, handle, job.log)
        fields: dict[str, Any] = {"host_id": handle.details.get("host_id") or handle.backend_kind.value}
        if handle.network_address:
            fields["network_address"] = handle.network_address
        if handle.host_port:
            fields["host_port"] = handle.host_port
        self._update(job.environment_id, **fields)

    async def _discard_unit(self, job: _Provisioning) -> None:
        if job.handle is None:
            return
        self._units.pop(job.environment_id, None)
        try:
            await job.driver.destroy(job.handle)
        except Exception as e:
            logger.error(f"Error destroying {job.handle.resource_name}: {e}")
        job.handle = None

    async def _restore(self, job: _Provisioning, env: Environment, request: BootRequest) -> bool:
        """Try the restore path. Returns False when the fresh path must run."""
        owner, name, branch = job.repo.owner, job.repo.name, env.branch
        driver = job.driver
        source: RestoreSource | None = None
        expected_sha: str | None = None
        snapshot: Snapshot | None = None

        if self.config.snapshots_enabled and isinstance(driver, PausableDriver):
            snapshot = self.snapshots.find_restorable(owner, name, branch)
            if snapshot is not None:
                source, expected_sha = RestoreSource.SNAPSHOT, snapshot.commit_sha
        elif self.config.checkpoints_enabled and isinstance(driver, CommitCapableDriver):
            checkpoint = await self.checkpoints.find_restorable(driver, owner, name, branch)
            if checkpoint is not None:
                source, expected_sha = RestoreSource.CHECKPOINT, checkpoint.commit_sha

        if source is None:
            return False

        await self.apply_status(env.id, S.RESTORING, reason=f"restoring from {source.value}")
        job.log.section(f"restore ({source.value})")
        try:
            if source == RestoreSource.SNAPSHOT:
                handle, _snapshot = await self.snapshots.restore(owner, name, branch, driver, request)  # type: ignore[arg-type]
            else:
                handle, _checkpoint = await self.checkpoints.restore_from_checkpoint(driver, owner, name, branch, request)
            self._register(job, handle)

            if snapshot is not None and not await self._snapshot_is_stale(job, snapshot, branch):
                commit = expected_sha
                job.log.add(f"snapshot is at the head of {branch}, skipping refresh")
            else:
                origin_url = self.mirror.origin_url(owner, name, self._credential(job.repo))
                commit = await driver.refresh(handle, branch, origin_url, job.log)
                if commit and commit != expected_sha:
                    logger.info(f"{env.resource_name} moved from {expected_sha} to {commit} after refresh")
                await driver.install(handle, job.repo.install_command or self.config.install_command, job.log)
        except RESTORE_ERRORS as e:
            logger.warning(f"Restore of {env.id} from {source.value} failed, booting fresh: {e}")
            job.log.add(f"restore failed: {_redact(str(e), [self._credential(job.repo)])}")
            await self._discard_unit(job)
            request.image = None
            request.dependency_volume = None
            return False

        self._update(
            env.id,
            restored_from_snapshot=True,
            restore_source=source,
            commit_sha=commit or expected_sha,
        )
        return True

    async def _snapshot_is_stale(self, job: _Provisioning, snapshot: Snapshot, branch: str) -> bool:
        """Compare a snapshot with the branch head in the host mirror.

        Without a usable mirror the head is unknown and the snapshot counts as stale.
        """
        remote_head: str | None = None
        if job.driver.mirror_mount:
            owner, name = job.repo.owner, job.repo.name
            try:
                await self.mirror.ensure_fresh(owner, name, branch, self._credential(job.repo))
                remote_head = await self.mirror.remote_head(owner, name, branch)
            except (MirrorError, LockBusyError, CommandTimeoutError) as e:
                logger.warning(f"Could not read head of {owner}/{name}@{branch} from mirror: {e}")
        return snapshot.is_stale(remote_head, self.config.snapshot_staleness)

    async def _provision_fresh(self, job: _Provisioning, env: Environment, request: BootRequest) -> None:
        owner, name, branch = job.repo.owner, job.repo.name, env.branch
        driver = job.driver
        credential = self._credential(job.repo)

        await self.apply_status(env.id, S.BOOTING, reason="booting")
        if isinstance(driver, CommitCapableDriver):
            request.dependency_volume = driver.dependency_volume(owner, name)
        handle = await driver.boot(request)
        self._register(job, handle)

        await self.apply_status(env.id, S.CLONING, reason="cloning")
        origin_url = self.mirror.origin_url(owner, name, credential)
        source_url = origin_url
        mirror_path = driver.mirror_path(handle)
        if mirror_path:
            try:
                await self.mirror.ensure_fresh(owner, name, branch, credential)
                source_url = self.mirror.local_url(owner, name, mirror_path)
            except (MirrorError, LockBusyError, CommandTimeoutError) as e:
                logger.warning(f"Mirror unavailable for {owner}/{name}, cloning from origin: {e}")
        commit = await driver.clone(handle, source_url, origin_url, branch, job.repo.default_branch, job.log)
        if commit:
            self._update(env.id, commit_sha=commit)

        await self.apply_status(env.id, S.INSTALLING, reason="installing dependencies")
        await driver.install(handle, job.repo.install_command or self.config.install_command, job.log)

        await self._capture_image(job, handle, commit)

    async def _capture_image(self, job: _Provisioning, handle: EnvironmentHandle, commit: str | None) -> None:
        """Snapshot or checkpoint a freshly installed unit. Never fatal."""
        owner, name = job.repo.owner, job.repo.name
        branch = self.get(job.environment_id).branch
        driver = job.driver
        try:
            if self.config.snapshots_enabled and isinstance(driver, PausableDriver):
                await self.snapshots.create_snapshot(driver, handle, owner, name, branch, commit, job.repo.id)
            elif self.config.checkpoints_enabled and isinstance(driver, CommitCapableDriver):
                await self.checkpoints.create_checkpoint(driver, handle, owner, name, branch, commit, job.repo.id)
        except Exception as e:
            logger.warning(f"Could not capture {owner}/{name}@{branch} after install: {e}")

    async def _start(self, job: _Provisioning) -> None:
        if job.handle is None:
            raise DriverError(f"Environment {job.environment_id} has no running unit to start")
        driver, handle = job.driver, job.handle
        port = job.repo.dev_port or self.config.dev_port

        await self.apply_status(job.environment_id, S.STARTING, reason="starting dev server")
        await driver.write_env_file(handle, job.env_vars)
        await driver.start_dev_server(handle, job.repo.dev_command or self.config.dev_command, port, job.log)

        outcome = await wait_for_dev_server(
            driver,
            handle,
            port,
            attempts=self.config.health_check_attempts,
            interval=self.config.health_check_interval,
            sleep=self._sleep,
        )
        if outcome == HealthCheckOutcome.EXHAUSTED:
            server_log = await driver.read_log_tail(handle, self.config.log_tail_lines)
            job.log.section("dev server", server_log)
            if self.config.health_check_policy == HealthCheckPolicy.STRICT:
                raise SetupError(
                    "health",
                    f"dev server did not answer on port {port}",
                    log_tail=job.log.text(),
                )

        await self.apply_status(
            job.environment_id,
            S.READY,
            reason="dev server answering" if outcome == HealthCheckOutcome.CONFIRMED else "health check exhausted",
            health_check=outcome,
            last_active_at=self._clock(),
        )
        self._logs.pop(job.environment_id, None)

    async def _fail(self, job: _Provisioning, error: Exception) -> None:
        credentials = [self._credential(job.repo)]
        message = _redact(str(error), credentials) or type(error).__name__
        tail = error.log_tail if isinstance(error, SetupError) and error.log_tail else job.log.text()
        tail = _redact(tail, credentials)
        if tail and len(tail) > self.config.callback_log_max_chars:
            tail = tail[-self.config.callback_log_max_chars :]
        logger.error(f"Provisioning of {job.environment_id} failed: {message}")

        await self._discard_unit(job)
        environment = self.get(job.environment_id)
        self.ports.release(environment.host_port)
        self._logs.pop(job.environment_id, None)
        if environment.status not in LIVE_STATUSES:
            return
        await self.apply_status(job.environment_id, S.FAILED, reason=message, error_message=message, log_tail=tail)

    # -- supervision ---------------------------------------------------------

    async def _cancel_provisioning(self, environment_id: str) -> None:
        task = self._tasks.get(environment_id)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait({task})

    async def _destroy_unit(self, environment_id: str) -> None:
        unit = self._units.pop(environment_id, None)
        if unit is None:
            return
        try:
            await unit.driver.destroy(unit.handle)
        except Exception as e:
            logger.error(f"Error destroying {unit.handle.resource_name}: {e}")

    async def fail_stuck(self, environment_id: str, reason: str) -> Environment:
        """Fail a live environment that is not making progress and free its unit."""
        await self._cancel_provisioning(environment_id)
        environment = self.get(environment_id)
        if environment.status not in LIVE_STATUSES:
            return environment
        log = self._logs.pop(environment_id, None)
        await self._destroy_unit(environment_id)
        self.ports.release(environment.host_port)
        logger.warning(f"Failing environment {environment_id}: {reason}")
        return await self.apply_status(
            environment_id,
            S.FAILED,
            reason=reason,
            error_message=reason,
            log_tail=log.text(self.config.callback_log_max_chars) if log else environment.log_tail,
        )

    async def teardown(self, environment_id: str, reason: str = "teardown") -> Environment:
        """Stop an environment and release its unit and port.

        Tearing down a provisioning environment cancels its provisioning task.
        Tearing down a stopped or stopping environment is a no-op.
        """
        environment = self.get(environment_id)
        if environment.status in (S.STOPPING, S.STOPPED):
            return environment

        await self.apply_status(environment_id, S.STOPPING, reason=reason)
        await self._cancel_provisioning(environment_id)
        await self._destroy_unit(environment_id)
        self.ports.release(environment.host_port)
        self._logs.pop(environment_id, None)
        return await self.apply_status(environment_id, S.STOPPED, reason=reason)

    async def wait_until_settled(self, environment_id: str, timeout: float | None = None) -> Environment:
        """Wait until provisioning finished, applying the overall ceiling.

        Raises:
            ProvisioningTimeoutError: If provisioning outlived ``timeout``; the
                environment is failed and its unit destroyed.
        """
        timeout = self.config.provisioning_ceiling if timeout is None else timeout
        task = self._tasks.get(environment_id)
        if task is not None:
            done, _pending = await asyncio.wait({task}, timeout=timeout)
            if not done:
                await self.fail_stuck(environment_id, f"Provisioning did not finish within {timeout:g}s")
                raise ProvisioningTimeoutError(f"Environment {environment_id} did not settle within {timeout:g}s")
        return self.get(environment_id)

    async def shutdown(self) -> None:
        """Cancel provisioning and background tasks. Units are left running."""
        tasks = [t for t in [*self._tasks.values(), *self._background] if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
