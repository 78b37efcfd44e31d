# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Point-in-time snapshots of pausable environments.

On-disk layout per key::

    <root>/<owner>/<repo>/<safe_branch>/
        .lock           held while a snapshot is being taken
        mem             guest memory
        state           VM execution state
        rootfs.ext4     disk image
        metadata.json   written last; a directory without it is not restorable
"""

import asyncio
import json
import os
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable
from uuid import uuid4

import aiofiles  # type: ignore[import-untyped]
import anyio
from loguru import logger

from coreason_devenv.disks import copy_disk_image
from coreason_devenv.drivers.base import BootRequest, EnvironmentHandle, PausableDriver
from coreason_devenv.errors import ConflictError, DriverError, SnapshotError, SnapshotNotFoundError
from coreason_devenv.executor import LocalExecutor
from coreason_devenv.locks import FileLock
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.snapshot import ImageStatus, Snapshot, SnapshotSizes, safe_branch, snapshot_key
from coreason_devenv.store import SNAPSHOTS, RecordStore

MEMORY_FILE = "mem"
STATE_FILE = "state"
DISK_FILE = "rootfs.ext4"
METADATA_FILE = "metadata.json"
LOCK_FILE = ".lock"
STAGING_PREFIX = ".staging-"


def save_snapshot_record(store: RecordStore, snapshot: Snapshot) -> Snapshot:
    """Insert or update the single record for ``snapshot.key``."""
    fields = snapshot.model_dump(mode="json")
    if store.get(SNAPSHOTS, snapshot.key) is None:
        try:
            store.insert(SNAPSHOTS, snapshot.key, fields)
            return snapshot
        except ConflictError:
            pass
    store.patch(SNAPSHOTS, snapshot.key, fields)
    return snapshot


class SnapshotManager:
    """Creates, restores, lists and expires snapshots.

    Attributes:
        root: Directory holding all snapshots.
        store: Record store for Snapshot records (one per key).
    """

    def __init__(
        self,
        root: Path,
        store: RecordStore,
        executor: LocalExecutor | None = None,
        lock_stale_after: float = 300.0,
        pause_settle: float = 0.5,
        max_age: float = 7 * 24 * 3600.0,
        hypervisor_version: str | None = None,
        vcpus: int | None = None,
        memory_mib: int | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.root = Path(root)
        self.store = store
        self.executor = executor or LocalExecutor()
        self.lock_stale_after = lock_stale_after
        self.pause_settle = pause_settle
        self.max_age = max_age
        self.hypervisor_version = hypervisor_version
        self.vcpus = vcpus
        self.memory_mib = memory_mib
        self._clock = clock
        self._sleep = sleep

    def snapshot_dir(self, owner: str, repo: str, branch: str) -> Path:
        return self.root / owner / repo / safe_branch(branch)

    def lock_for(self, owner: str, repo: str, branch: str) -> FileLock:
        return FileLock(
            self.snapshot_dir(owner, repo, branch) / LOCK_FILE,
            stale_after=self.lock_stale_after,
            clock=self._clock,
        )

    def get(self, owner: str, repo: str, branch: str) -> Snapshot | None:
        record = self.store.get(SNAPSHOTS, snapshot_key(owner, repo, branch))
        return Snapshot.model_validate(record) if record else None

    def read_metadata(self, directory: Path) -> dict[str, Any] | None:
        try:
            return json.loads((directory / METADATA_FILE).read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable snapshot metadata in {directory}: {e}")
            return None

    def find_restorable(self, owner: str, repo: str, branch: str) -> Snapshot | None:
        """The authoritative ready snapshot for the key, if its files are complete."""
        snapshot = self.get(owner, repo, branch)
        if snapshot is None or snapshot.status != ImageStatus.READY:
            return None
        directory = self.snapshot_dir(owner, repo, branch)
        if self.read_metadata(directory) is None:
            logger.debug(f"Snapshot {snapshot.key} has no metadata; not restorable")
            return None
        if not all((directory / name).exists() for name in (MEMORY_FILE, STATE_FILE, DISK_FILE)):
            logger.warning(f"Snapshot {snapshot.key} is missing image files; not restorable")
            return None
        return snapshot

    async def _pause(self, driver: PausableDriver, handle: EnvironmentHandle) -> None:
        try:
            state = await driver.get_pause_state(handle)
        except DriverError as e:
            logger.warning(f"Could not read pause state of {handle.resource_name}: {e}")
            state = "Unknown"

        if state == "Paused":
            logger.info(f"{handle.resource_name} already paused")
            return

        logger.info(f"Pausing {handle.resource_name} (state: {state})")
        await driver.pause(handle)
        await self._sleep(self.pause_settle)

        try:
            state = await driver.get_pause_state(handle)
        except DriverError as e:
            logger.warning(f"Could not verify pause of {handle.resource_name}: {e}")
            return
        if state != "Paused":
            raise SnapshotError(f"{handle.resource_name} failed to pause, state is {state}")

    async def _resume(self, driver: PausableDriver, handle: EnvironmentHandle, attempts: int = 2) -> Exception | None:
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await driver.resume(handle)
                return None
            except Exception as e:
                last_error = e
                logger.error(f"Resume of {handle.resource_name} failed (attempt {attempt}/{attempts}): {e}")
        return last_error

    async def create_snapshot(
        self,
        driver: PausableDriver,
        handle: EnvironmentHandle,
        owner: str,
        repo: str,
        branch: str,
        commit_sha: str | None,
        repo_id: str | None = None,
    ) -> Snapshot:
        """Capture memory, state and disk of a running environment.

        The unit is resumed on every path out of this method. Metadata is
        written only after capture, copy and resume all succeeded.

        Raises:
            LockBusyError: If another snapshot of the same key is in progress.
            SnapshotError: If pause, capture, copy or resume failed.
        """
        key = snapshot_key(owner, repo, branch)
        directory = self.snapshot_dir(owner, repo, branch)
        directory.mkdir(parents=True, exist_ok=True)

        async with self.lock_for(owner, repo, branch):
            logger.info(f"Creating snapshot {key} from {handle.resource_name}")
            staging = directory / f"{STAGING_PREFIX}{uuid4().hex[:8]}"
            staging.mkdir()

            capture_error: Exception | None = None
            copy_method = None
            try:
                await self._pause(driver, handle)
                await driver.capture(handle, staging / MEMORY_FILE, staging / STATE_FILE)
                copy_method = await copy_disk_image(driver.disk_image(handle), staging / DISK_FILE, self.executor)
            except Exception as e:
                capture_error = e
            finally:
                resume_error = await self._resume(driver, handle)

            if capture_error is not None or resume_error is not None:
                await anyio.to_thread.run_sync(lambda: shutil.rmtree(staging, ignore_errors=True))
                cause = capture_error or resume_error
                self._record_failure(key, owner, repo, branch, repo_id, str(cause))
                if capture_error is not None:
                    raise SnapshotError(f"Snapshot {key} failed: {capture_error}") from capture_error
                raise SnapshotError(f"Snapshot {key} captured but resume failed: {resume_error}") from resume_error

            (directory / METADATA_FILE).unlink(missing_ok=True)
            for name in (MEMORY_FILE, STATE_FILE, DISK_FILE):
                os.replace(staging / name, directory / name)
            staging.rmdir()

            snapshot = Snapshot(
                key=key,
                owner=owner,
                repo=repo,
                branch=branch,
                repo_id=repo_id,
                commit_sha=commit_sha,
                backend_kind=BackendKind.MICROVM,
                memory_path=str(directory / MEMORY_FILE),
                state_path=str(directory / STATE_FILE),
                disk_path=str(directory / DISK_FILE),
                size_bytes=SnapshotSizes(
                    memory=(directory / MEMORY_FILE).stat().st_size,
                    state=(directory / STATE_FILE).stat().st_size,
                    disk=(directory / DISK_FILE).stat().st_size,
                ),
                vcpus=self.vcpus,
                memory_mib=self.memory_mib,
                hypervisor_version=self.hypervisor_version,
                status=ImageStatus.READY,
                created_at=self._clock(),
            )
            await self._write_metadata(directory, snapshot, copy_method.value if copy_method else None)

            previous = self.get(owner, repo, branch)
            if previous is not None:
                snapshot.usage_count = previous.usage_count
            save_snapshot_record(self.store, snapshot)

        logger.info(f"Snapshot {key} ready ({snapshot.size_bytes.total} bytes)")
        return snapshot

    def _record_failure(
        self, key: str, owner: str, repo: str, branch: str, repo_id: str | None, error: str
    ) -> None:
        existing = self.get(owner, repo, branch)
        if existing is not None and existing.status == ImageStatus.READY:
            # A previous capture under this key is still intact and restorable.
            return
        save_snapshot_record(
            self.store,
            Snapshot(
                key=key,
                owner=owner,
                repo=repo,
                branch=branch,
                repo_id=repo_id,
                status=ImageStatus.FAILED,
                error_message=error,
                created_at=self._clock(),
            ),
        )

    async def _write_metadata(self, directory: Path, snapshot: Snapshot, copy_method: str | None) -> None:
        metadata = {
            "createdAt": snapshot.created_at,
            "repoUrl": f"https://github.com/{snapshot.owner}/{snapshot.repo}",
            "owner": snapshot.owner,
            "repo": snapshot.repo,
            "branch": snapshot.branch,
            "commitSha": snapshot.commit_sha,
            "hypervisorVersion": snapshot.hypervisor_version,
            "memoryMib": snapshot.memory_mib,
            "vcpus": snapshot.vcpus,
            "copyMethod": copy_method,
            "sizeBytes": snapshot.size_bytes.model_dump(),
        }
        tmp = directory / f"{METADATA_FILE}.tmp"
        async with aiofiles.open(tmp, "w") as f:
            await f.write(json.dumps(metadata, indent=2))
        os.replace(tmp, directory / METADATA_FILE)

    async def restore(
        self,
        owner: str,
        repo: str,
        branch: str,
        driver: PausableDriver,
        request: BootRequest,
    ) -> tuple[EnvironmentHandle, Snapshot]:
        """Boot a new unit from the snapshot for the key, running on return.

        Raises:
            SnapshotNotFoundError: If no restorable snapshot exists.
            SnapshotError: If any restore step failed; the new unit is destroyed.
        """
        snapshot = self.find_restorable(owner, repo, branch)
        if snapshot is None:
            raise SnapshotNotFoundError(f"No snapshot found for {owner}/{repo}@{branch}")
        directory = self.snapshot_dir(owner, repo, branch)

        logger.info(f"Restoring {request.resource_name} from snapshot {snapshot.key}")
        handle: EnvironmentHandle | None = None
        try:
            handle = await driver.prepare_restore(request)
            disk = driver.disk_image(handle)
            await copy_disk_image(directory / DISK_FILE, disk, self.executor)
            await driver.attach_devices(handle, disk)
            await driver.load_snapshot(handle, directory / MEMORY_FILE, directory / STATE_FILE)
        except Exception as e:
            logger.error(f"Restore of {snapshot.key} failed: {e}")
            if handle is not None:
                await driver.destroy(handle)
            raise SnapshotError(f"Restore from {snapshot.key} failed: {e}") from e

        self._record_usage(snapshot.key)
        return handle, snapshot

    def _record_usage(self, key: str, attempts: int = 5) -> None:
        for _ in range(attempts):
            record = self.store.get(SNAPSHOTS, key)
            if record is None:
                return
            count = record.get("usage_count", 0)
            try:
                self.store.patch(
                    SNAPSHOTS,
                    key,
                    {"usage_count": count + 1, "last_used_at": self._clock()},
                    expect={"usage_count": count},
                )
                return
            except ConflictError:
                continue
        logger.warning(f"Could not record usage of snapshot {key}")

    async def invalidate(self, owner: str, repo: str, branch: str) -> bool:
        """Delete the snapshot for the key (files and record)."""
        key = snapshot_key(owner, repo, branch)
        directory = self.snapshot_dir(owner, repo, branch)
        existed = self.store.delete(SNAPSHOTS, key)
        if directory.exists():
            async with self.lock_for(owner, repo, branch):
                for child in directory.iterdir():
                    if child.name == LOCK_FILE:
                        continue
                    if child.is_dir():
                        await anyio.to_thread.run_sync(shutil.rmtree, child)
                    else:
                        child.unlink()
            existed = True
            try:
                directory.rmdir()
            except OSError:
                pass
            for parent in (directory.parent, directory.parent.parent):
                try:
                    parent.rmdir()
                except OSError:
                    break
        if existed:
            logger.info(f"Invalidated snapshot {key}")
        return existed

    def list_snapshots(self) -> list[Snapshot]:
        """Snapshots with complete metadata on disk, merged with their records."""
        snapshots: list[Snapshot] = []
        if not self.root.exists():
            return snapshots
        for meta_path in sorted(self.root.glob(f"*/*/*/{METADATA_FILE}")):
            directory = meta_path.parent
            owner, repo = directory.parent.parent.name, directory.parent.name
            metadata = self.read_metadata(directory)
            if metadata is None:
                continue
            branch = metadata.get("branch") or directory.name
            record = self.get(owner, repo, branch)
            if record is not None:
                snapshots.append(record)
                continue
            snapshots.append(
                Snapshot(
                    key=snapshot_key(owner, repo, branch),
                    owner=owner,
                    repo=repo,
                    branch=branch,
                    commit_sha=metadata.get("commitSha"),
                    memory_path=str(directory / MEMORY_FILE),
                    state_path=str(directory / STATE_FILE),
                    disk_path=str(directory / DISK_FILE),
                    size_bytes=SnapshotSizes.model_validate(metadata.get("sizeBytes") or {}),
                    hypervisor_version=metadata.get("hypervisorVersion"),
                    status=ImageStatus.READY,
                    created_at=float(metadata.get("createdAt", 0.0)),
                )
            )
        return snapshots

    async def cleanup(self, max_age: float | None = None) -> list[str]:
        """Invalidate snapshots older than ``max_age`` seconds."""
        max_age = self.max_age if max_age is None else max_age
        now = self._clock()
        removed: list[str] = []
        for snapshot in self.list_snapshots():
            if now - snapshot.created_at > max_age:
                await self.invalidate(snapshot.owner, snapshot.repo, snapshot.branch)
                removed.append(snapshot.key)
        return removed
