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
from typing import Any, Callable

from loguru import logger

from coreason_devenv.drivers.base import BootRequest, CommitCapableDriver, EnvironmentHandle
from coreason_devenv.errors import CheckpointError, ConflictError
from coreason_devenv.models.snapshot import Checkpoint, ImageStatus
from coreason_devenv.store import CHECKPOINTS, RecordStore

IMAGE_REPOSITORY = "coreason-devenv/checkpoint"
MAX_NAME_LENGTH = 60


def checkpoint_name(owner: str, repo: str, branch: str) -> str:
    """Image-tag-safe checkpoint name, e.g. ``cp-acme-web-feature-x``."""
    name = f"cp-{owner}-{repo}-{branch}".lower()
    name = re.sub(r"[^a-z0-9-]", "-", name)
    name = re.sub(r"-+", "-", name)
    return name[:MAX_NAME_LENGTH]


def save_checkpoint_record(store: RecordStore, checkpoint: Checkpoint) -> Checkpoint:
    fields = checkpoint.model_dump(mode="json")
    if store.get(CHECKPOINTS, checkpoint.name) is None:
        try:
            store.insert(CHECKPOINTS, checkpoint.name, fields)
            return checkpoint
        except ConflictError:
            pass
    store.patch(CHECKPOINTS, checkpoint.name, fields)
    return checkpoint


class CheckpointManager:
    """
    Filesystem checkpoints for backends that cannot pause a running unit.

    A checkpoint is the committed container filesystem (source tree and build
    output). Installed dependencies live on the per-repository volume and are
    reattached on restore.
    """

    def __init__(self, store: RecordStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def get(self, owner: str, repo: str, branch: str) -> Checkpoint | None:
        record = self.store.get(CHECKPOINTS, checkpoint_name(owner, repo, branch))
        return Checkpoint.model_validate(record) if record else None

    def list_checkpoints(self, **filters: Any) -> list[Checkpoint]:
        return [Checkpoint.model_validate(r) for r in self.store.query(CHECKPOINTS, **filters)]

    async def find_restorable(
        self, driver: CommitCapableDriver, owner: str, repo: str, branch: str
    ) -> Checkpoint | None:
        checkpoint = self.get(owner, repo, branch)
        if checkpoint is None or checkpoint.status != ImageStatus.READY:
            return None
        if not await driver.image_exists(checkpoint.image_tag):
            logger.warning(f"Checkpoint {checkpoint.name} is recorded but image {checkpoint.image_tag} is gone")
            return None
        return checkpoint

    async def create_checkpoint(
        self,
        driver: CommitCapableDriver,
        handle: EnvironmentHandle,
        owner: str,
        repo: str,
        branch: str,
        commit_sha: str | None = None,
        repo_id: str | None = None,
    ) -> Checkpoint:
        """Commit the unit's filesystem under the checkpoint name for the branch.

        Raises:
            CheckpointError: If the commit failed. A previous ready checkpoint
                under the same name is kept.
        """
        name = checkpoint_name(owner, repo, branch)
        image_tag = f"{IMAGE_REPOSITORY}:{name}"
        previous = self.get(owner, repo, branch)

        logger.info(f"Creating checkpoint {name} from {handle.resource_name}")
        try:
            await driver.commit_image(handle, IMAGE_REPOSITORY, name)
        except Exception as e:
            logger.error(f"Checkpoint {name} failed: {e}")
            if previous is None or previous.status != ImageStatus.READY:
                save_checkpoint_record(
                    self.store,
                    Checkpoint(
                        name=name,
                        repo_id=repo_id,
                        owner=owner,
                        repo=repo,
                        branch=branch,
                        image_tag=image_tag,
                        source_environment_id=handle.environment_id,
                        status=ImageStatus.FAILED,
                        error_message=str(e),
                        created_at=self._clock(),
                    ),
                )
            raise CheckpointError(f"Checkpoint {name} failed: {e}") from e

        checkpoint = Checkpoint(
            name=name,
            repo_id=repo_id,
            owner=owner,
            repo=repo,
            branch=branch,
            image_tag=image_tag,
            source_environment_id=handle.environment_id,
            commit_sha=commit_sha,
            status=ImageStatus.READY,
            usage_count=previous.usage_count if previous else 0,
            created_at=self._clock(),
        )
        save_checkpoint_record(self.store, checkpoint)
        logger.info(f"Checkpoint {name} ready ({image_tag})")
        return checkpoint

    async def restore_from_checkpoint(
        self,
        driver: Any,
        owner: str,
        repo: str,
        branch: str,
        request: BootRequest,
    ) -> tuple[EnvironmentHandle, Checkpoint]:
        """Boot a new unit from the checkpoint image with the dependency volume attached.

        The returned unit still needs the restore-path refresh.

        Raises:
            CheckpointError: If no ready checkpoint exists or the boot failed.
        """
        checkpoint = await self.find_restorable(driver, owner, repo, branch)
        if checkpoint is None:
            raise CheckpointError(f"No checkpoint found for {owner}/{repo}@{branch}")

        request.image = checkpoint.image_tag
        request.dependency_volume = driver.dependency_volume(owner, repo)
        logger.info(f"Restoring {request.resource_name} from checkpoint {checkpoint.name}")
        try:
            handle = await driver.boot(request)
        except Exception as e:
            raise CheckpointError(f"Restore from checkpoint {checkpoint.name} failed: {e}") from e

        self._record_usage(checkpoint.name)
        return handle, checkpoint

    def _record_usage(self, name: str, attempts: int = 5) -> None:
        for _ in range(attempts):
            record = self.store.get(CHECKPOINTS, name)
            if record is None:
                return
            count = record.get("usage_count", 0)
            try:
                self.store.patch(
                    CHECKPOINTS,
                    name,
                    {"usage_count": count + 1, "last_used_at": self._clock()},
                    expect={"usage_count": count},
                )
                return
            except ConflictError:
                continue
        logger.warning(f"Could not record usage of checkpoint {name}")

    async def invalidate(self, driver: CommitCapableDriver, owner: str, repo: str, branch: str) -> bool:
        checkpoint = self.get(owner, repo, branch)
        if checkpoint is None:
            return False
        await driver.remove_image(checkpoint.image_tag)
        self.store.delete(CHECKPOINTS, checkpoint.name)
        logger.info(f"Invalidated checkpoint {checkpoint.name}")
        return True
