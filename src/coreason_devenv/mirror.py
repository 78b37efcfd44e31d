# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import os
import shutil
import time
from pathlib import Path
from typing import Callable

import anyio
from loguru import logger

from coreason_devenv.errors import MirrorError
from coreason_devenv.executor import LocalExecutor
from coreason_devenv.locks import FileLock
from coreason_devenv.models.execution import CommandResult

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class RepositoryMirrorCache:
    """One bare mirror per (owner, repo), shared by every environment setup.

    Layout: ``<root>/<owner>/<repo>.git`` guarded by ``<repo>.git.lock``.
    """

    def __init__(
        self,
        root: Path,
        executor: LocalExecutor | None = None,
        lock_wait: float = 120.0,
        retention: float = 7 * 24 * 3600.0,
        fetch_timeout: float = 300.0,
        git_host: str = "github.com",
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.executor = executor or LocalExecutor()
        self.lock_wait = lock_wait
        self.retention = retention
        self.fetch_timeout = fetch_timeout
        self.git_host = git_host
        self._clock = clock

    def mirror_path(self, owner: str, repo: str) -> Path:
        return self.root / owner / f"{repo}.git"

    def lock_for(self, owner: str, repo: str) -> FileLock:
        return FileLock(
            self.root / owner / f"{repo}.git.lock",
            stale_after=self.fetch_timeout + self.lock_wait,
            wait_timeout=self.lock_wait,
            force_after_wait=True,
            clock=self._clock,
        )

    def origin_url(self, owner: str, repo: str, credential: str | None = None) -> str:
        if credential:
            return f"https://x-access-token:{credential}@{self.git_host}/{owner}/{repo}.git"
        return f"https://{self.git_host}/{owner}/{repo}.git"

    def local_url(self, owner: str, repo: str, mount_root: str | None = None) -> str:
        """Clone URL for an environment that sees the cache at ``mount_root``."""
        base = mount_root.rstrip("/") if mount_root else str(self.root)
        return f"file://{base}/{owner}/{repo}.git"

    async def _git(self, *args: str, credential: str | None = None) -> CommandResult:
        result = await self.executor.run(["git", *args], env=_GIT_ENV, timeout=self.fetch_timeout)
        if credential and not result.ok:
            result = result.model_copy(
                update={
                    "stdout": result.stdout.replace(credential, "***"),
                    "stderr": result.stderr.replace(credential, "***"),
                }
            )
        return result

    async def _clone(self, owner: str, repo: str, url: str, credential: str | None) -> None:
        path = self.mirror_path(owner, repo)
        staging = path.with_name(f"{path.name}.tmp-{os.getpid()}")
        if staging.exists():
            await anyio.to_thread.run_sync(shutil.rmtree, staging)

        logger.info(f"Creating mirror for {owner}/{repo}")
        result = await self._git("clone", "--mirror", url, str(staging), credential=credential)
        if not result.ok:
            await anyio.to_thread.run_sync(lambda: shutil.rmtree(staging, ignore_errors=True))
            raise MirrorError(f"Mirror clone of {owner}/{repo} failed: {result.output.strip()}")
        staging.rename(path)

    async def ensure_fresh(self, owner: str, repo: str, branch: str, credential: str | None = None) -> Path:
        """Create or refresh the mirror for ``owner/repo`` and return its path.

        Args:
            owner: Repository owner.
            repo: Repository name.
            branch: Branch the caller is about to check out, for logging.
            credential: Access token for the origin host.

        Raises:
            MirrorError: If neither a fetch nor a fresh clone succeeded.
        """
        path = self.mirror_path(owner, repo)
        url = self.origin_url(owner, repo, credential)
        path.parent.mkdir(parents=True, exist_ok=True)

        async with self.lock_for(owner, repo):
            if (path / "HEAD").exists():
                logger.info(f"Refreshing mirror {owner}/{repo} for branch {branch}")
                await self._git("-C", str(path), "remote", "set-url", "origin", url, credential=credential)
                result = await self._git("-C", str(path), "fetch", "--all", "--prune", "--tags", credential=credential)
                if not result.ok:
                    logger.warning(f"Fetch into mirror {owner}/{repo} failed, recreating: {result.output.strip()}")
                    await anyio.to_thread.run_sync(shutil.rmtree, path)
                    await self._clone(owner, repo, url, credential)
            else:
                if path.exists():
                    await anyio.to_thread.run_sync(shutil.rmtree, path)
                await self._clone(owner, repo, url, credential)

            os.utime(path, None)

        return path

    async def remote_head(self, owner: str, repo: str, branch: str) -> str | None:
        """Commit at the tip of ``branch`` as of the last fetch, or None."""
        path = self.mirror_path(owner, repo)
        if not (path / "HEAD").exists():
            return None
        result = await self._git("-C", str(path), "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def cleanup(self, max_age: float | None = None) -> list[Path]:
        """Remove mirrors not refreshed within the retention window."""
        max_age = self.retention if max_age is None else max_age
        now = self._clock()
        removed: list[Path] = []
        if not self.root.exists():
            return removed

        for owner_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for mirror in sorted(owner_dir.glob("*.git")):
                if not mirror.is_dir() or now - mirror.stat().st_mtime <= max_age:
                    continue
                if self.lock_for(owner_dir.name, mirror.name[: -len(".git")]).age() is not None:
                    logger.debug(f"Skipping locked mirror {mirror}")
                    continue
                logger.info(f"Removing unused mirror {mirror}")
                await anyio.to_thread.run_sync(shutil.rmtree, mirror)
                removed.append(mirror)
            if not any(owner_dir.iterdir()):
                owner_dir.rmdir()

        return removed
