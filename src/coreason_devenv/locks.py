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
import json
import os
import time
from pathlib import Path
from typing import Callable
from uuid import uuid4

from loguru import logger

from coreason_devenv.errors import LockBusyError


class FileLock:
    """Marker-file lock shared between tasks and processes on one host.

    The marker is created with ``O_CREAT | O_EXCL`` and records the owner's pid
    and acquisition time. A marker older than ``stale_after`` seconds belongs
    to a crashed holder and is removed. If the lock is still busy after
    ``wait_timeout`` seconds, acquisition either force-releases it
    (``force_after_wait``) or raises LockBusyError.
    """

    def __init__(
        self,
        path: Path,
        stale_after: float,
        wait_timeout: float = 0.0,
        force_after_wait: bool = False,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.stale_after = stale_after
        self.wait_timeout = wait_timeout
        self.force_after_wait = force_after_wait
        self.poll_interval = poll_interval
        self._clock = clock
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        token = uuid4().hex
        with os.fdopen(fd, "w") as f:
            json.dump({"pid": os.getpid(), "acquiredAt": self._clock(), "token": token}, f)
        self._token = token
        return True

    def _read_marker(self) -> dict[str, object] | None:
        try:
            return json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError):
            # Holder may still be writing the marker.
            return {}

    def age(self) -> float | None:
        """Seconds since the current holder acquired the lock, None if free."""
        marker = self._read_marker()
        if marker is None:
            return None
        acquired_at = marker.get("acquiredAt")
        if not isinstance(acquired_at, (int, float)):
            try:
                acquired_at = self.path.stat().st_mtime
            except FileNotFoundError:
                return None
        return self._clock() - float(acquired_at)

    def _holder(self, marker: dict[str, object]) -> str | None:
        token = marker.get("token")
        if isinstance(token, str):
            return token
        try:
            return f"mtime:{self.path.stat().st_mtime_ns}"
        except FileNotFoundError:
            return None

    def _force_clear(self, holder: str, reason: str) -> bool:
        """Remove the marker if ``holder`` still owns it."""
        marker = self._read_marker()
        if marker is None or self._holder(marker) != holder:
            return False
        logger.warning(f"Force-releasing lock {self.path} ({reason})")
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    async def acquire(self) -> None:
        """Take the lock, waiting up to ``wait_timeout`` per holder.

        The wait is measured against the holder seen when waiting started. If
        another owner takes the lock in the meantime, the wait restarts for
        that owner and only a marker that still belongs to the awaited holder
        is ever force-cleared.
        """
        watched: str | None = None
        deadline = 0.0
        while True:
            if self._try_create():
                logger.debug(f"Acquired lock {self.path}")
                return

            marker = self._read_marker()
            if marker is None:
                continue
            holder = self._holder(marker)
            age = self.age()
            if holder is None or age is None:
                continue
            if age > self.stale_after:
                self._force_clear(holder, f"stale, held for {age:.0f}s")
                continue

            if holder != watched:
                if watched is not None:
                    logger.debug(f"Lock {self.path} changed hands while waiting")
                watched = holder
                deadline = self._clock() + self.wait_timeout

            if self._clock() >= deadline:
                if self.force_after_wait:
                    self._force_clear(holder, f"still held after waiting {self.wait_timeout:g}s")
                    continue
                raise LockBusyError(f"Lock {self.path} is held (age {age:.0f}s)")

            await asyncio.sleep(self.poll_interval)

    def release(self) -> None:
        if self._token is None:
            return
        marker = self._read_marker()
        if marker and marker.get("token") == self._token:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        else:
            logger.warning(f"Lock {self.path} was taken over before release")
        self._token = None

    async def __aenter__(self) -> "FileLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.release()
