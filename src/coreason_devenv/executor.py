# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Host-side process execution and bounded log capture."""

import asyncio
import os
import signal
import time
from collections import deque
from pathlib import Path
from typing import Callable, Sequence

from loguru import logger

from coreason_devenv.errors import CommandTimeoutError
from coreason_devenv.models.execution import CommandResult

OutputCallback = Callable[[str], None]

_STREAM_LIMIT = 1024 * 1024


class LogTail:
    """Keeps the last ``max_lines`` lines of build output."""

    def __init__(self, max_lines: int = 100):
        self.max_lines = max_lines
        self._lines: deque[str] = deque(maxlen=max_lines)

    def __len__(self) -> int:
        return len(self._lines)

    def add(self, line: str) -> None:
        self._lines.append(line.rstrip("\n"))

    def extend(self, text: str) -> None:
        for line in text.splitlines():
            self.add(line)

    def section(self, title: str, output: str = "") -> None:
        self.add(f"=== {title} ===")
        if output:
            self.extend(output)

    def text(self, max_chars: int | None = None) -> str:
        joined = "\n".join(self._lines)
        if max_chars is not None and len(joined) > max_chars:
            return joined[-max_chars:]
        return joined


class LocalExecutor:
    """Runs commands on the host (git, qemu-img, cp, the hypervisor binary).

    Every child runs in its own session so a timeout can kill the whole
    process tree, not just the shell that spawned it.
    """

    def __init__(self, default_timeout: float | None = None):
        self.default_timeout = default_timeout

    async def run(
        self,
        command: Sequence[str] | str,
        *,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            command: argv list, or a string run through ``/bin/sh -c``.
            cwd: Working directory.
            env: Extra environment variables merged over the host environment.
            timeout: Hard limit in seconds; defaults to ``default_timeout``.
            on_output: Called with each output line as it arrives.

        Returns:
            CommandResult: exit code and captured output.

        Raises:
            CommandTimeoutError: If the command outlived its timeout.
        """
        argv = ["/bin/sh", "-c", command] if isinstance(command, str) else list(command)
        limit = timeout if timeout is not None else self.default_timeout
        full_env = {**os.environ, **env} if env else None

        start_time = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=_STREAM_LIMIT,
        )

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        async def pump(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
            if stream is None:
                return
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace")
                sink.append(line)
                if on_output:
                    on_output(line.rstrip("\n"))

        try:
            await asyncio.wait_for(
                asyncio.gather(pump(proc.stdout, stdout_parts), pump(proc.stderr, stderr_parts), proc.wait()),
                timeout=limit,
            )
        except asyncio.TimeoutError as e:
            self._kill_tree(proc)
            await proc.wait()
            display = command if isinstance(command, str) else " ".join(argv)
            logger.warning(f"Command timed out after {limit}s, killed process group {proc.pid}: {display}")
            raise CommandTimeoutError(display, limit or 0.0, "".join(stdout_parts + stderr_parts)) from e
        except asyncio.CancelledError:
            self._kill_tree(proc)
            raise

        return CommandResult(
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            duration=time.monotonic() - start_time,
        )

    @staticmethod
    def _kill_tree(proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
