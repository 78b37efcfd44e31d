# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import threading
from typing import Iterable

from loguru import logger

from coreason_devenv.errors import PortExhaustedError


class PortAllocator:
    """Hands out host ports from ``[start, end)`` with wraparound reuse.

    The cursor advances past every allocation so a freshly released port is
    not handed straight back out while a stale client may still target it.
    """

    def __init__(self, start: int = 10000, end: int = 20000, in_use: Iterable[int] = ()):
        if end <= start:
            raise ValueError(f"Empty port range: {start}-{end}")
        self.start = start
        self.end = end
        self._next = start
        self._in_use: set[int] = set()
        self._lock = threading.Lock()
        for port in in_use:
            self.reserve(port)

    @property
    def capacity(self) -> int:
        return self.end - self.start

    @property
    def in_use(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._in_use)

    def allocate(self) -> int:
        with self._lock:
            for _ in range(self.capacity):
                port = self._next
                self._next += 1
                if self._next >= self.end:
                    self._next = self.start
                if port not in self._in_use:
                    self._in_use.add(port)
                    return port
        raise PortExhaustedError(f"No free port in {self.start}-{self.end}")

    def reserve(self, port: int) -> None:
        """Mark a port as taken, e.g. one already bound by a surviving unit."""
        if not self.start <= port < self.end:
            logger.debug(f"Ignoring reservation of out-of-range port {port}")
            return
        with self._lock:
            self._in_use.add(port)

    def release(self, port: int | None) -> None:
        if port is None:
            return
        with self._lock:
            self._in_use.discard(port)
