# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

from enum import Enum
from pathlib import Path

from loguru import logger

from coreason_devenv.errors import SnapshotError
from coreason_devenv.executor import LocalExecutor


class CopyMethod(str, Enum):
    REFLINK = "reflink"
    OVERLAY = "overlay"
    SPARSE = "sparse"


async def copy_disk_image(
    source: Path,
    destination: Path,
    executor: LocalExecutor,
    allow_overlay: bool = False,
    timeout: float = 600.0,
) -> CopyMethod:
    """Copy a disk image without mutating the source.

    Tries a filesystem reflink first, then a qcow2 overlay backed by the
    source (only when the consumer can boot layered images), then a plain
    sparse copy.

    Returns:
        CopyMethod: The method that succeeded.

    Raises:
        SnapshotError: If every method failed.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)

    attempts: list[tuple[CopyMethod, list[str]]] = [
        (CopyMethod.REFLINK, ["cp", "--reflink=always", str(source), str(destination)]),
    ]
    if allow_overlay:
        attempts.append(
            (
                CopyMethod.OVERLAY,
                ["qemu-img", "create", "-f", "qcow2", "-F", "raw", "-b", str(source.resolve()), str(destination)],
            )
        )
    attempts.append((CopyMethod.SPARSE, ["cp", "--sparse=always", str(source), str(destination)]))

    errors: list[str] = []
    for method, argv in attempts:
        result = await executor.run(argv, timeout=timeout)
        if result.ok:
            logger.debug(f"Copied {source} -> {destination} via {method.value}")
            return method
        errors.append(f"{method.value}: {result.output.strip()}")
        destination.unlink(missing_ok=True)

    raise SnapshotError(f"Could not copy disk image {source}: {'; '.join(errors)}")
