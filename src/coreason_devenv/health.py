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
from typing import Any, Awaitable, Callable

from loguru import logger

from coreason_devenv.drivers.base import EnvironmentDriver, EnvironmentHandle
from coreason_devenv.models.environment import HealthCheckOutcome


async def wait_for_dev_server(
    driver: EnvironmentDriver,
    handle: EnvironmentHandle,
    port: int,
    attempts: int = 60,
    interval: float = 0.5,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> HealthCheckOutcome:
    """
    Polls the dev server inside the unit until it answers HTTP.

    Args:
        driver: Driver owning the unit.
        handle: The unit.
        port: Dev server port inside the unit.
        attempts: Maximum number of probes.
        interval: Delay between probes in seconds.

    Returns:
        HealthCheckOutcome: CONFIRMED on the first answering probe, EXHAUSTED
        if every probe failed. What EXHAUSTED means is up to the caller's
        HealthCheckPolicy.
    """
    for attempt in range(1, attempts + 1):
        try:
            if await driver.probe(handle, port):
                logger.info(f"Dev server in {handle.resource_name} answered after {attempt} probe(s)")
                return HealthCheckOutcome.CONFIRMED
        except Exception as e:
            logger.debug(f"Probe {attempt} of {handle.resource_name} errored: {e}")
        if attempt < attempts:
            await sleep(interval)

    logger.warning(f"Dev server in {handle.resource_name} did not answer after {attempts} probes")
    return HealthCheckOutcome.EXHAUSTED
