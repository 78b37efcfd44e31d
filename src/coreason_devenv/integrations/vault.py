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

from loguru import logger


class VaultIntegrator:
    """
    Resolves secrets for the orchestrator and host agent.

    Secrets are read from the process environment, first under their bare
    name (``GITHUB_TOKEN``) and then under the project prefix
    (``COREASON_DEVENV_GITHUB_TOKEN``).
    """

    prefix = "COREASON_DEVENV_"

    def __init__(self, environ: dict[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def get_secret(self, key: str) -> str | None:
        """
        Fetch a secret by key, or None when it is not configured.
        """
        val = self._environ.get(key)
        if not val:
            val = self._environ.get(f"{self.prefix}{key}")

        if not val:
            logger.debug(f"Secret {key} not found in environment.")
            return None

        return val
