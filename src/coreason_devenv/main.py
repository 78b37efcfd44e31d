# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from mcp.server.fastmcp import FastMCP

from coreason_devenv.errors import CommandTimeoutError
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import FileChange, FileWrite
from coreason_devenv.models.repository import Repository
from coreason_devenv.service import DevEnvService
from coreason_devenv.utils.logger import logger

# Initialize orchestrator
service = DevEnvService()


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    logger.info(f"Starting coreason-devenv (default backend: {service.config.default_backend.value})")
    async with service:
        yield {}


# Initialize MCP Server
mcp = FastMCP("coreason-devenv", lifespan=lifespan)


@mcp.tool()  # type: ignore[misc]
async def register_repository(
    repo_id: str,
    owner: str,
    name: str,
    default_branch: str = "main",
    install_command: str | None = None,
    dev_command: str | None = None,
    dev_port: int | None = None,
) -> str:
    """
    Register a repository environments can be requested for.
    """
    service.register_repository(
        Repository(
            id=repo_id,
            owner=owner,
            name=name,
            default_branch=default_branch,
            install_command=install_command,
            dev_command=dev_command,
            dev_port=dev_port,
        )
    )
    return f"Repository {owner}/{name} registered as {repo_id}."


@mcp.tool()  # type: ignore[misc]
async def request_environment(
    repo_id: str,
    branch: str | None = None,
    backend: BackendKind | None = None,
    env_vars: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Request a development environment for a repository branch.
    Returns immediately; poll get_environment until the status is ready or failed.
    """
    try:
        environment = await service.controller.request_environment(repo_id, branch, backend, env_vars)
    except Exception as e:
        return {"error": f"Error requesting environment: {e!s}"}
    return environment.public_view()


@mcp.tool()  # type: ignore[misc]
async def get_environment(environment_id: str) -> dict[str, Any]:
    """
    Get the current status of an environment.
    """
    try:
        return service.controller.get(environment_id).public_view()
    except Exception as e:
        return {"error": f"Error reading environment: {e!s}"}


@mcp.tool()  # type: ignore[misc]
async def wait_for_environment(environment_id: str, timeout: float | None = None) -> dict[str, Any]:
    """
    Wait until an environment finished provisioning and return it.
    """
    try:
        environment = await service.controller.wait_until_settled(environment_id, timeout)
    except Exception as e:
        return {"error": f"Error waiting for environment: {e!s}"}
    return environment.public_view()


@mcp.tool()  # type: ignore[misc]
async def write_files(environment_id: str, files: dict[str, str]) -> str:
    """
    Write files (path -> UTF-8 content) into a ready environment.
    """
    change = FileChange(files=[FileWrite(path=p, content=c.encode("utf-8")) for p, c in files.items()])
    try:
        result = await service.bridge.apply_file_change(environment_id, change)
    except Exception as e:
        return f"Error writing files: {e!s}"
    if not result.success:
        return f"Error writing files: {result.error}"
    return f"Wrote {len(files)} file(s). Change id: {change.id}"


@mcp.tool()  # type: ignore[misc]
async def revert_files(environment_id: str, change_id: str) -> str:
    """
    Revert a previously applied file change.
    """
    try:
        result = await service.bridge.revert_file_change(environment_id, change_id)
    except Exception as e:
        return f"Error reverting files: {e!s}"
    return "Reverted." if result.success else f"Error reverting files: {result.error}"


@mcp.tool()  # type: ignore[misc]
async def run_command(environment_id: str, command: str, timeout: float = 60.0) -> str:
    """
    Run a shell command in the environment's working directory.
    """
    try:
        outcome = await service.bridge.execute_command(environment_id, command, timeout)
    except CommandTimeoutError as e:
        return f"Command timed out after {e.timeout:g}s.\n{e.output}"
    except Exception as e:
        return f"Error running command: {e!s}"
    return f"Exit Code: {outcome.exit_code}\n{outcome.output}"


@mcp.tool()  # type: ignore[misc]
async def teardown_environment(environment_id: str) -> dict[str, Any]:
    """
    Stop an environment and release its resources.
    """
    try:
        environment = await service.controller.teardown(environment_id)
    except Exception as e:
        return {"error": f"Error tearing down environment: {e!s}"}
    return environment.public_view()


@mcp.tool()  # type: ignore[misc]
async def list_snapshots() -> list[dict[str, Any]]:
    """
    List restorable snapshots with their size and usage.
    """
    return [s.model_dump(mode="json", by_alias=True) for s in service.snapshots.list_snapshots()]


def main() -> None:
    """Entry point for the MCP server."""
    mcp.run()


if __name__ == "__main__":  # pragma: no cover
    main()
