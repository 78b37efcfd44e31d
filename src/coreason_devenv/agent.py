# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Host agent: the exec and file API served from inside a micro-VM guest.

Deployed as its own console script (``coreason-devenv-agent``) and configured
through ``COREASON_DEVENV_AGENT_*`` variables.
"""

import base64
import binascii
import hmac
import os
from pathlib import Path
from typing import Any, Literal

import aiofiles  # type: ignore[import-untyped]
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_devenv import __version__
from coreason_devenv.errors import CommandTimeoutError
from coreason_devenv.executor import LocalExecutor


class AgentConfig(BaseSettings):
    secret: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080
    workdir: str = "/app"
    root: str = "/"
    max_timeout_ms: int = 30 * 60 * 1000

    model_config = SettingsConfigDict(
        env_prefix="COREASON_DEVENV_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ExecRequest(BaseModel):
    command: str
    timeout: int = 60_000
    cwd: str | None = None
    env: dict[str, str] | None = None


class WriteEntry(BaseModel):
    path: str
    content: str
    encoding: Literal["base64", "utf-8"] = "utf-8"


class WriteRequest(BaseModel):
    files: list[WriteEntry]


class DeleteRequest(BaseModel):
    paths: list[str]


def _resolve(config: AgentConfig, path: str) -> Path:
    candidate = Path(path) if os.path.isabs(path) else Path(config.workdir) / path
    resolved = candidate.resolve()
    root = Path(config.root).resolve()
    if resolved != root and root not in resolved.parents:
        raise ValueError(f"path escapes {root}")
    return resolved


def create_agent_app(config: AgentConfig | None = None, executor: LocalExecutor | None = None) -> FastAPI:
    config = config or AgentConfig()
    executor = executor or LocalExecutor()
    app = FastAPI(title="coreason-devenv-agent", version=__version__)

    async def require_secret(authorization: str | None = Header(default=None)) -> None:
        if not config.secret:
            return
        presented = (authorization or "").removeprefix("Bearer ").strip()
        if not hmac.compare_digest(presented.encode(), config.secret.encode()):
            raise HTTPException(status_code=401, detail="Invalid credentials")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.post("/exec", dependencies=[Depends(require_secret)])
    async def exec_command(request: ExecRequest) -> Any:
        timeout_ms = min(max(request.timeout, 1), config.max_timeout_ms)
        cwd = request.cwd or (config.workdir if os.path.isdir(config.workdir) else None)
        logger.info(f"exec ({timeout_ms}ms): {request.command}")
        try:
            result = await executor.run(request.command, cwd=cwd, env=request.env, timeout=timeout_ms / 1000)
        except CommandTimeoutError as e:
            return JSONResponse(
                status_code=504,
                content={"error": str(e), "timedOut": True, "output": e.output},
            )
        return {"exitCode": result.exit_code, "stdout": result.stdout, "stderr": result.stderr}

    @app.post("/files/write", dependencies=[Depends(require_secret)])
    async def write_files(request: WriteRequest) -> dict[str, list[dict[str, str]]]:
        errors: list[dict[str, str]] = []
        for entry in request.files:
            try:
                target = _resolve(config, entry.path)
                data = (
                    base64.b64decode(entry.content, validate=True)
                    if entry.encoding == "base64"
                    else entry.content.encode("utf-8")
                )
                target.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(target, "wb") as f:
                    await f.write(data)
            except (ValueError, binascii.Error, OSError) as e:
                logger.warning(f"Failed to write {entry.path}: {e}")
                errors.append({"path": entry.path, "error": str(e)})
        return {"errors": errors}

    @app.post("/files/delete", dependencies=[Depends(require_secret)])
    async def delete_files(request: DeleteRequest) -> dict[str, list[dict[str, str]]]:
        errors: list[dict[str, str]] = []
        for path in request.paths:
            try:
                _resolve(config, path).unlink(missing_ok=True)
            except (ValueError, OSError) as e:
                errors.append({"path": path, "error": str(e)})
        return {"errors": errors}

    @app.get("/files/read", dependencies=[Depends(require_secret)])
    async def read_file(path: str = Query(...)) -> dict[str, str]:
        try:
            target = _resolve(config, path)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if not target.is_file():
            raise HTTPException(status_code=404, detail=f"{path} not found")
        async with aiofiles.open(target, "rb") as f:
            data = await f.read()
        return {"content": base64.b64encode(data).decode("ascii"), "encoding": "base64"}

    return app


def main() -> None:  # pragma: no cover
    config = AgentConfig()
    uvicorn.run(create_agent_app(config), host=config.host, port=config.port)
