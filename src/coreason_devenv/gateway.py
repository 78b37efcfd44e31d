# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Authenticated endpoint for status reports from environment hosts.

Reports may arrive late, twice or out of order. Every accepted report leaves
a receipt so a replay returns the stored outcome, and statuses only move
forward (or into ``failed``).
"""

import hashlib
import hmac
import json
import time
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from coreason_devenv import __version__
from coreason_devenv.checkpoints import IMAGE_REPOSITORY, checkpoint_name, save_checkpoint_record
from coreason_devenv.errors import ConflictError, ForbiddenError, ResourceNotFoundError, UnauthorizedError
from coreason_devenv.models.environment import BackendKind, Environment, EnvironmentStatus
from coreason_devenv.models.reports import CheckpointReport, SnapshotReport, StatusReport, _Report
from coreason_devenv.models.repository import Repository
from coreason_devenv.models.snapshot import Checkpoint, ImageStatus, Snapshot, snapshot_key
from coreason_devenv.snapshots import save_snapshot_record
from coreason_devenv.state import ReportDecision, report_decision
from coreason_devenv.store import CHECKPOINTS, ENVIRONMENTS, RECEIPTS, REPOSITORIES, SNAPSHOTS, RecordStore

CAS_ATTEMPTS = 5


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[-limit:]


class CallbackGateway:
    """
    Applies host reports to the record store.

    Attributes:
        store: Record store holding environments, images and receipts.
        log_max_chars: Log tails longer than this keep only their last characters.
    """

    def __init__(self, store: RecordStore, log_max_chars: int = 32000, clock: Callable[[], float] = time.time):
        self.store = store
        self.log_max_chars = log_max_chars
        self._clock = clock

    def _authenticate(self, report: _Report, backend_kind: BackendKind | None = None) -> Environment:
        candidates = [
            Environment.model_validate(r)
            for r in self.store.query(ENVIRONMENTS, resource_name=report.resource_name)
        ]
        if backend_kind is not None:
            candidates = [env for env in candidates if env.backend_kind == backend_kind]
        if not candidates:
            raise ResourceNotFoundError(f"No environment named {report.resource_name}")
        environment = max(candidates, key=lambda env: env.created_at)
        if not hmac.compare_digest(report.secret.encode(), environment.callback_secret.encode()):
            raise UnauthorizedError(f"Invalid secret for {report.resource_name}")
        return environment

    def _check_image_subject(self, environment: Environment, report: SnapshotReport | CheckpointReport) -> None:
        """Images may only be reported for the repository and branch the environment runs."""
        record = self.store.get(REPOSITORIES, environment.repo_id)
        if record is None:
            raise ForbiddenError(f"{environment.resource_name} has no registered repository")
        repo = Repository.model_validate(record)
        if (report.owner, report.repo, report.branch) != (repo.owner, repo.name, environment.branch):
            raise ForbiddenError(
                f"{environment.resource_name} runs {repo.full_name}@{environment.branch}, "
                f"not {report.owner}/{report.repo}@{report.branch}"
            )

    def _receipt_key(self, route: str, report: _Report) -> str:
        if report.report_id:
            return f"{route}:{report.resource_name}:{report.report_id}"
        body = json.dumps(report.model_dump(mode="json", exclude={"secret"}), sort_keys=True)
        return f"{route}:{hashlib.sha256(body.encode()).hexdigest()}"

    def _replayed(self, key: str) -> str | None:
        receipt = self.store.get(RECEIPTS, key)
        return receipt["outcome"] if receipt else None

    def _store_receipt(self, key: str, environment_id: str, outcome: str) -> None:
        try:
            self.store.insert(
                RECEIPTS, key, {"environment_id": environment_id, "outcome": outcome, "received_at": self._clock()}
            )
        except ConflictError:
            pass

    def apply_environment_report(self, report: StatusReport, backend_kind: BackendKind | None = None) -> str:
        """Apply a host status report.

        Returns:
            str: ``apply``, ``duplicate`` or ``ignore``.

        Raises:
            ResourceNotFoundError: No environment carries ``resource_name``.
            UnauthorizedError: The secret does not match.
        """
        environment = self._authenticate(report, backend_kind)
        route = f"status:{environment.backend_kind.value}"
        key = self._receipt_key(route, report)
        replayed = self._replayed(key)
        if replayed is not None:
            logger.debug(f"Replayed report {key} for {environment.resource_name}: {replayed}")
            return replayed

        decision = ReportDecision.IGNORE
        for _ in range(CAS_ATTEMPTS):
            record = self.store.get(ENVIRONMENTS, environment.id)
            if record is None:
                raise ResourceNotFoundError(f"Environment {environment.id} disappeared")
            current = Environment.model_validate(record)
            decision = report_decision(current.status, report.status)
            if decision != ReportDecision.APPLY:
                break

            now = self._clock()
            history = [c.model_dump(mode="json") for c in current.status_history]
            history.append({"status": report.status.value, "timestamp": now, "reason": report.error or "host report"})
            fields: dict[str, Any] = {
                "status": report.status.value,
                "status_changed_at": now,
                "status_history": history,
            }
            if report.status == EnvironmentStatus.FAILED:
                fields["error_message"] = report.error or "Environment host reported failure"
            if report.log_tail is not None:
                fields["log_tail"] = _truncate(report.log_tail, self.log_max_chars)
            if report.health_check is not None:
                fields["health_check"] = report.health_check.value
            if report.commit_sha is not None:
                fields["commit_sha"] = report.commit_sha
            try:
                self.store.patch(
                    ENVIRONMENTS,
                    environment.id,
                    fields,
                    expect={"status": current.status.value, "status_changed_at": current.status_changed_at},
                )
                break
            except ConflictError:
                continue
        else:
            raise ConflictError(f"Environment {environment.id} kept changing while applying a report")

        logger.info(
            f"Report {report.status.value} for {environment.resource_name}: {decision.value}"
            + (f" ({report.error})" if report.error else "")
        )
        self._store_receipt(key, environment.id, decision.value)
        return decision.value

    def apply_snapshot_report(self, report: SnapshotReport) -> str:
        environment = self._authenticate(report)
        self._check_image_subject(environment, report)
        key = self._receipt_key("snapshot", report)
        replayed = self._replayed(key)
        if replayed is not None:
            return replayed

        snap_key = snapshot_key(report.owner, report.repo, report.branch)
        existing = self.store.get(SNAPSHOTS, snap_key)
        if report.status == "failed":
            if existing and existing.get("status") == ImageStatus.READY.value:
                outcome = ReportDecision.IGNORE.value
            else:
                save_snapshot_record(
                    self.store,
                    Snapshot(
                        key=snap_key,
                        owner=report.owner,
                        repo=report.repo,
                        branch=report.branch,
                        repo_id=environment.repo_id,
                        status=ImageStatus.FAILED,
                        error_message=report.error or "Snapshot failed",
                        created_at=self._clock(),
                    ),
                )
                outcome = ReportDecision.APPLY.value
        else:
            snapshot = Snapshot(
                key=snap_key,
                owner=report.owner,
                repo=report.repo,
                branch=report.branch,
                repo_id=environment.repo_id,
                commit_sha=report.commit_sha,
                backend_kind=environment.backend_kind,
                status=ImageStatus.READY,
                usage_count=existing.get("usage_count", 0) if existing else 0,
                created_at=self._clock(),
            )
            if report.size_bytes is not None:
                snapshot.size_bytes = report.size_bytes
            save_snapshot_record(self.store, snapshot)
            outcome = ReportDecision.APPLY.value

        logger.info(f"Snapshot report {report.status} for {snap_key}: {outcome}")
        self._store_receipt(key, environment.id, outcome)
        return outcome

    def apply_checkpoint_report(self, report: CheckpointReport) -> str:
        environment = self._authenticate(report)
        self._check_image_subject(environment, report)
        key = self._receipt_key("checkpoint", report)
        replayed = self._replayed(key)
        if replayed is not None:
            return replayed

        name = report.checkpoint_name or checkpoint_name(report.owner, report.repo, report.branch)
        existing = self.store.get(CHECKPOINTS, name)
        if report.status == "failed" and existing and existing.get("status") == ImageStatus.READY.value:
            outcome = ReportDecision.IGNORE.value
        else:
            save_checkpoint_record(
                self.store,
                Checkpoint(
                    name=name,
                    repo_id=environment.repo_id,
                    owner=report.owner,
                    repo=report.repo,
                    branch=report.branch,
                    image_tag=report.image_tag or f"{IMAGE_REPOSITORY}:{name}",
                    source_environment_id=environment.id,
                    commit_sha=report.commit_sha,
                    status=ImageStatus.FAILED if report.status == "failed" else ImageStatus.READY,
                    error_message=report.error if report.status == "failed" else None,
                    usage_count=existing.get("usage_count", 0) if existing else 0,
                    created_at=self._clock(),
                ),
            )
            outcome = ReportDecision.APPLY.value

        logger.info(f"Checkpoint report {report.status} for {name}: {outcome}")
        self._store_receipt(key, environment.id, outcome)
        return outcome


def create_gateway_app(gateway: CallbackGateway) -> FastAPI:
    """FastAPI app exposing the callback routes of ``gateway``."""
    app = FastAPI(title="coreason-devenv-gateway", version=__version__)

    @app.exception_handler(RequestValidationError)
    async def malformed(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning(f"Malformed callback to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"success": False, "error": "Malformed report"})

    @app.exception_handler(UnauthorizedError)
    async def unauthorized(request: Request, exc: UnauthorizedError) -> JSONResponse:
        logger.warning(f"Rejected callback to {request.url.path}: {exc}")
        return JSONResponse(status_code=401, content={"success": False, "error": "Invalid secret"})

    @app.exception_handler(ForbiddenError)
    async def forbidden(request: Request, exc: ForbiddenError) -> JSONResponse:
        logger.warning(f"Rejected callback to {request.url.path}: {exc}")
        return JSONResponse(status_code=403, content={"success": False, "error": str(exc)})

    @app.exception_handler(ResourceNotFoundError)
    async def not_found(request: Request, exc: ResourceNotFoundError) -> JSONResponse:
        logger.warning(f"Callback to {request.url.path} for unknown resource: {exc}")
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(Exception)
    async def internal(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Callback to {request.url.path} failed: {exc}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal error"})

    @app.post("/callbacks/microvm-status")
    async def microvm_status(report: StatusReport) -> dict[str, bool]:
        gateway.apply_environment_report(report, BackendKind.MICROVM)
        return {"success": True}

    @app.post("/callbacks/container-status")
    async def container_status(report: StatusReport) -> dict[str, bool]:
        gateway.apply_environment_report(report, BackendKind.CONTAINER)
        return {"success": True}

    @app.post("/callbacks/sandbox-status")
    async def sandbox_status(report: StatusReport) -> dict[str, bool]:
        gateway.apply_environment_report(report, BackendKind.REMOTE_SANDBOX)
        return {"success": True}

    @app.post("/callbacks/snapshot-status")
    async def snapshot_status(report: SnapshotReport) -> dict[str, bool]:
        gateway.apply_snapshot_report(report)
        return {"success": True}

    @app.post("/callbacks/checkpoint-status")
    async def checkpoint_status(report: CheckpointReport) -> dict[str, bool]:
        gateway.apply_checkpoint_report(report)
        return {"success": True}

    return app
