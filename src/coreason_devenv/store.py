# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

import copy
import threading
from typing import Any, Protocol, runtime_checkable

from coreason_devenv.errors import ConflictError, ResourceNotFoundError

ENVIRONMENTS = "environment"
SNAPSHOTS = "snapshot"
CHECKPOINTS = "checkpoint"
REPOSITORIES = "repository"
FILE_CHANGES = "file_change"
BASH_COMMANDS = "bash_command"
RECEIPTS = "callback_receipt"


@runtime_checkable
class RecordStore(Protocol):
    """Document store the core persists its records in.

    Only single-record atomicity is assumed. ``patch`` with ``expect`` is a
    compare-and-set: it fails with ConflictError if any expected field
    differs from the stored value.
    """

    def get(self, kind: str, key: str) -> dict[str, Any] | None: ...

    def query(self, kind: str, **filters: Any) -> list[dict[str, Any]]: ...

    def insert(self, kind: str, key: str, fields: dict[str, Any]) -> dict[str, Any]: ...

    def patch(
        self,
        kind: str,
        key: str,
        fields: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...

    def delete(self, kind: str, key: str) -> bool: ...


class InMemoryRecordStore:
    """Process-local RecordStore used by tests and single-node deployments."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def get(self, kind: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(kind, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def query(self, kind: str, **filters: Any) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._records.get(kind, {}).values()
                if all(record.get(field) == value for field, value in filters.items())
            ]

    def insert(self, kind: str, key: str, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            table = self._records.setdefault(kind, {})
            if key in table:
                raise ConflictError(f"{kind} {key} already exists")
            table[key] = copy.deepcopy(fields)
            return copy.deepcopy(table[key])

    def patch(
        self,
        kind: str,
        key: str,
        fields: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            record = self._records.get(kind, {}).get(key)
            if record is None:
                raise ResourceNotFoundError(f"{kind} {key} not found")
            for field, value in (expect or {}).items():
                if record.get(field) != value:
                    raise ConflictError(f"{kind} {key}: {field} changed concurrently")
            record.update(copy.deepcopy(fields))
            return copy.deepcopy(record)

    def delete(self, kind: str, key: str) -> bool:
        with self._lock:
            return self._records.get(kind, {}).pop(key, None) is not None
