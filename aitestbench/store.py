"""Persistence of runs, per test rows and result documents."""

import dataclasses
import json
import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from aitestbench.models.result import (
    TERMINAL_RUN_STATUSES,
    RunRecord,
    RunStatus,
    TestResultRecord,
)

log = logging.getLogger(__name__)


class DocumentExistsError(Exception):
    """Raised when a result document with the same result id is already stored."""


class RunStore(Protocol):
    """Append-only sink; a run row only changes through its status transition."""

    async def insert_run(self, run: RunRecord) -> None:
        """Persist a new run row."""

    async def update_run_status(
        self, run_id: str, status: RunStatus, ended_at: datetime | None = None
    ) -> RunRecord | None:
        """Transition a run; returns the stored row (None for unknown runs)."""

    async def insert_test_result(self, record: TestResultRecord) -> None:
        """Persist a per test summary row."""

    async def insert_result_document(self, document: Mapping[str, Any]) -> None:
        """Persist a result document; documents are never overwritten.

        Raises:
            DocumentExistsError: If a document with the same ``result_id`` exists

        """

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Return a run row."""


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, datetimes and containers to JSON compatible values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, datetime):
        return to_rfc3339(value)
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


def to_rfc3339(value: datetime) -> str:
    """UTC timestamp with a ``Z`` suffix."""
    return value.isoformat().replace("+00:00", "Z")


def check_transition(run: RunRecord, status: RunStatus) -> bool:
    """Whether ``run`` may move to ``status``; terminal runs never change.

    Repeating the current terminal status is a silent no-op.
    """
    if run.status in TERMINAL_RUN_STATUSES:
        if run.status == status:
            return False
        log.warning(
            "Ignoring transition of run %s from terminal status %s to %s",
            run.id,
            run.status,
            status,
        )
        return False
    return True


def _parse_run(data: Mapping[str, Any]) -> RunRecord:
    return RunRecord(
        **{
            **data,
            "started_at": datetime.fromisoformat(data["started_at"]),
            "ended_at": (
                datetime.fromisoformat(data["ended_at"]) if data["ended_at"] else None
            ),
        }
    )


class JsonDirectoryStore:
    """Stores runs and results as JSON files under a directory.

    Layout::

        runs/<run_id>.json
        results/<run_id>/<result_id>.json
        documents/<run_id>/<result_id>.json
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    async def insert_run(self, run: RunRecord) -> None:
        self._write(self.root / "runs" / f"{run.id}.json", to_jsonable(run))

    async def update_run_status(
        self, run_id: str, status: RunStatus, ended_at: datetime | None = None
    ) -> RunRecord | None:
        run = await self.get_run(run_id)
        if run is None:
            return None
        if not check_transition(run, status):
            return run
        updated = dataclasses.replace(
            run, status=status, ended_at=ended_at or run.ended_at
        )
        self._write(self.root / "runs" / f"{run_id}.json", to_jsonable(updated))
        return updated

    async def insert_test_result(self, record: TestResultRecord) -> None:
        path = self.root / "results" / record.run_id / f"{record.id}.json"
        self._write(path, to_jsonable(record))

    async def insert_result_document(self, document: Mapping[str, Any]) -> None:
        result_id = document["result_id"]
        path = self.root / "documents" / document["run_id"] / f"{result_id}.json"
        if path.exists():
            raise DocumentExistsError(
                f"Result document {result_id} of run {document['run_id']} exists"
            )
        self._write(path, to_jsonable(document))

    async def get_run(self, run_id: str) -> RunRecord | None:
        path = self.root / "runs" / f"{run_id}.json"
        if not path.exists():
            return None
        return _parse_run(json.loads(path.read_text()))

    def _write(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))
