"""Registry of Delphi runs started in this process, keyed by run id."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunRegistryError(Exception):
    """Raised for unknown run ids and refused transitions."""


@dataclass
class RunRecord:
    run_id: str
    question: str
    status: RunStatus
    started_at: datetime
    task: asyncio.Task | None = None
    finished_at: datetime | None = None
    report_path: Path | None = None
    error: str | None = None


class RunRegistry:
    """Each record is owned by one run; a record leaves RUNNING exactly once."""

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}

    def create(self, question: str, task: asyncio.Task | None = None) -> RunRecord:
        record = RunRecord(
            run_id=uuid.uuid4().hex,
            question=question,
            status=RunStatus.RUNNING,
            started_at=datetime.now(),
            task=task,
        )
        self._runs[record.run_id] = record
        logger.debug("Registered run %s", record.run_id)
        return record

    def get(self, run_id: str) -> RunRecord:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunRegistryError(f"Unknown run: {run_id}") from None

    def _finish(self, run_id: str, status: RunStatus) -> RunRecord:
        record = self.get(run_id)
        if record.status is not RunStatus.RUNNING:
            raise RunRegistryError(f"Run {run_id} already {record.status.value}")
        record.status = status
        record.finished_at = datetime.now()
        return record

    def mark_completed(self, run_id: str, report_path: Path) -> RunRecord:
        record = self._finish(run_id, RunStatus.COMPLETED)
        record.report_path = report_path
        return record

    def mark_failed(self, run_id: str, error: str) -> RunRecord:
        record = self._finish(run_id, RunStatus.FAILED)
        record.error = error
        return record

    def mark_cancelled(self, run_id: str) -> RunRecord:
        return self._finish(run_id, RunStatus.CANCELLED)

    def cancel(self, run_id: str) -> bool:
        """Cancel a running run's task. Returns False if the run already finished."""
        record = self.get(run_id)
        if record.status is not RunStatus.RUNNING:
            return False
        if record.task is not None and not record.task.done():
            record.task.cancel()
        self.mark_cancelled(run_id)
        logger.info("Cancelled run %s", run_id)
        return True

    def evict(self, run_id: str) -> RunRecord:
        """Forget a finished run. Running runs cannot be evicted."""
        record = self.get(run_id)
        if record.status is RunStatus.RUNNING:
            raise RunRegistryError(f"Run {run_id} is still running")
        return self._runs.pop(run_id)

    def records(self) -> list[RunRecord]:
        return list(self._runs.values())

    def active(self) -> list[RunRecord]:
        return [r for r in self._runs.values() if r.status is RunStatus.RUNNING]

    def __len__(self) -> int:
        return len(self._runs)
