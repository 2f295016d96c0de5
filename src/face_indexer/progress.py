"""In-memory per-event run state exposed for polling."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace

from face_indexer.errors import IndexingConflict
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "progress"})

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
STATE_CANCELLED = "cancelled"
TERMINAL_STATES: frozenset[str] = frozenset({STATE_COMPLETED, STATE_FAILED, STATE_CANCELLED})

OUTCOME_INDEXED = "indexed"
OUTCOME_REPAIRED = "repaired"
OUTCOME_ERROR = "error"


@dataclass
class JobProgress:
    """Live counters for one indexing run of an event."""

    event_id: str
    state: str = STATE_IDLE
    total: int = 0
    processed: int = 0
    indexed: int = 0
    repaired: int = 0
    errors: int = 0
    current_item_description: str = ""
    started_at: float | None = None
    finished_at: float | None = None
    failure_message: str | None = None

    @property
    def is_running(self) -> bool:
        return self.state == STATE_RUNNING

    def to_dict(self) -> dict[str, object]:
        return {
            "event_id": self.event_id,
            "state": self.state,
            "total": self.total,
            "processed": self.processed,
            "indexed": self.indexed,
            "repaired": self.repaired,
            "errors": self.errors,
            "current_item_description": self.current_item_description,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "failure_message": self.failure_message,
        }


class ProgressRegistry:
    """Registry of :class:`JobProgress` keyed by event id.

    All reads and writes go through one lock, so worker threads can report
    outcomes concurrently without losing updates and two start requests for
    the same event cannot both succeed. Callers only ever see copies.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobProgress] = {}

    def snapshot(self, event_id: str) -> JobProgress:
        """Return a copy of the event's progress, or an ``idle`` default."""

        with self._lock:
            job = self._jobs.get(event_id)
            return replace(job) if job is not None else JobProgress(event_id=event_id)

    def try_start(self, event_id: str, description: str = "Preparing indexing...") -> JobProgress:
        """Atomically install a fresh ``running`` entry, unless one is already running.

        Raises:
            IndexingConflict: A run for ``event_id`` is in progress; nothing changes.
        """

        with self._lock:
            current = self._jobs.get(event_id)
            if current is not None and current.is_running:
                raise IndexingConflict(event_id, replace(current))
            job = JobProgress(
                event_id=event_id,
                state=STATE_RUNNING,
                current_item_description=description,
                started_at=time.time(),
            )
            self._jobs[event_id] = job
            LOGGER.info("job_started", extra={"event_id": event_id})
            return replace(job)

    def set_total(self, event_id: str, total: int, description: str | None = None) -> None:
        with self._lock:
            job = self._running(event_id)
            job.total = total
            if description is not None:
                job.current_item_description = description

    def describe(self, event_id: str, description: str) -> None:
        with self._lock:
            job = self._jobs.get(event_id)
            if job is not None and job.is_running:
                job.current_item_description = description

    def record_item(self, event_id: str, outcome: str) -> JobProgress:
        """Count one finished item and return the updated counters."""

        with self._lock:
            job = self._running(event_id)
            job.processed += 1
            if outcome == OUTCOME_INDEXED:
                job.indexed += 1
            elif outcome == OUTCOME_REPAIRED:
                job.repaired += 1
            elif outcome == OUTCOME_ERROR:
                job.errors += 1
            else:
                raise ValueError(f"unknown item outcome {outcome!r}")
            job.current_item_description = (
                f"Processing: {job.processed}/{job.total} ({job.indexed} indexed, {job.errors} errors)"
            )
            return replace(job)

    def complete(self, event_id: str, description: str) -> JobProgress:
        return self._finish(event_id, STATE_COMPLETED, description)

    def fail(self, event_id: str, message: str) -> JobProgress:
        return self._finish(event_id, STATE_FAILED, f"Indexing failed: {message}", failure_message=message)

    def cancel(self, event_id: str, description: str) -> JobProgress:
        return self._finish(event_id, STATE_CANCELLED, description)

    def _finish(self, event_id: str, state: str, description: str, failure_message: str | None = None) -> JobProgress:
        with self._lock:
            job = self._running(event_id)
            job.state = state
            job.finished_at = time.time()
            job.current_item_description = description
            job.failure_message = failure_message
            LOGGER.info(
                "job_finished",
                extra={
                    "event_id": event_id,
                    "state": state,
                    "processed": job.processed,
                    "indexed": job.indexed,
                    "repaired": job.repaired,
                    "errors": job.errors,
                },
            )
            return replace(job)

    def _running(self, event_id: str) -> JobProgress:
        job = self._jobs.get(event_id)
        if job is None or not job.is_running:
            raise RuntimeError(f"no running job for event {event_id!r}")
        return job


__all__ = [
    "JobProgress",
    "OUTCOME_ERROR",
    "OUTCOME_INDEXED",
    "OUTCOME_REPAIRED",
    "ProgressRegistry",
    "STATE_CANCELLED",
    "STATE_COMPLETED",
    "STATE_FAILED",
    "STATE_IDLE",
    "STATE_RUNNING",
    "TERMINAL_STATES",
]
