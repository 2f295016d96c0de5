"""Tests for the in-memory job progress registry."""

from __future__ import annotations

import threading

import pytest

from face_indexer.errors import IndexingConflict
from face_indexer.progress import (
    OUTCOME_ERROR,
    OUTCOME_INDEXED,
    OUTCOME_REPAIRED,
    STATE_CANCELLED,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_IDLE,
    STATE_RUNNING,
    ProgressRegistry,
)


def test_snapshot_of_unknown_event_is_idle() -> None:
    snapshot = ProgressRegistry().snapshot("nope")

    assert snapshot.state == STATE_IDLE
    assert snapshot.total == snapshot.processed == 0


def test_try_start_rejects_second_start_while_running() -> None:
    registry = ProgressRegistry()
    registry.try_start("run")

    with pytest.raises(IndexingConflict) as excinfo:
        registry.try_start("run")

    assert excinfo.value.event_id == "run"
    assert excinfo.value.progress is not None
    assert excinfo.value.progress.state == STATE_RUNNING


def test_try_start_allows_restart_after_terminal_state() -> None:
    registry = ProgressRegistry()
    registry.try_start("run")
    registry.set_total("run", 1)
    registry.record_item("run", OUTCOME_INDEXED)
    registry.complete("run", "done")

    restarted = registry.try_start("run")

    assert restarted.state == STATE_RUNNING
    assert restarted.processed == 0
    assert restarted.indexed == 0


def test_record_item_counts_outcomes() -> None:
    registry = ProgressRegistry()
    registry.try_start("run")
    registry.set_total("run", 3)

    registry.record_item("run", OUTCOME_INDEXED)
    registry.record_item("run", OUTCOME_REPAIRED)
    last = registry.record_item("run", OUTCOME_ERROR)

    assert (last.processed, last.indexed, last.repaired, last.errors) == (3, 1, 1, 1)
    assert last.current_item_description == "Processing: 3/3 (1 indexed, 1 errors)"


def test_record_item_rejects_unknown_outcome() -> None:
    registry = ProgressRegistry()
    registry.try_start("run")

    with pytest.raises(ValueError):
        registry.record_item("run", "mystery")


def test_updates_require_a_running_job() -> None:
    registry = ProgressRegistry()

    with pytest.raises(RuntimeError):
        registry.record_item("run", OUTCOME_INDEXED)

    registry.try_start("run")
    registry.fail("run", "boom")
    with pytest.raises(RuntimeError):
        registry.complete("run", "late")


def test_snapshot_is_a_copy() -> None:
    registry = ProgressRegistry()
    registry.try_start("run")

    snapshot = registry.snapshot("run")
    snapshot.processed = 99

    assert registry.snapshot("run").processed == 0


def test_terminal_transitions_record_outcome() -> None:
    registry = ProgressRegistry()

    registry.try_start("a")
    failed = registry.fail("a", "store offline")
    registry.try_start("b")
    cancelled = registry.cancel("b", "stopped")

    assert failed.state == STATE_FAILED
    assert failed.failure_message == "store offline"
    assert "store offline" in failed.current_item_description
    assert failed.finished_at is not None
    assert cancelled.state == STATE_CANCELLED
    assert cancelled.failure_message is None


def test_concurrent_record_item_loses_no_updates() -> None:
    registry = ProgressRegistry()
    registry.try_start("run")
    registry.set_total("run", 800)

    def _worker() -> None:
        for _ in range(100):
            registry.record_item("run", OUTCOME_INDEXED)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = registry.snapshot("run")
    assert snapshot.processed == snapshot.indexed == 800
    assert registry.complete("run", "ok").state == STATE_COMPLETED


def test_concurrent_try_start_admits_exactly_one() -> None:
    registry = ProgressRegistry()
    barrier = threading.Barrier(8)
    wins: list[bool] = []
    lock = threading.Lock()

    def _attempt() -> None:
        barrier.wait()
        try:
            registry.try_start("run")
        except IndexingConflict:
            outcome = False
        else:
            outcome = True
        with lock:
            wins.append(outcome)

    threads = [threading.Thread(target=_attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert wins.count(True) == 1
