"""Tests for the bounded-concurrency batch indexer."""

from __future__ import annotations

import threading

import pytest
from botocore.exceptions import ReadTimeoutError

from face_indexer.db import STATUS_ERROR, STATUS_INDEXED
from face_indexer.indexer import BatchIndexer, plan_batches
from face_indexer.progress import ProgressRegistry
from face_indexer.reconcile import WorkItem
from face_indexer.repository import IndexRecordRepository
from face_indexer.scanner import PhotoDescriptor
from tests.utils.fakes import FakeFaceIndex, FakePhotoStore, image_bytes, make_settings, session_factory


class _RecordingInvalidator:
    def __init__(self, error: Exception | None = None) -> None:
        self.events: list[str] = []
        self.error = error

    def invalidate_event(self, event_id: str) -> int:
        self.events.append(event_id)
        if self.error is not None:
            raise self.error
        return 1


def _work(store: FakePhotoStore, names: list[str], data: bytes | None = None) -> list[WorkItem]:
    items = []
    for name in names:
        key = f"run/km5/{name}"
        store.add(key, data)
        photo = PhotoDescriptor(event_id="run", sub_path="km5", file_name=name, storage_key=key)
        items.append(WorkItem(photo=photo, normalized_id=name))
    return items


def _indexer(tmp_path, store, face_index, registry, invalidator=None, **indexing) -> BatchIndexer:
    settings = make_settings(tmp_path, **indexing)
    return BatchIndexer(
        store=store,
        face_index=face_index,
        session_factory=session_factory(settings),
        registry=registry,
        config=settings.indexing,
        cache_invalidator=invalidator,
    )


def _start(registry: ProgressRegistry, total: int) -> None:
    registry.try_start("run")
    registry.set_total("run", total)


@pytest.mark.parametrize(
    ("count", "mode", "concurrency", "chunk_size", "expected"),
    [
        (0, "chunked", 4, 2, []),
        (3, "chunked", 4, 2, [(0, 3)]),
        (5, "chunked", 2, 2, [(0, 2), (2, 4), (4, 5)]),
        (5, "bounded", 2, 2, [(0, 5)]),
    ],
)
def test_plan_batches(count, mode, concurrency, chunk_size, expected) -> None:
    assert plan_batches(count, mode, concurrency, chunk_size) == expected


def test_run_indexes_and_persists_every_item(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, ["a.jpg", "b.jpg", "c.jpg"])
    invalidator = _RecordingInvalidator()
    _start(registry, len(work))

    summary = _indexer(tmp_path, store, face_index, registry, invalidator).run("run", "run", work)

    assert (summary.indexed, summary.errors, summary.cancelled) == (3, 0, False)
    assert sorted(external_id for _, external_id in face_index.submitted) == ["a.jpg", "b.jpg", "c.jpg"]
    progress = registry.snapshot("run")
    assert (progress.processed, progress.indexed, progress.errors) == (3, 3, 0)
    assert invalidator.events == ["run"]

    with session_factory(make_settings(tmp_path))() as session:
        record = IndexRecordRepository(session).get("run", "a.jpg")
    assert record is not None
    assert record.status == STATUS_INDEXED
    assert record.face_id == "face-a.jpg"
    assert (record.width, record.height) == (8, 6)
    assert record.full_path == "run/km5"
    assert record.collection_id == "run"


def test_run_drains_chunks_in_chunked_mode(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, [f"p{i}.jpg" for i in range(7)])
    _start(registry, len(work))

    summary = _indexer(tmp_path, store, face_index, registry, concurrency=2, chunk_size=3).run("run", "run", work)

    assert summary.indexed == 7
    assert len(face_index.submitted) == 7


def test_non_native_formats_are_transcoded_to_jpeg(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, ["a.gif"], image_bytes("GIF")) + _work(store, ["b.png"], image_bytes("PNG"))
    _start(registry, len(work))

    _indexer(tmp_path, store, face_index, registry).run("run", "run", work)

    assert face_index.submitted_payloads["a.gif"][:2] == b"\xff\xd8"
    assert face_index.submitted_payloads["b.png"] == store.objects["run/km5/b.png"]


def test_item_failure_is_recorded_and_does_not_stop_the_run(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, ["a.jpg", "c.jpg"]) + _work(store, ["broken.jpg"], b"not an image")
    _start(registry, len(work))

    summary = _indexer(tmp_path, store, face_index, registry).run("run", "run", work)

    assert (summary.indexed, summary.errors) == (2, 1)
    progress = registry.snapshot("run")
    assert (progress.processed, progress.indexed, progress.errors) == (3, 2, 1)
    with session_factory(make_settings(tmp_path))() as session:
        record = IndexRecordRepository(session).get("run", "broken.jpg")
    assert record is not None
    assert record.status == STATUS_ERROR
    assert "unreadable image" in (record.error_detail or "")


def test_transient_fetch_errors_are_retried(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, ["a.jpg"])
    store.fail_get("run/km5/a.jpg", ReadTimeoutError(endpoint_url="http://minio"))
    _start(registry, 1)

    summary = _indexer(tmp_path, store, face_index, registry).run("run", "run", work)

    assert summary.indexed == 1
    assert store.fetched.count("run/km5/a.jpg") == 2


def test_repairs_write_records_without_submitting(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    repairs = _work(store, ["r1.jpg", "r2.jpg"])
    _start(registry, len(repairs))

    summary = _indexer(tmp_path, store, face_index, registry).run("run", "run", [], repairs=repairs)

    assert (summary.indexed, summary.repaired) == (0, 2)
    assert face_index.submitted == []
    assert store.fetched == []
    progress = registry.snapshot("run")
    assert (progress.processed, progress.repaired) == (2, 2)
    with session_factory(make_settings(tmp_path))() as session:
        assert IndexRecordRepository(session).indexed_ids("run") == {"r1.jpg", "r2.jpg"}


def test_cancel_before_run_skips_everything(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, ["a.jpg", "b.jpg"])
    cancel = threading.Event()
    cancel.set()
    _start(registry, len(work))

    summary = _indexer(tmp_path, store, face_index, registry).run("run", "run", work, cancel_event=cancel)

    assert summary.cancelled
    assert summary.skipped == 2
    assert face_index.submitted == []


def test_cancel_mid_run_stops_remaining_chunks(tmp_path) -> None:
    store, registry = FakePhotoStore(), ProgressRegistry()
    cancel = threading.Event()

    class _CancellingIndex(FakeFaceIndex):
        def index_face(self, collection_id, image_bytes, external_id):
            face_id = super().index_face(collection_id, image_bytes, external_id)
            cancel.set()
            return face_id

    face_index = _CancellingIndex()
    work = _work(store, [f"p{i}.jpg" for i in range(6)])
    _start(registry, len(work))

    summary = _indexer(tmp_path, store, face_index, registry, concurrency=1, chunk_size=2).run(
        "run", "run", work, cancel_event=cancel
    )

    assert summary.cancelled
    assert summary.indexed == 1
    assert summary.skipped == 5
    assert registry.snapshot("run").processed == 1


def test_cache_invalidation_failure_is_not_fatal(tmp_path) -> None:
    store, face_index, registry = FakePhotoStore(), FakeFaceIndex(), ProgressRegistry()
    work = _work(store, ["a.jpg"])
    invalidator = _RecordingInvalidator(error=ConnectionError("redis down"))
    _start(registry, 1)

    summary = _indexer(tmp_path, store, face_index, registry, invalidator).run("run", "run", work)

    assert summary.indexed == 1
    assert invalidator.events == ["run"]
