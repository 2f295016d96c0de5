"""Entry points the outer layers call: start, poll, cancel and inspect indexing runs."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from face_indexer.cache import CacheInvalidator, build_cache_invalidator
from face_indexer.config import Settings
from face_indexer.db import STATUS_ERROR, STATUS_INDEXED, STATUS_PROCESSING, open_session
from face_indexer.errors import FaceIndexerError, StoreUnavailable
from face_indexer.indexer import BatchIndexer
from face_indexer.naming import normalize_collection_name, normalize_photo_id
from face_indexer.photo_store import PhotoStore, S3PhotoStore
from face_indexer.progress import JobProgress, ProgressRegistry
from face_indexer.reconcile import reconcile
from face_indexer.recognition import FaceIndex, RekognitionIndex
from face_indexer.repository import IndexRecordRepository
from face_indexer.retry import RetryPolicy
from face_indexer.scanner import PhotoDescriptor, scan_event
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "indexing_service"})


@dataclass(frozen=True)
class IndexingStatistics:
    """Durable per-event counts compared against the photo store's current total."""

    event_id: str
    total_photos: int
    indexed: int
    errors: int
    processing: int
    not_indexed: int
    percent_indexed: float
    last_indexed_at: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "total_photos": self.total_photos,
            "indexed": self.indexed,
            "errors": self.errors,
            "processing": self.processing,
            "not_indexed": self.not_indexed,
            "percent_indexed": self.percent_indexed,
            "last_indexed_at": self.last_indexed_at,
        }


class IndexingService:
    """Own the job registry and run one background indexing job per event at most.

    Runs for different events proceed in parallel and share nothing but the
    collaborators, which are thread-safe.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: PhotoStore,
        face_index: FaceIndex,
        session_factory: Callable[[], Session],
        cache_invalidator: CacheInvalidator | None = None,
        registry: ProgressRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._face_index = face_index
        self._session_factory = session_factory
        self._registry = registry or ProgressRegistry()
        self._indexer = BatchIndexer(
            store=store,
            face_index=face_index,
            session_factory=session_factory,
            registry=self._registry,
            config=settings.indexing,
            retry_policy=retry_policy,
            cache_invalidator=cache_invalidator,
        )
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._cancel_events: dict[str, threading.Event] = {}

    @property
    def registry(self) -> ProgressRegistry:
        return self._registry

    @property
    def store(self) -> PhotoStore:
        return self._store

    def start_indexing(self, event_id: str, *, wait: bool = False) -> JobProgress:
        """Begin indexing ``event_id`` and return the freshly started progress.

        With ``wait=False`` the pipeline runs on a background thread and this
        returns immediately; with ``wait=True`` it runs on the calling thread.

        Raises:
            IndexingConflict: A run for the event is already in progress.
        """

        cancel = threading.Event()
        with self._lock:
            started = self._registry.try_start(event_id)
            self._cancel_events[event_id] = cancel

        if wait:
            self._run(event_id, cancel)
            return started

        thread = threading.Thread(
            target=self._run,
            args=(event_id, cancel),
            name=f"indexing-{event_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[event_id] = thread
        thread.start()
        return started

    def get_progress(self, event_id: str) -> JobProgress:
        return self._registry.snapshot(event_id)

    def cancel_indexing(self, event_id: str) -> bool:
        """Ask a running job to stop at the next item or chunk boundary.

        Returns ``False`` when the event has no running job.
        """

        with self._lock:
            cancel = self._cancel_events.get(event_id)
            running = self._registry.snapshot(event_id).is_running
        if cancel is None or not running:
            return False
        cancel.set()
        LOGGER.info("indexing_cancel_requested", extra={"event_id": event_id})
        return True

    def wait(self, event_id: str, timeout: float | None = None) -> JobProgress:
        """Block until the background job for ``event_id`` finishes (or ``timeout`` passes)."""

        with self._lock:
            thread = self._threads.get(event_id)
        if thread is not None:
            thread.join(timeout)
        return self._registry.snapshot(event_id)

    def get_statistics(self, event_id: str) -> IndexingStatistics:
        """Return durable counts plus the completion percentage against the photo store.

        When the photo store cannot be listed the total is reported as zero
        rather than failing the request.
        """

        with self._session_factory() as session:
            repository = IndexRecordRepository(session)
            counts = repository.status_counts(event_id)
            last_indexed_at = repository.last_indexed_at(event_id)

        try:
            total_photos = len(self._scan(event_id))
        except StoreUnavailable as exc:
            LOGGER.error("statistics_photo_count_error", extra={"event_id": event_id, "error": str(exc)})
            total_photos = 0

        indexed = counts.get(STATUS_INDEXED, 0)
        recorded = sum(counts.values())
        percent = round(indexed / total_photos * 100, 1) if total_photos > 0 else 0.0
        return IndexingStatistics(
            event_id=event_id,
            total_photos=total_photos,
            indexed=indexed,
            errors=counts.get(STATUS_ERROR, 0),
            processing=counts.get(STATUS_PROCESSING, 0),
            not_indexed=max(0, total_photos - recorded),
            percent_indexed=percent,
            last_indexed_at=last_indexed_at,
        )

    def diagnose(self, event_id: str, recent: int = 10) -> dict[str, Any]:
        """Return a per-status breakdown and the most recently indexed files."""

        with self._session_factory() as session:
            repository = IndexRecordRepository(session)
            counts = repository.status_counts(event_id)
            latest = repository.list_by_status(event_id, STATUS_INDEXED, limit=recent)
            failures = repository.list_by_status(event_id, STATUS_ERROR, limit=recent)
            return {
                "event_id": event_id,
                "total_records": sum(counts.values()),
                "by_status": counts,
                "recent_indexed": [{"file_name": row.file_name, "indexed_at": row.indexed_at} for row in latest],
                "recent_errors": [{"file_name": row.file_name, "error": row.error_detail} for row in failures],
                "first_indexed_at": repository.first_indexed_at(event_id),
                "last_indexed_at": repository.last_indexed_at(event_id),
            }

    def purge_missing(self, event_id: str) -> int:
        """Delete records of photos that no longer exist in the photo store.

        Raises:
            StoreUnavailable: The photo store could not be listed; nothing is deleted.
        """

        existing = {normalize_photo_id(photo.file_name) for photo in self._scan(event_id)}
        with self._session_factory() as session:
            removed = IndexRecordRepository(session).purge_missing(event_id, existing)
            session.commit()
        return removed

    def _scan(self, event_id: str) -> list[PhotoDescriptor]:
        return scan_event(self._store, event_id, self._settings.storage.event_prefix(event_id))

    def _run(self, event_id: str, cancel: threading.Event) -> None:
        collection_id = normalize_collection_name(event_id)
        LOGGER.info("indexing_started", extra={"event_id": event_id, "collection_id": collection_id})

        try:
            self._registry.describe(event_id, "Preparing recognition collection...")
            self._face_index.ensure_collection(collection_id)

            self._registry.describe(event_id, "Listing event photos...")
            photos = self._scan(event_id)

            self._registry.describe(event_id, "Comparing with existing index...")
            with self._session_factory() as session:
                local_ids = IndexRecordRepository(session).indexed_ids(event_id)
            remote_ids = self._face_index.list_external_ids(collection_id)
            result = reconcile(photos, local_ids, remote_ids)

            total = len(result.needs_index) + result.repair_count
            self._registry.set_total(
                event_id,
                total,
                "All photos are already indexed." if total == 0 else "Starting indexing...",
            )

            summary = self._indexer.run(
                event_id,
                collection_id,
                result.needs_index,
                repairs=result.repair_only,
                cancel_event=cancel,
            )
        except Exception as exc:
            LOGGER.error(
                "indexing_failed",
                extra={"event_id": event_id, "error_type": type(exc).__name__, "error": str(exc)},
                exc_info=not isinstance(exc, FaceIndexerError),
            )
            self._registry.fail(event_id, str(exc) or type(exc).__name__)
            return
        finally:
            with self._lock:
                if self._cancel_events.get(event_id) is cancel:
                    del self._cancel_events[event_id]

        if summary.cancelled:
            self._registry.cancel(
                event_id,
                f"Cancelled after {summary.indexed} new photos indexed; {summary.skipped} not started.",
            )
            return

        self._registry.complete(
            event_id,
            (
                f"Completed: {summary.indexed} new photos indexed, {summary.repaired} records repaired, "
                f"{summary.errors} errors. {len(photos)} photos in event, {len(result.consistent)} already indexed."
            ),
        )


def build_service(settings: Settings) -> IndexingService:
    """Wire an :class:`IndexingService` to MinIO/S3, Rekognition, the database and Redis."""

    return IndexingService(
        settings=settings,
        store=S3PhotoStore.from_config(settings.storage),
        face_index=RekognitionIndex.from_config(settings.recognition),
        session_factory=partial(open_session, settings.databases.primary_url),
        cache_invalidator=build_cache_invalidator(settings.cache),
    )


__all__ = ["IndexingService", "IndexingStatistics", "build_service"]
