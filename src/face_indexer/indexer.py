"""Bounded-concurrency driver that turns reconciled work into durable index records.

Each photo runs a fixed pipeline: fetch bytes, transcode when the format is not
native to the recognition service, submit to the face collection, persist the
record. Fetch, submit and persist go through the same :class:`RetryPolicy`.
A photo that still fails is stored with ``status=error`` and counted; it never
stops the photos around it.

Work is drained by a ``ThreadPoolExecutor`` whose width is the configured
concurrency. ``chunked`` mode splits the work into fixed-size chunks drained
one after another with a short pause in between; ``bounded`` mode drains
everything through one pool. Work that fits in one pool width is launched
all at once in either mode.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from logging import LoggerAdapter

from sqlalchemy.orm import Session

from face_indexer.cache import CacheInvalidator, NullCacheInvalidator
from face_indexer.codec import probe_image, to_native_format
from face_indexer.config import IndexingConfig
from face_indexer.metrics import ThroughputMeter
from face_indexer.photo_store import FetchedObject, PhotoStore
from face_indexer.progress import OUTCOME_ERROR, OUTCOME_INDEXED, OUTCOME_REPAIRED, ProgressRegistry
from face_indexer.reconcile import WorkItem
from face_indexer.recognition import FaceIndex
from face_indexer.repository import IndexRecordRepository
from face_indexer.retry import RetryPolicy
from utils.logging import bind_logger, get_logger

LOGGER = get_logger(__name__, extra={"component": "indexer"})

OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class ItemOutcome:
    normalized_id: str
    outcome: str
    size_bytes: int = 0
    error: str | None = None


@dataclass(frozen=True)
class RunSummary:
    """Counts for one :meth:`BatchIndexer.run` call."""

    event_id: str
    submitted: int
    indexed: int
    repaired: int
    errors: int
    skipped: int
    cancelled: bool


def plan_batches(count: int, mode: str, concurrency: int, chunk_size: int) -> list[tuple[int, int]]:
    """Return ``(start, end)`` slices of the work list, drained in order.

    Work that fits in one pool (``count <= concurrency``) is a single slice.
    """

    if count <= 0:
        return []
    if count <= concurrency or mode == "bounded":
        return [(0, count)]
    size = max(1, chunk_size)
    return [(start, min(start + size, count)) for start in range(0, count, size)]


class BatchIndexer:
    """Drive repair writes and indexing work for one event run."""

    def __init__(
        self,
        *,
        store: PhotoStore,
        face_index: FaceIndex,
        session_factory: Callable[[], Session],
        registry: ProgressRegistry,
        config: IndexingConfig,
        retry_policy: RetryPolicy | None = None,
        cache_invalidator: CacheInvalidator | None = None,
    ) -> None:
        self._store = store
        self._face_index = face_index
        self._session_factory = session_factory
        self._registry = registry
        self._config = config
        self._retry = retry_policy or RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
        )
        self._cache_invalidator = cache_invalidator or NullCacheInvalidator()

    def run(
        self,
        event_id: str,
        collection_id: str,
        work: Sequence[WorkItem],
        repairs: Sequence[WorkItem] = (),
        cancel_event: threading.Event | None = None,
    ) -> RunSummary:
        """Repair local records, then index ``work``; return the tallies.

        The registry entry for ``event_id`` must already be running. Progress
        counters are updated as each item finishes.
        """

        cancel = cancel_event or threading.Event()
        log = bind_logger(LOGGER, event_id=event_id, collection_id=collection_id)
        meter = ThroughputMeter(total=len(work), log_every=self._config.log_every, logger=log)
        tallies = {OUTCOME_INDEXED: 0, OUTCOME_REPAIRED: 0, OUTCOME_ERROR: 0, OUTCOME_SKIPPED: 0}

        for item in repairs:
            if cancel.is_set():
                tallies[OUTCOME_SKIPPED] += 1
                continue
            outcome = self.repair_item(event_id, collection_id, item)
            tallies[outcome.outcome] += 1
            self._registry.record_item(event_id, outcome.outcome)

        batches = plan_batches(len(work), self._config.mode, self._config.concurrency, self._config.chunk_size)
        log.info(
            "indexing_pass_start",
            extra={
                "work": len(work),
                "repairs": len(repairs),
                "batches": len(batches),
                "mode": self._config.mode,
                "concurrency": self._config.concurrency,
            },
        )

        for number, (start, end) in enumerate(batches, start=1):
            if cancel.is_set():
                tallies[OUTCOME_SKIPPED] += len(work) - start
                break

            batch = work[start:end]
            width = min(self._config.concurrency, len(batch))
            log.info("batch_start", extra={"batch": number, "batches": len(batches), "size": len(batch), "width": width})

            batch_counts = {OUTCOME_INDEXED: 0, OUTCOME_ERROR: 0, OUTCOME_SKIPPED: 0}
            with ThreadPoolExecutor(max_workers=width, thread_name_prefix="face-indexer") as executor:
                futures = [
                    executor.submit(self._process, event_id, collection_id, item, cancel, meter) for item in batch
                ]
                for future in as_completed(futures):
                    outcome = future.result()
                    tallies[outcome.outcome] += 1
                    batch_counts[outcome.outcome] += 1

            log.info(
                "batch_complete",
                extra={
                    "batch": number,
                    "indexed": batch_counts[OUTCOME_INDEXED],
                    "errors": batch_counts[OUTCOME_ERROR],
                    "skipped": batch_counts[OUTCOME_SKIPPED],
                },
            )

            if number < len(batches) and self._config.chunk_pause_seconds > 0:
                # Returns early when cancelled.
                cancel.wait(self._config.chunk_pause_seconds)

        meter.summary()
        self._invalidate_cache(event_id, log)

        summary = RunSummary(
            event_id=event_id,
            submitted=len(work),
            indexed=tallies[OUTCOME_INDEXED],
            repaired=tallies[OUTCOME_REPAIRED],
            errors=tallies[OUTCOME_ERROR],
            skipped=tallies[OUTCOME_SKIPPED],
            cancelled=cancel.is_set() and tallies[OUTCOME_SKIPPED] > 0,
        )
        log.info(
            "indexing_pass_complete",
            extra={
                "indexed": summary.indexed,
                "repaired": summary.repaired,
                "errors": summary.errors,
                "skipped": summary.skipped,
                "cancelled": summary.cancelled,
            },
        )
        return summary

    def repair_item(self, event_id: str, collection_id: str, item: WorkItem) -> ItemOutcome:
        """Write a local record for a photo the remote collection already holds."""

        try:
            self._retry.call(self._persist_indexed, event_id, collection_id, item, description="persist_repair")
        except Exception as exc:
            return self._record_failure(event_id, collection_id, item, exc)
        LOGGER.debug("item_repaired", extra={"event_id": event_id, "normalized_id": item.normalized_id})
        return ItemOutcome(normalized_id=item.normalized_id, outcome=OUTCOME_REPAIRED)

    def index_item(self, event_id: str, collection_id: str, item: WorkItem) -> ItemOutcome:
        """Run the fetch → transcode → submit → persist pipeline for one photo.

        Raises whatever the failing step raised; :meth:`_process` turns that
        into an ``error`` record.
        """

        photo = item.photo
        fetched: FetchedObject = self._retry.call(self._store.get_object, photo.storage_key, description="fetch")
        info = probe_image(fetched.data)
        payload, info = to_native_format(fetched.data, info, quality=self._config.jpeg_quality)

        face_id = self._retry.call(
            self._face_index.index_face,
            collection_id,
            payload,
            item.normalized_id,
            description="index_face",
        )
        self._retry.call(
            self._persist_indexed,
            event_id,
            collection_id,
            item,
            face_id=face_id,
            file_size=fetched.size_bytes,
            width=info.width,
            height=info.height,
            description="persist",
        )
        return ItemOutcome(normalized_id=item.normalized_id, outcome=OUTCOME_INDEXED, size_bytes=fetched.size_bytes)

    def _process(
        self,
        event_id: str,
        collection_id: str,
        item: WorkItem,
        cancel: threading.Event,
        meter: ThroughputMeter,
    ) -> ItemOutcome:
        if cancel.is_set():
            return ItemOutcome(normalized_id=item.normalized_id, outcome=OUTCOME_SKIPPED)

        try:
            outcome = self.index_item(event_id, collection_id, item)
        except Exception as exc:
            outcome = self._record_failure(event_id, collection_id, item, exc)

        self._registry.record_item(event_id, outcome.outcome)
        meter.record(outcome.size_bytes)
        return outcome

    def _record_failure(self, event_id: str, collection_id: str, item: WorkItem, exc: Exception) -> ItemOutcome:
        detail = str(exc) or type(exc).__name__
        LOGGER.error(
            "item_index_error",
            extra={
                "event_id": event_id,
                "normalized_id": item.normalized_id,
                "storage_key": item.photo.storage_key,
                "error_type": type(exc).__name__,
                "error": detail,
            },
        )
        try:
            self._retry.call(self._persist_error, event_id, collection_id, item, detail, description="persist_error")
        except Exception as db_exc:
            LOGGER.error(
                "item_error_persist_failed",
                extra={"event_id": event_id, "normalized_id": item.normalized_id, "error": str(db_exc)},
            )
        return ItemOutcome(normalized_id=item.normalized_id, outcome=OUTCOME_ERROR, error=detail)

    def _persist_indexed(
        self,
        event_id: str,
        collection_id: str,
        item: WorkItem,
        *,
        face_id: str | None = None,
        file_size: int | None = None,
        width: int | None = None,
        height: int | None = None,
    ) -> None:
        photo = item.photo
        with self._session_factory() as session:
            IndexRecordRepository(session).upsert_indexed(
                event_id=event_id,
                normalized_id=item.normalized_id,
                file_name=photo.base_name,
                full_path=photo.full_path,
                storage_key=photo.storage_key,
                collection_id=collection_id,
                face_id=face_id,
                file_size=file_size,
                width=width,
                height=height,
            )
            session.commit()

    def _persist_error(self, event_id: str, collection_id: str, item: WorkItem, detail: str) -> None:
        photo = item.photo
        with self._session_factory() as session:
            IndexRecordRepository(session).mark_error(
                event_id=event_id,
                normalized_id=item.normalized_id,
                file_name=photo.base_name,
                full_path=photo.full_path,
                storage_key=photo.storage_key,
                collection_id=collection_id,
                error_detail=detail,
            )
            session.commit()

    def _invalidate_cache(self, event_id: str, log: LoggerAdapter) -> None:
        try:
            self._cache_invalidator.invalidate_event(event_id)
        except Exception as exc:
            log.error("cache_invalidation_error", extra={"error": str(exc)})


__all__ = ["BatchIndexer", "ItemOutcome", "OUTCOME_SKIPPED", "RunSummary", "plan_batches"]
