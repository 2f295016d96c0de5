"""Repository helpers for :class:`~face_indexer.db.IndexRecord` rows."""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from face_indexer.db import RECORD_STATUSES, STATUS_ERROR, STATUS_INDEXED, IndexRecord
from face_indexer.db_helpers import upsert_statement
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "index_repository"})

_CONFLICT_COLUMNS = ("event_id", "normalized_id")


class IndexRecordRepository:
    """Read and write index records via SQLAlchemy.

    Methods execute statements on the given session; committing is left to the
    caller so several writes can share one transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def indexed_ids(self, event_id: str) -> set[str]:
        """Return the normalized ids this store marks ``indexed`` for an event."""

        stmt = select(IndexRecord.normalized_id).where(
            IndexRecord.event_id == event_id,
            IndexRecord.status == STATUS_INDEXED,
        )
        return set(self._session.execute(stmt).scalars())

    def upsert_indexed(
        self,
        *,
        event_id: str,
        normalized_id: str,
        file_name: str,
        full_path: str,
        storage_key: str,
        collection_id: str,
        face_id: str | None = None,
        file_size: int | None = None,
        width: int | None = None,
        height: int | None = None,
    ) -> None:
        """Insert or update an ``indexed`` record keyed by ``(event_id, normalized_id)``.

        A ``None`` face id or size never erases a value already stored, so a
        repair write does not discard what an earlier indexing run recorded.
        """

        now = time.time()
        values: dict[str, Any] = {
            "event_id": event_id,
            "normalized_id": normalized_id,
            "file_name": file_name,
            "full_path": full_path,
            "storage_key": storage_key,
            "collection_id": collection_id,
            "face_id": face_id,
            "status": STATUS_INDEXED,
            "error_detail": None,
            "indexed_at": now,
            "file_size": file_size,
            "width": width,
            "height": height,
            "created_at": now,
            "updated_at": now,
        }
        stmt = upsert_statement(self._session, IndexRecord).values(**values)
        table = IndexRecord.__table__
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_CONFLICT_COLUMNS),
            set_={
                "file_name": stmt.excluded.file_name,
                "full_path": stmt.excluded.full_path,
                "storage_key": stmt.excluded.storage_key,
                "collection_id": stmt.excluded.collection_id,
                "face_id": func.coalesce(stmt.excluded.face_id, table.c.face_id),
                "status": STATUS_INDEXED,
                "error_detail": None,
                "indexed_at": stmt.excluded.indexed_at,
                "file_size": func.coalesce(stmt.excluded.file_size, table.c.file_size),
                "width": func.coalesce(stmt.excluded.width, table.c.width),
                "height": func.coalesce(stmt.excluded.height, table.c.height),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self._session.execute(stmt)

    def mark_error(
        self,
        *,
        event_id: str,
        normalized_id: str,
        file_name: str,
        full_path: str,
        storage_key: str,
        collection_id: str,
        error_detail: str,
    ) -> None:
        """Record a permanent per-photo failure, creating the row if needed."""

        now = time.time()
        stmt = upsert_statement(self._session, IndexRecord).values(
            event_id=event_id,
            normalized_id=normalized_id,
            file_name=file_name,
            full_path=full_path,
            storage_key=storage_key,
            collection_id=collection_id,
            status=STATUS_ERROR,
            error_detail=error_detail,
            indexed_at=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_CONFLICT_COLUMNS),
            set_={
                "status": STATUS_ERROR,
                "error_detail": stmt.excluded.error_detail,
                "indexed_at": stmt.excluded.indexed_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self._session.execute(stmt)

    def get(self, event_id: str, normalized_id: str) -> IndexRecord | None:
        stmt = select(IndexRecord).where(
            IndexRecord.event_id == event_id,
            IndexRecord.normalized_id == normalized_id,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def status_counts(self, event_id: str) -> dict[str, int]:
        """Return the number of records per status; every known status is present."""

        counts = {status: 0 for status in RECORD_STATUSES}
        stmt = (
            select(IndexRecord.status, func.count())
            .where(IndexRecord.event_id == event_id)
            .group_by(IndexRecord.status)
        )
        for status, count in self._session.execute(stmt):
            counts[status] = int(count)
        return counts

    def list_by_status(self, event_id: str, status: str = STATUS_INDEXED, limit: int | None = None) -> list[IndexRecord]:
        """Return records of one status, most recently indexed first."""

        stmt = (
            select(IndexRecord)
            .where(IndexRecord.event_id == event_id, IndexRecord.status == status)
            .order_by(IndexRecord.indexed_at.desc(), IndexRecord.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars())

    def last_indexed_at(self, event_id: str) -> float | None:
        stmt = select(func.max(IndexRecord.indexed_at)).where(
            IndexRecord.event_id == event_id,
            IndexRecord.status == STATUS_INDEXED,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def first_indexed_at(self, event_id: str) -> float | None:
        stmt = select(func.min(IndexRecord.indexed_at)).where(IndexRecord.event_id == event_id)
        return self._session.execute(stmt).scalar_one_or_none()

    def purge_missing(self, event_id: str, existing_ids: Iterable[str]) -> int:
        """Delete records whose photo is no longer among ``existing_ids``; return how many."""

        keep = set(existing_ids)
        stored = self._session.execute(
            select(IndexRecord.normalized_id).where(IndexRecord.event_id == event_id)
        ).scalars()
        stale = sorted(set(stored) - keep)
        if not stale:
            return 0

        # Chunk the IN list to stay under SQLite's bound-parameter limit.
        for start in range(0, len(stale), 500):
            chunk = stale[start : start + 500]
            self._session.execute(
                delete(IndexRecord).where(
                    IndexRecord.event_id == event_id,
                    IndexRecord.normalized_id.in_(chunk),
                )
            )
        LOGGER.info("index_records_purged", extra={"event_id": event_id, "count": len(stale)})
        return len(stale)


__all__ = ["IndexRecordRepository"]
