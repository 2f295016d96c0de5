"""Exception hierarchy for the indexing pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from face_indexer.progress import JobProgress


class FaceIndexerError(Exception):
    """Base class for every error raised by this package."""


class TransientError(FaceIndexerError):
    """A condition worth retrying, raised by collaborators without a richer error type."""


class PermanentItemError(FaceIndexerError):
    """A per-photo failure that retrying cannot fix (undecodable image, bad id)."""


class StoreUnavailable(FaceIndexerError):
    """The photo store could not be listed; aborts the whole run."""


class RecognitionUnavailable(FaceIndexerError):
    """The recognition collection could not be created, verified or listed."""


class IndexingConflict(FaceIndexerError):
    """A run for the event is already in progress."""

    def __init__(self, event_id: str, progress: "JobProgress | None" = None) -> None:
        super().__init__(f"indexing already running for event {event_id!r}")
        self.event_id = event_id
        self.progress = progress


__all__ = [
    "FaceIndexerError",
    "IndexingConflict",
    "PermanentItemError",
    "RecognitionUnavailable",
    "StoreUnavailable",
    "TransientError",
]
