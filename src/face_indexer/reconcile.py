"""Three-way comparison of enumerated, locally recorded and remotely registered photos."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from face_indexer.naming import normalize_photo_id
from face_indexer.scanner import PhotoDescriptor
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "reconcile"})


@dataclass(frozen=True)
class WorkItem:
    """A photo paired with its normalized external id."""

    photo: PhotoDescriptor
    normalized_id: str


@dataclass(frozen=True)
class ReconciliationResult:
    """Disjoint classification of an event's enumerated photos.

    ``consistent`` photos need nothing, ``needs_index`` must be submitted to the
    recognition service, ``repair_only`` only need a local record. Photos whose
    id collides with an earlier photo are listed in ``collisions`` and appear in
    none of the other three.
    """

    consistent: tuple[WorkItem, ...] = ()
    needs_index: tuple[WorkItem, ...] = ()
    repair_only: tuple[WorkItem, ...] = ()
    collisions: tuple[WorkItem, ...] = field(default_factory=tuple)

    @property
    def repair_count(self) -> int:
        return len(self.repair_only)

    @property
    def classified_count(self) -> int:
        return len(self.consistent) + len(self.needs_index) + len(self.repair_only)


def reconcile(
    photos: Sequence[PhotoDescriptor],
    local_indexed_ids: Iterable[str],
    remote_ids: Iterable[str],
) -> ReconciliationResult:
    """Classify photos against the local store (``L``) and the remote index (``R``).

    ``L and R`` is consistent; ``L and not R`` needs re-indexing because the
    remote collection lost it; ``R and not L`` only needs a local record, taking
    the remote side as the truth; ``neither`` is new work.

    Photos are visited in storage-key order so collision handling is
    deterministic: the first photo to claim an id keeps it.
    """

    local = set(local_indexed_ids)
    remote = set(remote_ids)

    consistent: list[WorkItem] = []
    needs_index: list[WorkItem] = []
    repair_only: list[WorkItem] = []
    collisions: list[WorkItem] = []
    claimed: dict[str, PhotoDescriptor] = {}

    for photo in sorted(photos, key=lambda item: item.storage_key):
        normalized_id = normalize_photo_id(photo.file_name)
        item = WorkItem(photo=photo, normalized_id=normalized_id)

        owner = claimed.get(normalized_id)
        if owner is not None:
            LOGGER.warning(
                "reconcile_id_collision",
                extra={
                    "event_id": photo.event_id,
                    "normalized_id": normalized_id,
                    "kept_key": owner.storage_key,
                    "dropped_key": photo.storage_key,
                },
            )
            collisions.append(item)
            continue
        claimed[normalized_id] = photo

        in_local = normalized_id in local
        in_remote = normalized_id in remote
        if in_local and in_remote:
            consistent.append(item)
        elif in_remote:
            repair_only.append(item)
        else:
            needs_index.append(item)

    result = ReconciliationResult(
        consistent=tuple(consistent),
        needs_index=tuple(needs_index),
        repair_only=tuple(repair_only),
        collisions=tuple(collisions),
    )
    LOGGER.info(
        "reconcile_complete",
        extra={
            "photos": len(photos),
            "consistent": len(result.consistent),
            "needs_index": len(result.needs_index),
            "repair_only": len(result.repair_only),
            "collisions": len(result.collisions),
            "stale_local": sum(1 for item in needs_index if item.normalized_id in local),
        },
    )
    return result


__all__ = ["ReconciliationResult", "WorkItem", "reconcile"]
