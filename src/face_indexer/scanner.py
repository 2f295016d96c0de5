"""Photo store walker that flattens an event's folder hierarchy."""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterator
from dataclasses import dataclass

from botocore.exceptions import BotoCoreError, ClientError

from face_indexer.errors import StoreUnavailable
from face_indexer.photo_store import PhotoStore, StoredObject
from utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".webp",
    }
)

DAY_CODE_PATTERN = re.compile(r"^\d{2}-\d{2}-")


@dataclass(frozen=True)
class PhotoDescriptor:
    """One photo of an event, recomputed on every run and never persisted."""

    event_id: str
    sub_path: str
    file_name: str
    storage_key: str
    size_bytes: int = 0

    @property
    def full_path(self) -> str:
        """``<event>/<sub_path>``, the folder the photo lives in."""

        return f"{self.event_id}/{self.sub_path}"

    @property
    def base_name(self) -> str:
        return posixpath.basename(self.file_name)


def _child_name(parent: str, child_prefix: str) -> str:
    return child_prefix[len(parent):].strip("/")


def _is_photo(key: str, extensions: frozenset[str]) -> bool:
    if key.endswith("/"):
        return False
    return posixpath.splitext(key)[1].lower() in extensions


def _photos_in(
    store: PhotoStore,
    event_id: str,
    folder_prefix: str,
    sub_path: str,
    extensions: frozenset[str],
) -> Iterator[PhotoDescriptor]:
    objects: list[StoredObject] = store.list_objects(folder_prefix)
    for obj in objects:
        if not _is_photo(obj.key, extensions):
            continue
        yield PhotoDescriptor(
            event_id=event_id,
            sub_path=sub_path,
            file_name=obj.key[len(folder_prefix):],
            storage_key=obj.key,
            size_bytes=obj.size_bytes,
        )


def _walk(store: PhotoStore, event_id: str, event_prefix: str, extensions: frozenset[str]) -> list[PhotoDescriptor]:
    top_level = store.list_prefixes(event_prefix)
    days = [prefix for prefix in top_level if DAY_CODE_PATTERN.match(_child_name(event_prefix, prefix))]

    photos: list[PhotoDescriptor] = []
    if days:
        LOGGER.info("scan_multi_day_event", extra={"event_id": event_id, "days": len(days)})
        for day_prefix in days:
            day = _child_name(event_prefix, day_prefix)
            for collection_prefix in store.list_prefixes(day_prefix):
                name = _child_name(day_prefix, collection_prefix)
                photos.extend(_photos_in(store, event_id, collection_prefix, f"{day}/{name}", extensions))
    else:
        for collection_prefix in top_level:
            name = _child_name(event_prefix, collection_prefix)
            photos.extend(_photos_in(store, event_id, collection_prefix, name, extensions))
    return photos


def scan_event(
    store: PhotoStore,
    event_id: str,
    event_prefix: str,
    extensions: frozenset[str] | None = None,
) -> list[PhotoDescriptor]:
    """Return every photo of an event.

    Args:
        store: Photo store to list from; it is never written to.
        event_id: Event name as used in the store hierarchy.
        event_prefix: Key prefix of the event folder, ending in ``/``.
        extensions: Allowed lowercase extensions including the dot. Defaults to
            :data:`DEFAULT_IMAGE_EXTENSIONS`.

    Returns:
        Descriptors for multi-day events (``day/sub-collection/photo``) or
        single-day events (``sub-collection/photo``), in listing order.

    Raises:
        StoreUnavailable: A listing call failed. No retry is attempted.
    """

    allowed = extensions or DEFAULT_IMAGE_EXTENSIONS
    try:
        photos = _walk(store, event_id, event_prefix, allowed)
    except (BotoCoreError, ClientError, OSError) as exc:
        LOGGER.error("scan_event_error", extra={"event_id": event_id, "prefix": event_prefix, "error": str(exc)})
        raise StoreUnavailable(f"cannot list photos for event {event_id!r}: {exc}") from exc

    LOGGER.info("scan_event_complete", extra={"event_id": event_id, "photos": len(photos)})
    return photos


def list_events(store: PhotoStore, root_prefix: str = "") -> list[str]:
    """Return the names of every event folder under ``root_prefix``."""

    parent = f"{root_prefix.strip('/')}/" if root_prefix.strip("/") else ""
    try:
        prefixes = store.list_prefixes(parent)
    except (BotoCoreError, ClientError, OSError) as exc:
        raise StoreUnavailable(f"cannot list events: {exc}") from exc
    return [_child_name(parent, prefix) for prefix in prefixes]


__all__ = ["DAY_CODE_PATTERN", "DEFAULT_IMAGE_EXTENSIONS", "PhotoDescriptor", "list_events", "scan_event"]
