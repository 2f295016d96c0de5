"""Canonical identifiers accepted by the recognition service."""

from __future__ import annotations

import posixpath
import re
from typing import Final

COLLECTION_NAME_MAX_LENGTH: Final[int] = 100
PHOTO_ID_MAX_LENGTH: Final[int] = 255
FILLER: Final[str] = "_"

_COLLECTION_DISALLOWED = re.compile(r"[^a-zA-Z0-9_.\-]")
_PHOTO_ID_DISALLOWED = re.compile(r"[^a-zA-Z0-9_.\-:]")
_FILLER_RUN = re.compile(r"_{2,}")


def _normalize(raw: str, disallowed: re.Pattern[str], max_length: int) -> str:
    text = disallowed.sub(FILLER, raw)
    text = _FILLER_RUN.sub(FILLER, text)
    text = text.strip(FILLER)
    # Truncation can expose a filler at the end; strip again so the result is a fixed point.
    return text[:max_length].rstrip(FILLER)


def normalize_collection_name(event_id: str) -> str:
    """Map an event name to a recognition collection id (``[A-Za-z0-9_.-]``, at most 100 chars)."""

    return _normalize(event_id, _COLLECTION_DISALLOWED, COLLECTION_NAME_MAX_LENGTH)


def normalize_photo_id(file_name: str) -> str:
    """Map a photo file name to an external image id (also allows ``:``, at most 255 chars).

    Only the basename is used, so ``"day1/IMG 01.jpg"`` and ``"IMG 01.jpg"`` map
    to the same id.
    """

    return _normalize(posixpath.basename(file_name), _PHOTO_ID_DISALLOWED, PHOTO_ID_MAX_LENGTH)


__all__ = [
    "COLLECTION_NAME_MAX_LENGTH",
    "PHOTO_ID_MAX_LENGTH",
    "normalize_collection_name",
    "normalize_photo_id",
]
