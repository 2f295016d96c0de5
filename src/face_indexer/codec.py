"""Pillow helpers to probe photos and convert them to a format the recognition service accepts."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from face_indexer.errors import PermanentItemError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "codec"})

NATIVE_FORMATS: frozenset[str] = frozenset({"JPEG", "PNG"})


@dataclass(frozen=True)
class ImageInfo:
    """Decoded format name (Pillow spelling) and pixel dimensions."""

    format: str
    width: int
    height: int

    @property
    def is_native(self) -> bool:
        return self.format in NATIVE_FORMATS


def probe_image(data: bytes) -> ImageInfo:
    """Return the format and dimensions of encoded image bytes without a full decode."""

    try:
        with Image.open(io.BytesIO(data)) as image:
            return ImageInfo(format=str(image.format or "").upper(), width=image.width, height=image.height)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise PermanentItemError(f"unreadable image: {exc}") from exc


def to_native_format(data: bytes, info: ImageInfo | None = None, quality: int = 85) -> tuple[bytes, ImageInfo]:
    """Return bytes the recognition service accepts, transcoding to JPEG only when needed.

    Native inputs are passed through unchanged. The returned :class:`ImageInfo`
    always describes the source image so dimensions stay those of the original.
    """

    info = info or probe_image(data)
    if info.is_native:
        return data, info

    try:
        with Image.open(io.BytesIO(data)) as image:
            # Animated GIF/WebP: index the first frame.
            image.seek(0)
            converted = image.convert("RGB")
        buffer = io.BytesIO()
        converted.save(buffer, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        LOGGER.error("transcode_error", extra={"source_format": info.format, "error": str(exc)})
        raise PermanentItemError(f"cannot transcode {info.format or 'unknown'} image: {exc}") from exc

    return buffer.getvalue(), info


__all__ = ["ImageInfo", "NATIVE_FORMATS", "probe_image", "to_native_format"]
