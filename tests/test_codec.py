"""Tests for image probing and format conversion."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from face_indexer.codec import probe_image, to_native_format
from face_indexer.errors import PermanentItemError
from tests.utils.fakes import image_bytes


def test_probe_image_reports_format_and_size() -> None:
    info = probe_image(image_bytes("PNG", size=(12, 7)))

    assert (info.format, info.width, info.height) == ("PNG", 12, 7)
    assert info.is_native


def test_probe_image_rejects_garbage() -> None:
    with pytest.raises(PermanentItemError):
        probe_image(b"definitely not an image")


def test_native_formats_pass_through_unchanged() -> None:
    data = image_bytes("JPEG")

    payload, info = to_native_format(data)

    assert payload is data
    assert info.format == "JPEG"


@pytest.mark.parametrize("fmt", ["GIF", "WEBP", "BMP"])
def test_other_formats_are_converted_to_jpeg(fmt: str) -> None:
    payload, info = to_native_format(image_bytes(fmt, size=(10, 4)))

    assert info.format == fmt
    assert (info.width, info.height) == (10, 4)
    with Image.open(io.BytesIO(payload)) as converted:
        assert converted.format == "JPEG"
        assert converted.size == (10, 4)
        assert converted.mode == "RGB"
