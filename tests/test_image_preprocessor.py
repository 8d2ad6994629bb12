"""Tests for tools/image_preprocessor.py."""

from __future__ import annotations

import base64
import io
import os

import pytest
from PIL import Image

from template_synthesizer.models import ImagePreprocessError
from template_synthesizer.tools.image_preprocessor import prepare_image, prepare_image_file


def _encode(img: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class TestPrepareImage:
    def test_within_bounds_unchanged(self, png_factory):
        data = png_factory(200, 300)
        prepared = prepare_image(data)
        assert prepared.data == data
        assert prepared.media_type == "image/png"
        assert (prepared.width, prepared.height) == (200, 300)

    def test_downsized_preserving_aspect(self):
        data = _encode(Image.new("RGB", (3000, 1500), (10, 20, 30)))
        prepared = prepare_image(data, max_dimension=1000)
        assert (prepared.width, prepared.height) == (1000, 500)
        assert Image.open(io.BytesIO(prepared.data)).size == (1000, 500)

    def test_transcodes_when_too_large(self):
        noise = Image.frombytes("RGB", (400, 400), os.urandom(400 * 400 * 3))
        data = _encode(noise)
        prepared = prepare_image(data, max_dimension=1568, max_bytes=50_000)
        assert prepared.media_type == "image/jpeg"
        assert len(prepared.data) <= 50_000
        assert Image.open(io.BytesIO(prepared.data)).format == "JPEG"

    def test_transparency_flattened(self):
        noise = Image.frombytes("RGBA", (300, 300), os.urandom(300 * 300 * 4))
        prepared = prepare_image(_encode(noise), max_bytes=40_000)
        assert prepared.media_type == "image/jpeg"
        assert Image.open(io.BytesIO(prepared.data)).mode == "RGB"

    def test_unreadable(self):
        with pytest.raises(ImagePreprocessError, match="Unreadable image"):
            prepare_image(b"not an image")

    def test_data_url(self, png_factory):
        data = png_factory()
        url = prepare_image(data).to_data_url()
        assert url.startswith("data:image/png;base64,")
        assert base64.b64decode(url.split(",", 1)[1]) == data


class TestPrepareImageFile:
    def test_reads_file(self, reference_png):
        prepared = prepare_image_file(reference_png)
        assert (prepared.width, prepared.height) == (120, 170)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImagePreprocessError, match="not found"):
            prepare_image_file(tmp_path / "missing.png")
