"""Bound the size of images before they enter model context.

Reference pages and render rasters are downsized to a maximum edge length
(aspect ratio preserved) and transcoded to JPEG when the encoded payload is
still too large.
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from ..models import ImagePreprocessError

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}

_JPEG_QUALITIES = (85, 75, 65, 55, 45)
_SHRINK_STEP = 0.75
_MIN_EDGE = 64


@dataclass
class PreparedImage:
    """Encoded image ready to be attached to a model message."""
    data: bytes
    media_type: str
    width: int
    height: int

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


def _encode(img: Image.Image, fmt: str, quality: int | None = None) -> bytes:
    buf = io.BytesIO()
    if fmt == "JPEG":
        img.save(buf, format="JPEG", quality=quality or 85, optimize=True)
    else:
        img.save(buf, format=fmt, optimize=True)
    return buf.getvalue()


def _flatten(img: Image.Image) -> Image.Image:
    """Composite transparency onto white so the image can be stored as JPEG."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return img.convert("RGB")


def prepare_image(data: bytes, *, max_dimension: int = 1568, max_bytes: int = 3_500_000) -> PreparedImage:
    """Return *data* unchanged when it is already within bounds, else a smaller copy.

    Raises:
        ImagePreprocessError: if *data* is not a readable image.
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImagePreprocessError(f"Unreadable image: {exc}") from exc

    fmt = (img.format or "").upper()
    width, height = img.size
    if fmt in _MEDIA_TYPES and max(width, height) <= max_dimension and len(data) <= max_bytes:
        return PreparedImage(data=data, media_type=_MEDIA_TYPES[fmt], width=width, height=height)

    working = img.copy()
    working.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    if working.mode not in ("RGB", "RGBA", "L", "LA"):
        working = working.convert("RGBA")
    encoded = _encode(working, "PNG")
    if len(encoded) <= max_bytes:
        logger.debug("Image resized %dx%d -> %dx%d (PNG)", width, height, *working.size)
        return PreparedImage(encoded, "image/png", *working.size)

    flat = _flatten(working)
    while True:
        for quality in _JPEG_QUALITIES:
            encoded = _encode(flat, "JPEG", quality)
            if len(encoded) <= max_bytes:
                logger.debug(
                    "Image transcoded %dx%d -> %dx%d (JPEG q=%d, %d bytes)",
                    width, height, *flat.size, quality, len(encoded),
                )
                return PreparedImage(encoded, "image/jpeg", *flat.size)
        new_size = (int(flat.width * _SHRINK_STEP), int(flat.height * _SHRINK_STEP))
        if min(new_size) < _MIN_EDGE:
            logger.warning("Image still %d bytes at minimum size; sending anyway", len(encoded))
            return PreparedImage(encoded, "image/jpeg", *flat.size)
        flat = flat.resize(new_size, Image.Resampling.LANCZOS)


def prepare_image_file(path: str | Path, *, max_dimension: int = 1568, max_bytes: int = 3_500_000) -> PreparedImage:
    """Read and prepare an image file.

    Raises:
        ImagePreprocessError: if the file is missing or unreadable.
    """
    p = Path(path)
    if not p.is_file():
        raise ImagePreprocessError(f"Reference image not found: {p}")
    return prepare_image(p.read_bytes(), max_dimension=max_dimension, max_bytes=max_bytes)
