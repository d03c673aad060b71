"""Image transcoder: turn an uploaded image into size-bounded inline base64.

The ladder is walked largest-first: for each maximum pixel dimension the
image is scaled down (never up) and encoded in the original format, then as
JPEG at decreasing qualities. The first encoding whose estimated size fits
the cap wins; if none fits, the smallest one seen is returned.
"""

from __future__ import annotations

import base64
import io
import logging
from contextlib import closing
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_IMAGE_INLINE_BYTES = 900_000
MAX_IMAGE_DIMENSIONS: Tuple[int, ...] = (1600, 1280, 1024, 720, 512)
JPEG_QUALITY_STEPS: Tuple[float, ...] = (0.88, 0.75, 0.65, 0.5)
DIRECT_READ_RATIO = 0.7

# mime type -> Pillow format name
_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
}


def estimate_base64_bytes(data: Optional[str]) -> int:
    """Decoded size of a base64 string, without decoding it."""
    if not data:
        return 0
    return (len(data.rstrip("=")) * 3) // 4


def encode_base64(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def normalize_mime_type(mime_type: Optional[str]) -> str:
    if mime_type and mime_type.startswith("image/"):
        return "image/jpeg" if mime_type == "image/jpg" else mime_type
    return "image/jpeg"


@dataclass
class InlineImage:
    data: str
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def estimated_bytes(self) -> int:
        return estimate_base64_bytes(self.data)


class ImageTranscoder:
    def __init__(
        self,
        max_inline_bytes: int = MAX_IMAGE_INLINE_BYTES,
        dimensions: Sequence[int] = MAX_IMAGE_DIMENSIONS,
        jpeg_qualities: Sequence[float] = JPEG_QUALITY_STEPS,
    ):
        self.max_inline_bytes = max_inline_bytes
        self.dimensions = tuple(dimensions)
        self.jpeg_qualities = tuple(jpeg_qualities)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def transcode(self, content: bytes, mime_type: Optional[str] = None) -> InlineImage:
        mime = normalize_mime_type(mime_type)

        if len(content) <= self.max_inline_bytes * DIRECT_READ_RATIO:
            direct = InlineImage(data=encode_base64(content), mime_type=mime)
            if direct.estimated_bytes <= self.max_inline_bytes:
                return direct

        try:
            with Image.open(io.BytesIO(content)) as image:
                image.load()
                best: Optional[InlineImage] = None
                with closing(self.candidates(image, mime)) as attempts:
                    for candidate in attempts:
                        if candidate.estimated_bytes <= self.max_inline_bytes:
                            return candidate
                        if best is None or candidate.estimated_bytes < best.estimated_bytes:
                            best = candidate
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.warning("Could not decode image (%s), sending it unmodified", exc)
            return InlineImage(data=encode_base64(content), mime_type=mime)

        if best is None:
            return InlineImage(data=encode_base64(content), mime_type=mime)

        logger.info(
            "No encoding fits %d bytes, using smallest candidate (%d bytes, %s %dx%d)",
            self.max_inline_bytes, best.estimated_bytes, best.mime_type, best.width, best.height,
        )
        return best

    def candidates(self, image: Image.Image, mime_type: str) -> Iterator[InlineImage]:
        """Every encoding on the dimension/quality ladder, in trial order."""
        width, height = image.size
        if not width or not height:
            raise ValueError("image has no dimensions")

        for max_dimension in self.dimensions:
            scale = min(max_dimension / width, max_dimension / height, 1)
            target = (max(1, round(width * scale)), max(1, round(height * scale)))
            resized = image.resize(target, Image.Resampling.LANCZOS) if target != image.size else image.copy()
            try:
                for mime in self._mime_candidates(mime_type):
                    qualities = self.jpeg_qualities if mime == "image/jpeg" else (None,)
                    for quality in qualities:
                        yield InlineImage(
                            data=encode_base64(self._encode(resized, mime, quality)),
                            mime_type=mime,
                            width=target[0],
                            height=target[1],
                        )
            finally:
                resized.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _mime_candidates(mime_type: str) -> Tuple[str, ...]:
        if mime_type == "image/png":
            return ("image/png", "image/jpeg")
        if mime_type in _FORMATS and mime_type != "image/jpeg":
            return (mime_type, "image/jpeg")
        return ("image/jpeg",)

    @staticmethod
    def _encode(image: Image.Image, mime_type: str, quality: Optional[float]) -> bytes:
        fmt = _FORMATS[mime_type]
        converted = None
        if fmt == "JPEG" and image.mode != "RGB":
            # flatten transparency onto white, JPEG has no alpha channel
            converted = Image.new("RGB", image.size, (255, 255, 255))
            rgba = image.convert("RGBA")
            try:
                converted.paste(rgba, mask=rgba)
            finally:
                rgba.close()
        target = converted or image
        try:
            with io.BytesIO() as buffer:
                options = {"quality": round(quality * 100)} if quality is not None else {}
                target.save(buffer, format=fmt, **options)
                return buffer.getvalue()
        finally:
            if converted is not None:
                converted.close()
