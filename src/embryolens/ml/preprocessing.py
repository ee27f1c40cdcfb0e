"""Image ingestion and preprocessing.

Handles MIME checks, size limits, decoding (EXIF orientation, RGB
conversion), the domain validity gate, and the intermediate views shown
alongside an analysis (grayscale, edge map, binary threshold).
"""

from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from embryolens.errors import InvalidImageError, UnsupportedFormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from embryolens.ml.validity import ValidityPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageHandle:
    """A decoded image ready for classification.

    ``pixels`` is an HxWx3 RGB uint8 array and is never written to.
    """

    pixels: NDArray[np.uint8] = field(repr=False)
    mime_type: str
    format: str
    digest: str

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class ImageIngestor:
    """Turns raw upload bytes into an ``ImageHandle`` or raises ``IngestError``."""

    def __init__(
        self,
        validity_policy: ValidityPolicy,
        *,
        max_file_size: int,
        max_image_pixels: int,
    ) -> None:
        self._validity_policy = validity_policy
        self._max_file_size = max_file_size
        self._max_image_pixels = max_image_pixels

    def ingest(self, raw_bytes: bytes, declared_mime_type: str) -> ImageHandle:
        """Validate and decode an uploaded image.

        Raises:
            UnsupportedFormatError: If the declared MIME type is not an image type.
            InvalidImageError: If the payload is empty, too large, undecodable,
                or rejected by the validity policy.
        """
        mime_type = (declared_mime_type or "").split(";", 1)[0].strip().lower()
        if not mime_type.startswith("image/"):
            raise UnsupportedFormatError(f"Unsupported file type '{declared_mime_type}' - please upload an image.")
        if not raw_bytes:
            raise InvalidImageError("Uploaded file is empty.")
        if len(raw_bytes) > self._max_file_size:
            raise InvalidImageError(f"Uploaded file exceeds the {self._max_file_size} byte limit.")

        pixels, image_format = self._decode(raw_bytes)
        handle = ImageHandle(
            pixels=pixels,
            mime_type=mime_type,
            format=image_format,
            digest=hashlib.sha256(raw_bytes).hexdigest(),
        )

        if not self._validity_policy(handle):
            logger.info("Validity policy rejected %s image %s", image_format, handle.digest[:12])
            raise InvalidImageError()
        return handle

    def _decode(self, raw_bytes: bytes) -> tuple[NDArray[np.uint8], str]:
        try:
            with Image.open(io.BytesIO(raw_bytes)) as image:
                image_format = image.format or "UNKNOWN"
                width, height = image.size
                if width * height > self._max_image_pixels:
                    raise InvalidImageError(f"Image is too large ({width}x{height} pixels).")
                rgb = ImageOps.exif_transpose(image).convert("RGB")
                pixels = np.asarray(rgb, dtype=np.uint8)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
            logger.info("Could not decode uploaded image: %s", exc)
            raise InvalidImageError("Invalid input - the file could not be decoded as an image.") from exc

        pixels.setflags(write=False)
        return pixels, image_format


# ---------------------------------------------------------------------------
# Intermediate views
# ---------------------------------------------------------------------------

# Hysteresis thresholds for the Canny edge detector.
CANNY_LOW: int = 50
CANNY_HIGH: int = 150


def grayscale(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Luma of an RGB image."""
    return cv2.cvtColor(np.ascontiguousarray(pixels), cv2.COLOR_RGB2GRAY)


def canny_edges(gray: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Binary (0/255) Canny edges of a grayscale image."""
    return cv2.Canny(np.ascontiguousarray(gray), CANNY_LOW, CANNY_HIGH)


def edge_map(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    return canny_edges(grayscale(pixels))


def otsu_level(gray: NDArray[np.uint8]) -> int:
    """Otsu threshold of a uint8 image."""
    level, _ = cv2.threshold(np.ascontiguousarray(gray), 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
    return int(level)


def threshold(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Binary (0/255) Otsu threshold of the grayscale image."""
    _, binary = cv2.threshold(grayscale(pixels), 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
    return binary


PREPROCESSING_VIEWS = {
    "grayscale": grayscale,
    "edges": edge_map,
    "threshold": threshold,
}


def render_view(pixels: NDArray[np.uint8], stage: str) -> bytes:
    """Compute the named view and encode it as PNG."""
    return encode_png(PREPROCESSING_VIEWS[stage](pixels))


def encode_png(view: NDArray[np.uint8]) -> bytes:
    """Encode a 2-D or RGB uint8 array as PNG bytes."""
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(view)).save(buffer, format="PNG")
    return buffer.getvalue()
