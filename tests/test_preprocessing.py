"""Tests for image ingestion and the intermediate preprocessing views."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from embryolens.errors import ErrorKind, InvalidImageError, UnsupportedFormatError
from embryolens.ml.preprocessing import (
    ImageIngestor,
    edge_map,
    encode_png,
    grayscale,
    otsu_level,
    render_view,
    threshold,
)
from embryolens.ml.validity import AcceptAllPolicy

from conftest import embryo_pixels

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_ingestor(policy: object = None, **overrides: int) -> ImageIngestor:
    limits = {"max_file_size": 10_000_000, "max_image_pixels": 10_000_000}
    limits.update(overrides)
    return ImageIngestor(policy or AcceptAllPolicy(), **limits)  # type: ignore[arg-type]


class _RejectAll:
    def __call__(self, handle: object) -> bool:
        return False


# ---------------------------------------------------------------------------
# ImageIngestor
# ---------------------------------------------------------------------------


class TestImageIngestor:
    def test_decodes_png(self, embryo_png: bytes) -> None:
        handle = _make_ingestor().ingest(embryo_png, "image/png")
        assert handle.format == "PNG"
        assert handle.mime_type == "image/png"
        assert (handle.width, handle.height) == (128, 128)
        assert handle.pixels.shape == (128, 128, 3)
        assert handle.pixels.dtype == np.uint8

    def test_decodes_jpeg(self, embryo_jpeg: bytes) -> None:
        handle = _make_ingestor().ingest(embryo_jpeg, "image/jpeg")
        assert handle.format == "JPEG"
        assert handle.pixels.shape == (128, 128, 3)

    def test_pixels_are_read_only(self, embryo_png: bytes) -> None:
        handle = _make_ingestor().ingest(embryo_png, "image/png")
        with pytest.raises(ValueError):
            handle.pixels[0, 0, 0] = 1

    def test_digest_identifies_content(self, embryo_png: bytes, other_embryo_png: bytes) -> None:
        ingestor = _make_ingestor()
        first = ingestor.ingest(embryo_png, "image/png")
        again = ingestor.ingest(embryo_png, "image/png")
        other = ingestor.ingest(other_embryo_png, "image/png")
        assert first.digest == again.digest
        assert first.digest != other.digest

    def test_grayscale_and_palette_images_become_rgb(self) -> None:
        buffer = io.BytesIO()
        Image.fromarray(embryo_pixels()[..., 0]).save(buffer, format="PNG")
        handle = _make_ingestor().ingest(buffer.getvalue(), "image/png")
        assert handle.pixels.shape == (128, 128, 3)

    def test_mime_parameters_are_ignored(self, embryo_png: bytes) -> None:
        handle = _make_ingestor().ingest(embryo_png, "Image/PNG; charset=binary")
        assert handle.mime_type == "image/png"

    @pytest.mark.parametrize("mime", ["text/plain", "application/pdf", "", "application/octet-stream"])
    def test_non_image_mime_is_unsupported(self, embryo_png: bytes, mime: str) -> None:
        with pytest.raises(UnsupportedFormatError) as info:
            _make_ingestor().ingest(embryo_png, mime)
        assert info.value.kind == ErrorKind.UNSUPPORTED_FORMAT

    def test_empty_payload_is_invalid(self) -> None:
        with pytest.raises(InvalidImageError, match="empty"):
            _make_ingestor().ingest(b"", "image/png")

    def test_undecodable_payload_is_invalid(self) -> None:
        with pytest.raises(InvalidImageError) as info:
            _make_ingestor().ingest(b"definitely not a png", "image/png")
        assert info.value.kind == ErrorKind.INVALID_IMAGE

    def test_oversized_payload_is_invalid(self, embryo_png: bytes) -> None:
        with pytest.raises(InvalidImageError, match="byte limit"):
            _make_ingestor(max_file_size=10).ingest(embryo_png, "image/png")

    def test_too_many_pixels_is_invalid(self, embryo_png: bytes) -> None:
        with pytest.raises(InvalidImageError, match="too large"):
            _make_ingestor(max_image_pixels=100).ingest(embryo_png, "image/png")

    def test_policy_rejection_is_invalid(self, embryo_png: bytes) -> None:
        with pytest.raises(InvalidImageError, match="valid embryo image"):
            _make_ingestor(_RejectAll()).ingest(embryo_png, "image/png")


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class TestPreprocessingViews:
    def test_grayscale_of_neutral_gray_is_identity(self) -> None:
        pixels = embryo_pixels()
        assert np.array_equal(grayscale(pixels), pixels[..., 0])

    def test_edge_map_of_flat_image_is_empty(self) -> None:
        flat = np.full((32, 32, 3), 90, dtype=np.uint8)
        edges = edge_map(flat)
        assert edges.shape == (32, 32)
        assert edges.max() == 0

    def test_edge_map_highlights_cell_boundary(self) -> None:
        edges = edge_map(embryo_pixels())
        assert edges.max() == 255
        assert edges[0, 0] == 0
        assert edges[64, 64] == 0

    def test_edge_map_is_binary(self) -> None:
        assert set(np.unique(edge_map(embryo_pixels()))) == {0, 255}

    def test_otsu_separates_two_levels(self) -> None:
        gray = np.array([[40] * 8 + [200] * 8] * 4, dtype=np.uint8)
        assert 40 <= otsu_level(gray) < 200

    def test_threshold_is_binary(self) -> None:
        view = threshold(embryo_pixels())
        assert set(np.unique(view)) <= {0, 255}
        # culture medium is brighter than the cell
        assert view[0, 0] == 255
        assert view[64, 64] == 0

    def test_encode_png_round_trips_shape(self) -> None:
        view = threshold(embryo_pixels())
        decoded = Image.open(io.BytesIO(encode_png(view)))
        assert decoded.format == "PNG"
        assert decoded.size == (128, 128)

    @pytest.mark.parametrize("stage", ["grayscale", "edges", "threshold"])
    def test_render_view_encodes_single_channel_png(self, stage: str) -> None:
        decoded = Image.open(io.BytesIO(render_view(embryo_pixels(), stage)))
        assert decoded.format == "PNG"
        assert decoded.mode == "L"
        assert decoded.size == (128, 128)
