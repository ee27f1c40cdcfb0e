"""Domain validity gate: is this plausibly an embryo micrograph?

A policy is any callable taking an ``ImageHandle`` and returning ``True`` when
the image may proceed to classification. The ingestor does not care which one
it is given.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol

import numpy as np

from embryolens.ml.preprocessing import canny_edges, grayscale

if TYPE_CHECKING:
    from embryolens.ml.preprocessing import ImageHandle

logger = logging.getLogger(__name__)


class ValidityPolicy(Protocol):
    """Predicate deciding whether a decoded image may be classified."""

    def __call__(self, handle: ImageHandle) -> bool: ...


class AcceptAllPolicy:
    """No content gate."""

    def __call__(self, handle: ImageHandle) -> bool:
        return True


class RandomRejectionPolicy:
    """Demo gate that rejects a fixed fraction of inputs at random."""

    def __init__(self, rate: float = 0.1, seed: int | None = None) -> None:
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"rate must be within [0, 1], got {rate}")
        self._rate = rate
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def __call__(self, handle: ImageHandle) -> bool:
        with self._lock:
            draw = float(self._rng.random())
        return draw >= self._rate


class HeuristicValidityPolicy:
    """Content checks on size, contrast and edge density.

    Embryo micrographs are reasonably large, have a visible cell boundary
    against the culture medium (contrast), and show structure without being
    dominated by texture or noise (edge density within a window).
    """

    def __init__(
        self,
        *,
        min_side: int = 64,
        min_contrast: float = 8.0,
        min_edge_density: float = 0.002,
        max_edge_density: float = 0.35,
    ) -> None:
        if min_edge_density > max_edge_density:
            raise ValueError("min_edge_density must not exceed max_edge_density")
        self.min_side = min_side
        self.min_contrast = min_contrast
        self.min_edge_density = min_edge_density
        self.max_edge_density = max_edge_density

    def __call__(self, handle: ImageHandle) -> bool:
        if min(handle.width, handle.height) < self.min_side:
            logger.debug("Rejected: %dx%d below minimum side %d", handle.width, handle.height, self.min_side)
            return False

        gray = grayscale(handle.pixels)
        contrast = float(gray.std())
        if contrast < self.min_contrast:
            logger.debug("Rejected: contrast %.2f below %.2f", contrast, self.min_contrast)
            return False

        density = edge_density(gray)
        if not self.min_edge_density <= density <= self.max_edge_density:
            logger.debug(
                "Rejected: edge density %.4f outside [%.4f, %.4f]",
                density,
                self.min_edge_density,
                self.max_edge_density,
            )
            return False
        return True


def edge_density(gray: np.ndarray) -> float:
    """Fraction of pixels marked as Canny edges."""
    edges = canny_edges(gray)
    return float(np.count_nonzero(edges) / edges.size)
