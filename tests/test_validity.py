"""Tests for the domain validity policies."""

from __future__ import annotations

import numpy as np
import pytest

from embryolens.ml.preprocessing import ImageHandle
from embryolens.ml.validity import (
    AcceptAllPolicy,
    HeuristicValidityPolicy,
    RandomRejectionPolicy,
    edge_density,
)

from conftest import embryo_pixels


def _handle(pixels: np.ndarray) -> ImageHandle:
    return ImageHandle(pixels=pixels, mime_type="image/png", format="PNG", digest="0" * 64)


class TestHeuristicValidityPolicy:
    def test_accepts_embryo_like_image(self) -> None:
        assert HeuristicValidityPolicy()(_handle(embryo_pixels())) is True

    def test_rejects_flat_image(self) -> None:
        flat = np.full((128, 128, 3), 180, dtype=np.uint8)
        assert HeuristicValidityPolicy()(_handle(flat)) is False

    def test_rejects_small_image(self) -> None:
        assert HeuristicValidityPolicy(min_side=64)(_handle(embryo_pixels(size=32, radius=10, nucleus=4))) is False

    def test_rejects_sparse_edges(self) -> None:
        policy = HeuristicValidityPolicy(min_edge_density=0.5, max_edge_density=0.9)
        assert policy(_handle(embryo_pixels())) is False

    def test_rejects_invalid_window(self) -> None:
        with pytest.raises(ValueError):
            HeuristicValidityPolicy(min_edge_density=0.5, max_edge_density=0.1)

    def test_edge_density_of_embryo_is_moderate(self) -> None:
        density = edge_density(embryo_pixels()[..., 0])
        assert 0.005 < density < 0.2

    def test_edge_density_of_flat_image_is_zero(self) -> None:
        assert edge_density(np.zeros((16, 16), dtype=np.uint8)) == 0.0


class TestRandomRejectionPolicy:
    def test_rate_zero_accepts_everything(self) -> None:
        policy = RandomRejectionPolicy(rate=0.0, seed=1)
        handle = _handle(embryo_pixels())
        assert all(policy(handle) for _ in range(200))

    def test_rate_one_rejects_everything(self) -> None:
        policy = RandomRejectionPolicy(rate=1.0, seed=1)
        handle = _handle(embryo_pixels())
        assert not any(policy(handle) for _ in range(200))

    def test_default_rate_rejects_about_a_tenth(self) -> None:
        policy = RandomRejectionPolicy(seed=42)
        handle = _handle(embryo_pixels())
        rejected = sum(not policy(handle) for _ in range(2000))
        assert 140 <= rejected <= 260

    def test_seeded_policies_agree(self) -> None:
        handle = _handle(embryo_pixels())
        first = RandomRejectionPolicy(rate=0.5, seed=7)
        second = RandomRejectionPolicy(rate=0.5, seed=7)
        assert [first(handle) for _ in range(50)] == [second(handle) for _ in range(50)]

    @pytest.mark.parametrize("rate", [-0.1, 1.5])
    def test_rate_must_be_a_probability(self, rate: float) -> None:
        with pytest.raises(ValueError):
            RandomRejectionPolicy(rate=rate)


def test_accept_all_policy() -> None:
    assert AcceptAllPolicy()(_handle(np.zeros((1, 1, 3), dtype=np.uint8))) is True
