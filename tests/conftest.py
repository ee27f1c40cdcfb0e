"""Shared fixtures: synthetic micrographs, settings and deterministic strategies."""

from __future__ import annotations

import io
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from embryolens.config import Settings
from embryolens.labels import NUM_LABELS
from embryolens.ml.image_classifier import ClassificationEngine
from embryolens.ml.inference import InferencePool
from embryolens.ml.metrics import MetricsSynthesizer, SyntheticMetricsSource
from embryolens.ml.preprocessing import ImageIngestor
from embryolens.ml.validity import AcceptAllPolicy
from embryolens.session.controller import SessionController

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray

    from embryolens.ml.inference import CancellationToken
    from embryolens.ml.metrics import MetricsSource
    from embryolens.ml.preprocessing import ImageHandle
    from embryolens.ml.validity import ValidityPolicy


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def embryo_pixels(size: int = 128, radius: int = 40, nucleus: int = 15) -> NDArray[np.uint8]:
    """Gray culture medium with a darker cell and a darker nucleus."""
    yy, xx = np.mgrid[:size, :size]
    distance = np.hypot(yy - size / 2, xx - size / 2)
    gray = np.full((size, size), 200, dtype=np.uint8)
    gray[distance <= radius] = 120
    gray[distance <= nucleus] = 70
    return np.repeat(gray[..., np.newaxis], 3, axis=2)


def encode(pixels: NDArray[np.uint8], fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture()
def embryo_png() -> bytes:
    return encode(embryo_pixels())


@pytest.fixture()
def other_embryo_png() -> bytes:
    return encode(embryo_pixels(radius=48, nucleus=20))


@pytest.fixture()
def embryo_jpeg() -> bytes:
    return encode(embryo_pixels(), fmt="JPEG")


@pytest.fixture()
def blank_png() -> bytes:
    return encode(np.full((128, 128, 3), 180, dtype=np.uint8))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ScriptedStrategy:
    """Returns fixed scores per image digest and can hold an image until released."""

    name = "scripted"
    emits_logits = False

    def __init__(self, default: list[float] | None = None) -> None:
        self.default = default or [7.0, 6.0, 5.0, 4.0, 3.0, 2.0, 1.0]
        self.scores: dict[str, list[float]] = {}
        self.gates: dict[str, threading.Event] = {}
        self.calls: list[str] = []
        self.cancelled: list[str] = []

    def hold(self, digest: str) -> threading.Event:
        gate = threading.Event()
        self.gates[digest] = gate
        return gate

    def score(self, handle: ImageHandle, token: CancellationToken) -> NDArray[np.float64]:
        self.calls.append(handle.digest)
        gate = self.gates.get(handle.digest)
        if gate is not None:
            while not gate.wait(0.01):
                if token.cancelled:
                    self.cancelled.append(handle.digest)
                    break
        return np.asarray(self.scores.get(handle.digest, self.default), dtype=np.float64)


class FailingStrategy:
    name = "failing"
    emits_logits = True

    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def score(self, handle: ImageHandle, token: CancellationToken) -> NDArray[np.float64]:
        raise self.exc


def peaked(index: int) -> list[float]:
    scores = [1.0] * NUM_LABELS
    scores[index] = 10.0
    return scores


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "classifier": "random",
        "models_dir": "/tmp/embryolens_test_models",
        "max_concurrent": 2,
        "seed": 0,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(make_settings())
    yield inference_pool
    inference_pool.shutdown()


def make_controller(
    strategy: object,
    pool: InferencePool,
    *,
    policy: ValidityPolicy | None = None,
    source: MetricsSource | None = None,
    timeout: float = 5.0,
) -> SessionController:
    ingestor = ImageIngestor(policy or AcceptAllPolicy(), max_file_size=10_000_000, max_image_pixels=10_000_000)
    engine = ClassificationEngine(strategy, pool, timeout=timeout)  # type: ignore[arg-type]
    synthesizer = MetricsSynthesizer(source or SyntheticMetricsSource(seed=0))
    return SessionController(ingestor, engine, synthesizer, session_id="test")
