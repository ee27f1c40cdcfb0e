"""Embryo stage classification.

A ``ClassificationStrategy`` produces one raw score per label; the
``ClassificationEngine`` runs it on the inference pool under a deadline and
turns the scores into a ``PredictionResult`` whose probabilities always sum
to 100.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image

from embryolens.errors import ClassificationTimeoutError, ModelUnavailableError
from embryolens.labels import LABELS, NUM_LABELS, EmbryoLabel
from embryolens.ml.model_manager import ORT_ERRORS

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from embryolens.ml.inference import CancellationToken, InferencePool
    from embryolens.ml.model_manager import ModelManager
    from embryolens.ml.preprocessing import ImageHandle

logger = logging.getLogger(__name__)

PROBABILITY_TOLERANCE: float = 0.01

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


@dataclass(frozen=True)
class ClassProbability:
    """Probability (in percent) assigned to a single label."""

    label: EmbryoLabel
    probability: float


@dataclass(frozen=True)
class PredictionResult:
    """Outcome of classifying one image.

    ``probabilities`` holds one entry per label, sorted descending; the
    predicted class and confidence mirror the first entry.
    """

    predicted_class: EmbryoLabel
    confidence: float
    probabilities: tuple[ClassProbability, ...]

    def __post_init__(self) -> None:
        labels = [entry.label for entry in self.probabilities]
        if len(labels) != NUM_LABELS or set(labels) != set(LABELS):
            raise ValueError("probabilities must contain exactly one entry per label")
        values = [entry.probability for entry in self.probabilities]
        if any(v < 0.0 or v > 100.0 for v in values):
            raise ValueError("probabilities must be within [0, 100]")
        if abs(math.fsum(values) - 100.0) > PROBABILITY_TOLERANCE:
            raise ValueError(f"probabilities sum to {math.fsum(values):.4f}, expected 100")
        if any(a < b for a, b in zip(values, values[1:])):
            raise ValueError("probabilities must be sorted descending")
        first = self.probabilities[0]
        if self.predicted_class != first.label or self.confidence != first.probability:
            raise ValueError("predicted class must match the most probable entry")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def to_percentages(scores: Sequence[float] | NDArray[np.floating], *, logits: bool = False) -> NDArray[np.float64]:
    """Normalize raw per-label scores to non-negative percentages summing to 100.

    Logits go through a numerically stable softmax. Plain scores must be
    non-negative and are scaled proportionally; an all-zero vector becomes
    uniform.
    """
    raw = np.asarray(scores, dtype=np.float64).reshape(-1)
    if raw.shape != (NUM_LABELS,):
        raise ValueError(f"expected {NUM_LABELS} scores, got {raw.shape[0]}")
    if not np.all(np.isfinite(raw)):
        raise ValueError("scores must be finite")

    if logits:
        shifted = np.exp(raw - raw.max())
        weights = shifted / shifted.sum()
    else:
        if np.any(raw < 0):
            raise ValueError("non-logit scores must be non-negative")
        total = raw.sum()
        weights = raw / total if total > 0 else np.full(NUM_LABELS, 1.0 / NUM_LABELS)
    return weights * 100.0


def build_prediction(scores: Sequence[float] | NDArray[np.floating], *, logits: bool = False) -> PredictionResult:
    """Turn raw per-label scores into a ``PredictionResult``.

    Ties keep ``LABELS`` order, so the lower label index wins.
    """
    percentages = to_percentages(scores, logits=logits)
    order = sorted(range(NUM_LABELS), key=lambda idx: (-percentages[idx], idx))
    probabilities = tuple(ClassProbability(label=LABELS[idx], probability=float(percentages[idx])) for idx in order)
    return PredictionResult(
        predicted_class=probabilities[0].label,
        confidence=probabilities[0].probability,
        probabilities=probabilities,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ClassificationStrategy(Protocol):
    """Protocol for embryo stage scoring backends."""

    @property
    def name(self) -> str:
        """Return the strategy identifier string."""
        ...

    @property
    def emits_logits(self) -> bool:
        """Whether ``score`` returns unnormalized logits rather than non-negative scores."""
        ...

    def score(self, handle: ImageHandle, token: CancellationToken) -> NDArray[np.float64]:
        """Score an image against every label.

        Args:
            handle: The decoded image.
            token: Cancellation flag; long-running work should stop early once set.

        Returns:
            One raw score per label, in ``LABELS`` order.
        """
        ...


class RandomScoreStrategy:
    """Demo backend drawing uniform random scores, optionally after a simulated delay."""

    name = "random"
    emits_logits = False

    def __init__(self, seed: int | None = None, latency: float = 0.0) -> None:
        self._rng = np.random.default_rng(seed)
        self._latency = latency
        self._lock = threading.Lock()

    def score(self, handle: ImageHandle, token: CancellationToken) -> NDArray[np.float64]:
        if self._latency > 0 and token.wait(self._latency):
            return np.zeros(NUM_LABELS)
        with self._lock:
            return self._rng.random(NUM_LABELS) * 100.0


class OnnxClassificationStrategy:
    """Scores images with an ONNX embryo-stage classifier from the model manager."""

    emits_logits = True

    def __init__(self, model_manager: ModelManager, model_name: str, input_size: int = 224) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._input_size = input_size

    @property
    def name(self) -> str:
        return self._model_name

    def preprocess(self, handle: ImageHandle) -> NDArray[np.float32]:
        """Resize to the model input and apply ImageNet normalization (1x3xSxS)."""
        size = (self._input_size, self._input_size)
        resized = Image.fromarray(handle.pixels).resize(size, Image.Resampling.BILINEAR)
        array = np.asarray(resized, dtype=np.float32) / 255.0
        array = (array - IMAGENET_MEAN) / IMAGENET_STD
        return np.ascontiguousarray(array.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    def score(self, handle: ImageHandle, token: CancellationToken) -> NDArray[np.float64]:
        try:
            session = self._model_manager.get_session(self._model_name)
        except (KeyError, OSError, RuntimeError, ValueError, *ORT_ERRORS) as exc:
            raise ModelUnavailableError(f"Model '{self._model_name}' could not be loaded: {exc}") from exc

        token.raise_if_cancelled()
        tensor = self.preprocess(handle)
        input_name = session.get_inputs()[0].name
        try:
            outputs = session.run(None, {input_name: tensor})
        except (RuntimeError, ValueError, *ORT_ERRORS) as exc:
            raise ModelUnavailableError(f"Inference with '{self._model_name}' failed: {exc}") from exc

        logits = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if logits.shape != (NUM_LABELS,):
            raise ModelUnavailableError(
                f"Model '{self._model_name}' produced {logits.shape[0]} outputs, expected {NUM_LABELS}"
            )
        return logits


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ClassificationEngine:
    """Runs a strategy on the inference pool and enforces the result contract."""

    def __init__(self, strategy: ClassificationStrategy, pool: InferencePool, *, timeout: float) -> None:
        self._strategy = strategy
        self._pool = pool
        self._timeout = timeout

    @property
    def strategy(self) -> ClassificationStrategy:
        return self._strategy

    async def classify(self, handle: ImageHandle, token: CancellationToken) -> PredictionResult:
        """Classify an image.

        Raises:
            ClassificationTimeoutError: If scoring exceeds the configured deadline.
            ModelUnavailableError: If the backend cannot be reached or fails.
            asyncio.CancelledError: If ``token`` was cancelled by a newer request.
        """
        token.raise_if_cancelled()
        try:
            scores = await asyncio.wait_for(
                self._pool.run(self._strategy.score, handle, token),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            token.cancel()
            logger.warning("Classification with %s exceeded %.1fs", self._strategy.name, self._timeout)
            raise ClassificationTimeoutError(f"Classification exceeded {self._timeout:g}s deadline.") from exc
        except ModelUnavailableError:
            raise
        except Exception as exc:
            # Cancellation is a BaseException and passes through untouched.
            logger.warning("Classification backend %s failed: %r", self._strategy.name, exc)
            raise ModelUnavailableError(str(exc) or type(exc).__name__) from exc

        token.raise_if_cancelled()
        try:
            result = build_prediction(scores, logits=self._strategy.emits_logits)
        except ValueError as exc:
            logger.warning("Classification backend %s returned unusable scores: %s", self._strategy.name, exc)
            raise ModelUnavailableError(f"Model returned unusable scores: {exc}") from exc
        logger.debug("Classified %s as %s (%.1f%%)", handle.digest[:12], result.predicted_class, result.confidence)
        return result
