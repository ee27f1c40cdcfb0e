"""Aggregate model-quality reporting.

A ``MetricsSource`` supplies a ``ModelSnapshot`` (held-out labels, per-class
scores and the training curves of the evaluated model); ``compute_metrics``
turns it into an ``AnalysisMetrics`` report.
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from sklearn.metrics import auc, confusion_matrix, roc_curve
from sklearn.preprocessing import label_binarize

from embryolens.errors import NoSnapshotAvailableError
from embryolens.labels import NUM_LABELS

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Held-out evaluation counts of the reference model: rows are true labels,
# columns predicted labels, both in LABELS order.
REFERENCE_CONFUSION_MATRIX: tuple[tuple[int, ...], ...] = (
    (45, 3, 2, 1, 0, 1, 0),
    (2, 38, 1, 2, 1, 0, 1),
    (1, 2, 42, 3, 1, 0, 1),
    (0, 1, 2, 41, 2, 1, 0),
    (1, 0, 1, 1, 35, 2, 3),
    (0, 1, 0, 0, 1, 39, 2),
    (1, 0, 0, 1, 2, 1, 38),
)


@dataclass(frozen=True)
class RocPoint:
    fpr: float
    tpr: float


@dataclass(frozen=True)
class AccuracyPoint:
    epoch: int
    accuracy: float


@dataclass(frozen=True)
class LossPoint:
    epoch: int
    loss: float


@dataclass(frozen=True)
class AnalysisMetrics:
    """Read-only model-quality report."""

    accuracy: float
    confusion_matrix: tuple[tuple[int, ...], ...]
    class_counts: tuple[int, ...]
    roc_data: tuple[RocPoint, ...]
    roc_auc: float
    accuracy_history: tuple[AccuracyPoint, ...]
    loss_history: tuple[LossPoint, ...]


@dataclass(frozen=True)
class ModelSnapshot:
    """Evaluation data for one model.

    ``y_true`` holds label indices (N,), ``y_score`` per-label scores (N, 7).
    ``accuracy_history`` (percent) and ``loss_history`` are indexed by epoch
    starting at 1.
    """

    y_true: NDArray[np.int64] = field(repr=False)
    y_score: NDArray[np.float64] = field(repr=False)
    accuracy_history: tuple[float, ...] = ()
    loss_history: tuple[float, ...] = ()

    @property
    def class_counts(self) -> NDArray[np.int64]:
        return np.bincount(self.y_true, minlength=NUM_LABELS)


class MetricsSource(Protocol):
    """Supplies the snapshot an analysis report is computed from."""

    def load(self) -> ModelSnapshot | None:
        """Return the current snapshot, or ``None`` if no evaluation data exists yet."""
        ...


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def compute_metrics(snapshot: ModelSnapshot | None) -> AnalysisMetrics:
    """Build an ``AnalysisMetrics`` report from an evaluation snapshot.

    Raises:
        NoSnapshotAvailableError: If there is no snapshot or it holds no samples.
        ValueError: If the snapshot is malformed.
    """
    if snapshot is None or snapshot.y_true.size == 0:
        raise NoSnapshotAvailableError()

    y_true = np.asarray(snapshot.y_true, dtype=np.int64).reshape(-1)
    y_score = np.asarray(snapshot.y_score, dtype=np.float64)
    _check_snapshot(y_true, y_score)

    # argmax keeps the first maximum, so the lower label index wins ties
    y_pred = np.argmax(y_score, axis=1)
    labels = list(range(NUM_LABELS))
    matrix = confusion_matrix(y_true, y_pred, labels=labels)
    class_counts = np.bincount(y_true, minlength=NUM_LABELS)
    if not np.array_equal(matrix.sum(axis=1), class_counts):
        raise ValueError("confusion matrix rows do not match per-class sample counts")

    accuracy = float(np.trace(matrix) / y_true.size * 100.0)
    roc_data, roc_area = _micro_roc(y_true, y_score)

    return AnalysisMetrics(
        accuracy=accuracy,
        confusion_matrix=tuple(tuple(int(v) for v in row) for row in matrix),
        class_counts=tuple(int(v) for v in class_counts),
        roc_data=roc_data,
        roc_auc=roc_area,
        accuracy_history=tuple(
            AccuracyPoint(epoch=epoch, accuracy=value) for epoch, value in _epochs(snapshot.accuracy_history, "accuracy")
        ),
        loss_history=tuple(LossPoint(epoch=epoch, loss=value) for epoch, value in _epochs(snapshot.loss_history, "loss")),
    )


def _check_snapshot(y_true: NDArray[np.int64], y_score: NDArray[np.float64]) -> None:
    if y_score.ndim != 2 or y_score.shape != (y_true.size, NUM_LABELS):
        raise ValueError(f"y_score must have shape ({y_true.size}, {NUM_LABELS}), got {y_score.shape}")
    if y_true.min() < 0 or y_true.max() >= NUM_LABELS:
        raise ValueError("y_true contains label indices outside the label set")
    if not np.all(np.isfinite(y_score)):
        raise ValueError("y_score must be finite")


def _micro_roc(y_true: NDArray[np.int64], y_score: NDArray[np.float64]) -> tuple[tuple[RocPoint, ...], float]:
    """Micro-averaged one-vs-rest ROC curve anchored at (0, 0) and (1, 1)."""
    binarized = label_binarize(y_true, classes=list(range(NUM_LABELS)))
    fpr, tpr, _ = roc_curve(binarized.ravel(), y_score.ravel())
    fpr = np.clip(np.maximum.accumulate(fpr), 0.0, 1.0)
    tpr = np.clip(tpr, 0.0, 1.0)

    points = [RocPoint(fpr=float(f), tpr=float(t)) for f, t in zip(fpr, tpr)]
    if points[0] != RocPoint(0.0, 0.0):
        points.insert(0, RocPoint(0.0, 0.0))
    if points[-1] != RocPoint(1.0, 1.0):
        points.append(RocPoint(1.0, 1.0))
    area = float(np.clip(auc([p.fpr for p in points], [p.tpr for p in points]), 0.0, 1.0))
    return tuple(points), area


def _epochs(values: Sequence[float], kind: str) -> list[tuple[int, float]]:
    history = [float(v) for v in values]
    if kind == "accuracy" and any(not 0.0 <= v <= 100.0 for v in history):
        raise ValueError("accuracy history values must be within [0, 100]")
    if kind == "loss" and any(v < 0.0 for v in history):
        raise ValueError("loss history values must be non-negative")
    return list(enumerate(history, start=1))


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class EmptyMetricsSource:
    """A source with no evaluation data."""

    def load(self) -> ModelSnapshot | None:
        return None


class SyntheticMetricsSource:
    """Demo source producing plausible, seeded evaluation data.

    Samples are laid out so that the arg-max predictions reproduce
    ``confusion`` exactly; the training curves improve over ``epochs``
    with a little noise.
    """

    def __init__(
        self,
        *,
        seed: int | None = None,
        epochs: int = 50,
        confusion: Sequence[Sequence[int]] = REFERENCE_CONFUSION_MATRIX,
    ) -> None:
        matrix = np.asarray(confusion, dtype=np.int64)
        if matrix.shape != (NUM_LABELS, NUM_LABELS) or np.any(matrix < 0):
            raise ValueError(f"confusion must be a non-negative {NUM_LABELS}x{NUM_LABELS} matrix")
        if epochs < 1:
            raise ValueError("epochs must be at least 1")
        self._seed = seed
        self._epochs = epochs
        self._confusion = matrix

    def load(self) -> ModelSnapshot | None:
        rng = np.random.default_rng(self._seed)
        y_true: list[int] = []
        rows: list[NDArray[np.float64]] = []
        for true_idx in range(NUM_LABELS):
            for pred_idx in range(NUM_LABELS):
                for _ in range(int(self._confusion[true_idx, pred_idx])):
                    rows.append(_peaked_scores(rng, pred_idx, true_idx))
                    y_true.append(true_idx)

        if not y_true:
            return None

        steps = np.arange(self._epochs, dtype=np.float64)
        accuracy = np.minimum(90.0, 60.0 + steps * 0.6 + rng.random(self._epochs) * 5.0)
        loss = np.maximum(0.1, 2.5 - steps * 0.045 + rng.random(self._epochs) * 0.1)
        return ModelSnapshot(
            y_true=np.asarray(y_true, dtype=np.int64),
            y_score=np.vstack(rows),
            accuracy_history=tuple(float(v) for v in accuracy),
            loss_history=tuple(float(v) for v in loss),
        )


def _peaked_scores(rng: np.random.Generator, peak: int, true_idx: int) -> NDArray[np.float64]:
    """Softmax-like score vector whose strict maximum sits at ``peak``.

    Misclassified samples keep some mass on their true label so the ROC
    curve reflects partial discrimination.
    """
    scores = rng.random(NUM_LABELS) * 0.3
    if peak != true_idx:
        scores[true_idx] += rng.uniform(0.3, 0.6)
    scores[peak] = scores.max() + rng.uniform(0.2, 1.0)
    return scores / scores.sum()


class EvaluationFileSource:
    """Loads a recorded evaluation run from an ``.npz`` archive.

    Expected arrays: ``y_true``, ``y_score``, ``accuracy_history``,
    ``loss_history``. A missing file means no evaluation has been recorded.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> ModelSnapshot | None:
        if not self._path.is_file():
            logger.info("No evaluation snapshot at %s", self._path)
            return None
        try:
            with np.load(self._path, allow_pickle=False) as archive:
                return ModelSnapshot(
                    y_true=np.asarray(archive["y_true"], dtype=np.int64),
                    y_score=np.asarray(archive["y_score"], dtype=np.float64),
                    accuracy_history=tuple(float(v) for v in archive["accuracy_history"]),
                    loss_history=tuple(float(v) for v in archive["loss_history"]),
                )
        except KeyError as exc:
            raise ValueError(f"Evaluation snapshot {self._path} is missing {exc}") from None
        except (zipfile.BadZipFile, EOFError) as exc:
            raise ValueError(f"Evaluation snapshot {self._path} is corrupt: {exc}") from exc


class MetricsSynthesizer:
    """Produces analysis reports from a configured ``MetricsSource``."""

    def __init__(self, source: MetricsSource) -> None:
        self._source = source

    def compute(self) -> AnalysisMetrics:
        """Load the current snapshot and compute its report.

        Raises:
            NoSnapshotAvailableError: If the source has no usable evaluation data.
        """
        try:
            metrics = compute_metrics(self._source.load())
        except (OSError, ValueError) as exc:
            logger.warning("Evaluation snapshot is unusable: %s", exc)
            raise NoSnapshotAvailableError(f"Evaluation snapshot is unusable: {exc}") from exc
        logger.debug(
            "Computed metrics: accuracy=%.2f%%, auc=%.3f, %d epochs",
            metrics.accuracy,
            metrics.roc_auc,
            len(metrics.accuracy_history),
        )
        return metrics
