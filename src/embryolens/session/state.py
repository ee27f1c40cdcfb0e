r"""Session state and the pure transition function.

``transition(snapshot, event)`` never mutates its input and performs no I/O;
the controller is the only place that applies events.

    idle -> validating -> analyzing -> classified -> analysis_shown
                      \-> invalid_image          \-> classification_failed

``UploadStarted`` is accepted from every state. Events stamped with an
older ``generation`` than the snapshot's are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from embryolens.errors import ErrorKind, NotReadyError

if TYPE_CHECKING:
    from embryolens.ml.image_classifier import PredictionResult
    from embryolens.ml.metrics import AnalysisMetrics
    from embryolens.ml.preprocessing import ImageHandle

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    VALIDATING = "validating"
    ANALYZING = "analyzing"
    CLASSIFIED = "classified"
    ANALYSIS_SHOWN = "analysis_shown"
    INVALID_IMAGE = "invalid_image"
    CLASSIFICATION_FAILED = "classification_failed"

    @property
    def is_error(self) -> bool:
        return self in (SessionState.INVALID_IMAGE, SessionState.CLASSIFICATION_FAILED)


ANALYSIS_READY_STATES = frozenset({SessionState.CLASSIFIED, SessionState.ANALYSIS_SHOWN})


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything the presentation layer may read about a session."""

    state: SessionState = SessionState.IDLE
    generation: int = 0
    image: ImageHandle | None = None
    prediction: PredictionResult | None = None
    metrics: AnalysisMetrics | None = None
    error: ErrorKind | None = None
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadStarted:
    generation: int


@dataclass(frozen=True)
class IngestSucceeded:
    generation: int
    image: ImageHandle


@dataclass(frozen=True)
class IngestFailed:
    generation: int
    error: ErrorKind
    message: str


@dataclass(frozen=True)
class ClassificationSucceeded:
    generation: int
    prediction: PredictionResult


@dataclass(frozen=True)
class ClassificationFailed:
    generation: int
    error: ErrorKind
    message: str


@dataclass(frozen=True)
class AnalysisCompleted:
    metrics: AnalysisMetrics


@dataclass(frozen=True)
class AnalysisUnavailable:
    error: ErrorKind
    message: str


SessionEvent = (
    UploadStarted
    | IngestSucceeded
    | IngestFailed
    | ClassificationSucceeded
    | ClassificationFailed
    | AnalysisCompleted
    | AnalysisUnavailable
)


def ensure_analysis_ready(snapshot: SessionSnapshot) -> None:
    """Raise ``NotReadyError`` unless an analysis may be shown."""
    if snapshot.state not in ANALYSIS_READY_STATES:
        raise NotReadyError(f"Cannot show analysis while {snapshot.state}.")


def transition(snapshot: SessionSnapshot, event: SessionEvent) -> SessionSnapshot:
    """Apply ``event`` to ``snapshot`` and return the next snapshot.

    Raises:
        NotReadyError: If an analysis event arrives outside classified/analysis_shown.
    """
    if isinstance(event, UploadStarted):
        if event.generation <= snapshot.generation:
            return _stale(snapshot, event)
        return SessionSnapshot(state=SessionState.VALIDATING, generation=event.generation)

    if isinstance(event, IngestSucceeded):
        if not _expects(snapshot, event.generation, SessionState.VALIDATING):
            return _stale(snapshot, event)
        return replace(snapshot, state=SessionState.ANALYZING, image=event.image)

    if isinstance(event, IngestFailed):
        if not _expects(snapshot, event.generation, SessionState.VALIDATING):
            return _stale(snapshot, event)
        return replace(
            snapshot,
            state=SessionState.INVALID_IMAGE,
            image=None,
            prediction=None,
            metrics=None,
            error=event.error,
            error_message=event.message,
        )

    if isinstance(event, ClassificationSucceeded):
        if not _expects(snapshot, event.generation, SessionState.ANALYZING):
            return _stale(snapshot, event)
        return replace(snapshot, state=SessionState.CLASSIFIED, prediction=event.prediction)

    if isinstance(event, ClassificationFailed):
        if not _expects(snapshot, event.generation, SessionState.ANALYZING):
            return _stale(snapshot, event)
        return replace(
            snapshot,
            state=SessionState.CLASSIFICATION_FAILED,
            prediction=None,
            error=event.error,
            error_message=event.message,
        )

    if isinstance(event, AnalysisCompleted):
        ensure_analysis_ready(snapshot)
        return replace(
            snapshot,
            state=SessionState.ANALYSIS_SHOWN,
            metrics=event.metrics,
            error=None,
            error_message=None,
        )

    if isinstance(event, AnalysisUnavailable):
        ensure_analysis_ready(snapshot)
        return replace(snapshot, error=event.error, error_message=event.message)

    raise TypeError(f"Unknown session event: {event!r}")


def _expects(snapshot: SessionSnapshot, generation: int, state: SessionState) -> bool:
    return generation == snapshot.generation and snapshot.state is state


def _stale(snapshot: SessionSnapshot, event: SessionEvent) -> SessionSnapshot:
    logger.debug("Ignoring %s in state %s (generation %d)", type(event).__name__, snapshot.state, snapshot.generation)
    return snapshot
