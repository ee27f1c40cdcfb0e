"""Error taxonomy shared by the ingest, classification, metrics and session layers.

Every error carries an ``ErrorKind`` so the session controller can record it on
the snapshot without inspecting exception types.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    INVALID_IMAGE = "invalid_image"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TIMEOUT = "timeout"
    MODEL_UNAVAILABLE = "model_unavailable"
    NO_SNAPSHOT_AVAILABLE = "no_snapshot_available"
    NOT_READY = "not_ready"


class EmbryoLensError(Exception):
    """Base class for all recoverable EmbryoLens errors."""

    kind: ErrorKind
    default_message: str = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# -- Ingest -------------------------------------------------------------------


class IngestError(EmbryoLensError):
    """Raised when an uploaded payload cannot become an image handle."""


class InvalidImageError(IngestError):
    kind = ErrorKind.INVALID_IMAGE
    default_message = "Invalid input - please upload a valid embryo image."


class UnsupportedFormatError(IngestError):
    kind = ErrorKind.UNSUPPORTED_FORMAT
    default_message = "Unsupported file type - please upload an image."


# -- Classification -----------------------------------------------------------


class ClassificationError(EmbryoLensError):
    """Raised when a validated image could not be classified."""


class ClassificationTimeoutError(ClassificationError):
    kind = ErrorKind.TIMEOUT
    default_message = "Classification timed out."


class ModelUnavailableError(ClassificationError):
    kind = ErrorKind.MODEL_UNAVAILABLE
    default_message = "Classification model is unavailable."


# -- Metrics ------------------------------------------------------------------


class MetricsError(EmbryoLensError):
    """Raised when an analysis report cannot be produced."""


class NoSnapshotAvailableError(MetricsError):
    kind = ErrorKind.NO_SNAPSHOT_AVAILABLE
    default_message = "Model analysis is not yet available."


# -- Session ------------------------------------------------------------------


class StateError(EmbryoLensError):
    """Raised when an event is not valid in the current session state."""


class NotReadyError(StateError):
    kind = ErrorKind.NOT_READY
    default_message = "Analysis is only available after a successful classification."
