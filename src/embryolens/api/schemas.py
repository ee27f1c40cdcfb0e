"""Pydantic response schemas for the EmbryoLens API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from embryolens.session.state import SessionSnapshot


class ClassProbabilityModel(BaseModel):
    """Probability assigned to a single label."""

    label: str
    probability: float = Field(ge=0.0, le=100.0, description="Percent (0-100)")


class PredictionResponse(BaseModel):
    """Classification of the current image."""

    predicted_class: str
    confidence: float = Field(ge=0.0, le=100.0)
    probabilities: list[ClassProbabilityModel] = Field(description="One entry per label, sorted descending")


class RocPointModel(BaseModel):
    fpr: float = Field(ge=0.0, le=1.0)
    tpr: float = Field(ge=0.0, le=1.0)


class AccuracyPointModel(BaseModel):
    epoch: int = Field(ge=1)
    accuracy: float = Field(ge=0.0, le=100.0)


class LossPointModel(BaseModel):
    epoch: int = Field(ge=1)
    loss: float = Field(ge=0.0)


class AnalysisMetricsResponse(BaseModel):
    """Aggregate model-quality report."""

    accuracy: float = Field(ge=0.0, le=100.0)
    labels: list[str] = Field(description="Axis labels of the confusion matrix")
    confusion_matrix: list[list[int]]
    class_counts: list[int]
    roc_data: list[RocPointModel]
    roc_auc: float = Field(ge=0.0, le=1.0)
    accuracy_history: list[AccuracyPointModel]
    loss_history: list[LossPointModel]


class ImageInfo(BaseModel):
    """Metadata of the image currently held by a session."""

    width: int
    height: int
    format: str
    mime_type: str
    digest: str


class SessionResponse(BaseModel):
    """Read-only view of a session after an event."""

    session_id: str
    state: str
    generation: int
    classification_pending: bool
    image: ImageInfo | None = None
    prediction: PredictionResponse | None = None
    metrics: AnalysisMetricsResponse | None = None
    error: str | None = None
    error_message: str | None = None

    @classmethod
    def from_snapshot(
        cls,
        session_id: str,
        snapshot: SessionSnapshot,
        labels: list[str],
        *,
        classification_pending: bool = False,
    ) -> SessionResponse:
        image = snapshot.image
        prediction = snapshot.prediction
        metrics = snapshot.metrics
        return cls(
            session_id=session_id,
            state=str(snapshot.state),
            generation=snapshot.generation,
            classification_pending=classification_pending,
            image=None
            if image is None
            else ImageInfo(
                width=image.width,
                height=image.height,
                format=image.format,
                mime_type=image.mime_type,
                digest=image.digest,
            ),
            prediction=None
            if prediction is None
            else PredictionResponse(
                predicted_class=str(prediction.predicted_class),
                confidence=prediction.confidence,
                probabilities=[
                    ClassProbabilityModel(label=str(entry.label), probability=entry.probability)
                    for entry in prediction.probabilities
                ],
            ),
            metrics=None
            if metrics is None
            else AnalysisMetricsResponse(
                accuracy=metrics.accuracy,
                labels=labels,
                confusion_matrix=[list(row) for row in metrics.confusion_matrix],
                class_counts=list(metrics.class_counts),
                roc_data=[RocPointModel(fpr=p.fpr, tpr=p.tpr) for p in metrics.roc_data],
                roc_auc=metrics.roc_auc,
                accuracy_history=[AccuracyPointModel(epoch=p.epoch, accuracy=p.accuracy) for p in metrics.accuracy_history],
                loss_history=[LossPointModel(epoch=p.epoch, loss=p.loss) for p in metrics.loss_history],
            ),
            error=None if snapshot.error is None else str(snapshot.error),
            error_message=snapshot.error_message,
        )


class LabelsResponse(BaseModel):
    """The fixed label set, in index order."""

    labels: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    classifier: str
    models_loaded: list[str]
    sessions: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    input_size: int
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
