"""Wiring: turn ``Settings`` into validity policies, strategies and sources."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from embryolens.ml.image_classifier import ClassificationEngine, OnnxClassificationStrategy, RandomScoreStrategy
from embryolens.ml.inference import InferencePool
from embryolens.ml.metrics import EmptyMetricsSource, EvaluationFileSource, MetricsSynthesizer, SyntheticMetricsSource
from embryolens.ml.model_manager import OnnxModelManager, get_model_spec
from embryolens.ml.preprocessing import ImageIngestor
from embryolens.ml.validity import AcceptAllPolicy, HeuristicValidityPolicy, RandomRejectionPolicy
from embryolens.session.controller import SessionController

if TYPE_CHECKING:
    from embryolens.config import Settings
    from embryolens.ml.image_classifier import ClassificationStrategy
    from embryolens.ml.metrics import MetricsSource
    from embryolens.ml.validity import ValidityPolicy

logger = logging.getLogger(__name__)


def build_validity_policy(settings: Settings) -> ValidityPolicy:
    if settings.validity_policy == "accept_all":
        return AcceptAllPolicy()
    if settings.validity_policy == "random":
        return RandomRejectionPolicy(rate=settings.invalid_rate, seed=settings.seed)
    return HeuristicValidityPolicy(
        min_side=settings.min_image_side,
        min_contrast=settings.min_contrast,
        min_edge_density=settings.min_edge_density,
        max_edge_density=settings.max_edge_density,
    )


def build_strategy(settings: Settings, model_manager: OnnxModelManager | None) -> ClassificationStrategy:
    if settings.classifier == "onnx":
        if model_manager is None:
            raise ValueError("The onnx classifier requires a model manager")
        spec = get_model_spec(settings.model_name)
        return OnnxClassificationStrategy(model_manager, spec.name, input_size=spec.input_size)
    return RandomScoreStrategy(seed=settings.seed, latency=settings.simulated_latency_ms / 1000.0)


def build_metrics_source(settings: Settings) -> MetricsSource:
    if settings.metrics_source == "none":
        return EmptyMetricsSource()
    if settings.metrics_source == "file":
        if not settings.evaluation_path:
            raise ValueError("EMBRYOLENS_EVALUATION_PATH is required when metrics_source is 'file'")
        return EvaluationFileSource(settings.evaluation_path)
    return SyntheticMetricsSource(seed=settings.seed, epochs=settings.history_epochs)


@dataclass
class Services:
    """Process-wide components shared by every session."""

    settings: Settings
    pool: InferencePool
    model_manager: OnnxModelManager | None
    ingestor: ImageIngestor
    engine: ClassificationEngine
    synthesizer: MetricsSynthesizer

    def new_controller(self, session_id: str = "") -> SessionController:
        return SessionController(self.ingestor, self.engine, self.synthesizer, session_id=session_id)

    def shutdown(self) -> None:
        if self.model_manager is not None:
            self.model_manager.shutdown()
        self.pool.shutdown()


def build_services(settings: Settings) -> Services:
    """Create the shared pool, model manager, ingestor, engine and synthesizer."""
    model_manager = OnnxModelManager(settings) if settings.classifier == "onnx" else None
    pool = InferencePool(settings)
    strategy = build_strategy(settings, model_manager)
    ingestor = ImageIngestor(
        build_validity_policy(settings),
        max_file_size=settings.max_file_size,
        max_image_pixels=settings.max_image_pixels,
    )
    engine = ClassificationEngine(strategy, pool, timeout=settings.classification_timeout_ms / 1000.0)
    synthesizer = MetricsSynthesizer(build_metrics_source(settings))
    logger.info(
        "Services ready (classifier=%s, validity=%s, metrics=%s)",
        strategy.name,
        settings.validity_policy,
        settings.metrics_source,
    )
    return Services(
        settings=settings,
        pool=pool,
        model_manager=model_manager,
        ingestor=ingestor,
        engine=engine,
        synthesizer=synthesizer,
    )
