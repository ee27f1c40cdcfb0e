"""Embryo-stage ONNX classifiers: registry, download, loading and eviction.

Every model served here must take one ``1x3xSxS`` float image (``S`` is the
registered input size; dynamic dimensions are accepted) and emit one score per
label in ``LABELS`` order. A model that does not is rejected when it is loaded,
before any upload reaches it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    EPFail,
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoModel,
    NoSuchFile,
    RuntimeException,
)

from embryolens.labels import NUM_LABELS

if TYPE_CHECKING:
    from embryolens.config import Settings

logger = logging.getLogger(__name__)

# onnxruntime's native errors derive from Exception, not from RuntimeError.
ORT_ERRORS: tuple[type[Exception], ...] = (
    EPFail,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoModel,
    NoSuchFile,
    RuntimeException,
)


class IncompatibleModelError(ValueError):
    """The model's inputs or outputs do not fit the embryo-stage contract."""


class ModelManager(Protocol):
    """What the classification strategy and the service need from a model store."""

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a loaded session that satisfies the model contract."""
        ...

    def get_loaded_models(self) -> list[str]: ...

    def unload_idle_models(self) -> None: ...

    def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Where an embryo-stage classifier lives and what image size it takes."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    input_size: int
    license: str

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return (1, 3, self.input_size, self.input_size)


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(
            name="embryo_stage_effnet_b0",
            repo_id="embryolens/embryo-stage-classifiers",
            filename="effnet_b0.onnx",
            subfolder=None,
            input_size=224,
            license="Apache-2.0",
        ),
        ModelSpec(
            name="embryo_stage_resnet50",
            repo_id="embryolens/embryo-stage-classifiers",
            filename="resnet50.onnx",
            subfolder=None,
            input_size=224,
            license="Apache-2.0",
        ),
        ModelSpec(
            name="embryo_stage_vit_b16",
            repo_id="embryolens/embryo-stage-classifiers",
            filename="vit_b16.onnx",
            subfolder="vit",
            input_size=384,
            license="CC-BY-NC-4.0",
        ),
    )
}


def get_model_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


def check_model_contract(spec: ModelSpec, session: InferenceSession) -> None:
    """Verify that ``session`` takes one image of ``spec.input_shape`` and scores every label.

    Raises:
        IncompatibleModelError: If an input or output dimension is fixed to another value.
    """
    inputs = session.get_inputs()
    if len(inputs) != 1:
        raise IncompatibleModelError(f"Model '{spec.name}' declares {len(inputs)} inputs, expected 1")
    shape = list(inputs[0].shape)
    if len(shape) != 4 or not all(_fits(dim, want) for dim, want in zip(shape, spec.input_shape)):
        size = spec.input_size
        raise IncompatibleModelError(f"Model '{spec.name}' input shape {shape} does not accept 1x3x{size}x{size}")

    outputs = session.get_outputs()
    out_shape = list(outputs[0].shape) if outputs else []
    if not out_shape or not _fits(out_shape[-1], NUM_LABELS):
        raise IncompatibleModelError(
            f"Model '{spec.name}' output shape {out_shape} does not score {NUM_LABELS} labels"
        )


def _fits(dim: object, want: int) -> bool:
    # Symbolic (str) and unknown (None) dimensions are resolved at run time.
    return not isinstance(dim, int) or dim == want


# ---------------------------------------------------------------------------
# Runtime configuration
# ---------------------------------------------------------------------------


def execution_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """Providers for the configured device, always falling back to CPU."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass
class _LoadedModel:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Fetches registered classifiers from the Hub and keeps verified sessions warm."""

    def __init__(self, settings: Settings) -> None:
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self._ttl = settings.model_ttl
        self._providers = execution_providers(settings)
        self._options = session_options(settings)

        self._lock = threading.Lock()
        self._loaded: dict[str, _LoadedModel] = {}
        self._paths: dict[str, Path] = {}

    def ensure_downloaded(self, model_name: str) -> Path:
        """Local path of the model file, downloading it on first use."""
        spec = get_model_spec(model_name)
        known = self._paths.get(model_name)
        if known is not None and known.exists():
            return known

        path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._paths[model_name] = path
        logger.info("Fetched %s (%s) to %s", model_name, spec.license, path)
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the session for ``model_name``, loading and verifying it if needed.

        Raises:
            KeyError: If the model is not registered.
            IncompatibleModelError: If the model does not fit the embryo-stage contract.
        """
        with self._lock:
            loaded = self._loaded.get(model_name)
            if loaded is not None:
                loaded.last_used = time.monotonic()
                return loaded.session

        spec = get_model_spec(model_name)
        session = InferenceSession(
            str(self.ensure_downloaded(model_name)),
            sess_options=self._options,
            providers=self._providers,
        )
        check_model_contract(spec, session)

        with self._lock:
            # keep whichever session was registered first
            loaded = self._loaded.setdefault(model_name, _LoadedModel(session, time.monotonic()))
            loaded.last_used = time.monotonic()
        logger.info("Loaded %s (input %dx%d)", model_name, spec.input_size, spec.input_size)
        return loaded.session

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._loaded)

    def unload_idle_models(self) -> None:
        """Drop sessions unused for longer than the configured TTL (0 keeps them forever)."""
        if self._ttl == 0:
            return
        cutoff = time.monotonic() - self._ttl
        with self._lock:
            for name in [name for name, loaded in self._loaded.items() if loaded.last_used < cutoff]:
                del self._loaded[name]
                logger.info("Unloaded idle model %s", name)

    def shutdown(self) -> None:
        with self._lock:
            self._loaded.clear()
        logger.info("Model sessions released")
