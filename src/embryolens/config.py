"""Environment-based configuration for EmbryoLens."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from EMBRYOLENS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EMBRYOLENS_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8090
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Classification
    classifier: Literal["random", "onnx"] = "random"
    model_name: str = "embryo_stage_effnet_b0"
    models_dir: str = "models"
    classification_timeout_ms: int = Field(default=30_000, ge=1)
    simulated_latency_ms: int = Field(default=0, ge=0)
    seed: int | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Validity gate
    validity_policy: Literal["heuristic", "random", "accept_all"] = "heuristic"
    invalid_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    min_image_side: int = Field(default=64, ge=1)
    min_contrast: float = Field(default=8.0, ge=0.0)
    min_edge_density: float = Field(default=0.002, ge=0.0, le=1.0)
    max_edge_density: float = Field(default=0.35, ge=0.0, le=1.0)

    # Metrics
    metrics_source: Literal["synthetic", "file", "none"] = "synthetic"
    evaluation_path: str | None = None
    history_epochs: int = Field(default=50, ge=1)

    # Sessions
    session_ttl: int = Field(default=1800, ge=0)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
