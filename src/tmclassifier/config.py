"""Environment-based configuration for tmclassifier."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from TMCLASSIFIER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TMCLASSIFIER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model and metadata locations: local path or hf://owner/repo/path
    # (metadata may also be an http(s) URL)
    model_path: str | None = None
    metadata_path: str | None = None
    models_dir: str = "models"
    metadata_timeout: float = Field(default=10.0, gt=0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    prediction_timeout: float | None = Field(default=None, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Prediction behavior
    strict_labels: bool = True
    default_max_predictions: int = Field(default=10, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
