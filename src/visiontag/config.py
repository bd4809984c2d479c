"""Environment-based configuration for VisionTag."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from VISIONTAG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VISIONTAG_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model input
    input_width: int = Field(default=224, ge=1)
    input_height: int = Field(default=224, ge=1)
    top_k: int = Field(default=5, ge=1)

    # Model resolution
    model_source: Literal["file", "hub"] = "file"
    model_path: str = "assets/model/mobilenet_v2.onnx"
    labels_path: str = "assets/model/labels.txt"
    hub_repo_id: str | None = None
    hub_model_filename: str = "mobilenet_v2.onnx"
    hub_labels_filename: str = "labels.txt"
    models_dir: str = "models"
    init_on_startup: bool = False

    # ONNX Runtime
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    graph_optimization: Literal["disabled", "basic", "extended", "all"] = "all"
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
