"""Environment-based configuration for HealthySnacks."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from HEALTHYSNACKS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HEALTHYSNACKS_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    model_name: str = "healthy_snacks"
    model_path: str | None = None
    models_dir: str = "models"
    # HuggingFace repository holding <model_name>.onnx (None = local files only)
    model_repo: str | None = None

    # Classification
    crop_scale_mode: Literal["center_crop", "scale_fit", "scale_fill"] = "center_crop"
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    top_k: int = Field(default=0, ge=0)

    # Screen
    hint_delay: float = Field(default=0.5, ge=0.0)
    camera_enabled: bool = True

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
