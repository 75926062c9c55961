"""Environment-based configuration for RustSense."""

from __future__ import annotations

from typing import Literal, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from RUSTSENSE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RUSTSENSE_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection; model_path skips the Hub download
    model: str = "rust_severity_v1"
    model_path: str | None = None
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)
    max_sessions: int = Field(default=1024, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Preprocessing geometry
    resize_size: int = Field(default=256, ge=1)
    crop_size: int = Field(default=224, ge=1)
    resample: Literal["bilinear", "bicubic", "nearest"] = "bilinear"

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    @model_validator(mode="after")
    def _check_crop_fits(self) -> Self:
        if self.crop_size > self.resize_size:
            raise ValueError(f"crop_size ({self.crop_size}) must not exceed resize_size ({self.resize_size})")
        return self


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
