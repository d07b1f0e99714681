"""Environment-based configuration for wdtagger."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wdtagger.ml.thresholding import ThresholdConfig


class Settings(BaseSettings):
    """Application settings loaded from WDTAGGER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="WDTAGGER_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    tagger_model: str = "wd_swinv2_v3"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Thresholding
    general_mcut: bool = False
    character_mcut: bool = False
    general_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    character_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    character_floor: float = Field(default=0.15, ge=0.0, le=1.0)

    def threshold_config(
        self,
        *,
        general_mcut: bool | None = None,
        character_mcut: bool | None = None,
    ) -> ThresholdConfig:
        """Build the thresholding config, letting callers override the mCut switches."""
        return ThresholdConfig(
            general_mcut=self.general_mcut if general_mcut is None else general_mcut,
            character_mcut=self.character_mcut if character_mcut is None else character_mcut,
            general_threshold=self.general_threshold,
            character_threshold=self.character_threshold,
            character_floor=self.character_floor,
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
