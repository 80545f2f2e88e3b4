"""Environment-based configuration for nsfwdetect."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Detector settings loaded from NSFWDETECT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NSFWDETECT_",
        case_sensitive=False,
        frozen=True,
    )

    # Model artifact
    model_path: Path = Path("assets/nsfw")
    model_tags: list[str] = Field(default_factory=lambda: ["serve"], min_length=1)
    labels_file: str = "labels.txt"
    model_repo_id: str | None = None

    # Backend selection
    backend: Literal["onnx", "saved_model"] = "onnx"
    onnx_file: str = "model.onnx"
    input_name: str = "input_tensor"
    output_name: str = "nsfw_cls_model/final_prediction"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Normalization constants matched to the packaged artifact
    image_size: int = Field(default=224, ge=1)
    mean: float = 117.0
    scale: float = Field(default=1.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Concurrency
    serialize_inference: bool = True


def get_settings() -> Settings:
    """Create and return detector settings."""
    return Settings()
