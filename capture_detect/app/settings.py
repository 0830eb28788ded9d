"""Configuration for the capture-and-detect service."""
from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application configuration sourced from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="DETECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    model_path: Path = Field(default=Path("models/yolov8n.pt"), description="YOLO weights path")
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    iou_threshold: float = Field(default=0.45, ge=0.0, le=1.0)
    max_detections: int = Field(default=20, ge=1)
    device: Optional[str] = Field(default=None, description="Inference device, e.g. 'cpu' or 'cuda:0'.")
    warm_up_model: bool = Field(default=True, description="Run one blank frame through the model after loading.")
    prewarm_on_startup: bool = Field(default=False, description="Start loading the model when the app starts.")

    camera_device: int = Field(default=0, ge=0)
    camera_first_frame_attempts: int = Field(default=10, ge=1)

    upload_chunk_size: int = Field(default=64 * 1024, ge=1)
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    box_color_bgr: List[int] = Field(default_factory=lambda: [0, 0, 255])
    label_text_color_bgr: List[int] = Field(default_factory=lambda: [255, 255, 255])
    label_alpha: float = Field(default=0.7, ge=0.0, le=1.0)
    line_width: int = Field(default=2, ge=1)
    font_scale: float = Field(default=0.5, gt=0.0)

    notification_history: int = Field(default=50, ge=1)
    log_format: Literal["text", "json"] = "text"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("model_path", mode="before")
    @classmethod
    def _expand_path(cls, value: str | Path) -> Path:
        return Path(value).expanduser()

    @field_validator("box_color_bgr", "label_text_color_bgr")
    @classmethod
    def _check_color(cls, value: List[int]) -> List[int]:
        if len(value) != 3 or any(channel < 0 or channel > 255 for channel in value):
            raise ValueError("Colors must be three 0-255 channels in BGR order")
        return value


def load_settings(**overrides: object) -> AppSettings:
    """Return application settings, applying optional overrides."""

    return AppSettings(**overrides)
