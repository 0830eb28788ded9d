"""Shared data models for the capture-and-detect pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field

from .errors import ErrorKind


@dataclass(frozen=True)
class Image:
    """Decoded raster image in BGR order with known natural dimensions."""

    pixels: np.ndarray
    media_type: str
    source: str
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.size == 0:
            raise ValueError(f"Expected a non-empty HxWxC array, got shape {self.pixels.shape}")
        # Readers share the buffer; nobody downstream may write into it.
        self.pixels.flags.writeable = False

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def natural_size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box as (x, y, width, height) in pixels."""

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Bounding box size must be non-negative: {self}")

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return self.x, self.y, self.width, self.height


@dataclass(frozen=True)
class Detection:
    """Represents a single recognized object."""

    class_label: str
    confidence: float
    bbox: BoundingBox

    @property
    def percent(self) -> int:
        return confidence_percent(self.confidence)


DetectionResultSet = Tuple[Detection, ...]


def confidence_percent(confidence: float) -> int:
    """Round a [0, 1] score to a whole percentage, halves rounding up."""

    return int(np.floor(confidence * 100.0 + 0.5))


class Phase(str, Enum):
    IDLE = "Idle"
    AWAITING_IMAGE = "AwaitingImage"
    MODEL_LOADING = "ModelLoading"
    DETECTING = "Detecting"
    DETECTED = "Detected"
    FAILED = "Failed"


@dataclass(frozen=True)
class PipelineState:
    """Single tagged value describing where the pipeline currently is.

    ``request_id`` identifies the detect-request (or pre-warm) that owns a
    ``ModelLoading``/``Detecting``/``Detected`` phase, ``pending`` marks a
    model load that should continue into detection, and ``reason`` carries
    the error kind of a ``Failed`` phase.
    """

    phase: Phase = Phase.IDLE
    request_id: Optional[int] = None
    pending: bool = False
    result_count: int = 0
    reason: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "PipelineState":
        return cls(Phase.IDLE)

    @classmethod
    def awaiting_image(cls) -> "PipelineState":
        return cls(Phase.AWAITING_IMAGE)

    @classmethod
    def model_loading(cls, request_id: int, pending: bool) -> "PipelineState":
        return cls(Phase.MODEL_LOADING, request_id=request_id, pending=pending)

    @classmethod
    def detecting(cls, request_id: int) -> "PipelineState":
        return cls(Phase.DETECTING, request_id=request_id)

    @classmethod
    def detected(cls, request_id: int, result_count: int) -> "PipelineState":
        return cls(Phase.DETECTED, request_id=request_id, result_count=result_count)

    @classmethod
    def failed(cls, reason: ErrorKind, message: Optional[str] = None) -> "PipelineState":
        return cls(Phase.FAILED, reason=reason, message=message)

    @property
    def busy(self) -> bool:
        return self.phase in (Phase.MODEL_LOADING, Phase.DETECTING)

    @property
    def label(self) -> str:
        if self.phase is Phase.FAILED and self.reason is not None:
            return f"Failed({self.reason.value})"
        return self.phase.value


class ModelStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationCategory(str, Enum):
    INFO = "info"
    VALIDATION = "validation"
    OPERATIONAL = "operational"


class Notification(BaseModel):
    category: NotificationCategory
    title: str
    description: str
    kind: Optional[ErrorKind] = None
    created_at: datetime = Field(default_factory=_utc_now)


class SummaryEntry(BaseModel):
    label: str
    percent: int


class ImageInfo(BaseModel):
    width: int
    height: int
    media_type: str
    source: str
    name: Optional[str] = None


class DetectionPayload(BaseModel):
    label: str
    confidence: float
    bbox: List[float]


class StateSnapshot(BaseModel):
    state: str
    phase: Phase
    reason: Optional[ErrorKind] = None
    message: Optional[str] = None
    request_id: Optional[int] = None
    model_status: ModelStatus
    image: Optional[ImageInfo] = None
    detections: List[DetectionPayload] = Field(default_factory=list)
    summary: List[SummaryEntry] = Field(default_factory=list)
