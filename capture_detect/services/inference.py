"""Model lifecycle and the validated inference boundary."""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..app.settings import AppSettings
from ..core.errors import InferenceError, ModelLoadError
from ..core.models import BoundingBox, Detection, DetectionResultSet, Image, ModelStatus

LOGGER = logging.getLogger(__name__)


class DetectionBackend(Protocol):
    def detect(self, frame: np.ndarray) -> Sequence[Mapping[str, Any]]:
        ...


BackendLoader = Callable[[], DetectionBackend]


class RawPrediction(BaseModel):
    """One entry of the backend's loosely typed output."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label: str = Field(alias="class", min_length=1)
    score: float = Field(ge=0.0, le=1.0)
    bbox: List[float] = Field(min_length=4, max_length=4)

    @field_validator("bbox")
    @classmethod
    def _check_bbox(cls, value: List[float]) -> List[float]:
        if not all(math.isfinite(component) for component in value):
            raise ValueError("bbox components must be finite")
        if value[2] < 0 or value[3] < 0:
            raise ValueError("bbox width and height must be non-negative")
        return value


def parse_predictions(payload: Any) -> DetectionResultSet:
    """Convert a raw backend payload into strict detections, preserving order."""

    if payload is None or isinstance(payload, (str, bytes, Mapping)):
        raise InferenceError(f"Backend returned a non-sequence payload: {type(payload).__name__}")
    try:
        entries = list(payload)
    except TypeError as exc:
        raise InferenceError(f"Backend returned a non-iterable payload: {type(payload).__name__}") from exc

    detections: List[Detection] = []
    for index, entry in enumerate(entries):
        try:
            raw = RawPrediction.model_validate(entry)
        except ValidationError as exc:
            raise InferenceError(f"Malformed prediction at index {index}: {exc.errors()[0]['msg']}") from exc
        x, y, width, height = raw.bbox
        detections.append(
            Detection(
                class_label=raw.label,
                confidence=raw.score,
                bbox=BoundingBox(x=x, y=y, width=width, height=height),
            )
        )
    return tuple(detections)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Waiters may all be cancelled before a failed load finishes.
    if not task.cancelled():
        task.exception()


@dataclass(frozen=True)
class ModelHandle:
    """Opaque, loaded-and-warmed inference resource."""

    backend: DetectionBackend
    loaded_at: datetime


class ModelResource:
    """Lazily loads one detection backend and serves inference calls.

    Concurrent ``load()`` callers share a single in-flight load and all see
    the same handle or the same :class:`ModelLoadError`. A failed load is
    only attempted again when ``load()`` is called after the failure.
    """

    def __init__(self, loader: BackendLoader, *, warm_up: bool = True) -> None:
        self._loader = loader
        self._warm_up = warm_up
        self._status = ModelStatus.UNINITIALIZED
        self._handle: Optional[ModelHandle] = None
        self._error: Optional[ModelLoadError] = None
        self._task: Optional[asyncio.Task] = None
        self.load_attempts = 0

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ModelResource":
        def _loader() -> DetectionBackend:
            from .detector import load_yolo_backend

            return load_yolo_backend(settings)

        return cls(_loader, warm_up=settings.warm_up_model)

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def ready(self) -> bool:
        return self._status is ModelStatus.READY

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def error(self) -> Optional[ModelLoadError]:
        return self._error

    async def load(self) -> ModelHandle:
        if self._status is ModelStatus.READY and self._handle is not None:
            return self._handle
        if self._status is not ModelStatus.LOADING or self._task is None:
            self._status = ModelStatus.LOADING
            self._error = None
            self._task = asyncio.create_task(self._load())
            self._task.add_done_callback(_retrieve_exception)
        return await asyncio.shield(self._task)

    async def _load(self) -> ModelHandle:
        self.load_attempts += 1
        LOGGER.info("Loading detection model (attempt %d)", self.load_attempts)
        try:
            backend = await asyncio.to_thread(self._loader)
            warm_up = getattr(backend, "warm_up", None)
            if self._warm_up and callable(warm_up):
                await asyncio.to_thread(warm_up)
        except Exception as exc:
            self._status = ModelStatus.FAILED
            self._error = ModelLoadError(f"Model failed to load: {exc}")
            LOGGER.warning("Detection model failed to load: %s", exc)
            raise self._error from exc
        self._handle = ModelHandle(backend=backend, loaded_at=datetime.now(timezone.utc))
        self._status = ModelStatus.READY
        LOGGER.info("Detection model ready")
        return self._handle

    async def detect(self, handle: ModelHandle, image: Image) -> DetectionResultSet:
        """Run inference on ``image`` without touching its pixels."""

        frame = image.pixels.copy()
        try:
            payload = await asyncio.to_thread(handle.backend.detect, frame)
        except Exception as exc:
            LOGGER.exception("Inference backend raised: %s", exc)
            raise InferenceError(f"Inference failed: {exc}") from exc
        return parse_predictions(payload)
