"""Pure state-transition function for the detection pipeline.

Every change to :class:`PipelineState` goes through :func:`transition`. It
never performs I/O: it returns the next state, the notifications the change
raises, and the side effect (model load or inference) the caller must run
next. Events tagged with a ``request_id`` that no longer owns the current
state are stale and leave the state untouched.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import ErrorKind
from .models import (
    DetectionResultSet,
    Notification,
    NotificationCategory,
    Phase,
    PipelineState,
)


class Effect(str, Enum):
    LOAD_MODEL = "load_model"
    RUN_INFERENCE = "run_inference"


@dataclass(frozen=True)
class ImageAcquired:
    pass


@dataclass(frozen=True)
class ImageCleared:
    pass


@dataclass(frozen=True)
class AcquisitionFailed:
    kind: ErrorKind
    message: str = ""


@dataclass(frozen=True)
class DetectRequested:
    request_id: int
    model_ready: bool


@dataclass(frozen=True)
class WarmUpRequested:
    request_id: int
    model_ready: bool


@dataclass(frozen=True)
class ModelLoaded:
    request_id: int


@dataclass(frozen=True)
class ModelLoadFailed:
    request_id: int
    message: str = ""


@dataclass(frozen=True)
class BackgroundLoadFailed:
    """A pre-warm load that does not own the state has failed."""

    message: str = ""


@dataclass(frozen=True)
class InferenceSucceeded:
    request_id: int
    results: DetectionResultSet = ()


@dataclass(frozen=True)
class InferenceFailed:
    request_id: int
    message: str = ""


@dataclass(frozen=True)
class Step:
    state: PipelineState
    notifications: Tuple[Notification, ...] = field(default_factory=tuple)
    effect: Optional[Effect] = None
    applied: bool = True


NO_OBJECTS_TITLE = "No objects detected"

_ERROR_NOTICES: Dict[ErrorKind, Tuple[NotificationCategory, str, str]] = {
    ErrorKind.INVALID_INPUT_TYPE: (
        NotificationCategory.VALIDATION,
        "Invalid file type",
        "Please upload an image file (JPEG, PNG, etc.)",
    ),
    ErrorKind.UPLOAD_TOO_LARGE: (
        NotificationCategory.VALIDATION,
        "File too large",
        "Please upload an image smaller than the configured limit",
    ),
    ErrorKind.IMAGE_DECODE: (
        NotificationCategory.VALIDATION,
        "Unreadable image",
        "The file could not be decoded as an image",
    ),
    ErrorKind.CAMERA_UNAVAILABLE: (
        NotificationCategory.OPERATIONAL,
        "Camera not supported",
        "No camera capture device could be opened",
    ),
    ErrorKind.CAMERA_DENIED: (
        NotificationCategory.OPERATIONAL,
        "Camera access denied",
        "Permission to use the camera was refused",
    ),
    ErrorKind.MODEL_LOAD: (
        NotificationCategory.OPERATIONAL,
        "Model loading failed",
        "Could not load the object detection model",
    ),
    ErrorKind.INFERENCE: (
        NotificationCategory.OPERATIONAL,
        "Detection failed",
        "An error occurred during object detection",
    ),
}


def error_notification(kind: ErrorKind) -> Notification:
    category, title, description = _ERROR_NOTICES[kind]
    return Notification(category=category, title=title, description=description, kind=kind)


def no_objects_notification() -> Notification:
    return Notification(
        category=NotificationCategory.INFO,
        title=NO_OBJECTS_TITLE,
        description="Try another image or a different angle",
    )


def _ignored(state: PipelineState) -> Step:
    return Step(state=state, applied=False)


def _owns(state: PipelineState, phase: Phase, request_id: int) -> bool:
    return state.phase is phase and state.request_id == request_id


def transition(state: PipelineState, event: object) -> Step:
    """Return the step that ``event`` produces from ``state``."""

    if isinstance(event, ImageAcquired):
        return Step(state=PipelineState.awaiting_image())

    if isinstance(event, ImageCleared):
        return Step(state=PipelineState.idle())

    if isinstance(event, AcquisitionFailed):
        return Step(state=state, notifications=(error_notification(event.kind),), applied=False)

    if isinstance(event, DetectRequested):
        if state.phase is Phase.IDLE or state.busy:
            return _ignored(state)
        if event.model_ready:
            return Step(state=PipelineState.detecting(event.request_id), effect=Effect.RUN_INFERENCE)
        return Step(
            state=PipelineState.model_loading(event.request_id, pending=True),
            effect=Effect.LOAD_MODEL,
        )

    if isinstance(event, WarmUpRequested):
        if event.model_ready:
            return _ignored(state)
        if state.phase is Phase.AWAITING_IMAGE:
            return Step(
                state=PipelineState.model_loading(event.request_id, pending=False),
                effect=Effect.LOAD_MODEL,
            )
        # Background load; its completion will not own the state.
        return Step(state=state, effect=Effect.LOAD_MODEL, applied=False)

    if isinstance(event, ModelLoaded):
        if not _owns(state, Phase.MODEL_LOADING, event.request_id):
            return _ignored(state)
        if state.pending:
            return Step(state=PipelineState.detecting(event.request_id), effect=Effect.RUN_INFERENCE)
        return Step(state=PipelineState.awaiting_image())

    if isinstance(event, ModelLoadFailed):
        if not _owns(state, Phase.MODEL_LOADING, event.request_id):
            return _ignored(state)
        return Step(
            state=PipelineState.failed(ErrorKind.MODEL_LOAD, event.message or None),
            notifications=(error_notification(ErrorKind.MODEL_LOAD),),
        )

    if isinstance(event, BackgroundLoadFailed):
        # A detect-request that joined the shared load reports the failure itself.
        if state.phase is Phase.MODEL_LOADING:
            return _ignored(state)
        return Step(state=state, notifications=(error_notification(ErrorKind.MODEL_LOAD),), applied=False)

    if isinstance(event, InferenceSucceeded):
        if not _owns(state, Phase.DETECTING, event.request_id):
            return _ignored(state)
        count = len(event.results)
        notifications = () if count else (no_objects_notification(),)
        return Step(state=PipelineState.detected(event.request_id, count), notifications=notifications)

    if isinstance(event, InferenceFailed):
        if not _owns(state, Phase.DETECTING, event.request_id):
            return _ignored(state)
        return Step(
            state=PipelineState.failed(ErrorKind.INFERENCE, event.message or None),
            notifications=(error_notification(ErrorKind.INFERENCE),),
        )

    raise TypeError(f"Unsupported pipeline event: {event!r}")
