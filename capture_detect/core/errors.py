"""Error kinds raised along the capture-and-detect pipeline."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT_TYPE = "invalid_input_type"
    UPLOAD_TOO_LARGE = "upload_too_large"
    IMAGE_DECODE = "image_decode"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    CAMERA_DENIED = "camera_denied"
    MODEL_LOAD = "model_load"
    INFERENCE = "inference"


class PipelineError(Exception):
    """Base class for every recoverable pipeline failure."""

    kind: ErrorKind

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message


class InvalidInput(PipelineError):
    """User supplied something that cannot become an Image."""


class InvalidInputType(InvalidInput):
    kind = ErrorKind.INVALID_INPUT_TYPE


class UploadTooLarge(InvalidInput):
    kind = ErrorKind.UPLOAD_TOO_LARGE


class ImageDecodeError(InvalidInput):
    kind = ErrorKind.IMAGE_DECODE


class CameraError(PipelineError):
    """Camera acquisition failed; no image was produced."""


class CameraUnavailable(CameraError):
    kind = ErrorKind.CAMERA_UNAVAILABLE


class CameraDenied(CameraError):
    kind = ErrorKind.CAMERA_DENIED


class ModelLoadError(PipelineError):
    kind = ErrorKind.MODEL_LOAD


class InferenceError(PipelineError):
    kind = ErrorKind.INFERENCE
