"""Camera utilities for single-frame capture."""
from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional

import cv2
import numpy as np

from ..core.errors import CameraDenied, CameraUnavailable

LOGGER = logging.getLogger(__name__)

CaptureFactory = Callable[[int], Any]


def _check_device_access(device: int) -> None:
    """Raise CameraDenied when the device node exists but cannot be opened."""

    if not sys.platform.startswith("linux"):
        return
    node = f"/dev/video{device}"
    if os.path.exists(node) and not os.access(node, os.R_OK | os.W_OK):
        raise CameraDenied(f"Permission denied for {node}")


def open_camera(device: int, capture_factory: Optional[CaptureFactory] = None) -> Any:
    """Open a capture device, translating failures into camera errors."""

    factory = capture_factory
    if factory is None:
        if not hasattr(cv2, "VideoCapture"):
            raise CameraUnavailable("OpenCV build has no video capture support")
        factory = cv2.VideoCapture
        _check_device_access(device)

    try:
        capture = factory(device)
    except PermissionError as exc:
        raise CameraDenied(str(exc)) from exc
    except (OSError, cv2.error) as exc:
        raise CameraUnavailable(f"Unable to open camera {device}: {exc}") from exc

    if not capture.isOpened():
        capture.release()
        raise CameraUnavailable(f"Unable to open camera {device}")
    LOGGER.info("Camera %s opened", device)
    return capture


@contextmanager
def managed_camera(device: int, capture_factory: Optional[CaptureFactory] = None) -> Generator[Any, None, None]:
    """Context manager ensuring the camera is released on every exit path."""

    capture = open_camera(device, capture_factory)
    try:
        yield capture
    finally:
        LOGGER.info("Releasing camera %s", device)
        capture.release()


def read_first_frame(capture: Any, attempts: int = 10) -> np.ndarray:
    """Return the first non-empty frame, tolerating a few warm-up misses."""

    for attempt in range(1, attempts + 1):
        try:
            success, frame = capture.read()
        except cv2.error as exc:
            raise CameraUnavailable(f"Camera stream error: {exc}") from exc
        if success and frame is not None and frame.size:
            LOGGER.debug("Camera delivered a frame after %d read(s)", attempt)
            return frame
    raise CameraUnavailable(f"Camera produced no frame after {attempts} attempts")
