"""Normalize uploads and camera captures into decoded images."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import cv2
import numpy as np

from ..app.settings import AppSettings
from ..core.errors import ImageDecodeError, InvalidInputType, UploadTooLarge
from ..core.models import Image
from ..utils.video import CaptureFactory, managed_camera, read_first_frame

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class UploadSource(Protocol):
    """Anything shaped like ``fastapi.UploadFile``."""

    filename: Optional[str]
    content_type: Optional[str]
    size: Optional[int]

    async def read(self, size: int = -1) -> bytes:
        ...


@dataclass
class BytesUpload:
    """In-memory upload, mostly useful for callers that already hold the bytes."""

    data: bytes
    content_type: Optional[str]
    filename: Optional[str] = None
    _offset: int = field(default=0, init=False, repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    async def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self.data) - self._offset
        chunk = self.data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk


def is_image_media_type(media_type: Optional[str]) -> bool:
    return bool(media_type) and media_type.strip().lower().startswith("image/")


def decode_image_bytes(data: bytes) -> np.ndarray:
    """Decode encoded image bytes into a BGR array."""

    if not data:
        raise ImageDecodeError("Upload is empty")
    buffer = np.frombuffer(data, dtype=np.uint8)
    try:
        pixels = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    except cv2.error as exc:
        raise ImageDecodeError(f"Unable to decode image: {exc}") from exc
    if pixels is None or pixels.size == 0:
        raise ImageDecodeError("Unable to decode image")
    return pixels


class _ProgressReporter:
    def __init__(self, callback: Optional[ProgressCallback], total: Optional[int]) -> None:
        self._callback = callback
        self._total = total if total and total > 0 else None
        self._last = -1

    def advance(self, done: int) -> None:
        if self._total is None:
            return
        self._emit(min(99, int(done * 100 / self._total)))

    def finish(self) -> None:
        self._emit(100)

    def _emit(self, percent: int) -> None:
        if self._callback is None or percent <= self._last:
            return
        self._last = percent
        self._callback(percent)


class ImageSource:
    """Produce :class:`Image` values from uploads or a single camera frame."""

    def __init__(self, settings: AppSettings, capture_factory: Optional[CaptureFactory] = None) -> None:
        self.settings = settings
        self._capture_factory = capture_factory

    async def from_upload(self, upload: UploadSource, on_progress: Optional[ProgressCallback] = None) -> Image:
        media_type = upload.content_type
        if not is_image_media_type(media_type):
            raise InvalidInputType(f"Unsupported media type: {media_type!r}")

        limit = self.settings.max_upload_bytes
        total = getattr(upload, "size", None)
        if total is not None and total > limit:
            raise UploadTooLarge(f"Upload is {total} bytes, limit is {limit}")

        progress = _ProgressReporter(on_progress, total)
        chunks = []
        received = 0
        while True:
            chunk = await upload.read(self.settings.upload_chunk_size)
            if not chunk:
                break
            received += len(chunk)
            if received > limit:
                raise UploadTooLarge(f"Upload exceeds {limit} bytes")
            chunks.append(chunk)
            progress.advance(received)

        pixels = await asyncio.to_thread(decode_image_bytes, b"".join(chunks))
        progress.finish()
        image = Image(pixels=pixels, media_type=media_type.strip().lower(), source="upload", name=upload.filename)
        LOGGER.info("Decoded upload %s (%dx%d)", upload.filename, image.width, image.height)
        return image

    async def from_camera(self) -> Image:
        pixels = await asyncio.to_thread(self._capture_frame)
        image = Image(pixels=pixels, media_type="image/jpeg", source="camera", name="camera-capture")
        LOGGER.info("Captured camera frame (%dx%d)", image.width, image.height)
        return image

    def _capture_frame(self) -> np.ndarray:
        device = self.settings.camera_device
        with managed_camera(device, self._capture_factory) as capture:
            frame = read_first_frame(capture, self.settings.camera_first_frame_attempts)
        if frame.ndim == 2:
            frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        return np.ascontiguousarray(frame)
