"""YOLOv8 detection backend wrapper."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

try:  # pragma: no cover - import guarded for environments without ultralytics
    from ultralytics import YOLO
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "ultralytics package is required for the YOLO detection backend. Install the project "
        "dependencies via `pip install -e .` before starting the service."
    ) from exc

from ..app.settings import AppSettings

LOGGER = logging.getLogger(__name__)


class YOLOBackend:
    """Encapsulates YOLOv8 inference and reports raw predictions.

    Predictions come back as loose dictionaries shaped
    ``{"class": str, "score": float, "bbox": [x, y, w, h]}``; validating them
    is the caller's job.
    """

    def __init__(
        self,
        model_path: Path,
        confidence: float,
        iou: float,
        max_detections: int,
        device: Optional[str] = None,
    ) -> None:
        self.model_path = model_path
        self.confidence = confidence
        self.iou = iou
        self.max_detections = max_detections
        self.device = device
        LOGGER.info("Loading YOLO model from %s", model_path)
        self._model = YOLO(str(model_path))
        self._class_map: Dict[int, str] = self._model.names

    def detect(self, frame: np.ndarray) -> List[Dict[str, Any]]:
        """Run inference on a frame and return raw predictions in xywh form."""

        results = self._model(
            frame,
            verbose=False,
            conf=self.confidence,
            iou=self.iou,
            max_det=self.max_detections,
            device=self.device,
        )
        predictions: List[Dict[str, Any]] = []
        for result in results:
            boxes = result.boxes
            if boxes is None:
                continue
            for box in boxes:
                class_id = int(box.cls.item())
                x1, y1, x2, y2 = box.xyxy.cpu().numpy().flatten().tolist()
                predictions.append(
                    {
                        "class": self._class_map.get(class_id, str(class_id)),
                        "score": float(box.conf.item()),
                        "bbox": [x1, y1, x2 - x1, y2 - y1],
                    }
                )
        LOGGER.debug("Detected %d objects", len(predictions))
        return predictions

    def warm_up(self, size: Tuple[int, int] = (640, 480)) -> None:
        """Push one blank frame through the model to avoid a slow first request."""

        width, height = size
        LOGGER.debug("Warming up model with a %dx%d blank frame", width, height)
        self.detect(np.zeros((height, width, 3), dtype=np.uint8))


def load_yolo_backend(settings: AppSettings) -> YOLOBackend:
    """Build the backend described by ``settings`` (blocking)."""

    return YOLOBackend(
        settings.model_path,
        settings.confidence_threshold,
        settings.iou_threshold,
        settings.max_detections,
        device=settings.device,
    )
