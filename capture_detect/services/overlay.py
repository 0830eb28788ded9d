"""Render detections into a transparent annotation layer."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np

from ..app.settings import AppSettings
from ..core.models import BoundingBox, Detection, Image
from ..utils.geometry import Size, resolve_display_size, scale_bbox, scale_factors

LOGGER = logging.getLogger(__name__)

LABEL_HEIGHT = 20
LABEL_PADDING = 10
TEXT_INSET = 5
FONT = cv2.FONT_HERSHEY_SIMPLEX

SummaryList = Tuple[Tuple[str, int], ...]


def label_text(detection: Detection) -> str:
    return f"{detection.class_label} {detection.percent}%"


def summarize(results: Iterable[Detection]) -> SummaryList:
    """Return ``(label, percent)`` pairs in result order."""

    return tuple((detection.class_label, detection.percent) for detection in results)


@dataclass(frozen=True)
class LabelBox:
    text: str
    backdrop: Tuple[int, int, int, int]
    text_origin: Tuple[int, int]


@dataclass(frozen=True)
class Overlay:
    """Annotation layer sized to the displayed image."""

    surface: np.ndarray
    display_size: Size
    scale: Tuple[float, float]
    boxes: Tuple[BoundingBox, ...]
    labels: Tuple[LabelBox, ...]
    summary: SummaryList

    def composite(self, image: Image) -> np.ndarray:
        """Blend the layer over ``image`` resized to the displayed size."""

        width, height = self.display_size
        if image.natural_size == self.display_size:
            base = image.pixels
        else:
            base = cv2.resize(image.pixels, (width, height), interpolation=cv2.INTER_AREA)
        alpha = self.surface[..., 3:4].astype(np.float32) / 255.0
        blended = base.astype(np.float32) * (1.0 - alpha) + self.surface[..., :3].astype(np.float32) * alpha
        return blended.round().astype(np.uint8)


def _pixel(value: float) -> int:
    return int(round(value))


class OverlayRenderer:
    """Draw labeled boxes for one result set; keeps no state between calls."""

    def __init__(self, settings: AppSettings) -> None:
        self.settings = settings
        b, g, r = settings.box_color_bgr
        self._stroke = (b, g, r, 255)
        self._backdrop = (b, g, r, _pixel(settings.label_alpha * 255))
        tb, tg, tr = settings.label_text_color_bgr
        self._text = (tb, tg, tr, 255)

    def render(
        self,
        image: Image,
        results: Iterable[Detection],
        display_size: Optional[Size] = None,
    ) -> Overlay:
        results = tuple(results)
        size = resolve_display_size(image.natural_size, display_size)
        sx, sy = scale_factors(image.natural_size, size)
        width, height = size
        # A fresh surface per call drops every annotation from earlier passes.
        surface = np.zeros((height, width, 4), dtype=np.uint8)

        boxes: List[BoundingBox] = []
        labels: List[LabelBox] = []
        for detection in results:
            box = scale_bbox(detection.bbox, sx, sy)
            boxes.append(box)
            labels.append(self._draw_detection(surface, box, label_text(detection)))

        LOGGER.debug("Rendered %d detections at %dx%d (scale %.3f, %.3f)", len(boxes), width, height, sx, sy)
        return Overlay(
            surface=surface,
            display_size=size,
            scale=(sx, sy),
            boxes=tuple(boxes),
            labels=tuple(labels),
            summary=summarize(results),
        )

    def _draw_detection(self, surface: np.ndarray, box: BoundingBox, text: str) -> LabelBox:
        x1, y1 = _pixel(box.x), _pixel(box.y)
        x2, y2 = _pixel(box.x + box.width), _pixel(box.y + box.height)
        cv2.rectangle(surface, (x1, y1), (x2, y2), self._stroke, self.settings.line_width)

        (text_width, _), _ = cv2.getTextSize(text, FONT, self.settings.font_scale, 1)
        backdrop = (x1, y1 - LABEL_HEIGHT, text_width + LABEL_PADDING, LABEL_HEIGHT)
        cv2.rectangle(
            surface,
            (backdrop[0], backdrop[1]),
            (backdrop[0] + backdrop[2], backdrop[1] + backdrop[3]),
            self._backdrop,
            thickness=-1,
        )

        origin = (x1 + TEXT_INSET, y1 - TEXT_INSET)
        cv2.putText(surface, text, origin, FONT, self.settings.font_scale, self._text, 1, lineType=cv2.LINE_AA)
        return LabelBox(text=text, backdrop=backdrop, text_origin=origin)
