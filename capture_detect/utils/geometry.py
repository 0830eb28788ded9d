"""Geometry helpers for mapping boxes between pixel spaces."""
from __future__ import annotations

from typing import Optional, Tuple

from ..core.models import BoundingBox

Size = Tuple[int, int]


def resolve_display_size(natural_size: Size, display_size: Optional[Size]) -> Size:
    """Return the size the overlay must match, defaulting to the natural size."""

    if display_size is None:
        return natural_size
    width, height = display_size
    if width <= 0 or height <= 0:
        raise ValueError(f"Display size must be positive, got {display_size}")
    return int(width), int(height)


def scale_factors(natural_size: Size, display_size: Size) -> Tuple[float, float]:
    """Return the (x, y) ratio of displayed to natural dimensions."""

    natural_w, natural_h = natural_size
    display_w, display_h = display_size
    if natural_w <= 0 or natural_h <= 0:
        raise ValueError(f"Natural size must be positive, got {natural_size}")
    return display_w / natural_w, display_h / natural_h


def scale_bbox(bbox: BoundingBox, sx: float, sy: float) -> BoundingBox:
    """Scale all four box components into the displayed pixel space."""

    return BoundingBox(x=bbox.x * sx, y=bbox.y * sy, width=bbox.width * sx, height=bbox.height * sy)
