"""Rectangle algebra in pixel coordinates."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def offset(self, dx: float, dy: float) -> "Rect":
        return Rect(self.left + dx, self.top + dy, self.right + dx, self.bottom + dy)

    def scale(self, sx: float, sy: float) -> "Rect":
        return Rect(self.left * sx, self.top * sy, self.right * sx, self.bottom * sy)

    def as_int_tuple(self) -> tuple[int, int, int, int]:
        return int(self.left), int(self.top), int(round(self.right)), int(round(self.bottom))


def clamp(rect: Rect, width: float, height: float) -> Rect | None:
    """Clamp to image bounds; None when nothing with positive area is left."""
    left = max(0.0, min(float(rect.left), float(width)))
    top = max(0.0, min(float(rect.top), float(height)))
    right = max(0.0, min(float(rect.right), float(width)))
    bottom = max(0.0, min(float(rect.bottom), float(height)))
    if right <= left or bottom <= top:
        return None
    return Rect(left, top, right, bottom)


def area(rect: Rect) -> float:
    return max(0.0, rect.width) * max(0.0, rect.height)


def intersection_area(a: Rect, b: Rect) -> float:
    iw = max(0.0, min(a.right, b.right) - max(a.left, b.left))
    ih = max(0.0, min(a.bottom, b.bottom) - max(a.top, b.top))
    return iw * ih


def iou(a: Rect, b: Rect) -> float:
    inter = intersection_area(a, b)
    if inter <= 0:
        return 0.0
    union = area(a) + area(b) - inter
    if union <= 1e-9:
        return 0.0
    return inter / union


def expand(rect: Rect, factor: float, width: float, height: float) -> Rect:
    """Pad each side by ``factor`` of the rectangle's own dimension, clamped to the image."""
    pad_x = rect.width * max(0.0, float(factor))
    pad_y = rect.height * max(0.0, float(factor))
    grown = Rect(rect.left - pad_x, rect.top - pad_y, rect.right + pad_x, rect.bottom + pad_y)
    return clamp(grown, width, height) or rect


def contains(inner: Rect, outer: Rect, cushion: float = 0.0) -> bool:
    """True if ``inner`` lies within ``outer`` grown by ``cushion`` pixels on each side."""
    return (
        inner.left >= outer.left - cushion
        and inner.top >= outer.top - cushion
        and inner.right <= outer.right + cushion
        and inner.bottom <= outer.bottom + cushion
    )


def normalized_box(rect: Rect, width: float, height: float) -> dict[str, float]:
    """Return ``{x, y, width, height}`` as fractions of the image size."""
    w = max(1.0, float(width))
    h = max(1.0, float(height))
    return {
        "x": round(rect.left / w, 4),
        "y": round(rect.top / h, 4),
        "width": round(rect.width / w, 4),
        "height": round(rect.height / h, 4),
    }
