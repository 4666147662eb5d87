"""
Bounding box geometry: intersection-over-union, non-maximum suppression and
padded face crops.

Boxes are integer ``(x, y, width, height)`` rectangles in source-image pixel
space, the same layout the ``faces`` table stores.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned face rectangle in pixels."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    @property
    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @classmethod
    def from_corners(cls, x1: int, y1: int, x2: int, y2: int) -> "BoundingBox":
        """Build a box from corner coordinates, clamping the origin to ``>= 0``."""
        x1 = max(int(x1), 0)
        y1 = max(int(y1), 0)
        return cls(x=x1, y=y1, width=int(x2) - x1, height=int(y2) - y1)


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Intersection-over-union of two boxes; ``0.0`` when the union is empty."""
    x1 = max(a.x, b.x)
    y1 = max(a.y, b.y)
    x2 = min(a.x + a.width, b.x + b.width)
    y2 = min(a.y + a.height, b.y + b.height)
    intersection = max(x2 - x1, 0) * max(y2 - y1, 0)
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def nms(candidates: Sequence[Tuple[BoundingBox, float]], threshold: float) -> List[Tuple[BoundingBox, float]]:
    """Greedy non-maximum suppression.

    Parameters
    ----------
    candidates: sequence of (BoundingBox, float)
        Boxes with their confidence scores, in any order.
    threshold: float
        A box is suppressed when its IoU with an already kept, higher
        scoring box exceeds this value.

    Returns
    -------
    list of (BoundingBox, float)
        Kept boxes ordered by descending confidence.
    """
    ordered = sorted(candidates, key=lambda c: c[1], reverse=True)
    suppressed = [False] * len(ordered)
    keep: List[Tuple[BoundingBox, float]] = []
    for i, (box, score) in enumerate(ordered):
        if suppressed[i]:
            continue
        keep.append((box, score))
        for j in range(i + 1, len(ordered)):
            if suppressed[j]:
                continue
            if iou(box, ordered[j][0]) > threshold:
                suppressed[j] = True
    return keep


def padded_region(bbox: BoundingBox, img_width: int, img_height: int,
                  padding: float = 0.2) -> BoundingBox:
    """Grow ``bbox`` by ``padding`` of its size on each side, clamped to the image."""
    pad_x = int(bbox.width * padding)
    pad_y = int(bbox.height * padding)
    x = min(max(bbox.x - pad_x, 0), max(img_width - 1, 0))
    y = min(max(bbox.y - pad_y, 0), max(img_height - 1, 0))
    w = min(bbox.width + pad_x * 2, img_width - x)
    h = min(bbox.height + pad_y * 2, img_height - y)
    return BoundingBox(x=x, y=y, width=max(w, 1), height=max(h, 1))


def crop_face(image: np.ndarray, bbox: BoundingBox, padding: float = 0.2) -> np.ndarray:
    """Crop a face from an ``HxWxC`` image with padding around the box."""
    img_height, img_width = image.shape[:2]
    region = padded_region(bbox, img_width, img_height, padding)
    return image[region.y:region.y + region.height, region.x:region.x + region.width]
