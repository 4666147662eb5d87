from __future__ import annotations

import numpy as np

from photo_faces.geometry import BoundingBox, crop_face, iou, nms, padded_region


def test_iou_identical_and_disjoint():
    box = BoundingBox(10, 20, 30, 40)
    assert iou(box, box) == 1.0
    assert iou(box, BoundingBox(100, 100, 10, 10)) == 0.0


def test_iou_partial_overlap():
    a = BoundingBox(0, 0, 10, 10)
    b = BoundingBox(5, 0, 10, 10)
    # intersection 50, union 150
    assert abs(iou(a, b) - 1 / 3) < 1e-9


def test_iou_empty_union_is_zero():
    empty = BoundingBox(0, 0, 0, 0)
    assert iou(empty, empty) == 0.0


def test_from_corners_clamps_origin():
    box = BoundingBox.from_corners(-5, -3, 20, 10)
    assert box == BoundingBox(0, 0, 20, 10)
    assert BoundingBox.from_corners(5, 5, 5, 9).is_degenerate


def test_nms_suppresses_overlapping_lower_scores():
    a = BoundingBox(0, 0, 100, 100)
    b = BoundingBox(5, 5, 100, 100)     # heavy overlap with a
    c = BoundingBox(300, 300, 50, 50)   # separate
    kept = nms([(b, 0.8), (c, 0.75), (a, 0.9)], threshold=0.3)
    assert kept == [(a, 0.9), (c, 0.75)]


def test_nms_keeps_boxes_at_threshold():
    a = BoundingBox(0, 0, 10, 10)
    b = BoundingBox(5, 0, 10, 10)   # IoU 1/3
    assert len(nms([(a, 0.9), (b, 0.8)], threshold=0.5)) == 2
    assert len(nms([(a, 0.9), (b, 0.8)], threshold=0.3)) == 1


def test_padded_region_is_clamped_to_image():
    region = padded_region(BoundingBox(0, 0, 50, 50), 60, 60, padding=0.2)
    assert region == BoundingBox(0, 0, 60, 60)
    inner = padded_region(BoundingBox(100, 100, 50, 50), 400, 400, padding=0.2)
    assert inner == BoundingBox(90, 90, 70, 70)


def test_crop_face_shape():
    image = np.zeros((200, 300, 3), dtype=np.uint8)
    crop = crop_face(image, BoundingBox(100, 50, 50, 40), padding=0.2)
    assert crop.shape == (56, 70, 3)
