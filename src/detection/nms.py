"""
Greedy non-maximum suppression.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np

from models.detection import BoundingBox, Detection

IOU_EPS = 1e-6


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Intersection over union of two boxes in the same coordinate space."""
    w = max(0.0, min(a.x2, b.x2) - max(a.x1, b.x1))
    h = max(0.0, min(a.y2, b.y2) - max(a.y1, b.y1))
    inter = w * h
    return inter / (a.area + b.area - inter + IOU_EPS)


def _iou_one_to_many(box: np.ndarray, others: np.ndarray, areas: np.ndarray, area: float) -> np.ndarray:
    w = np.maximum(0.0, np.minimum(box[2], others[:, 2]) - np.maximum(box[0], others[:, 0]))
    h = np.maximum(0.0, np.minimum(box[3], others[:, 3]) - np.maximum(box[1], others[:, 1]))
    inter = w * h
    return inter / (area + areas - inter + IOU_EPS)


def nms_indices(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float) -> List[int]:
    """
    Greedy NMS over [N, 4] (x1, y1, x2, y2) boxes.

    Candidates are visited by descending score; ties keep their input order.
    A candidate is suppressed when its IoU with a kept box exceeds
    `iou_threshold`.

    Returns:
        Indices of kept boxes, highest score first.
    """
    n = len(scores)
    if n == 0:
        return []
    boxes = np.asarray(boxes, dtype=np.float64).reshape(n, 4)
    scores = np.asarray(scores, dtype=np.float64)
    areas = np.maximum(0.0, boxes[:, 2] - boxes[:, 0]) * np.maximum(0.0, boxes[:, 3] - boxes[:, 1])

    order = np.argsort(-scores, kind="stable")
    suppressed = np.zeros(n, dtype=bool)
    keep: List[int] = []
    for pos, i in enumerate(order):
        if suppressed[i]:
            continue
        keep.append(int(i))
        rest = order[pos + 1:]
        rest = rest[~suppressed[rest]]
        if rest.size == 0:
            continue
        overlaps = _iou_one_to_many(boxes[i], boxes[rest], areas[rest], areas[i])
        suppressed[rest[overlaps > iou_threshold]] = True
    return keep


def nms(detections: List[Detection], iou_threshold: float) -> List[Detection]:
    """Apply greedy NMS to detections; returns a new list, highest score first."""
    if len(detections) <= 1:
        return list(detections)
    boxes, scores = _as_arrays(detections)
    return [detections[i] for i in nms_indices(boxes, scores, iou_threshold)]


def _as_arrays(detections: List[Detection]) -> Tuple[np.ndarray, np.ndarray]:
    boxes = np.array([d.box for d in detections], dtype=np.float64)
    scores = np.array([d.confidence for d in detections], dtype=np.float64)
    return boxes, scores
