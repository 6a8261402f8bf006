"""
YOLO-seg detection head parser.

The detection head arrives as a 2-D array whose orientation differs between
exporters: [features, predictions] (channels-first) or [predictions,
features] (channels-last). Each prediction's features are

    [cx, cy, w, h, class scores..., mask coefficients (seg_dim)]

Orientation and coordinate scale cannot be read from the model reliably, so
both are classified heuristically by the functions below, which are kept
separate from the parsing loop so they can be tested on their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from inference.errors import UnsupportedModelError
from models.config import HeadLayoutThresholds
from models.detection import BoundingBox, Detection


class HeadLayout(str, Enum):
    CHANNELS_FIRST = "channels_first"
    CHANNELS_LAST = "channels_last"


class CoordScale(str, Enum):
    NORMALIZED = "normalized"
    PIXEL = "pixel"


@dataclass(frozen=True)
class HeadShape:
    """Resolved interpretation of a detection head."""
    layout: HeadLayout
    channels: int
    num_predictions: int
    num_classes: int


@dataclass
class ParseStats:
    total: int = 0
    kept: int = 0
    coord_scale: CoordScale = CoordScale.PIXEL
    sample_max_wh: float = 0.0


def classify_layout(
    dim0: int, dim1: int, seg_dim: int, thresholds: Optional[HeadLayoutThresholds] = None
) -> HeadLayout:
    """
    Guess the orientation of a [dim0, dim1] head.

    Channels-first when dim0 is small and dim1 large, or when dim0 is no larger
    than the feature count a head with `channel_slack` classes could have.
    """
    t = thresholds or HeadLayoutThresholds()
    if (dim0 <= t.max_channels_first and dim1 >= t.min_predictions_channels_last) or (
        dim0 <= seg_dim + 4 + t.channel_slack
    ):
        return HeadLayout.CHANNELS_FIRST
    return HeadLayout.CHANNELS_LAST


def _flip(layout: HeadLayout) -> HeadLayout:
    if layout == HeadLayout.CHANNELS_FIRST:
        return HeadLayout.CHANNELS_LAST
    return HeadLayout.CHANNELS_FIRST


def _shape_for(layout: HeadLayout, dim0: int, dim1: int, seg_dim: int) -> HeadShape:
    channels, preds = (dim0, dim1) if layout == HeadLayout.CHANNELS_FIRST else (dim1, dim0)
    return HeadShape(layout, channels, preds, channels - 4 - seg_dim)


def resolve_head_shape(
    dim0: int, dim1: int, seg_dim: int, thresholds: Optional[HeadLayoutThresholds] = None
) -> HeadShape:
    """
    Classify the head and derive its class count.

    If the classified orientation leaves no room for classes the other
    orientation is tried once. Raises UnsupportedModelError if neither works.
    """
    layout = classify_layout(dim0, dim1, seg_dim, thresholds)
    shape = _shape_for(layout, dim0, dim1, seg_dim)
    if shape.num_classes <= 0:
        flipped = _shape_for(_flip(layout), dim0, dim1, seg_dim)
        logging.debug(
            f"Head layout {layout.value} gives {shape.num_classes} classes; "
            f"trying {flipped.layout.value}"
        )
        shape = flipped
    if shape.num_classes <= 0:
        raise UnsupportedModelError(
            f"Invalid head layout: shape=({dim0},{dim1}), seg_dim={seg_dim}"
        )
    return shape


def classify_coord_scale(
    wh: np.ndarray, thresholds: Optional[HeadLayoutThresholds] = None
) -> Tuple[CoordScale, float]:
    """
    Decide whether box sizes are normalized to [0, 1] or in pixels.

    Args:
        wh: [N, 2] widths and heights of the leading predictions.

    Returns:
        (scale, max_wh) where max_wh is the largest sampled size (at least 0).
    """
    t = thresholds or HeadLayoutThresholds()
    sample = np.asarray(wh, dtype=np.float32)[: t.coord_sample_size]
    max_wh = max(0.0, float(sample.max())) if sample.size else 0.0
    if max_wh <= t.normalized_max_wh:
        return CoordScale.NORMALIZED, max_wh
    return CoordScale.PIXEL, max_wh


def activate_scores(raw: np.ndarray) -> np.ndarray:
    """Apply the logistic to values outside [0, 1]; keep the others as they are."""
    raw = np.asarray(raw, dtype=np.float32)
    logits = (raw < 0.0) | (raw > 1.0)
    if not logits.any():
        return raw
    clipped = np.clip(raw, -88.0, 88.0)
    return np.where(logits, 1.0 / (1.0 + np.exp(-clipped)), raw).astype(np.float32)


def parse_head(
    det: np.ndarray,
    seg_dim: int,
    net_size: int,
    conf_threshold: float,
    thresholds: Optional[HeadLayoutThresholds] = None,
    layout: Optional[HeadLayout] = None,
) -> Tuple[List[Detection], ParseStats]:
    """
    Turn a raw detection head into confidence-filtered detections.

    Args:
        det: 2-D head, either orientation.
        seg_dim: Number of proto channels.
        net_size: Network input edge, used to scale normalized boxes.
        conf_threshold: Minimum best-class score.
        thresholds: Heuristic constants.
        layout: Known orientation of `det`. Skips the layout heuristic; the
            head must still leave room for at least one class.

    Returns:
        (detections in network space, stats). Detections keep prediction order.
    """
    t = thresholds or HeadLayoutThresholds()
    det = np.asarray(det, dtype=np.float32)
    if det.ndim == 3 and det.shape[0] == 1:
        det = det[0]
    if det.ndim != 2:
        raise UnsupportedModelError(f"Detection head must be 2-D, got shape {det.shape}")

    stats = ParseStats()
    if det.size == 0:
        logging.info(f"Empty detection head {det.shape}")
        return [], stats

    if layout is None:
        shape = resolve_head_shape(det.shape[0], det.shape[1], seg_dim, t)
    else:
        shape = _shape_for(layout, det.shape[0], det.shape[1], seg_dim)
        if shape.num_classes <= 0:
            raise UnsupportedModelError(
                f"Head of shape {det.shape} has no class columns as {layout.value} (seg_dim={seg_dim})"
            )
    rows = det.T if shape.layout == HeadLayout.CHANNELS_FIRST else det
    stats.total = shape.num_predictions
    logging.info(
        f"Parse det header | layout={shape.layout.value}, numClasses={shape.num_classes}, "
        f"segDim={seg_dim}, nPred={shape.num_predictions}"
    )

    coord_scale, max_wh = classify_coord_scale(rows[:, 2:4], t)
    stats.coord_scale = coord_scale
    stats.sample_max_wh = max_wh
    factor = float(net_size) if coord_scale == CoordScale.NORMALIZED else 1.0
    logging.info(f"coordScale={factor}, sampleMaxWH={max_wh:.3f}")

    scores = activate_scores(rows[:, 4:4 + shape.num_classes])
    best_cls = np.argmax(scores, axis=1)
    best_score = scores[np.arange(scores.shape[0]), best_cls]

    boxes = rows[:, 0:4] * np.float32(factor)
    keep = best_score >= conf_threshold
    keep &= (boxes[:, 2] >= t.min_box_size) & (boxes[:, 3] >= t.min_box_size)

    coeff_start = 4 + shape.num_classes
    detections: List[Detection] = []
    for i in np.flatnonzero(keep):
        cx, cy, w, h = (float(v) for v in boxes[i])
        detections.append(
            Detection(
                bbox=BoundingBox.from_cxcywh(cx, cy, w, h),
                confidence=float(best_score[i]),
                class_id=int(best_cls[i]),
                coeff=np.array(rows[i, coeff_start:coeff_start + seg_dim], dtype=np.float32),
            )
        )

    stats.kept = len(detections)
    return detections, stats
