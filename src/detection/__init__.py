"""
Detection module.

Parses raw YOLO-seg detection heads and removes duplicate detections.
"""

from .head import (
    CoordScale,
    HeadLayout,
    HeadShape,
    classify_coord_scale,
    classify_layout,
    parse_head,
    resolve_head_shape,
)
from .nms import iou, nms, nms_indices

__all__ = [
    "CoordScale",
    "HeadLayout",
    "HeadShape",
    "classify_coord_scale",
    "classify_layout",
    "parse_head",
    "resolve_head_shape",
    "iou",
    "nms",
    "nms_indices",
]
