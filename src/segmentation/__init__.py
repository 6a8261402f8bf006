"""
Segmentation module.

Mask synthesis from the proto basis, compositing onto images and the class
colour palette.
"""

from .colors import class_color
from .compositor import Compositor, blend_mask, sample_grid
from .mask import (
    MaskArena,
    ProtoLayout,
    compute_mask,
    compute_mask_scalar,
    detect_proto_layout,
    proto_to_khw,
)

__all__ = [
    "class_color",
    "Compositor",
    "blend_mask",
    "sample_grid",
    "MaskArena",
    "ProtoLayout",
    "compute_mask",
    "compute_mask_scalar",
    "detect_proto_layout",
    "proto_to_khw",
]
