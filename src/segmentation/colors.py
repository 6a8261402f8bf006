"""
Class colour palette.

Hues are spaced by the golden ratio so consecutive class ids get clearly
different colours; the mapping is stable across runs.
"""

from __future__ import annotations

import colorsys
from typing import Tuple

GOLDEN_RATIO_CONJUGATE = 0.6180339887498949
SATURATION = 0.65
VALUE = 0.95


def class_color(class_id: int) -> Tuple[int, int, int]:
    """(R, G, B) colour for a class id."""
    h = (class_id * GOLDEN_RATIO_CONJUGATE) % 1.0
    r, g, b = colorsys.hsv_to_rgb(h, SATURATION, VALUE)
    return tuple(min(255, max(0, int(c * 255.0))) for c in (r, g, b))  # type: ignore[return-value]


def rgb_to_bgr(color: Tuple[int, int, int]) -> Tuple[int, int, int]:
    """OpenCV channel order."""
    return (color[2], color[1], color[0])
