"""
Letterbox geometry.

Fits an arbitrarily sized image into a square `net x net` canvas while keeping
its aspect ratio, centred on black padding. The same `Letterbox` instance is
used to encode the image for the model and to decode boxes and sample
coordinates back into the original image, so both directions share one
formula.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np


@dataclass(frozen=True)
class Letterbox:
    """
    Mapping between an original `width x height` image and a `net x net` canvas.

    Attributes:
        net: Canvas edge length.
        width: Original image width.
        height: Original image height.
        scale: Uniform resize factor, min(net/width, net/height).
        resized_w: Width after resizing, before padding.
        resized_h: Height after resizing, before padding.
        pad_x: Left padding in canvas pixels.
        pad_y: Top padding in canvas pixels.
    """
    net: int
    width: int
    height: int
    scale: float
    resized_w: int
    resized_h: int
    pad_x: int
    pad_y: int

    @classmethod
    def compute(cls, width: int, height: int, net: int) -> "Letterbox":
        if width <= 0 or height <= 0:
            raise ValueError(f"image size must be positive, got {width}x{height}")
        if net <= 0:
            raise ValueError(f"net size must be positive, got {net}")

        scale = min(net / width, net / height)
        # at least one pixel so extremely thin images still resize
        rw = max(1, int(round(width * scale)))
        rh = max(1, int(round(height * scale)))
        return cls(
            net=net,
            width=width,
            height=height,
            scale=scale,
            resized_w=rw,
            resized_h=rh,
            pad_x=(net - rw) // 2,
            pad_y=(net - rh) // 2,
        )

    @property
    def resized(self) -> Tuple[int, int]:
        return (self.resized_w, self.resized_h)

    @property
    def orig_size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def to_net(self, x: float, y: float) -> Tuple[float, float]:
        """Map an original-image point into canvas coordinates."""
        return (x * self.scale + self.pad_x, y * self.scale + self.pad_y)

    def to_original(self, xn: float, yn: float) -> Tuple[float, float]:
        """Map a canvas point back into the original image, clamped to its pixels."""
        x = (xn - self.pad_x) / self.scale
        y = (yn - self.pad_y) / self.scale
        return (
            min(max(x, 0.0), float(self.width - 1)),
            min(max(y, 0.0), float(self.height - 1)),
        )

    def net_box_to_original(
        self, box: Tuple[float, float, float, float]
    ) -> Optional[Tuple[int, int, int, int]]:
        """
        Map an (l, t, r, b) canvas box to an integer (x, y, w, h) image rectangle.

        Returns None when the box collapses to nothing inside the image.
        """
        l, t, r, b = box
        inv = 1.0 / max(1e-6, self.scale)
        l = (l - self.pad_x) * inv
        t = (t - self.pad_y) * inv
        r = (r - self.pad_x) * inv
        b = (b - self.pad_y) * inv

        max_x = float(self.width - 1)
        max_y = float(self.height - 1)
        l = min(max(l, 0.0), max_x)
        r = min(max(r, 0.0), max_x)
        t = min(max(t, 0.0), max_y)
        b = min(max(b, 0.0), max_y)
        if r < l:
            l, r = r, l
        if b < t:
            t, b = b, t

        x = int(math.floor(l))
        y = int(math.floor(t))
        w = int(math.ceil(r - l))
        h = int(math.ceil(b - t))
        if w <= 0 or h <= 0:
            return None

        # clip to image
        x0 = max(0, x)
        y0 = max(0, y)
        x1 = min(self.width, x + w)
        y1 = min(self.height, y + h)
        if x1 <= x0 or y1 <= y0:
            return None
        return (x0, y0, x1 - x0, y1 - y0)


def letterbox_image(image: np.ndarray, net: int) -> Tuple[np.ndarray, Letterbox]:
    """
    Resize `image` onto a black `net x net` canvas.

    Args:
        image: HxWxC uint8 image (BGR or BGRA, as read by OpenCV) or HxW gray.
        net: Canvas edge length.

    Returns:
        (canvas, letterbox) where canvas is net x net x 3 BGR uint8.
    """
    if image is None or image.ndim not in (2, 3):
        raise ValueError("image must be a 2-D or 3-D array")

    if image.ndim == 2:
        bgr = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    elif image.shape[2] == 4:
        bgr = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    else:
        bgr = image

    h, w = bgr.shape[:2]
    lb = Letterbox.compute(w, h, net)

    canvas = np.zeros((net, net, 3), dtype=np.uint8)
    resized = cv2.resize(bgr, (lb.resized_w, lb.resized_h), interpolation=cv2.INTER_LINEAR)
    canvas[lb.pad_y:lb.pad_y + lb.resized_h, lb.pad_x:lb.pad_x + lb.resized_w] = resized
    return canvas, lb


def fill_tensor(
    image: np.ndarray, net: int, out: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, Letterbox]:
    """
    Letterbox `image` and lay it out as a [1, 3, net, net] float32 RGB tensor in [0, 1].

    If `out` is given it must have exactly that shape and is overwritten in place.
    """
    canvas, lb = letterbox_image(image, net)
    shape = (1, 3, net, net)
    if out is None:
        out = np.empty(shape, dtype=np.float32)
    elif out.shape != shape or out.dtype != np.float32:
        raise ValueError(f"out must be float32 with shape {shape}, got {out.dtype} {out.shape}")

    # BGR -> RGB planes
    for c in range(3):
        np.divide(canvas[:, :, 2 - c], np.float32(255.0), out=out[0, c], casting="unsafe")
    return out, lb
