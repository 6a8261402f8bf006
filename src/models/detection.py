"""
Detection and segmentation result models.

Boxes are kept in network-input (letterboxed) space; mapping back to the
original image is done by `geometry.letterbox`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np


@dataclass(frozen=True)
class BoundingBox:
    """
    A bounding box in network-input pixel coordinates.

    Attributes:
        x1: Left edge x coordinate.
        y1: Top edge y coordinate.
        x2: Right edge x coordinate.
        y2: Bottom edge y coordinate.
    """
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x1 + self.x2) / 2, (self.y1 + self.y2) / 2)

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        """Return as (x1, y1, x2, y2) tuple."""
        return (self.x1, self.y1, self.x2, self.y2)

    @classmethod
    def from_tuple(cls, t: Tuple[float, float, float, float]) -> "BoundingBox":
        """Create from (x1, y1, x2, y2) tuple."""
        return cls(x1=float(t[0]), y1=float(t[1]), x2=float(t[2]), y2=float(t[3]))

    @classmethod
    def from_cxcywh(cls, cx: float, cy: float, w: float, h: float) -> "BoundingBox":
        """Create from center-form (cx, cy, width, height)."""
        return cls(x1=cx - w * 0.5, y1=cy - h * 0.5, x2=cx + w * 0.5, y2=cy + h * 0.5)


@dataclass(frozen=True)
class Detection:
    """
    A single instance detection.

    Attributes:
        bbox: Box in network-input space.
        confidence: Best-class score (0-1).
        class_id: Index of the best class.
        coeff: Mask coefficient vector, length == seg_dim of the result.
    """
    bbox: BoundingBox
    confidence: float
    class_id: int
    coeff: np.ndarray

    def __post_init__(self):
        coeff = np.ascontiguousarray(self.coeff, dtype=np.float32)
        if coeff.ndim != 1:
            raise ValueError(f"coeff must be 1-D, got shape {coeff.shape}")
        if self.class_id < 0:
            raise ValueError(f"class_id must be non-negative, got {self.class_id}")
        object.__setattr__(self, "coeff", coeff)

    @property
    def box(self) -> Tuple[float, float, float, float]:
        return self.bbox.as_tuple()

    @property
    def seg_dim(self) -> int:
        return int(self.coeff.shape[0])

    @classmethod
    def from_xyxy(
        cls,
        x1: float,
        y1: float,
        x2: float,
        y2: float,
        confidence: float,
        class_id: int,
        coeff,
    ) -> "Detection":
        """Create Detection from x1, y1, x2, y2 coordinates."""
        return cls(
            bbox=BoundingBox(x1=float(x1), y1=float(y1), x2=float(x2), y2=float(y2)),
            confidence=float(confidence),
            class_id=int(class_id),
            coeff=coeff,
        )


@dataclass
class Timings:
    """Per-stage timing in milliseconds (informational only)."""
    pre_ms: float = 0.0
    infer_ms: float = 0.0
    post_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class SegmentationResult:
    """
    Output of one inference call.

    The proto buffer is flat and channel-major: index = (k*mask_h + y)*mask_w + x.
    Every detection carries exactly `seg_dim` coefficients. Construction fails
    with ValueError when either invariant is violated.
    """
    net_size: int
    scale: float
    pad_x: int
    pad_y: int
    resized: Tuple[int, int]
    orig_size: Tuple[int, int]
    seg_dim: int
    mask_h: int
    mask_w: int
    proto: np.ndarray
    detections: List[Detection] = field(default_factory=list)
    timings: Timings = field(default_factory=Timings)

    def __post_init__(self):
        if self.net_size <= 0:
            raise ValueError(f"net_size must be positive, got {self.net_size}")
        if not self.scale > 0:
            raise ValueError(f"scale must be > 0, got {self.scale}")
        if not (0 <= self.pad_x < self.net_size and 0 <= self.pad_y < self.net_size):
            raise ValueError(f"padding ({self.pad_x}, {self.pad_y}) out of range for net {self.net_size}")

        proto = np.array(self.proto, dtype=np.float32, copy=True).reshape(-1)
        expected = self.seg_dim * self.mask_h * self.mask_w
        if proto.size != expected:
            raise ValueError(
                f"proto length {proto.size} != seg_dim*mask_h*mask_w "
                f"({self.seg_dim}*{self.mask_h}*{self.mask_w}={expected})"
            )
        for i, det in enumerate(self.detections):
            if det.seg_dim != self.seg_dim:
                raise ValueError(
                    f"detection {i} has {det.seg_dim} coefficients, expected {self.seg_dim}"
                )

        proto.flags.writeable = False
        object.__setattr__(self, "proto", proto)
        object.__setattr__(self, "detections", list(self.detections))

    @property
    def proto_khw(self) -> np.ndarray:
        """Read-only [K, H, W] view over the flat proto buffer."""
        return self.proto.reshape(self.seg_dim, self.mask_h, self.mask_w)

    @property
    def orig_width(self) -> int:
        return self.orig_size[0]

    @property
    def orig_height(self) -> int:
        return self.orig_size[1]

    def __len__(self) -> int:
        return len(self.detections)


def detections_to_numpy(detections: List[Detection]) -> np.ndarray:
    """
    Adapter: Convert list of Detection objects to numpy array.

    Returns:
        Array of shape (N, 6) with [x1, y1, x2, y2, confidence, class_id].
    """
    if not detections:
        return np.zeros((0, 6), dtype=np.float32)
    return np.array(
        [[*d.box, d.confidence, d.class_id] for d in detections],
        dtype=np.float32,
    )
