"""
Typed models for the segmentation pipeline.

Results are immutable once built; config models convert to and from the raw
YAML dictionaries through their from_dict/to_dict adapters.
"""

from .detection import BoundingBox, Detection, SegmentationResult, Timings, detections_to_numpy
from .overlay import OverlayItem, OverlayKind
from .config import (
    AppConfig,
    GpuOptions,
    HeadLayoutThresholds,
    InferenceConfig,
    ModelConfig,
    OnnxRuntimeOptions,
    RenderConfig,
)

__all__ = [
    # Detection
    "BoundingBox",
    "Detection",
    "SegmentationResult",
    "Timings",
    "detections_to_numpy",
    # Overlay
    "OverlayItem",
    "OverlayKind",
    # Config
    "AppConfig",
    "GpuOptions",
    "HeadLayoutThresholds",
    "InferenceConfig",
    "ModelConfig",
    "OnnxRuntimeOptions",
    "RenderConfig",
]
