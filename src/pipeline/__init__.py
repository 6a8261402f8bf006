"""
Pipeline module.

The engine runs the full flow for one image:
- Letterbox and tensor fill
- Backend inference
- Head parsing and NMS
- Mask synthesis and compositing (render)
"""

from .engine import (
    SegmentationEngine,
    create_backend,
    create_engine,
    resolve_backend_kind,
)

__all__ = [
    "SegmentationEngine",
    "create_backend",
    "create_engine",
    "resolve_backend_kind",
]
