"""
Geometry module.

Letterbox mapping between original-image and network-input coordinates.
"""

from .letterbox import Letterbox, letterbox_image, fill_tensor

__all__ = ["Letterbox", "letterbox_image", "fill_tensor"]
