"""
Overlay metadata returned alongside a composited image.

The canvas layer draws these on top of the image (badges, boxes, outlines);
they are in original-image pixel coordinates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class OverlayKind(str, Enum):
    BADGE = "badge"
    BOX = "box"
    POLYLINE = "polyline"


@dataclass(frozen=True)
class OverlayItem:
    """
    A single overlay element.

    Attributes:
        kind: What to draw.
        box: (x, y, w, h) in original-image pixels.
        color: Stroke colour as (R, G, B).
        text: Badge text, if any.
        points: Closed polyline points for outlines.
        class_id: Class of the detection this item belongs to.
        score: Detection confidence.
    """
    kind: OverlayKind
    box: Tuple[int, int, int, int]
    color: Tuple[int, int, int]
    text: Optional[str] = None
    points: List[Tuple[int, int]] = field(default_factory=list)
    class_id: Optional[int] = None
    score: Optional[float] = None

    def to_dict(self) -> dict:
        d = {
            "kind": self.kind.value,
            "box": list(self.box),
            "color": list(self.color),
        }
        if self.text is not None:
            d["text"] = self.text
        if self.points:
            d["points"] = [list(p) for p in self.points]
        if self.class_id is not None:
            d["class_id"] = self.class_id
        if self.score is not None:
            d["score"] = self.score
        return d
