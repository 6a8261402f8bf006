"""
Mask compositor.

Blends each detection's proto-resolution mask straight into the output image
inside the detection's box, without building a full-resolution mask. For an
image pixel (x, y) the mask is sampled bilinearly at

    u = (x * scale + pad_x) * mask_w / net
    v = (y * scale + pad_y) * mask_h / net

Sample coordinates are computed once per ROI column and once per ROI row.
Pixels whose 2x2 neighbourhood leaves the mask are left alone, as are pixels
whose sampled value is below the threshold.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from geometry.letterbox import Letterbox
from models.config import RenderConfig
from models.detection import Detection, SegmentationResult
from models.overlay import OverlayItem, OverlayKind
from .colors import class_color, rgb_to_bgr
from .mask import MaskArena, compute_mask, row_bands

Rect = Tuple[int, int, int, int]
Color = Tuple[int, int, int]


@dataclass(frozen=True)
class SampleGrid:
    """
    Per-column and per-row bilinear sample positions for one ROI.

    `u0`/`fu` hold the integer floor and fractional weight of each column's
    mask x coordinate; `v0`/`fv` the same for rows. `cols` lists the ROI
    columns whose neighbourhood lies inside the mask; `valid_rows` flags rows.
    """
    x0: int
    y0: int
    u0: np.ndarray
    fu: np.ndarray
    v0: np.ndarray
    fv: np.ndarray
    cols: np.ndarray
    valid_rows: np.ndarray


def letterbox_of(result: SegmentationResult) -> Letterbox:
    """Rebuild the letterbox mapping an inference call used."""
    return Letterbox(
        net=result.net_size,
        width=result.orig_width,
        height=result.orig_height,
        scale=result.scale,
        resized_w=result.resized[0],
        resized_h=result.resized[1],
        pad_x=result.pad_x,
        pad_y=result.pad_y,
    )


def sample_grid(result: SegmentationResult, roi: Rect) -> SampleGrid:
    x0, y0, w, h = roi
    sx = result.mask_w / result.net_size
    sy = result.mask_h / result.net_size

    u = ((np.arange(x0, x0 + w, dtype=np.float64) * result.scale) + result.pad_x) * sx
    v = ((np.arange(y0, y0 + h, dtype=np.float64) * result.scale) + result.pad_y) * sy
    u0 = np.floor(u).astype(np.intp)
    v0 = np.floor(v).astype(np.intp)

    valid_cols = (u0 >= 0) & (u0 <= result.mask_w - 2)
    valid_rows = (v0 >= 0) & (v0 <= result.mask_h - 2)
    return SampleGrid(
        x0=x0,
        y0=y0,
        u0=u0,
        fu=(u - u0).astype(np.float32),
        v0=v0,
        fv=(v - v0).astype(np.float32),
        cols=np.flatnonzero(valid_cols),
        valid_rows=valid_rows,
    )


def _blend_rows(
    dst: np.ndarray,
    mask: np.ndarray,
    grid: SampleGrid,
    color_bgr: np.ndarray,
    threshold: float,
    alpha: float,
    r0: int,
    r1: int,
    roi_mask: Optional[np.ndarray],
) -> int:
    rows = np.arange(r0, r1)[grid.valid_rows[r0:r1]]
    cols = grid.cols
    if rows.size == 0 or cols.size == 0:
        return 0

    u0 = grid.u0[cols]
    fu = grid.fu[cols]
    v0 = grid.v0[rows][:, None]
    fv = grid.fv[rows][:, None]

    top = mask[v0, u0] * (1.0 - fu) + mask[v0, u0 + 1] * fu
    bottom = mask[v0 + 1, u0] * (1.0 - fu) + mask[v0 + 1, u0 + 1] * fu
    values = top * (1.0 - fv) + bottom * fv

    hit = values >= threshold
    ri, ci = np.nonzero(hit)
    if ri.size == 0:
        return 0
    if roi_mask is not None:
        roi_mask[rows[ri], cols[ci]] = 255

    py = grid.y0 + rows[ri]
    px = grid.x0 + cols[ci]
    a = np.float32(alpha)
    pixels = dst[py, px, :3].astype(np.float32)
    dst[py, px, :3] = (pixels * (np.float32(1.0) - a) + color_bgr * a).astype(np.uint8)
    if dst.shape[2] == 4:
        dst[py, px, 3] = 255
    return int(ri.size)


def blend_mask(
    dst: np.ndarray,
    mask: np.ndarray,
    result: SegmentationResult,
    roi: Rect,
    color: Color,
    threshold: float,
    alpha: float,
    roi_mask: Optional[np.ndarray] = None,
    workers: int = 1,
    executor: Optional[Executor] = None,
) -> int:
    """
    Alpha-blend one mask into `dst` inside `roi`.

    Args:
        dst: HxWx3 (BGR) or HxWx4 (BGRA) uint8 image, modified in place.
        mask: [mask_h, mask_w] probabilities.
        result: Inference result the mask belongs to.
        roi: (x, y, w, h) in image pixels, already clipped to `dst`.
        color: (R, G, B).
        threshold: Minimum sampled mask value to paint.
        alpha: Blend weight of `color`, 0..1.
        roi_mask: Optional [h, w] uint8 array that receives 255 at painted pixels.
        workers: Number of row bands.
        executor: Pool the bands run on. Without one, bands run inline.

    Returns:
        Number of painted pixels.
    """
    if dst.ndim != 3 or dst.shape[2] not in (3, 4) or dst.dtype != np.uint8:
        raise ValueError(f"dst must be HxWx3 or HxWx4 uint8, got {dst.dtype} {dst.shape}")
    alpha = min(max(float(alpha), 0.0), 1.0)
    grid = sample_grid(result, roi)
    color_bgr = np.array(rgb_to_bgr(color), dtype=np.float32)

    bands = row_bands(roi[3], workers)
    if executor is None or len(bands) == 1:
        return sum(
            _blend_rows(dst, mask, grid, color_bgr, threshold, alpha, r0, r1, roi_mask)
            for r0, r1 in bands
        )
    futures = [
        executor.submit(_blend_rows, dst, mask, grid, color_bgr, threshold, alpha, r0, r1, roi_mask)
        for r0, r1 in bands
    ]
    return sum(f.result() for f in futures)


def outline_polylines(roi_mask: np.ndarray, roi: Rect) -> List[List[Tuple[int, int]]]:
    """External contours of a painted ROI, in image coordinates."""
    contours, _ = cv2.findContours(roi_mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    x0, y0 = roi[0], roi[1]
    lines = []
    for c in contours:
        if len(c) < 2:
            continue
        lines.append([(int(p[0][0]) + x0, int(p[0][1]) + y0) for p in c])
    return lines


class Compositor:
    """
    Renders a SegmentationResult onto an image.

    Mask synthesis and blending split their rows over a shared thread pool.
    Each concurrent `render` call borrows one slot of the mask arena.
    """

    def __init__(
        self,
        config: Optional[RenderConfig] = None,
        executor: Optional[Executor] = None,
        slots: int = 2,
    ):
        self.config = config or RenderConfig()
        self.workers = self.config.mask_workers or os.cpu_count() or 1
        self._executor = executor
        self._owns_executor = False
        self._executor_lock = threading.Lock()
        self._arena = MaskArena(slots)
        self._free_slots: "queue.Queue[int]" = queue.Queue()
        for i in range(slots):
            self._free_slots.put(i)

    def _pool(self) -> Optional[Executor]:
        if self.workers <= 1:
            return None
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.workers, thread_name_prefix="compositor"
                )
                self._owns_executor = True
            return self._executor

    def _label(self, det: Detection) -> str:
        names = self.config.class_names or {}
        return str(names.get(det.class_id, det.class_id))

    def render(
        self,
        image: np.ndarray,
        result: SegmentationResult,
        mask_threshold: Optional[float] = None,
        alpha: Optional[float] = None,
        color: Optional[Color] = None,
    ) -> Tuple[np.ndarray, List[OverlayItem]]:
        """
        Composite every detection's mask onto a copy of `image`.

        Args:
            image: Original image (BGR, BGRA or gray uint8), same size as
                the one passed to inference. Not modified.
            result: Output of one inference call.
            mask_threshold: Override of the configured mask threshold.
            alpha: Override of the configured blend weight.
            color: Paint every detection in this (R, G, B) colour instead of
                the class palette.

        Returns:
            (composited image, overlay items).
        """
        cfg = self.config
        threshold = cfg.mask_threshold if mask_threshold is None else float(mask_threshold)
        alpha = cfg.alpha if alpha is None else float(alpha)

        if image.ndim == 2:
            out = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        else:
            out = image.copy()
        if (out.shape[1], out.shape[0]) != result.orig_size:
            raise ValueError(
                f"image size {out.shape[1]}x{out.shape[0]} does not match "
                f"inference size {result.orig_width}x{result.orig_height}"
            )

        overlays: List[OverlayItem] = []
        if not result.detections:
            return out, overlays

        lb = letterbox_of(result)
        proto = result.proto_khw
        pool = self._pool()
        skipped = 0

        slot = self._free_slots.get()
        try:
            buf = self._arena.buffer(slot, result.mask_h * result.mask_w)
            for det in result.detections:
                roi = lb.net_box_to_original(det.box)
                if roi is None:
                    skipped += 1
                    continue

                mask = compute_mask(
                    det.coeff, proto, out=buf, lanes=cfg.mask_lanes, workers=self.workers, executor=pool
                )
                rgb = color or class_color(det.class_id)
                roi_mask = np.zeros((roi[3], roi[2]), dtype=np.uint8) if cfg.draw_outlines else None
                blend_mask(
                    out, mask, result, roi, rgb, threshold, alpha,
                    roi_mask=roi_mask, workers=self.workers, executor=pool,
                )

                x, y, w, h = roi
                if cfg.draw_boxes:
                    bgr = rgb_to_bgr(rgb)
                    stroke = bgr + (255,) if out.shape[2] == 4 else bgr
                    cv2.rectangle(out, (x, y), (x + w - 1, y + h - 1), stroke, max(1, cfg.line_thickness))
                    overlays.append(OverlayItem(OverlayKind.BOX, roi, rgb, class_id=det.class_id, score=det.confidence))
                if cfg.draw_scores:
                    overlays.append(
                        OverlayItem(
                            OverlayKind.BADGE,
                            roi,
                            rgb,
                            text=f"[{self._label(det)}]: {det.confidence:.2f}",
                            class_id=det.class_id,
                            score=det.confidence,
                        )
                    )
                if roi_mask is not None and roi_mask.any():
                    for line in outline_polylines(roi_mask, roi):
                        overlays.append(
                            OverlayItem(OverlayKind.POLYLINE, roi, rgb, points=line, class_id=det.class_id)
                        )
        finally:
            self._free_slots.put(slot)

        if skipped:
            logging.debug(f"Skipped {skipped} detections with empty boxes")
        return out, overlays

    def close(self) -> None:
        with self._executor_lock:
            if self._owns_executor and self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
                self._owns_executor = False
