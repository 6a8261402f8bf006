"""
Instance mask synthesis.

A detection's mask at proto resolution is

    mask[y, x] = sigmoid(sum_k coeff[k] * proto[k, y, x])

`compute_mask` covers the widest multiple of `lanes` columns with one
`einsum` per row band and finishes the remaining columns with a scalar loop.
Row bands are independent and can be spread over a thread pool; each band
writes a disjoint slice of the caller's buffer.
"""

from __future__ import annotations

import math
from concurrent.futures import Executor
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

SIGMOID_CLIP = 88.0


class ProtoLayout(str, Enum):
    """Memory order of a flat proto buffer."""
    KHW = "khw"
    HWK = "hwk"


def sigmoid_inplace(buf: np.ndarray) -> np.ndarray:
    """Overwrite `buf` with its logistic, without temporaries."""
    np.clip(buf, -SIGMOID_CLIP, SIGMOID_CLIP, out=buf)
    np.negative(buf, out=buf)
    np.exp(buf, out=buf)
    buf += 1.0
    np.reciprocal(buf, out=buf)
    return buf


def _scalar_sigmoid(v: float) -> float:
    v = min(max(v, -SIGMOID_CLIP), SIGMOID_CLIP)
    return 1.0 / (1.0 + math.exp(-v))


def row_bands(height: int, count: int) -> List[Tuple[int, int]]:
    """Split [0, height) into at most `count` contiguous, non-empty row ranges."""
    count = max(1, min(count, height))
    step, extra = divmod(height, count)
    bands = []
    y = 0
    for i in range(count):
        h = step + (1 if i < extra else 0)
        if h:
            bands.append((y, y + h))
        y += h
    return bands


def _check_inputs(coeff: np.ndarray, proto: np.ndarray) -> None:
    if proto.ndim != 3:
        raise ValueError(f"proto must be [K, H, W], got shape {proto.shape}")
    if coeff.ndim != 1 or coeff.shape[0] != proto.shape[0]:
        raise ValueError(
            f"coeff length {coeff.shape[0] if coeff.ndim == 1 else coeff.shape} "
            f"does not match proto channels {proto.shape[0]}"
        )


def _out_view(out: Optional[np.ndarray], mh: int, mw: int) -> np.ndarray:
    if out is None:
        return np.empty((mh, mw), dtype=np.float32)
    if out.dtype != np.float32:
        raise ValueError(f"out must be float32, got {out.dtype}")
    if out.ndim == 2 and out.shape == (mh, mw):
        return out
    if out.ndim == 1 and out.size >= mh * mw:
        return out[: mh * mw].reshape(mh, mw)
    raise ValueError(f"out of shape {out.shape} cannot hold a {mh}x{mw} mask")


def _fill_band(
    coeff: np.ndarray, proto: np.ndarray, out2d: np.ndarray, y0: int, y1: int, lanes: int
) -> None:
    mw = proto.shape[2]
    xv = (mw // lanes) * lanes if lanes > 0 else 0
    if xv:
        np.einsum("k,kyx->yx", coeff, proto[:, y0:y1, :xv], out=out2d[y0:y1, :xv])
    for y in range(y0, y1):
        for x in range(xv, mw):
            acc = 0.0
            for k in range(coeff.shape[0]):
                acc += float(coeff[k]) * float(proto[k, y, x])
            out2d[y, x] = acc
    sigmoid_inplace(out2d[y0:y1])


def compute_mask(
    coeff: np.ndarray,
    proto: np.ndarray,
    out: Optional[np.ndarray] = None,
    lanes: int = 8,
    workers: int = 1,
    executor: Optional[Executor] = None,
) -> np.ndarray:
    """
    Synthesize one detection's mask at proto resolution.

    Args:
        coeff: [K] float32 coefficient vector.
        proto: [K, H, W] float32 proto basis.
        out: Destination buffer, either [H, W] or flat with at least H*W
            elements (an arena slot). Fully overwritten.
        lanes: Column block width for the vectorized path. 0 runs the scalar
            loop for every column.
        workers: Number of row bands.
        executor: Pool the bands run on. Without one, bands run inline.

    Returns:
        [H, W] view over `out` holding mask probabilities in (0, 1).
    """
    coeff = np.asarray(coeff, dtype=np.float32)
    proto = np.asarray(proto, dtype=np.float32)
    _check_inputs(coeff, proto)
    mh, mw = proto.shape[1], proto.shape[2]
    out2d = _out_view(out, mh, mw)

    bands = row_bands(mh, workers)
    if executor is None or len(bands) == 1:
        for y0, y1 in bands:
            _fill_band(coeff, proto, out2d, y0, y1, lanes)
    else:
        futures = [executor.submit(_fill_band, coeff, proto, out2d, y0, y1, lanes) for y0, y1 in bands]
        for f in futures:
            f.result()
    return out2d


def compute_mask_scalar(coeff: np.ndarray, proto: np.ndarray) -> np.ndarray:
    """Reference implementation, one pixel at a time in double precision."""
    coeff = np.asarray(coeff, dtype=np.float32)
    proto = np.asarray(proto, dtype=np.float32)
    _check_inputs(coeff, proto)
    k_dim, mh, mw = proto.shape
    out = np.empty((mh, mw), dtype=np.float32)
    for y in range(mh):
        for x in range(mw):
            acc = 0.0
            for k in range(k_dim):
                acc += float(coeff[k]) * float(proto[k, y, x])
            out[y, x] = _scalar_sigmoid(acc)
    return out


class MaskArena:
    """
    Per-worker scratch buffers for mask synthesis.

    Slot `i` belongs to worker `i`; a slot is reallocated only when a larger
    mask is requested than it has held before.
    """

    def __init__(self, slots: int = 1):
        if slots < 1:
            raise ValueError(f"slots must be >= 1, got {slots}")
        self._buffers: List[np.ndarray] = [np.empty(0, dtype=np.float32) for _ in range(slots)]

    @property
    def slots(self) -> int:
        return len(self._buffers)

    def buffer(self, index: int, size: int) -> np.ndarray:
        """Flat float32 buffer of at least `size` elements for slot `index`."""
        buf = self._buffers[index]
        if buf.size < size:
            buf = np.empty(size, dtype=np.float32)
            self._buffers[index] = buf
        return buf


def proto_to_khw(
    proto_flat: np.ndarray, seg_dim: int, mask_h: int, mask_w: int, layout: ProtoLayout
) -> np.ndarray:
    """View or transpose a flat proto buffer into contiguous [K, H, W]."""
    flat = np.asarray(proto_flat, dtype=np.float32).reshape(-1)
    if flat.size != seg_dim * mask_h * mask_w:
        raise ValueError(
            f"proto length {flat.size} != {seg_dim}*{mask_h}*{mask_w}"
        )
    if layout == ProtoLayout.KHW:
        return flat.reshape(seg_dim, mask_h, mask_w)
    return np.ascontiguousarray(flat.reshape(mask_h, mask_w, seg_dim).transpose(2, 0, 1))


def detect_proto_layout(
    coeff: np.ndarray, proto_flat: np.ndarray, seg_dim: int, mask_h: int, mask_w: int
) -> ProtoLayout:
    """
    Guess whether a flat proto buffer is [K, H, W] or [H, W, K].

    Synthesizes the mask under both readings; the correct one has spatial
    structure, the wrong one is close to noise, so the higher variance wins.
    Ties go to KHW.
    """
    a = compute_mask(coeff, proto_to_khw(proto_flat, seg_dim, mask_h, mask_w, ProtoLayout.KHW))
    b = compute_mask(coeff, proto_to_khw(proto_flat, seg_dim, mask_h, mask_w, ProtoLayout.HWK))
    var_a = float(np.var(a, dtype=np.float64))
    var_b = float(np.var(b, dtype=np.float64))
    return ProtoLayout.KHW if var_a >= var_b else ProtoLayout.HWK
