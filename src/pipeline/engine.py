"""
Segmentation engine.

One facade over both inference backends:

    result = engine.infer(image, conf, iou)
    composited, overlays = engine.render(image, result, mask_threshold, alpha)

`infer` runs letterbox -> backend -> head parsing -> NMS and returns an
immutable SegmentationResult. `render` only needs that result and the
original image; it never touches the model.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from detection.head import HeadLayout, parse_head
from detection.nms import nms
from geometry.letterbox import fill_tensor
from inference.backend import ExecutionProvider, InferenceBackend
from inference.session_registry import ProgressCallback, SessionRegistry
from models.config import AppConfig
from models.detection import SegmentationResult, Timings
from models.overlay import OverlayItem
from segmentation.compositor import Color, Compositor

TENSORRT_EXTENSIONS = (".engine", ".trt", ".plan")


def resolve_backend_kind(model_path: str, backend: str = "auto") -> str:
    """
    Pick "onnx" or "tensorrt".

    "auto" chooses by file extension: serialized engines (.engine, .trt,
    .plan) go to the native runner, everything else to onnxruntime.
    """
    backend = (backend or "auto").lower()
    if backend in ("onnx", "tensorrt"):
        return backend
    if backend != "auto":
        raise ValueError(f"Unknown model backend: {backend}")
    ext = os.path.splitext(model_path)[1].lower()
    return "tensorrt" if ext in TENSORRT_EXTENSIONS else "onnx"


def create_backend(
    model_path: str,
    config: Optional[AppConfig] = None,
    session_factory=None,
    available_providers: Optional[Callable[[], Sequence[str]]] = None,
    native_api=None,
) -> InferenceBackend:
    """
    Load a model on the backend its config (or extension) asks for.

    The onnxruntime and ctypes bindings are imported here so that a process
    using only one backend never loads the other.
    """
    config = config or AppConfig()
    kind = resolve_backend_kind(model_path, config.model.backend)
    logging.info(f"Loading {kind} backend for {model_path}")
    if kind == "tensorrt":
        from inference.tensorrt_backend import TensorRTBackend

        return TensorRTBackend(
            model_path,
            device_id=config.model.device_id,
            api=native_api,
            library=config.model.native_library,
        )

    from inference.onnx_backend import OnnxBackend

    return OnnxBackend.load(
        model_path,
        options=config.onnxruntime,
        net_size=config.model.net_size,
        session_factory=session_factory,
        available_providers=available_providers,
    )


def _ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class SegmentationEngine:
    """
    Backend-agnostic YOLO-seg inference and rendering.

    Example:
        engine = create_engine(AppConfig.from_dict(cfg))
        result = engine.infer(image, conf=0.5, iou=0.45)
        out, overlays = engine.render(image, result)
    """

    def __init__(
        self,
        backend: InferenceBackend,
        config: Optional[AppConfig] = None,
        compositor: Optional[Compositor] = None,
        owns_backend: bool = True,
    ):
        self.backend = backend
        self.config = config or AppConfig()
        self.compositor = compositor or Compositor(self.config.render)
        self._owns_backend = owns_backend
        self._lock = threading.Lock()
        self._tensor: Optional[np.ndarray] = None

    @property
    def provider(self) -> ExecutionProvider:
        return self.backend.provider

    @property
    def net_size(self) -> int:
        return self.backend.input_size() or self.config.model.net_size

    def _input_buffer(self, net: int) -> np.ndarray:
        shape = (1, 3, net, net)
        if self._tensor is None or self._tensor.shape != shape:
            self._tensor = np.empty(shape, dtype=np.float32)
        return self._tensor

    def infer(
        self,
        image: np.ndarray,
        conf: Optional[float] = None,
        iou: Optional[float] = None,
    ) -> SegmentationResult:
        """
        Run the model on one image.

        Args:
            image: BGR, BGRA or gray uint8 image.
            conf: Minimum best-class score (config default if None).
            iou: NMS IoU threshold (config default if None).
        """
        inf = self.config.inference
        conf = inf.conf_threshold if conf is None else float(conf)
        iou = inf.iou_threshold if iou is None else float(iou)

        with self._lock:
            start = time.perf_counter()
            net = self.net_size
            h, w = image.shape[:2]
            logging.info(f"Infer() start | net={net}, img={w}x{h}, provider={self.provider.value}")

            t = time.perf_counter()
            tensor, lb = fill_tensor(image, net, out=self._input_buffer(net))
            pre_ms = _ms(t)
            logging.info(
                f"Preprocess done | resized={lb.resized_w}x{lb.resized_h}, "
                f"pad=({lb.pad_x},{lb.pad_y}), scale={lb.scale:.6f}, preMs={pre_ms:.1f}"
            )

            t = time.perf_counter()
            raw = self.backend.run(tensor)
            infer_ms = _ms(t)

            t = time.perf_counter()
            candidates, stats = parse_head(
                raw.det,
                raw.seg_dim,
                net,
                conf,
                inf.layout,
                layout=HeadLayout.CHANNELS_LAST if raw.channels_last else None,
            )
            detections = nms(candidates, iou) if candidates else []
            proto = self.backend.resolve_proto(raw.proto, detections[0].coeff if detections else None)
            post_ms = _ms(t)
            logging.info(
                f"Parsed det rows | total={stats.total}, kept={stats.kept}, "
                f"afterNms={len(detections)}, postMs={post_ms:.1f}"
            )

            result = SegmentationResult(
                net_size=net,
                scale=lb.scale,
                pad_x=lb.pad_x,
                pad_y=lb.pad_y,
                resized=lb.resized,
                orig_size=lb.orig_size,
                seg_dim=raw.seg_dim,
                mask_h=raw.mask_h,
                mask_w=raw.mask_w,
                proto=proto,
                detections=detections,
                timings=Timings(pre_ms=pre_ms, infer_ms=infer_ms, post_ms=post_ms, total_ms=_ms(start)),
            )

        tm = result.timings
        logging.info(
            f"Infer() end | dets={len(result)}, times(ms): pre={tm.pre_ms:.1f}, "
            f"infer={tm.infer_ms:.1f}, post={tm.post_ms:.1f}, total={tm.total_ms:.1f}"
        )
        return result

    def render(
        self,
        image: np.ndarray,
        result: SegmentationResult,
        mask_threshold: Optional[float] = None,
        alpha: Optional[float] = None,
        color: Optional[Color] = None,
    ) -> Tuple[np.ndarray, List[OverlayItem]]:
        """Composite `result` onto a copy of `image`. See Compositor.render."""
        return self.compositor.render(image, result, mask_threshold, alpha, color)

    def close(self) -> None:
        self.compositor.close()
        if self._owns_backend:
            self.backend.close()


def create_engine(
    config: AppConfig,
    registry: Optional[SessionRegistry] = None,
    progress: Optional[ProgressCallback] = None,
) -> SegmentationEngine:
    """
    Factory function to create a SegmentationEngine from config.

    With a registry the backend is looked up (or loaded) there and stays
    owned by the registry; otherwise the engine owns it.
    """
    path = config.model.path
    if not path:
        raise ValueError("model.path is not set")

    if registry is None:
        return SegmentationEngine(create_backend(path, config), config)

    backend = registry.ensure_session(path, progress)
    return SegmentationEngine(backend, config, owns_backend=False)
