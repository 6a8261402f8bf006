"""
Native engine backend.

Runs serialized TensorRT engines through the engine runner shared library
(`TensorRTRunner`), which exposes a small C ABI:

    void* trt_create_engine(const char* path, int device_id);
    void  trt_destroy_engine(void* handle);
    int   trt_get_input_size(void* handle);          // -1 when dynamic
    int   trt_infer(void* handle, const float* nchw, int len,
                    float** det, int* n_det, int* det_stride,
                    float** proto, int* seg_dim, int* mask_h, int* mask_w);
    void  trt_free(void* p);

`trt_infer` returns 0 on failure. The detection buffer is row-major
[n_det, det_stride]; the proto buffer is [seg_dim, mask_h, mask_w] but some
runner builds emit [mask_h, mask_w, seg_dim], which is probed once per
backend. Both buffers are owned by the library and released via `trt_free`.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import logging
import threading
from typing import Optional, Tuple

import numpy as np

from segmentation.mask import ProtoLayout, detect_proto_layout, proto_to_khw
from .backend import ExecutionProvider, InferenceBackend, RawOutputs
from .errors import EngineError

DEFAULT_LIBRARY = "TensorRTRunner"

# A [n_det, stride] buffer this wide with this few rows is really [features, predictions]
TRANSPOSE_MIN_STRIDE = 512
TRANSPOSE_MAX_ROWS = 512

_c_float_p = ctypes.POINTER(ctypes.c_float)
_c_int_p = ctypes.POINTER(ctypes.c_int)


def _copy_floats(ptr: ctypes.c_void_p, count: int) -> np.ndarray:
    if count <= 0 or not ptr.value:
        return np.zeros(0, dtype=np.float32)
    view = np.ctypeslib.as_array(ctypes.cast(ptr, _c_float_p), shape=(count,))
    return np.array(view, dtype=np.float32, copy=True)


class NativeEngineApi:
    """ctypes binding to the engine runner library."""

    def __init__(self, library: str = DEFAULT_LIBRARY):
        path = ctypes.util.find_library(library) or library
        try:
            self._lib = ctypes.CDLL(path)
        except OSError as e:
            raise EngineError(f"Failed to load engine runner library '{library}': {e}") from e
        self._bind()

    def _bind(self) -> None:
        lib = self._lib
        lib.trt_create_engine.argtypes = [ctypes.c_char_p, ctypes.c_int]
        lib.trt_create_engine.restype = ctypes.c_void_p

        lib.trt_destroy_engine.argtypes = [ctypes.c_void_p]
        lib.trt_destroy_engine.restype = None

        lib.trt_get_input_size.argtypes = [ctypes.c_void_p]
        lib.trt_get_input_size.restype = ctypes.c_int

        lib.trt_infer.argtypes = [
            ctypes.c_void_p,
            _c_float_p,
            ctypes.c_int,
            ctypes.POINTER(ctypes.c_void_p),
            _c_int_p,
            _c_int_p,
            ctypes.POINTER(ctypes.c_void_p),
            _c_int_p,
            _c_int_p,
            _c_int_p,
        ]
        lib.trt_infer.restype = ctypes.c_int

        lib.trt_free.argtypes = [ctypes.c_void_p]
        lib.trt_free.restype = None

    def create_engine(self, path: str, device_id: int) -> Optional[int]:
        handle = self._lib.trt_create_engine(path.encode("utf-8"), int(device_id))
        return handle or None

    def destroy_engine(self, handle: int) -> None:
        self._lib.trt_destroy_engine(handle)

    def get_input_size(self, handle: int) -> int:
        return int(self._lib.trt_get_input_size(handle))

    def infer(self, handle: int, tensor: np.ndarray) -> Tuple[np.ndarray, np.ndarray, int, int, int]:
        """
        Run the engine on a contiguous float32 NCHW tensor.

        Returns:
            (det, proto_flat, seg_dim, mask_h, mask_w) where det is [n_det, stride].
        """
        buf = np.ascontiguousarray(tensor, dtype=np.float32)
        det_ptr = ctypes.c_void_p()
        proto_ptr = ctypes.c_void_p()
        n_det = ctypes.c_int()
        stride = ctypes.c_int()
        seg_dim = ctypes.c_int()
        mask_h = ctypes.c_int()
        mask_w = ctypes.c_int()

        ok = self._lib.trt_infer(
            handle,
            buf.ctypes.data_as(_c_float_p),
            int(buf.size),
            ctypes.byref(det_ptr),
            ctypes.byref(n_det),
            ctypes.byref(stride),
            ctypes.byref(proto_ptr),
            ctypes.byref(seg_dim),
            ctypes.byref(mask_h),
            ctypes.byref(mask_w),
        )
        try:
            if ok == 0:
                raise EngineError("trt_infer failed")
            proto = _copy_floats(proto_ptr, seg_dim.value * mask_h.value * mask_w.value)
            det = _copy_floats(det_ptr, n_det.value * stride.value)
        finally:
            if proto_ptr.value:
                self._lib.trt_free(proto_ptr)
            if det_ptr.value:
                self._lib.trt_free(det_ptr)

        rows, cols = max(n_det.value, 0), max(stride.value, 0)
        det = det.reshape(rows, cols) if det.size else np.zeros((0, cols), dtype=np.float32)
        return det, proto, seg_dim.value, mask_h.value, mask_w.value


class TensorRTBackend(InferenceBackend):
    """
    Runs a serialized engine on a single accelerator.

    There is no provider fallback: a null engine handle raises EngineError
    immediately.
    """

    provider = ExecutionProvider.TENSORRT

    def __init__(
        self,
        engine_path: str,
        device_id: int = 0,
        api: Optional[NativeEngineApi] = None,
        library: str = DEFAULT_LIBRARY,
    ):
        self._api = api or NativeEngineApi(library)
        self.engine_path = engine_path
        handle = self._api.create_engine(engine_path, device_id)
        if not handle:
            raise EngineError(f"trt_create_engine returned a null handle for {engine_path}")
        self._handle = handle
        self._lock = threading.Lock()
        self._proto_layout: Optional[ProtoLayout] = None

        size = self._api.get_input_size(handle)
        self._input_size = size if size > 0 else None
        logging.info(
            f"[TRT] Engine loaded: {engine_path} (device {device_id}, "
            f"input {'dynamic' if self._input_size is None else self._input_size})"
        )

    @property
    def proto_layout(self) -> Optional[ProtoLayout]:
        return self._proto_layout

    def input_size(self) -> Optional[int]:
        return self._input_size

    def run(self, tensor: np.ndarray) -> RawOutputs:
        if self._handle is None:
            raise EngineError("TensorRTBackend is closed")

        det, proto, seg_dim, mask_h, mask_w = self._api.infer(self._handle, tensor)
        if seg_dim <= 0 or mask_h <= 0 or mask_w <= 0:
            raise EngineError(f"Engine returned an empty proto ({seg_dim},{mask_h},{mask_w})")
        logging.info(
            f"[TRT] trt_infer ok | det shape={tuple(det.shape)}, proto=({seg_dim},{mask_h},{mask_w})"
        )
        n_det, stride = det.shape
        if stride > TRANSPOSE_MIN_STRIDE and n_det <= TRANSPOSE_MAX_ROWS:
            det = np.ascontiguousarray(det.T)
        # rows are predictions; resolve_proto transposes HWK proto buffers
        return RawOutputs(det=det, proto=proto.reshape(seg_dim, mask_h, mask_w), channels_last=True)

    def resolve_proto(self, proto: np.ndarray, coeff: Optional[np.ndarray]) -> np.ndarray:
        seg_dim, mask_h, mask_w = proto.shape
        layout = self._proto_layout
        if layout is None:
            if coeff is None:
                return proto
            layout = detect_proto_layout(coeff, proto, seg_dim, mask_h, mask_w)
            self._proto_layout = layout
            logging.info(f"[TRT] Proto layout detected: {layout.value.upper()}")
        return proto_to_khw(proto, seg_dim, mask_h, mask_w, layout)

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                handle, self._handle = self._handle, None
                self._api.destroy_engine(handle)
                logging.info(f"[TRT] Engine destroyed: {self.engine_path}")
