"""
ONNX Runtime inference backend.

Creates an `onnxruntime.InferenceSession`, trying execution providers in the
configured order (CUDA, then DirectML, then CPU by default). onnxruntime
silently falls back to CPU when an accelerated provider cannot be
initialized, so every accelerated attempt is verified against
`session.get_providers()` before it is accepted.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from models.config import OnnxRuntimeOptions
from .backend import ExecutionProvider, InferenceBackend, RawOutputs
from .errors import SessionCreationError, UnsupportedModelError

ORT_PROVIDER_NAMES: Dict[ExecutionProvider, str] = {
    ExecutionProvider.CUDA: "CUDAExecutionProvider",
    ExecutionProvider.DIRECTML: "DmlExecutionProvider",
    ExecutionProvider.CPU: "CPUExecutionProvider",
}

GRAPH_OPTIMIZATION_LEVELS = {
    "disable": ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}

# (model_path, sess_options, providers) -> session
SessionFactory = Callable[[str, Any, List[Any]], Any]


def _default_session_factory(model_path: str, sess_options: Any, providers: List[Any]) -> Any:
    return ort.InferenceSession(model_path, sess_options=sess_options, providers=providers)


def input_edge_size(session: Any) -> Optional[int]:
    """
    Square input edge from the session's first input metadata.

    Expects [N, 3, H, W]; symbolic or non-positive dims are ignored. Returns
    None when neither H nor W is fixed.
    """
    try:
        shape = list(session.get_inputs()[0].shape)
    except (AttributeError, IndexError, TypeError):
        return None
    if len(shape) != 4:
        return None
    dims = [d for d in shape[2:] if isinstance(d, int) and d > 0]
    return max(dims) if dims else None


def _session_options(options: OnnxRuntimeOptions) -> Any:
    so = ort.SessionOptions()
    level = GRAPH_OPTIMIZATION_LEVELS.get(options.graph_optimization.lower())
    if level is None:
        raise ValueError(f"Unknown graph_optimization: {options.graph_optimization}")
    so.graph_optimization_level = level
    return so


def _provider_spec(provider: ExecutionProvider, options: OnnxRuntimeOptions) -> List[Any]:
    name = ORT_PROVIDER_NAMES[provider]
    if provider == ExecutionProvider.CUDA:
        return [(name, options.gpu.to_provider_options())]
    if provider == ExecutionProvider.DIRECTML:
        return [(name, {"device_id": str(options.gpu.device_id)})]
    return [name]


def warmup(session: Any, net_size: int) -> None:
    """Run one zero-filled inference to trigger lazy kernel setup."""
    name = session.get_inputs()[0].name
    dummy = np.zeros((1, 3, net_size, net_size), dtype=np.float32)
    session.run(None, {name: dummy})


def create_session_with_fallback(
    model_path: str,
    options: Optional[OnnxRuntimeOptions] = None,
    net_size: int = 640,
    session_factory: Optional[SessionFactory] = None,
    available_providers: Optional[Callable[[], Sequence[str]]] = None,
) -> Tuple[Any, ExecutionProvider]:
    """
    Create a session on the first execution provider that works.

    Each failed attempt is logged and released before the next provider is
    tried. Raises SessionCreationError when every attempt fails.

    Returns:
        (session, provider) for the provider that actually runs the model.
    """
    options = options or OnnxRuntimeOptions()
    factory = session_factory or _default_session_factory
    available = set((available_providers or ort.get_available_providers)())

    attempts = [ExecutionProvider(p.lower()) for p in options.providers]
    if not attempts:
        raise ValueError("onnxruntime.providers must name at least one provider")

    last_error: Optional[BaseException] = None
    for provider in attempts:
        ort_name = ORT_PROVIDER_NAMES.get(provider)
        if ort_name is None:
            raise ValueError(f"Provider {provider.value} is not an onnxruntime provider")
        if provider != ExecutionProvider.CPU and ort_name not in available:
            logging.warning(f"Execution provider {ort_name} not available; skipping")
            last_error = RuntimeError(f"{ort_name} not available")
            continue

        session = None
        try:
            start = time.perf_counter()
            session = factory(model_path, _session_options(options), _provider_spec(provider, options))
            active = list(session.get_providers())
            if provider != ExecutionProvider.CPU and ort_name not in active:
                raise RuntimeError(f"{ort_name} requested but session runs on {active}")
            if options.warmup:
                warmup(session, input_edge_size(session) or net_size)
            elapsed_ms = (time.perf_counter() - start) * 1000
            logging.info(f"ONNX session ready on {ort_name} ({elapsed_ms:.0f} ms)")
            return session, provider
        except Exception as e:
            logging.warning(f"Execution provider {ort_name} failed: {e}")
            last_error = e
            session = None

    raise SessionCreationError(
        f"Could not create a session for {model_path} with providers "
        f"{[p.value for p in attempts]}"
    ) from last_error


class OnnxBackend(InferenceBackend):
    """Runs a YOLO-seg ONNX model through an onnxruntime session."""

    def __init__(self, session: Any, provider: ExecutionProvider):
        self._session = session
        self.provider = provider
        self._input_name = session.get_inputs()[0].name

    @classmethod
    def load(
        cls,
        model_path: str,
        options: Optional[OnnxRuntimeOptions] = None,
        net_size: int = 640,
        session_factory: Optional[SessionFactory] = None,
        available_providers: Optional[Callable[[], Sequence[str]]] = None,
    ) -> "OnnxBackend":
        session, provider = create_session_with_fallback(
            model_path,
            options=options,
            net_size=net_size,
            session_factory=session_factory,
            available_providers=available_providers,
        )
        return cls(session, provider)

    @property
    def session(self) -> Any:
        return self._session

    def input_size(self) -> Optional[int]:
        return input_edge_size(self._session)

    def run(self, tensor: np.ndarray) -> RawOutputs:
        if self._session is None:
            raise RuntimeError("OnnxBackend is closed")

        outputs = self._session.run(None, {self._input_name: tensor})
        det = next((o for o in outputs if np.ndim(o) == 3), None)
        proto = next((o for o in outputs if np.ndim(o) == 4), None)
        if det is None or proto is None:
            shapes = [tuple(np.shape(o)) for o in outputs]
            raise UnsupportedModelError(f"Expected a rank-3 and a rank-4 output, got {shapes}")

        logging.info(f"[ONNX] Run ok | det shape={tuple(det.shape)}, proto={tuple(proto.shape)}")
        return RawOutputs(
            det=np.asarray(det[0], dtype=np.float32),
            proto=np.ascontiguousarray(proto[0], dtype=np.float32),
        )

    def resolve_proto(self, proto: np.ndarray, coeff: Optional[np.ndarray]) -> np.ndarray:
        # onnxruntime always hands back [K, H, W]
        return proto

    def close(self) -> None:
        # InferenceSession has no explicit release; dropping the reference frees it
        self._session = None
