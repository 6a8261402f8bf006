"""
Inference module.

Backends (onnxruntime and the native engine runner) behind one interface,
plus the session registry that caches the loaded model.
"""

from .backend import ExecutionProvider, InferenceBackend, RawOutputs
from .errors import EngineError, SessionCreationError, UnsupportedModelError
from .session_registry import SessionRegistry, normalize_model_path

__all__ = [
    "ExecutionProvider",
    "InferenceBackend",
    "RawOutputs",
    "EngineError",
    "SessionCreationError",
    "UnsupportedModelError",
    "SessionRegistry",
    "normalize_model_path",
]
