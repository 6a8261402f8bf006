"""
Pytest configuration and shared fixtures.
"""

import os
import sys
from types import SimpleNamespace

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))


class FakeOrtSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(self, outputs=None, providers=("CPUExecutionProvider",), input_shape=(1, 3, 64, 64)):
        self.outputs = outputs or []
        self._providers = list(providers)
        self.input_shape = list(input_shape)
        self.run_calls = []

    def get_inputs(self):
        return [SimpleNamespace(name="images", shape=self.input_shape)]

    def get_providers(self):
        return self._providers

    def run(self, output_names, feeds):
        self.run_calls.append(feeds)
        return self.outputs


class FakeNativeApi:
    """Stands in for NativeEngineApi; records calls instead of touching a library."""

    def __init__(self, det=None, proto=None, seg_dim=0, mask_h=0, mask_w=0, handle=7, input_size=640):
        self.det = det if det is not None else np.zeros((0, 0), dtype=np.float32)
        self.proto = proto if proto is not None else np.zeros(0, dtype=np.float32)
        self.seg_dim = seg_dim
        self.mask_h = mask_h
        self.mask_w = mask_w
        self.handle = handle
        self.input_size = input_size
        self.created = []
        self.destroyed = []
        self.infer_calls = 0

    def create_engine(self, path, device_id):
        self.created.append((path, device_id))
        return self.handle

    def destroy_engine(self, handle):
        self.destroyed.append(handle)

    def get_input_size(self, handle):
        return self.input_size

    def infer(self, handle, tensor):
        self.infer_calls += 1
        return (
            np.array(self.det, dtype=np.float32, copy=True),
            np.array(self.proto, dtype=np.float32, copy=True).reshape(-1),
            self.seg_dim,
            self.mask_h,
            self.mask_w,
        )


def build_head(predictions, num_classes, seg_dim, channels_first=True):
    """
    Build a synthetic 2-D detection head.

    Args:
        predictions: list of (cx, cy, w, h, scores, coeff) tuples.
        num_classes: Number of class score columns.
        seg_dim: Number of mask coefficients.
        channels_first: Return [features, predictions] instead of [predictions, features].
    """
    rows = []
    for cx, cy, w, h, scores, coeff in predictions:
        assert len(scores) == num_classes and len(coeff) == seg_dim
        rows.append([cx, cy, w, h, *scores, *coeff])
    head = np.array(rows, dtype=np.float32).reshape(len(rows), 4 + num_classes + seg_dim)
    return np.ascontiguousarray(head.T) if channels_first else head


@pytest.fixture
def fake_session_cls():
    return FakeOrtSession


@pytest.fixture
def fake_native_api_cls():
    return FakeNativeApi


@pytest.fixture
def head_builder():
    return build_head


@pytest.fixture
def scene_640():
    """
    One 100x100 box centred at (320, 320), class 0 at 0.9, with a saturating
    all-ones proto basis, plus two low-scoring distractors.
    """
    seg_dim, mask_h, mask_w = 4, 160, 160
    predictions = [
        (320.0, 320.0, 100.0, 100.0, [0.9], [5.0] * seg_dim),
        (100.0, 100.0, 40.0, 40.0, [0.1], [1.0] * seg_dim),
        (500.0, 500.0, 40.0, 40.0, [0.0], [1.0] * seg_dim),
    ]
    return SimpleNamespace(
        image=np.zeros((640, 640, 3), dtype=np.uint8),
        predictions=predictions,
        num_classes=1,
        seg_dim=seg_dim,
        mask_h=mask_h,
        mask_w=mask_w,
        proto=np.ones((seg_dim, mask_h, mask_w), dtype=np.float32),
    )


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary config directory with default.yaml."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    default_yaml = config_dir / "default.yaml"
    default_yaml.write_text("""
model:
  path: "models/seg.onnx"
  backend: "auto"
  device_id: 0
  net_size: 640

inference:
  conf_threshold: 0.9
  iou_threshold: 0.45

render:
  mask_threshold: 0.4
  alpha: 0.45

log_path: "logs/test.log"
log_level: "INFO"
""")

    return config_dir


@pytest.fixture
def valid_config():
    """Return a valid configuration dictionary."""
    return {
        "model": {
            "path": "models/seg.onnx",
            "backend": "auto",
            "device_id": 0,
            "net_size": 640,
        },
        "onnxruntime": {
            "providers": ["cuda", "directml", "cpu"],
            "graph_optimization": "all",
        },
        "inference": {
            "conf_threshold": 0.5,
            "iou_threshold": 0.45,
        },
        "render": {
            "mask_threshold": 0.4,
            "alpha": 0.45,
            "mask_workers": 2,
        },
        "log_path": "logs/test.log",
        "log_level": "INFO",
    }
