"""
Inference backend interface.

Backends run the model on a letterboxed NCHW tensor and return the raw
detection head plus the proto basis. Interpreting those tensors is left to
`detection.head`, so every backend feeds the same parser.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import numpy as np


class ExecutionProvider(str, Enum):
    """Where a loaded model actually runs."""
    CUDA = "cuda"
    DIRECTML = "directml"
    CPU = "cpu"
    TENSORRT = "tensorrt"


@dataclass(frozen=True)
class RawOutputs:
    """
    Raw model outputs of one run.

    Attributes:
        det: Detection head as a 2-D array (batch dimension removed).
        proto: Proto basis as [segDim, maskH, maskW] float32.
        channels_last: True when the backend knows `det` is laid out as
            [predictions, features]. Otherwise the parser classifies it.
    """
    det: np.ndarray
    proto: np.ndarray
    channels_last: bool = False

    @property
    def seg_dim(self) -> int:
        return int(self.proto.shape[0])

    @property
    def mask_h(self) -> int:
        return int(self.proto.shape[1])

    @property
    def mask_w(self) -> int:
        return int(self.proto.shape[2])


class InferenceBackend(Protocol):
    provider: ExecutionProvider

    def input_size(self) -> Optional[int]:
        """Square input edge the model expects, or None if dynamic."""
        ...

    def run(self, tensor: np.ndarray) -> RawOutputs:
        ...

    def resolve_proto(self, proto: np.ndarray, coeff: Optional[np.ndarray]) -> np.ndarray:
        """Return the proto basis as [K, H, W], using `coeff` to probe its layout if needed."""
        ...

    def close(self) -> None:
        ...
