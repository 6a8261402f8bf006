"""
Typed configuration models matching the YAML config structure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ModelConfig:
    """Which model to load and how."""
    path: str = ""
    backend: str = "auto"
    device_id: int = 0
    net_size: int = 640
    native_library: str = "TensorRTRunner"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ModelConfig":
        return cls(
            path=d.get("path", ""),
            backend=d.get("backend", "auto"),
            device_id=d.get("device_id", 0),
            net_size=d.get("net_size", 640),
            native_library=d.get("native_library", "TensorRTRunner"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "backend": self.backend,
            "device_id": self.device_id,
            "net_size": self.net_size,
            "native_library": self.native_library,
        }


@dataclass
class GpuOptions:
    """CUDA execution provider options passed straight to onnxruntime."""
    device_id: int = 0
    conv_algo_search: str = "HEURISTIC"
    # CUDA graphs need IOBinding with fixed buffers; plain session.run does not provide them
    enable_cuda_graph: bool = False
    do_copy_in_default_stream: bool = True
    tunable_op_enable: bool = True
    tunable_op_tuning_enable: bool = True
    tunable_op_max_tuning_duration_ms: int = 500

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GpuOptions":
        return cls(
            device_id=d.get("device_id", 0),
            conv_algo_search=d.get("conv_algo_search", "HEURISTIC"),
            enable_cuda_graph=d.get("enable_cuda_graph", False),
            do_copy_in_default_stream=d.get("do_copy_in_default_stream", True),
            tunable_op_enable=d.get("tunable_op_enable", True),
            tunable_op_tuning_enable=d.get("tunable_op_tuning_enable", True),
            tunable_op_max_tuning_duration_ms=d.get("tunable_op_max_tuning_duration_ms", 500),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "conv_algo_search": self.conv_algo_search,
            "enable_cuda_graph": self.enable_cuda_graph,
            "do_copy_in_default_stream": self.do_copy_in_default_stream,
            "tunable_op_enable": self.tunable_op_enable,
            "tunable_op_tuning_enable": self.tunable_op_tuning_enable,
            "tunable_op_max_tuning_duration_ms": self.tunable_op_max_tuning_duration_ms,
        }

    def to_provider_options(self) -> Dict[str, str]:
        """Render as the string dict onnxruntime expects for CUDAExecutionProvider."""
        return {
            "device_id": str(self.device_id),
            "cudnn_conv_algo_search": self.conv_algo_search,
            "enable_cuda_graph": "1" if self.enable_cuda_graph else "0",
            "do_copy_in_default_stream": "1" if self.do_copy_in_default_stream else "0",
            "tunable_op_enable": "1" if self.tunable_op_enable else "0",
            "tunable_op_tuning_enable": "1" if self.tunable_op_tuning_enable else "0",
            "tunable_op_max_tuning_duration_ms": str(self.tunable_op_max_tuning_duration_ms),
        }


@dataclass
class OnnxRuntimeOptions:
    """Graph runtime session options and provider attempt order."""
    providers: List[str] = field(default_factory=lambda: ["cuda", "directml", "cpu"])
    gpu: GpuOptions = field(default_factory=GpuOptions)
    graph_optimization: str = "all"
    warmup: bool = True

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OnnxRuntimeOptions":
        return cls(
            providers=list(d.get("providers", ["cuda", "directml", "cpu"])),
            gpu=GpuOptions.from_dict(d.get("gpu", {}) or {}),
            graph_optimization=d.get("graph_optimization", "all"),
            warmup=d.get("warmup", True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providers": list(self.providers),
            "gpu": self.gpu.to_dict(),
            "graph_optimization": self.graph_optimization,
            "warmup": self.warmup,
        }


@dataclass
class HeadLayoutThresholds:
    """
    Constants of the detection-head layout and coordinate-scale heuristics.

    Tuned against YOLO-seg exports; override per model family if needed.
    """
    max_channels_first: int = 512
    min_predictions_channels_last: int = 1000
    channel_slack: int = 256
    normalized_max_wh: float = 3.5
    coord_sample_size: int = 128
    min_box_size: float = 2.0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HeadLayoutThresholds":
        return cls(
            max_channels_first=d.get("max_channels_first", 512),
            min_predictions_channels_last=d.get("min_predictions_channels_last", 1000),
            channel_slack=d.get("channel_slack", 256),
            normalized_max_wh=d.get("normalized_max_wh", 3.5),
            coord_sample_size=d.get("coord_sample_size", 128),
            min_box_size=d.get("min_box_size", 2.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_channels_first": self.max_channels_first,
            "min_predictions_channels_last": self.min_predictions_channels_last,
            "channel_slack": self.channel_slack,
            "normalized_max_wh": self.normalized_max_wh,
            "coord_sample_size": self.coord_sample_size,
            "min_box_size": self.min_box_size,
        }


@dataclass
class InferenceConfig:
    """Detection thresholds."""
    conf_threshold: float = 0.9
    iou_threshold: float = 0.45
    layout: HeadLayoutThresholds = field(default_factory=HeadLayoutThresholds)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "InferenceConfig":
        return cls(
            conf_threshold=d.get("conf_threshold", 0.9),
            iou_threshold=d.get("iou_threshold", 0.45),
            layout=HeadLayoutThresholds.from_dict(d.get("layout", {}) or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conf_threshold": self.conf_threshold,
            "iou_threshold": self.iou_threshold,
            "layout": self.layout.to_dict(),
        }


@dataclass
class RenderConfig:
    """Mask compositing and overlay options."""
    mask_threshold: float = 0.4
    alpha: float = 0.45
    draw_boxes: bool = False
    draw_scores: bool = True
    draw_outlines: bool = True
    line_thickness: int = 1
    mask_workers: int = 0
    mask_lanes: int = 8
    class_names: Optional[Dict[int, str]] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RenderConfig":
        names = d.get("class_names")
        return cls(
            mask_threshold=d.get("mask_threshold", 0.4),
            alpha=d.get("alpha", 0.45),
            draw_boxes=d.get("draw_boxes", False),
            draw_scores=d.get("draw_scores", True),
            draw_outlines=d.get("draw_outlines", True),
            line_thickness=d.get("line_thickness", 1),
            mask_workers=d.get("mask_workers", 0),
            mask_lanes=d.get("mask_lanes", 8),
            class_names={int(k): str(v) for k, v in names.items()} if names else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "mask_threshold": self.mask_threshold,
            "alpha": self.alpha,
            "draw_boxes": self.draw_boxes,
            "draw_scores": self.draw_scores,
            "draw_outlines": self.draw_outlines,
            "line_thickness": self.line_thickness,
            "mask_workers": self.mask_workers,
            "mask_lanes": self.mask_lanes,
        }
        if self.class_names is not None:
            d["class_names"] = dict(self.class_names)
        return d


@dataclass
class AppConfig:
    """
    Complete application configuration.

    This is a typed representation of the YAML config structure.
    """
    model: ModelConfig = field(default_factory=ModelConfig)
    onnxruntime: OnnxRuntimeOptions = field(default_factory=OnnxRuntimeOptions)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    log_path: str = "logs/segmentation.log"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AppConfig":
        """Adapter: Create AppConfig from raw dictionary (e.g., from load_config)."""
        return cls(
            model=ModelConfig.from_dict(d.get("model", {}) or {}),
            onnxruntime=OnnxRuntimeOptions.from_dict(d.get("onnxruntime", {}) or {}),
            inference=InferenceConfig.from_dict(d.get("inference", {}) or {}),
            render=RenderConfig.from_dict(d.get("render", {}) or {}),
            log_path=d.get("log_path", "logs/segmentation.log"),
            log_level=d.get("log_level", "INFO"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert back to dictionary (for saving or passing to existing code)."""
        return {
            "model": self.model.to_dict(),
            "onnxruntime": self.onnxruntime.to_dict(),
            "inference": self.inference.to_dict(),
            "render": self.render.to_dict(),
            "log_path": self.log_path,
            "log_level": self.log_level,
        }
