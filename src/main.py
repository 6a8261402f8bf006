"""
Command line entry point for YOLO-seg instance segmentation.

Runs one image through the model, composites the instance masks and writes
the result.

Usage:
    python src/main.py --config config/config.yaml --image in.png --output out.png

Arguments:
    --config: Path to configuration file
    --image: Input image
    --output: Where to write the composited image
    --model: Model path (overrides model.path)
    --conf, --iou: Detection thresholds (override inference.*)
    --mask-thr, --alpha: Compositing options (override render.*)
"""

import os
import sys
import argparse
import logging
from typing import Any, Dict, Optional, Tuple

import cv2
import yaml

from models.config import AppConfig
from ops.logging import setup_logging
from inference.errors import EngineError, SessionCreationError, UnsupportedModelError
from inference.session_registry import SessionRegistry
from pipeline.engine import create_backend, create_engine


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base and return base."""
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def _resolve_model_path(config: Dict[str, Any], config_dir: str) -> Dict[str, Any]:
    """Make a relative `model.path` relative to the config directory, not the cwd."""
    model = config.get("model")
    if not isinstance(model, dict):
        return config
    path = model.get("path")
    if isinstance(path, str) and path:
        path = os.path.expanduser(path)
        if not os.path.isabs(path):
            path = os.path.normpath(os.path.join(os.path.abspath(config_dir), path))
        model["path"] = path
    return config


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration with layering:
    - `config/default.yaml` (checked in)
    - `config/config.yaml` (local overrides)
    - plus any explicitly provided `--config` path (treated as overrides)

    A relative `model.path` is resolved against the config directory.
    """
    try:
        base_path = os.path.join(os.path.dirname(config_path), "default.yaml")
        base_cfg: Dict[str, Any] = {}
        if os.path.exists(base_path):
            with open(base_path, "r") as f:
                base_cfg = yaml.safe_load(f) or {}

        local_overrides_path = os.path.join(os.path.dirname(config_path), "config.yaml")
        local_cfg: Dict[str, Any] = {}
        if os.path.exists(local_overrides_path):
            with open(local_overrides_path, "r") as f:
                local_cfg = yaml.safe_load(f) or {}

        merged = _deep_merge(base_cfg, local_cfg)

        # Finally apply explicit config_path if it's not the local override file itself
        if os.path.exists(config_path) and os.path.abspath(config_path) != os.path.abspath(local_overrides_path):
            with open(config_path, "r") as f:
                explicit_cfg = yaml.safe_load(f) or {}
            merged = _deep_merge(merged, explicit_cfg)

        return _resolve_model_path(merged, os.path.dirname(config_path))
    except Exception as e:
        logging.error(f"Failed to load configuration: {e}")
        sys.exit(1)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate configuration file structure and values.

    Args:
        config: Configuration dictionary

    Returns:
        Tuple of (is_valid, error_message)
    """
    # Required top-level sections
    required_sections = ['model', 'inference', 'render', 'log_path', 'log_level']
    for section in required_sections:
        if section not in config:
            return False, f"Missing required configuration section: {section}"

    # Validate model settings
    model = config.get('model') or {}
    if 'path' in model and not isinstance(model['path'], str):
        return False, "model.path must be a string"
    backend = model.get('backend', 'auto')
    if backend not in ('auto', 'onnx', 'tensorrt'):
        return False, "model.backend must be one of: auto, onnx, tensorrt"
    device_id = model.get('device_id', 0)
    if not isinstance(device_id, int) or device_id < 0:
        return False, "model.device_id must be a non-negative integer"
    net_size = model.get('net_size', 640)
    if not isinstance(net_size, int) or net_size <= 0:
        return False, "model.net_size must be a positive integer"

    # Optional onnxruntime settings
    ort_cfg = config.get('onnxruntime') or {}
    providers = ort_cfg.get('providers', ['cuda', 'directml', 'cpu'])
    if not isinstance(providers, list) or not providers:
        return False, "onnxruntime.providers must be a non-empty list"
    for p in providers:
        if p not in ('cuda', 'directml', 'cpu'):
            return False, "onnxruntime.providers entries must be one of: cuda, directml, cpu"
    if ort_cfg.get('graph_optimization', 'all') not in ('disable', 'basic', 'extended', 'all'):
        return False, "onnxruntime.graph_optimization must be one of: disable, basic, extended, all"

    # Validate inference thresholds
    inference = config.get('inference') or {}
    for key in ('conf_threshold', 'iou_threshold'):
        if key in inference:
            v = inference[key]
            if not _is_number(v) or not (0 <= v <= 1):
                return False, f"inference.{key} must be between 0 and 1"
    layout = inference.get('layout') or {}
    for key, v in layout.items():
        if not _is_number(v) or v < 0:
            return False, f"inference.layout.{key} must be a non-negative number"

    # Validate render settings
    render = config.get('render') or {}
    for key in ('mask_threshold', 'alpha'):
        if key in render:
            v = render[key]
            if not _is_number(v) or not (0 <= v <= 1):
                return False, f"render.{key} must be between 0 and 1"
    if 'line_thickness' in render:
        if not isinstance(render['line_thickness'], int) or render['line_thickness'] <= 0:
            return False, "render.line_thickness must be a positive integer"
    if 'mask_workers' in render:
        if not isinstance(render['mask_workers'], int) or render['mask_workers'] < 0:
            return False, "render.mask_workers must be a non-negative integer"
    if 'mask_lanes' in render:
        if not isinstance(render['mask_lanes'], int) or render['mask_lanes'] < 0:
            return False, "render.mask_lanes must be a non-negative integer"
    names = render.get('class_names')
    if names is not None and not isinstance(names, dict):
        return False, "render.class_names must be a mapping of class id to name"

    # Validate log settings
    if not isinstance(config['log_path'], str):
        return False, "log_path must be a string"
    valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if config['log_level'] not in valid_log_levels:
        return False, f"log_level must be one of: {', '.join(valid_log_levels)}"

    return True, None


def apply_cli_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Fold command line overrides into the config dict."""
    overrides: Dict[str, Any] = {}
    if args.model:
        overrides.setdefault('model', {})['path'] = args.model
    if args.conf is not None:
        overrides.setdefault('inference', {})['conf_threshold'] = args.conf
    if args.iou is not None:
        overrides.setdefault('inference', {})['iou_threshold'] = args.iou
    if args.mask_thr is not None:
        overrides.setdefault('render', {})['mask_threshold'] = args.mask_thr
    if args.alpha is not None:
        overrides.setdefault('render', {})['alpha'] = args.alpha
    return _deep_merge(config, overrides)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='YOLO-seg instance segmentation')
    parser.add_argument('--config', type=str, default='config/config.yaml',
                        help='Path to configuration file')
    parser.add_argument('--image', type=str, required=True,
                        help='Input image')
    parser.add_argument('--output', type=str, required=True,
                        help='Output image path')
    parser.add_argument('--model', type=str, default=None,
                        help='Model path (.onnx, or .engine/.trt/.plan)')
    parser.add_argument('--conf', type=float, default=None,
                        help='Confidence threshold')
    parser.add_argument('--iou', type=float, default=None,
                        help='NMS IoU threshold')
    parser.add_argument('--mask-thr', dest='mask_thr', type=float, default=None,
                        help='Mask threshold')
    parser.add_argument('--alpha', type=float, default=None,
                        help='Mask blend alpha')
    return parser


def main(argv=None) -> int:
    """Main application function."""
    args = build_parser().parse_args(argv)

    # Load configuration
    config = apply_cli_overrides(load_config(args.config), args)

    # Validate configuration
    is_valid, error_msg = validate_config(config)
    if not is_valid:
        logging.error(f"Configuration validation failed: {error_msg}")
        return 1

    # Setup logging
    setup_logging(config['log_path'], config['log_level'])
    app_cfg = AppConfig.from_dict(config)
    if not app_cfg.model.path:
        logging.error("No model given (set model.path or pass --model)")
        return 1

    image = cv2.imread(args.image, cv2.IMREAD_UNCHANGED)
    if image is None:
        logging.error(f"Could not read image: {args.image}")
        return 1

    registry = SessionRegistry(lambda path: create_backend(path, app_cfg))
    engine = None
    try:
        engine = create_engine(
            app_cfg,
            registry=registry,
            progress=lambda pct, status: logging.debug(f"[{pct:3d}%] {status}"),
        )
        logging.info(f"Model loaded on {engine.provider.value}")

        result = engine.infer(image)
        composited, overlays = engine.render(image, result)
    except (SessionCreationError, EngineError, UnsupportedModelError) as e:
        logging.error(f"Segmentation failed: {e}")
        return 1
    finally:
        if engine is not None:
            engine.close()
        registry.close()

    out_dir = os.path.dirname(args.output)
    if out_dir and not os.path.exists(out_dir):
        os.makedirs(out_dir)
    if not cv2.imwrite(args.output, composited):
        logging.error(f"Could not write output image: {args.output}")
        return 1

    for item in overlays:
        if item.text:
            logging.info(f"{item.text} at {item.box}")
    logging.info(f"Wrote {args.output} ({len(result)} detections)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
