"""
Smoke tests for typed models and adapters.
"""

import numpy as np
import pytest

from models.detection import (
    BoundingBox,
    Detection,
    SegmentationResult,
    Timings,
    detections_to_numpy,
)
from models.overlay import OverlayItem, OverlayKind


def _result(**overrides):
    kwargs = dict(
        net_size=64,
        scale=1.0,
        pad_x=0,
        pad_y=0,
        resized=(64, 64),
        orig_size=(64, 64),
        seg_dim=2,
        mask_h=4,
        mask_w=4,
        proto=np.zeros(2 * 4 * 4, dtype=np.float32),
        detections=[],
    )
    kwargs.update(overrides)
    return SegmentationResult(**kwargs)


class TestBoundingBox:
    def test_properties(self):
        bbox = BoundingBox(x1=100, y1=100, x2=200, y2=150)
        assert bbox.width == 100
        assert bbox.height == 50
        assert bbox.center == (150.0, 125.0)
        assert bbox.area == 5000

    def test_inverted_box_has_zero_area(self):
        assert BoundingBox(x1=10, y1=10, x2=5, y2=20).area == 0.0

    def test_from_cxcywh(self):
        bbox = BoundingBox.from_cxcywh(320, 320, 100, 50)
        assert bbox.as_tuple() == (270.0, 295.0, 370.0, 345.0)


class TestDetection:
    def test_from_xyxy(self):
        det = Detection.from_xyxy(10, 20, 30, 40, confidence=0.9, class_id=2, coeff=[1, 2, 3])
        assert det.box == (10.0, 20.0, 30.0, 40.0)
        assert det.confidence == 0.9
        assert det.class_id == 2
        assert det.seg_dim == 3
        assert det.coeff.dtype == np.float32

    def test_rejects_2d_coeff(self):
        with pytest.raises(ValueError):
            Detection.from_xyxy(0, 0, 1, 1, 0.5, 0, coeff=np.zeros((2, 2)))

    def test_rejects_negative_class(self):
        with pytest.raises(ValueError):
            Detection.from_xyxy(0, 0, 1, 1, 0.5, -1, coeff=[0.0])

    def test_to_numpy(self):
        det = Detection.from_xyxy(10, 20, 30, 40, confidence=0.5, class_id=3, coeff=[0.0])
        arr = detections_to_numpy([det])
        assert arr.shape == (1, 6)
        assert arr[0, 4] == 0.5
        assert arr[0, 5] == 3

    def test_to_numpy_empty(self):
        assert detections_to_numpy([]).shape == (0, 6)


class TestSegmentationResult:
    def test_valid_result(self):
        det = Detection.from_xyxy(0, 0, 10, 10, 0.9, 0, coeff=[1.0, 2.0])
        result = _result(detections=[det])
        assert len(result) == 1
        assert result.proto_khw.shape == (2, 4, 4)
        assert result.orig_width == 64
        assert isinstance(result.timings, Timings)

    def test_proto_length_mismatch_rejected(self):
        with pytest.raises(ValueError, match="proto length"):
            _result(proto=np.zeros(31, dtype=np.float32))

    def test_coeff_length_mismatch_rejected(self):
        det = Detection.from_xyxy(0, 0, 10, 10, 0.9, 0, coeff=[1.0, 2.0, 3.0])
        with pytest.raises(ValueError, match="coefficients"):
            _result(detections=[det])

    def test_invalid_scale_rejected(self):
        with pytest.raises(ValueError):
            _result(scale=0.0)

    def test_padding_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            _result(pad_x=64)

    def test_proto_is_read_only_copy(self):
        proto = np.zeros((2, 4, 4), dtype=np.float32)
        result = _result(proto=proto)
        with pytest.raises(ValueError):
            result.proto[0] = 1.0
        proto[0, 0, 0] = 5.0
        assert result.proto[0] == 0.0
        assert proto.flags.writeable


class TestOverlayItem:
    def test_to_dict(self):
        item = OverlayItem(OverlayKind.BADGE, (1, 2, 3, 4), (255, 0, 0), text="[0]: 0.90", class_id=0, score=0.9)
        d = item.to_dict()
        assert d["kind"] == "badge"
        assert d["box"] == [1, 2, 3, 4]
        assert d["text"] == "[0]: 0.90"
        assert "points" not in d
