"""
Tests for mask blending and the compositor.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from models.config import RenderConfig
from models.detection import Detection, SegmentationResult
from models.overlay import OverlayKind
from segmentation.colors import class_color
from segmentation.compositor import Compositor, blend_mask, sample_grid

RED = (255, 0, 0)


def _result(detections=(), proto=None, seg_dim=1, size=64, mask=16):
    if proto is None:
        proto = np.ones((seg_dim, mask, mask), dtype=np.float32)
    return SegmentationResult(
        net_size=size,
        scale=1.0,
        pad_x=0,
        pad_y=0,
        resized=(size, size),
        orig_size=(size, size),
        seg_dim=seg_dim,
        mask_h=mask,
        mask_w=mask,
        proto=proto,
        detections=list(detections),
    )


@pytest.fixture
def half_mask():
    return np.full((16, 16), 0.5, dtype=np.float32)


@pytest.fixture
def roi():
    return (8, 8, 16, 16)


class TestSampleGrid:
    def test_columns_near_right_edge_are_invalid(self):
        grid = sample_grid(_result(), (56, 0, 8, 4))
        # x = 56..63 -> u = 14..15.75; only u0 <= 14 keeps a 2x2 neighbourhood
        assert list(grid.cols) == [0, 1, 2, 3]


class TestBlendMask:
    def test_full_alpha_paints_exact_color(self, half_mask, roi):
        dst = np.zeros((64, 64, 3), dtype=np.uint8)
        painted = blend_mask(dst, half_mask, _result(), roi, RED, threshold=0.4, alpha=1.0)

        assert painted == 16 * 16
        assert np.all(dst[8:24, 8:24] == [0, 0, 255])
        dst[8:24, 8:24] = 0
        assert not dst.any()

    def test_zero_alpha_leaves_pixels(self, half_mask, roi):
        dst = np.full((64, 64, 3), 100, dtype=np.uint8)
        blend_mask(dst, half_mask, _result(), roi, RED, threshold=0.4, alpha=0.0)
        assert np.all(dst == 100)

    def test_half_alpha_truncates(self, half_mask, roi):
        dst = np.full((64, 64, 3), 101, dtype=np.uint8)
        blend_mask(dst, half_mask, _result(), roi, (0, 0, 0), threshold=0.4, alpha=0.5)
        assert np.all(dst[8:24, 8:24] == 50)

    @pytest.mark.parametrize("threshold,expected", [(0.499, 256), (0.501, 0)])
    def test_threshold(self, half_mask, roi, threshold, expected):
        dst = np.zeros((64, 64, 3), dtype=np.uint8)
        assert blend_mask(dst, half_mask, _result(), roi, RED, threshold, 1.0) == expected

    def test_bgra_alpha_forced_opaque(self, half_mask, roi):
        dst = np.zeros((64, 64, 4), dtype=np.uint8)
        blend_mask(dst, half_mask, _result(), roi, RED, threshold=0.4, alpha=0.3)
        assert np.all(dst[8:24, 8:24, 3] == 255)
        assert dst[0:8, :, 3].max() == 0

    def test_roi_outside_mask_neighbourhood_untouched(self, half_mask):
        dst = np.zeros((64, 64, 3), dtype=np.uint8)
        painted = blend_mask(dst, half_mask, _result(), (60, 8, 4, 8), RED, threshold=0.4, alpha=1.0)
        assert painted == 0
        assert not dst.any()

    def test_roi_mask_marks_painted_pixels(self, roi):
        mask = np.zeros((16, 16), dtype=np.float32)
        mask[:, :4] = 1.0
        roi_mask = np.zeros((16, 16), dtype=np.uint8)
        dst = np.zeros((64, 64, 3), dtype=np.uint8)
        blend_mask(dst, mask, _result(), roi, RED, 0.5, 1.0, roi_mask=roi_mask)
        assert roi_mask.any()
        assert not roi_mask[:, 12:].any()

    def test_row_bands_on_pool_match_inline(self, roi):
        rng = np.random.default_rng(3)
        mask = rng.uniform(size=(16, 16)).astype(np.float32)
        a = np.full((64, 64, 3), 30, dtype=np.uint8)
        b = a.copy()
        n_a = blend_mask(a, mask, _result(), roi, RED, 0.5, 0.6)
        with ThreadPoolExecutor(max_workers=4) as pool:
            n_b = blend_mask(b, mask, _result(), roi, RED, 0.5, 0.6, workers=4, executor=pool)
        assert n_a == n_b
        np.testing.assert_array_equal(a, b)

    def test_rejects_float_image(self, half_mask, roi):
        with pytest.raises(ValueError):
            blend_mask(np.zeros((64, 64, 3), dtype=np.float32), half_mask, _result(), roi, RED, 0.4, 1.0)


class TestCompositor:
    def _det(self, score=0.9, class_id=0):
        return Detection.from_xyxy(8, 8, 24, 24, confidence=score, class_id=class_id, coeff=[10.0])

    def _config(self, **overrides):
        kwargs = dict(mask_threshold=0.5, alpha=1.0, mask_workers=1)
        kwargs.update(overrides)
        return RenderConfig(**kwargs)

    def test_render_paints_class_color(self):
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        compositor = Compositor(self._config())
        out, _ = compositor.render(image, _result([self._det()]))

        r, g, b = class_color(0)
        assert np.all(out[8:24, 8:24] == [b, g, r])
        assert out[30:, 30:].max() == 0

    def test_input_not_mutated(self):
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        out, _ = Compositor(self._config()).render(image, _result([self._det()]))
        assert not image.any()
        assert out is not image

    def test_color_override(self):
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        out, _ = Compositor(self._config()).render(image, _result([self._det()]), color=RED)
        assert np.all(out[8:24, 8:24] == [0, 0, 255])

    def test_badge_text(self):
        _, overlays = Compositor(self._config()).render(
            np.zeros((64, 64, 3), dtype=np.uint8), _result([self._det()])
        )
        badges = [o for o in overlays if o.kind == OverlayKind.BADGE]
        assert len(badges) == 1
        assert badges[0].text == "[0]: 0.90"
        assert badges[0].box == (8, 8, 16, 16)

    def test_badge_uses_class_names(self):
        compositor = Compositor(self._config(class_names={0: "person"}))
        _, overlays = compositor.render(np.zeros((64, 64, 3), dtype=np.uint8), _result([self._det()]))
        assert [o.text for o in overlays if o.kind == OverlayKind.BADGE] == ["[person]: 0.90"]

    def test_outline_polylines(self):
        _, overlays = Compositor(self._config()).render(
            np.zeros((64, 64, 3), dtype=np.uint8), _result([self._det()])
        )
        lines = [o for o in overlays if o.kind == OverlayKind.POLYLINE]
        assert lines
        for x, y in lines[0].points:
            assert 8 <= x < 24 and 8 <= y < 24

    def test_boxes_drawn_when_enabled(self):
        compositor = Compositor(self._config(draw_boxes=True))
        _, overlays = compositor.render(np.zeros((64, 64, 3), dtype=np.uint8), _result([self._det()]), color=RED)
        boxes = [o for o in overlays if o.kind == OverlayKind.BOX]
        assert len(boxes) == 1
        assert boxes[0].box == (8, 8, 16, 16)

    def test_no_boxes_by_default(self):
        _, overlays = Compositor(self._config()).render(
            np.zeros((64, 64, 3), dtype=np.uint8), _result([self._det()])
        )
        assert not [o for o in overlays if o.kind == OverlayKind.BOX]

    def test_empty_result(self):
        image = np.full((64, 64, 3), 9, dtype=np.uint8)
        out, overlays = Compositor(self._config()).render(image, _result())
        assert overlays == []
        np.testing.assert_array_equal(out, image)

    def test_size_mismatch_rejected(self):
        with pytest.raises(ValueError):
            Compositor(self._config()).render(np.zeros((32, 64, 3), dtype=np.uint8), _result([self._det()]))

    def test_gray_image_rendered_as_bgr(self):
        out, _ = Compositor(self._config()).render(np.zeros((64, 64), dtype=np.uint8), _result([self._det()]))
        assert out.shape == (64, 64, 3)

    def test_shared_pool_matches_inline(self):
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        result = _result([self._det()])
        inline, _ = Compositor(self._config()).render(image, result)
        with ThreadPoolExecutor(max_workers=2) as pool:
            compositor = Compositor(self._config(mask_workers=2), executor=pool)
            pooled, _ = compositor.render(image, result)
            compositor.close()
        np.testing.assert_array_equal(inline, pooled)
