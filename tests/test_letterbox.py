"""
Tests for letterbox geometry and tensor fill.
"""

import numpy as np
import pytest

from geometry.letterbox import Letterbox, fill_tensor, letterbox_image


class TestLetterboxCompute:
    def test_landscape(self):
        lb = Letterbox.compute(1280, 720, 640)
        assert lb.scale == 0.5
        assert lb.resized == (640, 360)
        assert (lb.pad_x, lb.pad_y) == (0, 140)

    def test_portrait_odd_padding(self):
        lb = Letterbox.compute(300, 641, 640)
        assert lb.resized_h == 640
        assert lb.resized_w == round(300 * 640 / 641)
        assert lb.pad_x == (640 - lb.resized_w) // 2
        assert lb.pad_y == 0

    def test_upscales_small_images(self):
        lb = Letterbox.compute(320, 320, 640)
        assert lb.scale == 2.0
        assert lb.resized == (640, 640)

    def test_rejects_empty_image(self):
        with pytest.raises(ValueError):
            Letterbox.compute(0, 10, 640)


class TestRoundTrip:
    @pytest.mark.parametrize("w,h,net", [(1280, 720, 640), (300, 641, 640), (17, 5, 32), (640, 640, 640)])
    def test_point_round_trip_within_one_pixel(self, w, h, net):
        lb = Letterbox.compute(w, h, net)
        rng = np.random.default_rng(0)
        for x, y in zip(rng.uniform(0, w - 1, 50), rng.uniform(0, h - 1, 50)):
            xn, yn = lb.to_net(x, y)
            xo, yo = lb.to_original(xn, yn)
            assert abs(xo - x) <= 1.0
            assert abs(yo - y) <= 1.0

    def test_to_original_clamps(self):
        lb = Letterbox.compute(1280, 720, 640)
        assert lb.to_original(-50, 0) == (0.0, 0.0)
        assert lb.to_original(700, 700) == (1279.0, 719.0)


class TestNetBoxToOriginal:
    def test_identity_mapping(self):
        lb = Letterbox.compute(640, 640, 640)
        assert lb.net_box_to_original((270, 270, 370, 370)) == (270, 270, 100, 100)

    def test_scaled_with_padding(self):
        lb = Letterbox.compute(1280, 720, 640)
        # (100, 240) -> (200, 200) and (200, 340) -> (400, 400) in the original
        assert lb.net_box_to_original((100, 240, 200, 340)) == (200, 200, 200, 200)

    def test_clamped_to_image(self):
        lb = Letterbox.compute(1280, 720, 640)
        x, y, w, h = lb.net_box_to_original((0, 140, 640, 500))
        assert (x, y) == (0, 0)
        assert x + w <= 1280 and y + h <= 720

    def test_box_inside_padding_is_empty(self):
        lb = Letterbox.compute(1280, 720, 640)
        assert lb.net_box_to_original((0, 0, 640, 100)) is None

    def test_inverted_box_is_swapped(self):
        lb = Letterbox.compute(640, 640, 640)
        assert lb.net_box_to_original((370, 370, 270, 270)) == (270, 270, 100, 100)


class TestFillTensor:
    def test_layout_and_channel_order(self):
        image = np.zeros((2, 4, 3), dtype=np.uint8)
        image[:, :, 0] = 255  # blue in BGR
        tensor, lb = fill_tensor(image, 8)

        assert tensor.shape == (1, 3, 8, 8)
        assert tensor.dtype == np.float32
        assert (lb.pad_x, lb.pad_y) == (0, 2)
        np.testing.assert_allclose(tensor[0, 2, 2:6, :], 1.0)
        np.testing.assert_allclose(tensor[0, 0, 2:6, :], 0.0)
        # padding stays black
        np.testing.assert_allclose(tensor[0, :, 0:2, :], 0.0)
        np.testing.assert_allclose(tensor[0, :, 6:8, :], 0.0)

    def test_reuses_output_buffer(self):
        out = np.full((1, 3, 8, 8), 7.0, dtype=np.float32)
        image = np.zeros((8, 8, 3), dtype=np.uint8)
        tensor, _ = fill_tensor(image, 8, out=out)
        assert tensor is out
        assert out.max() == 0.0

    def test_rejects_wrong_buffer(self):
        with pytest.raises(ValueError):
            fill_tensor(np.zeros((8, 8, 3), dtype=np.uint8), 8, out=np.zeros((1, 3, 4, 4), dtype=np.float32))

    def test_bgra_and_gray_inputs(self):
        canvas, _ = letterbox_image(np.zeros((4, 4, 4), dtype=np.uint8), 8)
        assert canvas.shape == (8, 8, 3)
        canvas, _ = letterbox_image(np.zeros((4, 4), dtype=np.uint8), 8)
        assert canvas.shape == (8, 8, 3)


class TestThinImages:
    def test_thin_image_keeps_one_pixel(self):
        lb = Letterbox.compute(1, 2000, 640)
        assert lb.resized == (1, 640)
        assert lb.pad_x == 319

    def test_fill_tensor_on_thin_image(self):
        tensor, lb = fill_tensor(np.full((2000, 1, 3), 255, dtype=np.uint8), 640)
        assert tensor.shape == (1, 3, 640, 640)
        np.testing.assert_allclose(tensor[0, :, :, lb.pad_x], 1.0)
        assert tensor[0, :, :, : lb.pad_x].max() == 0.0

    def test_wide_image(self):
        canvas, lb = letterbox_image(np.zeros((1, 2000, 3), dtype=np.uint8), 640)
        assert canvas.shape == (640, 640, 3)
        assert lb.resized == (640, 1)
