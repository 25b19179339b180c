import unittest

import numpy as np

from cutout.config import TARGET_SIZE
from cutout.postprocess import restore_mask_to_original
from cutout.preprocess import normalize, resize_with_padding, rgba_to_model_rgb


class TestPreprocessAspectRatios(unittest.TestCase):
    def _make_rgb(self, h: int, w: int) -> np.ndarray:
        img = np.zeros((h, w, 3), dtype=np.uint8)
        img[..., 0] = 10
        img[..., 1] = 20
        img[..., 2] = 30
        return img

    def _make_square_mask_with_center_box(self) -> np.ndarray:
        m = np.zeros((TARGET_SIZE, TARGET_SIZE), dtype=np.float32)
        m[TARGET_SIZE // 4 : 3 * TARGET_SIZE // 4, TARGET_SIZE // 4 : 3 * TARGET_SIZE // 4] = 1.0
        return m

    def test_resize_with_padding_wide(self):
        padded, meta = resize_with_padding(self._make_rgb(256, 1024))
        self.assertEqual(padded.shape, (TARGET_SIZE, TARGET_SIZE, 3))
        self.assertEqual((meta.orig_h, meta.orig_w), (256, 1024))
        self.assertEqual(meta.x_offset, 0)
        self.assertGreater(meta.y_offset, 0)

        restored = restore_mask_to_original(self._make_square_mask_with_center_box(), meta)
        self.assertEqual(restored.shape, (256, 1024))
        self.assertTrue(np.isfinite(restored).all())

    def test_resize_with_padding_tall(self):
        padded, meta = resize_with_padding(self._make_rgb(1024, 256))
        self.assertEqual(padded.shape, (TARGET_SIZE, TARGET_SIZE, 3))
        self.assertEqual(meta.y_offset, 0)
        self.assertGreater(meta.x_offset, 0)

        restored = restore_mask_to_original(self._make_square_mask_with_center_box(), meta)
        self.assertEqual(restored.shape, (1024, 256))

    def test_resize_with_padding_square(self):
        _padded, meta = resize_with_padding(self._make_rgb(800, 800))
        self.assertEqual(meta.x_offset, meta.y_offset)
        restored = restore_mask_to_original(self._make_square_mask_with_center_box(), meta)
        self.assertEqual(restored.shape, (800, 800))
        # centre of the box survives the round trip
        self.assertGreater(restored[400, 400], 0.99)
        self.assertLess(restored[5, 5], 0.01)

    def test_single_pixel_image(self):
        padded, meta = resize_with_padding(self._make_rgb(1, 1))
        self.assertEqual(padded.shape, (TARGET_SIZE, TARGET_SIZE, 3))
        restored = restore_mask_to_original(self._make_square_mask_with_center_box(), meta)
        self.assertEqual(restored.shape, (1, 1))

    def test_normalize_shape_and_dtype(self):
        padded, _meta = resize_with_padding(self._make_rgb(50, 70), target_size=64)
        t = normalize(padded)
        self.assertEqual(tuple(t.shape), (1, 3, 64, 64))
        self.assertEqual(str(t.dtype), "torch.float32")

    def test_model_rgb_flattens_alpha_onto_white(self):
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[0, 0] = (0, 0, 0, 255)
        rgba[0, 1] = (0, 0, 0, 0)
        rgb = rgba_to_model_rgb(rgba)
        self.assertEqual(rgb.shape, (2, 2, 3))
        self.assertEqual(tuple(rgb[0, 0]), (0, 0, 0))
        self.assertEqual(tuple(rgb[0, 1]), (255, 255, 255))


if __name__ == "__main__":
    unittest.main()
