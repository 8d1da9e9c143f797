"""
Tests for the binary mask kernel.
"""

import unittest

import numpy as np

from skin_diagnosis.core import mask_ops


def rect_mask(size, x0, y0, x1, y1):
    mask = mask_ops.create_mask(size, size)
    mask[y0:y1 + 1, x0:x1 + 1] = 1
    return mask


class MetricTests(unittest.TestCase):
    """IoU, coverage and leakage."""

    def test_shifted_square_scores(self):
        """A 4x4 prediction shifted by one column over a 4x4 truth."""
        gt = rect_mask(10, 2, 2, 5, 5)
        pred = rect_mask(10, 3, 2, 6, 5)

        self.assertEqual(mask_ops.count_ones(gt), 16)
        self.assertEqual(mask_ops.intersection_count(pred, gt), 12)
        self.assertAlmostEqual(mask_ops.iou_score(pred, gt), 0.6)
        self.assertAlmostEqual(mask_ops.coverage_score(pred, gt), 0.75)
        self.assertAlmostEqual(mask_ops.leakage_score(pred, gt), 0.25)

    def test_empty_masks_score_zero(self):
        empty = mask_ops.create_mask(8, 8)
        self.assertEqual(mask_ops.iou_score(empty, empty), 0.0)
        self.assertEqual(mask_ops.coverage_score(empty, empty), 0.0)
        self.assertEqual(mask_ops.leakage_score(empty, empty), 0.0)

    def test_scores_bounded(self):
        rng = np.random.default_rng(7)
        for _ in range(20):
            a = (rng.random((12, 12)) > 0.5).astype(np.uint8)
            b = (rng.random((12, 12)) > 0.5).astype(np.uint8)
            for score in (
                mask_ops.iou_score(a, b),
                mask_ops.coverage_score(a, b),
                mask_ops.leakage_score(a, b),
            ):
                self.assertGreaterEqual(score, 0.0)
                self.assertLessEqual(score, 1.0)


class RleTests(unittest.TestCase):
    """Run-length encoding."""

    def test_leading_zero_run(self):
        mask = np.array([[1, 1, 0, 0]], dtype=np.uint8)
        self.assertEqual(mask_ops.encode_rle_binary(mask), "0,2,2")

    def test_starts_with_zeros(self):
        mask = np.array([[0, 0, 0, 1, 1, 0]], dtype=np.uint8)
        self.assertEqual(mask_ops.encode_rle_binary(mask), "3,2,1")

    def test_round_trip(self):
        rng = np.random.default_rng(3)
        mask = (rng.random((16, 16)) > 0.6).astype(np.uint8)
        rle = mask_ops.encode_rle_binary(mask)
        decoded = mask_ops.decode_rle_mask(rle, 16)
        np.testing.assert_array_equal(decoded, mask)

    def test_decode_skips_garbage_and_truncates(self):
        decoded = mask_ops.decode_rle_binary("2,x,-1,3,10", 6)
        np.testing.assert_array_equal(decoded, [0, 0, 1, 1, 1, 0])

    def test_decode_empty_chunk_is_zero_length_run(self):
        self.assertEqual(mask_ops.decode_rle_mask("0,,3", 8).sum(), 0)
        np.testing.assert_array_equal(mask_ops.decode_rle_binary("1, ,2,1", 4), [0, 0, 0, 1])

    def test_decode_empty_string(self):
        decoded = mask_ops.decode_rle_binary("", 4)
        self.assertEqual(decoded.tolist(), [0, 0, 0, 0])


class RasterizeTests(unittest.TestCase):
    """Box, polygon and heatmap rasterization."""

    def test_bbox_edges_expand_outward(self):
        mask = mask_ops.bbox_norm_to_mask({"x": 0.25, "y": 0.25, "w": 0.3, "h": 0.5}, 10, 10)
        ys, xs = np.nonzero(mask)
        # x spans 2.5..5.5 pixels, expanded to 2..6
        self.assertEqual((xs.min(), xs.max()), (2, 5))
        self.assertEqual((ys.min(), ys.max()), (2, 7))

    def test_bbox_tuple_and_clamp(self):
        mask = mask_ops.bbox_norm_to_mask((-0.5, 0.0, 1.0, 2.0), 4, 4)
        self.assertEqual(mask_ops.count_ones(mask), 8)

    def test_bbox_missing_keys_is_empty(self):
        mask = mask_ops.bbox_norm_to_mask({"x": 0.1}, 4, 4)
        self.assertEqual(mask_ops.count_ones(mask), 0)

    def test_polygon_square(self):
        points = [{"x": 0.0, "y": 0.0}, {"x": 0.5, "y": 0.0}, {"x": 0.5, "y": 0.5}, {"x": 0.0, "y": 0.5}]
        mask = mask_ops.polygon_norm_to_mask(points, 8, 8)
        self.assertEqual(mask_ops.count_ones(mask), 16)
        self.assertTrue(mask[:4, :4].all())

    def test_polygon_too_few_points(self):
        mask = mask_ops.polygon_norm_to_mask([(0, 0), (1, 1)], 8, 8)
        self.assertEqual(mask_ops.count_ones(mask), 0)

    def test_heatmap_threshold(self):
        values = [0.0, 1.0, 0.0, 1.0]
        mask = mask_ops.heatmap_to_mask(values, 2, 2, 2, 2, threshold=0.5)
        np.testing.assert_array_equal(mask, [[0, 1], [0, 1]])

    def test_heatmap_intensity_scales_values(self):
        values = [0.6] * 4
        self.assertEqual(mask_ops.count_ones(mask_ops.heatmap_to_mask(values, 2, 2, 4, 4, 0.35, 1.0)), 16)
        self.assertEqual(mask_ops.count_ones(mask_ops.heatmap_to_mask(values, 2, 2, 4, 4, 0.35, 0.5)), 0)

    def test_heatmap_length_mismatch_is_empty(self):
        mask = mask_ops.heatmap_to_mask([1.0, 1.0], 2, 2, 4, 4)
        self.assertEqual(mask_ops.count_ones(mask), 0)

    def test_resample_identity(self):
        values = np.arange(16, dtype=np.float64).reshape(4, 4)
        np.testing.assert_allclose(mask_ops.resample_bilinear(values, 4, 4), values)


class GeometryTests(unittest.TestCase):
    """Bounding boxes, shrinking and resizing."""

    def test_mask_bounding_box(self):
        mask = rect_mask(10, 2, 3, 4, 8)
        box = mask_ops.mask_bounding_box(mask)
        self.assertAlmostEqual(box["x"], 0.2)
        self.assertAlmostEqual(box["y"], 0.3)
        self.assertAlmostEqual(box["w"], 0.3)
        self.assertAlmostEqual(box["h"], 0.6)

    def test_empty_bounding_box(self):
        self.assertIsNone(mask_ops.mask_bounding_box(mask_ops.create_mask(4, 4)))

    def test_shrink_keeps_center(self):
        x, y, w, h = mask_ops.shrink_box((0.2, 0.2, 0.4, 0.2), 0.5)
        self.assertAlmostEqual(x + w / 2, 0.4)
        self.assertAlmostEqual(y + h / 2, 0.3)
        self.assertAlmostEqual(w, 0.2)
        self.assertAlmostEqual(h, 0.1)

    def test_resize_nearest_doubles(self):
        mask = np.array([[1, 0], [0, 1]], dtype=np.uint8)
        resized = mask_ops.resize_mask_nearest(mask, 4, 4)
        np.testing.assert_array_equal(resized[:2, :2], np.ones((2, 2)))
        np.testing.assert_array_equal(resized[:2, 2:], np.zeros((2, 2)))

    def test_crop_mask_to_norm(self):
        mask = mask_ops.create_mask(20, 20)
        mask[5:15, 5:15] = 1
        cropped = mask_ops.crop_mask_to_norm(mask, {"x": 5, "y": 5, "w": 10, "h": 10}, 8, 8)
        self.assertTrue(cropped.all())

    def test_module_mask_from_unknown_box(self):
        mask = mask_ops.module_mask_from_box("ear", 8, 8, {"nose": (0.4, 0.3, 0.2, 0.3)})
        self.assertEqual(mask_ops.count_ones(mask), 0)


if __name__ == "__main__":
    unittest.main()
