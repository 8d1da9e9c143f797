"""
Tests for the photo quality gate.
"""

import unittest

import numpy as np

from skin_diagnosis.config import QualityGateConfig
from skin_diagnosis.core.models import PixelBox, QualityGrade, SkinMask
from skin_diagnosis.core.quality_gate import (
    BLUR,
    FRAME_EDGE_CLIPPED,
    FRAME_OFF_CENTER,
    WHITE_BALANCE_UNSTABLE,
    QualityFactors,
    QualityGate,
    grade_quality,
    laplacian_abs,
)
from skin_diagnosis.core.skin_segmenter import SkinSegmenter
from tests.fixtures import flat_image, textured_image


class GradeTests(unittest.TestCase):
    """Grading from factors alone."""

    def test_white_balance_only_degrades(self):
        factors = QualityFactors(coverage=0.5, blur=0.9, exposure=0.9, white_balance=0.3)
        self.assertEqual(grade_quality(factors), QualityGrade.DEGRADED)

    def test_zero_white_balance_never_fails(self):
        factors = QualityFactors(coverage=0.5, blur=1.0, exposure=1.0, white_balance=0.0)
        self.assertEqual(grade_quality(factors), QualityGrade.DEGRADED)

    def test_hard_floors_fail(self):
        self.assertEqual(
            grade_quality(QualityFactors(coverage=0.05, blur=1.0, exposure=1.0, white_balance=1.0)),
            QualityGrade.FAIL,
        )
        self.assertEqual(
            grade_quality(QualityFactors(coverage=0.5, blur=0.1, exposure=1.0, white_balance=1.0)),
            QualityGrade.FAIL,
        )
        self.assertEqual(
            grade_quality(QualityFactors(coverage=0.5, blur=1.0, exposure=0.19, white_balance=1.0)),
            QualityGrade.FAIL,
        )

    def test_clean_photo_passes(self):
        factors = QualityFactors(coverage=0.5, blur=1.0, exposure=1.0, white_balance=1.0)
        self.assertAlmostEqual(factors.quality_factor, 1.0)
        self.assertEqual(grade_quality(factors), QualityGrade.PASS)

    def test_low_composite_factor_degrades(self):
        # coverage factor (0.12 - 0.06) / 0.18 = 0.333
        factors = QualityFactors(coverage=0.12, blur=1.0, exposure=1.0, white_balance=1.0)
        self.assertEqual(grade_quality(factors), QualityGrade.DEGRADED)

    def test_overrides_move_floors(self):
        config = QualityGateConfig().with_overrides({"fail": {"min_blur_factor": 0.95}})
        factors = QualityFactors(coverage=0.5, blur=0.9, exposure=1.0, white_balance=1.0)
        self.assertEqual(grade_quality(factors, config), QualityGrade.FAIL)

    def test_overrides_clamp_and_ignore_junk(self):
        config = QualityGateConfig().with_overrides({
            "fail": {"min_coverage": 3, "min_blur_factor": "abc"},
            "degraded": "not a dict",
        })
        self.assertEqual(config.fail.min_coverage, 1.0)
        self.assertEqual(config.fail.min_blur_factor, 0.2)
        self.assertEqual(config.degraded, QualityGateConfig().degraded)


class QualityGateTests(unittest.TestCase):
    """Metrics computed from images."""

    def setUp(self):
        self.gate = QualityGate()
        self.segmenter = SkinSegmenter()

    def test_flat_image_fails_on_blur(self):
        image = flat_image(128)
        result = self.gate.evaluate(image, self.segmenter.create_skin_mask(image))

        self.assertEqual(result.grade, QualityGrade.FAIL)
        self.assertIn(BLUR, result.reasons)
        self.assertIn(FRAME_EDGE_CLIPPED, result.reasons)
        self.assertEqual(result.metrics["laplacian_energy"], 0.0)
        self.assertEqual(result.metrics["skin_coverage"], 1.0)

    def test_textured_warm_image_is_degraded(self):
        image = textured_image(128)
        result = self.gate.evaluate(image, self.segmenter.create_skin_mask(image))

        self.assertEqual(result.grade, QualityGrade.DEGRADED)
        self.assertIn(WHITE_BALANCE_UNSTABLE, result.reasons)
        self.assertNotIn(BLUR, result.reasons)
        self.assertEqual(result.metrics["blur_factor"], 1.0)

    def test_off_center_tag(self):
        image = textured_image(100)
        mask = np.zeros((100, 100), dtype=np.uint8)
        mask[5:30, 5:30] = 1
        skin = SkinMask(
            mask=mask,
            skin_pixels=625,
            coverage=0.0625,
            bbox=PixelBox(5, 5, 29, 29),
            touches_center=False,
        )
        result = self.gate.evaluate(image, skin)
        self.assertIn(FRAME_OFF_CENTER, result.reasons)
        self.assertNotIn(FRAME_EDGE_CLIPPED, result.reasons)

    def test_laplacian_border_is_zero(self):
        gray = np.arange(25, dtype=np.int32).reshape(5, 5) ** 2
        lap = laplacian_abs(gray)
        self.assertEqual(int(lap[0].sum() + lap[-1].sum() + lap[:, 0].sum() + lap[:, -1].sum()), 0)
        self.assertGreater(int(lap[2, 2]), 0)


if __name__ == "__main__":
    unittest.main()
