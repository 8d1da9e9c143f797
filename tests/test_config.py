"""
Tests for configuration defaults and environment overrides.
"""

import unittest

from skin_diagnosis.config import DEFAULT_CONFIG, DiagnosisConfig, ModuleMaskConfig, QualityGateConfig


class ConfigTests(unittest.TestCase):

    def test_defaults(self):
        self.assertEqual(DEFAULT_CONFIG.modules.grid_size, 64)
        self.assertEqual(DEFAULT_CONFIG.quality.fail.min_coverage, 0.06)
        self.assertIsNone(DEFAULT_CONFIG.calibration_path)

    def test_shrink_groups(self):
        config = ModuleMaskConfig()
        self.assertEqual(config.shrink_for("left_cheek"), 0.9)
        self.assertEqual(config.shrink_for("under_eye_right"), 0.95)
        self.assertEqual(config.shrink_for("ear"), 1.0)

    def test_from_env(self):
        config = DiagnosisConfig.from_env({
            "DIAG_MODULE_GRID": "128",
            "DIAG_QUALITY_FAIL_MIN_COVERAGE": "0.1",
            "DIAG_MODULE_SHRINK_CHIN": "0.2",
            "DIAG_CALIBRATION_PATH": "/tmp/calibration.json",
        })
        self.assertEqual(config.modules.grid_size, 128)
        self.assertEqual(config.quality.fail.min_coverage, 0.1)
        self.assertEqual(config.modules.shrink_factors["chin"], 0.5)
        self.assertEqual(config.calibration_path, "/tmp/calibration.json")
        self.assertEqual(config.quality.degraded, QualityGateConfig().degraded)

    def test_invalid_env_value_is_ignored(self):
        with self.assertLogs("skin_diagnosis.config", level="WARNING") as logs:
            config = DiagnosisConfig.from_env({"DIAG_FACE_CROP_MARGIN": "wide"})
        self.assertEqual(config.modules.face_crop_margin, 1.2)
        self.assertIn("DIAG_FACE_CROP_MARGIN", logs.output[0])

    def test_empty_env_keeps_defaults(self):
        self.assertEqual(DiagnosisConfig.from_env({}), DiagnosisConfig())

    def test_quality_to_dict(self):
        data = QualityGateConfig().to_dict()
        self.assertEqual(data["degraded"]["min_wb_factor"], 0.65)
        self.assertIn("min_quality_factor", data["fail"])


if __name__ == "__main__":
    unittest.main()
