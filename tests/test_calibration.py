"""
Tests for severity banding and confidence calibration.
"""

import json
import os
import tempfile
import unittest

from skin_diagnosis.core.calibration import (
    SEVERITY_THRESHOLDS,
    CalibrationTable,
    SeverityCalibrator,
    agreement_factor,
    apply_isotonic_points,
    apply_temperature_scaling,
    confidence_to_label,
    merge_severity_thresholds,
    normalize_threshold_triplet,
    score_to_severity,
)
from skin_diagnosis.core.models import QualityGrade, QualityResult, RawIssueScore, Severity


def quality(grade=QualityGrade.PASS, factor=1.0, reasons=()):
    return QualityResult(grade=grade, quality_factor=factor, reasons=tuple(reasons), metrics={})


class SeverityTests(unittest.TestCase):

    def test_band_edges(self):
        self.assertEqual(score_to_severity("acne", 0.11), Severity.NONE)
        self.assertEqual(score_to_severity("acne", 0.12), Severity.MILD)
        self.assertEqual(score_to_severity("acne", 0.3), Severity.MODERATE)
        self.assertEqual(score_to_severity("acne", 0.52), Severity.SEVERE)
        self.assertEqual(score_to_severity("acne", 7), Severity.SEVERE)
        self.assertEqual(score_to_severity("acne", -1), Severity.NONE)

    def test_severity_is_monotonic(self):
        for issue_type, regions in SEVERITY_THRESHOLDS.items():
            for region in regions:
                levels = [
                    score_to_severity(issue_type, step / 100, region).level for step in range(101)
                ]
                self.assertEqual(levels, sorted(levels), f"{issue_type}/{region}")

    def test_pores_use_region_thresholds(self):
        self.assertEqual(score_to_severity("pores", 0.32, "nose"), Severity.NONE)
        self.assertEqual(score_to_severity("pores", 0.32, "cheeks"), Severity.MILD)
        self.assertEqual(score_to_severity("pores", 0.32, "unknown"), Severity.MILD)

    def test_confidence_labels(self):
        self.assertEqual(confidence_to_label(0.78), "pretty_sure")
        self.assertEqual(confidence_to_label(0.6), "somewhat_sure")
        self.assertEqual(confidence_to_label(0.51), "not_sure")


class ThresholdOverrideTests(unittest.TestCase):

    def test_triplet_is_reordered_and_clamped(self):
        self.assertEqual(normalize_threshold_triplet([0.5, 0.2, "x"], (0.1, 0.2, 0.3)), (0.5, 0.5, 0.5))
        self.assertEqual(normalize_threshold_triplet([-1, 2, 0.4]), (0.0, 1.0, 1.0))

    def test_short_triplet_uses_fallback(self):
        self.assertEqual(normalize_threshold_triplet([0.1], (0.2, 0.4, 0.6)), (0.2, 0.4, 0.6))

    def test_merge_adds_region_from_all(self):
        merged = merge_severity_thresholds({
            "pores": {"chin": [0.1, None, 0.9]},
            "wrinkles": {"all": [0.1, 0.2, 0.3]},
            "acne": "junk",
        })
        self.assertEqual(merged["pores"]["chin"], (0.1, 0.55, 0.9))
        self.assertNotIn("wrinkles", merged)
        self.assertEqual(merged["acne"]["all"], SEVERITY_THRESHOLDS["acne"]["all"])
        self.assertNotIn("chin", SEVERITY_THRESHOLDS["pores"])

    def test_merged_thresholds_stay_ordered(self):
        merged = merge_severity_thresholds({"redness": {"all": [0.9, 0.1, 0.5]}})
        t1, t2, t3 = merged["redness"]["all"]
        self.assertTrue(0 <= t1 <= t2 <= t3 <= 1)

    def test_calibrator_overrides(self):
        calibrator = SeverityCalibrator()
        self.assertIs(calibrator.with_overrides(None), calibrator)
        strict = calibrator.with_overrides({"redness": {"all": [0.9, 0.95, 0.99]}})
        raw = RawIssueScore(score=0.5, model_conf=0.5, metrics={})
        self.assertEqual(strict.score_issue("redness", raw, quality()).severity, Severity.NONE)
        self.assertEqual(calibrator.score_issue("redness", raw, quality()).severity, Severity.MODERATE)


class AgreementTests(unittest.TestCase):

    def test_no_context_is_neutral(self):
        self.assertEqual(agreement_factor("acne", 2), 1.0)

    def test_log_agreement(self):
        self.assertEqual(agreement_factor("acne", 0, None, [{"acne": 1}]), 1.15)
        self.assertEqual(agreement_factor("acne", 1, None, [{"acne": 1}]), 1.05)
        self.assertEqual(agreement_factor("redness", 3, None, [{"redness": 0}]), 0.8)

    def test_only_latest_log_counts(self):
        self.assertEqual(agreement_factor("acne", 3, None, [{"acne": 0}, {"acne": 5}]), 0.78)

    def test_goal_agreement(self):
        profile = {"goals": ["Minimize pores"]}
        self.assertEqual(agreement_factor("pores", 1, profile), 1.05)
        self.assertEqual(agreement_factor("pores", 0, profile), 1.0)
        self.assertEqual(agreement_factor("dark_spots", 2, {"goals": ["fade pigmentation"]}), 1.03)

    def test_bounds(self):
        for issue_type in ("acne", "redness", "pores", "dark_spots"):
            for level in range(4):
                for log in (0, 2.5, 5, "x"):
                    factor = agreement_factor(issue_type, level, {"goals": ["pores", "spots"]}, [{issue_type: log}])
                    self.assertGreaterEqual(factor, 0.55)
                    self.assertLessEqual(factor, 1.25)


class CalibrationTableTests(unittest.TestCase):

    def test_temperature(self):
        self.assertAlmostEqual(apply_temperature_scaling(0.9, 2), 0.75, places=6)
        self.assertAlmostEqual(apply_temperature_scaling(0.5, 3), 0.5)
        self.assertAlmostEqual(apply_temperature_scaling(0.9, -1), 0.9, places=6)

    def test_isotonic(self):
        points = [[0, 0], [0.5, 0.8], [1, 1]]
        self.assertAlmostEqual(apply_isotonic_points(0.25, points), 0.4)
        self.assertAlmostEqual(apply_isotonic_points(0.75, points), 0.9)
        self.assertAlmostEqual(apply_isotonic_points(0.1, [[0.8, 0.6], [0.2, 0.3]]), 0.3)
        self.assertAlmostEqual(apply_isotonic_points(0.3, []), 0.3)

    def test_from_dict(self):
        table = CalibrationTable.from_dict({
            "issues": {
                "acne": {"method": "temperature", "temperature": 2},
                "pores": "bad",
                "redness": {"method": "platt"},
            }
        })
        self.assertEqual(set(table.issues), {"acne", "redness"})
        self.assertAlmostEqual(table.calibrate("acne", 0.9), 0.75, places=6)
        self.assertAlmostEqual(table.calibrate("redness", 0.9), 0.9)
        self.assertAlmostEqual(table.calibrate("dark_spots", 1.4), 1.0)
        self.assertEqual(len(CalibrationTable.from_dict(None).issues), 0)

    def test_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "calibration.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump({"issues": {"pores": {"method": "isotonic", "points": [[0, 0.1], [1, 0.9]]}}}, handle)
            table = CalibrationTable.from_file(path)
            self.assertAlmostEqual(table.calibrate("pores", 0.5), 0.5)

            with self.assertRaises(OSError):
                CalibrationTable.from_file(os.path.join(tmp, "missing.json"))


class ScoreIssueTests(unittest.TestCase):

    def test_confidence_combines_factors(self):
        raw = RawIssueScore(score=0.4, model_conf=0.8, metrics={"a_shift": 2.0, "red_fraction": 0.4})
        issue = SeverityCalibrator().score_issue("redness", raw, quality(factor=0.5))

        self.assertEqual(issue.severity, Severity.MODERATE)
        self.assertEqual(issue.severity_level, 2)
        self.assertEqual(issue.severity_score, 0.4)
        self.assertEqual(issue.confidence, 0.4)
        self.assertEqual(issue.confidence_label, "not_sure")
        self.assertEqual(issue.calibration.agreement_factor, 1.0)
        self.assertEqual(
            issue.evidence.text,
            ("Redness signals: a* shift 2, red fraction 0.4.", "Overall: moderate, low confidence."),
        )

    def test_chinese_evidence(self):
        raw = RawIssueScore(score=0.0, model_conf=0.9, metrics={"acne_count": 0, "acne_density": 0.0})
        issue = SeverityCalibrator().score_issue("acne", raw, quality(), language="cn")
        self.assertTrue(issue.evidence.text[0].startswith("疑似炎性小红点"))

    def test_unstable_dark_spots_text(self):
        raw = RawIssueScore(score=0.0, model_conf=0.1, metrics={"luma_drop": 4.0, "hue_shift": 0.2})
        issue = SeverityCalibrator().score_issue(
            "dark_spots", raw, quality(QualityGrade.DEGRADED, 0.6, ["white_balance_unstable"])
        )
        self.assertIn("cannot reliably assess dark spots", issue.evidence.text[0])
        self.assertEqual(issue.evidence.quality_notes, ("white_balance_unstable",))

    def test_calibration_table_is_applied(self):
        table = CalibrationTable.from_dict({"issues": {"acne": {"method": "temperature", "temperature": 2}}})
        raw = RawIssueScore(score=0.2, model_conf=0.9, metrics={})
        issue = SeverityCalibrator(table).score_issue("acne", raw, quality())
        self.assertEqual(issue.calibration.model_conf, 0.9)
        self.assertEqual(issue.calibration.model_conf_calibrated, 0.75)
        self.assertEqual(issue.confidence, 0.75)


if __name__ == "__main__":
    unittest.main()
