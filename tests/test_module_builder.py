"""
Tests for module aggregation and module mask refinement.
"""

import unittest

import numpy as np

from skin_diagnosis.config import MODULE_BOXES, ModuleMaskConfig
from skin_diagnosis.core import mask_ops
from skin_diagnosis.core.models import HeatmapRegion, QualityGrade, RegionStyle
from skin_diagnosis.core.module_builder import (
    ModuleMaskBuilder,
    box_overlap_ratio,
    build_face_crop_from_skin_bbox,
    build_issue_explanation,
    build_modules,
    full_image_face_crop,
    heatmap_stats_in_module,
    module_contribution,
    pick_render_hint,
)

FACE_CROP = full_image_face_crop({"w": 256, "h": 256})
LEFT_CHEEK = {"x": 0.08, "y": 0.34, "w": 0.34, "h": 0.3}


def heatmap_region(values, grid_w, grid_h, confidence=0.6):
    return HeatmapRegion(
        region_id="pf_tone_heatmap",
        issue_type="tone",
        severity=2.0,
        confidence=confidence,
        style=RegionStyle(intensity=1.0, priority=1.0, label_hint="tone"),
        grid_w=grid_w,
        grid_h=grid_h,
        values=tuple(values),
    )


def box_finding(finding_id, issue_type, severity, x0, y0, x1, y1, confidence=0.8):
    return {
        "finding_id": finding_id,
        "issue_type": issue_type,
        "severity": severity,
        "confidence": confidence,
        "geometry": {"bbox_norm": {"x0": x0, "y0": y0, "x1": x1, "y1": y1}},
    }


class ContributionTests(unittest.TestCase):

    def test_box_overlap_ratio(self):
        ratio = box_overlap_ratio({"x": 0, "y": 0, "w": 0.5, "h": 0.5}, {"x": 0.25, "y": 0.25, "w": 0.5, "h": 0.5})
        self.assertAlmostEqual(ratio, 0.25)
        self.assertEqual(box_overlap_ratio({"x": 0, "y": 0, "w": 0.2, "h": 0.2}, {"x": 0.5, "y": 0.5, "w": 0.1, "h": 0.1}), 0.0)

    def test_heatmap_stats_follow_module_box(self):
        region = heatmap_region([0, 1, 0, 1], 2, 2)
        self.assertEqual(heatmap_stats_in_module(region, {"x": 0, "y": 0, "w": 0.5, "h": 1}), (0.0, 0.0))
        self.assertEqual(heatmap_stats_in_module(region, {"x": 0.5, "y": 0, "w": 0.5, "h": 1}), (1.0, 1.0))

    def test_heatmap_contribution(self):
        contribution = module_contribution(LEFT_CHEEK, heatmap_region([0.5] * 16, 4, 4))
        self.assertAlmostEqual(contribution.signal, 0.5)
        self.assertAlmostEqual(contribution.confidence, 0.6)
        self.assertIsNone(module_contribution(LEFT_CHEEK, heatmap_region([0.0] * 16, 4, 4)))

    def test_explanations(self):
        self.assertEqual(
            build_issue_explanation("left_cheek", "redness", ("f1_bbox",)),
            "Based on highlighted photo evidence (f1_bbox), redness signals are visible in the left cheek.",
        )
        self.assertEqual(
            build_issue_explanation("nose", "shine", (), "CN"),
            "基于照片高亮证据（高亮区域），鼻部存在 shine 相关信号。",
        )


class FaceCropTests(unittest.TestCase):

    def test_crop_grows_around_skin_bbox(self):
        crop = build_face_crop_from_skin_bbox({"x0": 0.25, "y0": 0.25, "x1": 0.75, "y1": 0.75}, {"w": 200, "h": 100})
        self.assertEqual(crop.bbox_px, {"x": 40, "y": 20, "w": 120, "h": 60})
        self.assertEqual(crop.render_size_px_hint, {"w": 120, "h": 60})
        self.assertTrue(crop.crop_id.startswith("crop_"))
        self.assertEqual(len(crop.crop_id), 21)

    def test_crop_is_bounded_by_image(self):
        crop = build_face_crop_from_skin_bbox({"x0": 0, "y0": 0, "x1": 1, "y1": 1}, {"w": 300, "h": 200})
        self.assertEqual(crop.bbox_px, {"x": 0, "y": 0, "w": 300, "h": 200})

    def test_missing_inputs(self):
        self.assertIsNone(build_face_crop_from_skin_bbox(None, {"w": 10, "h": 10}))
        self.assertIsNone(build_face_crop_from_skin_bbox({"x0": 0, "y0": 0}, {"w": 10, "h": 10}))

    def test_crop_id_is_stable(self):
        a = full_image_face_crop({"w": 640, "h": 480})
        b = full_image_face_crop({"w": 640, "h": 480})
        self.assertEqual(a.crop_id, b.crop_id)
        self.assertNotEqual(a.crop_id, full_image_face_crop({"w": 480, "h": 640}).crop_id)

    def test_render_hint(self):
        self.assertEqual(pick_render_hint(1024, 512), {"w": 512, "h": 256})
        self.assertEqual(pick_render_hint(300, 200), {"w": 300, "h": 200})

    def test_render_hint_rounds_halves_up(self):
        self.assertEqual(pick_render_hint(1024, 5), {"w": 512, "h": 3})
        self.assertEqual(pick_render_hint(9, 1024), {"w": 5, "h": 512})


class MaskBuilderTests(unittest.TestCase):

    def test_empty_face_oval_is_ignored(self):
        builder = ModuleMaskBuilder(face_oval_mask=np.zeros((64, 64), dtype=np.uint8))
        mask, source, fallbacks = builder.build("nose", {"x": 0.42, "y": 0.32, "w": 0.16, "h": 0.32}, [])
        self.assertEqual(source, "box")
        self.assertEqual(fallbacks, ["no_evidence", "face_oval_empty"])
        self.assertGreater(mask_ops.count_ones(mask), 0)

    def test_face_oval_and_skin_refine(self):
        skin = np.zeros((128, 128), dtype=np.uint8)
        skin[:, :64] = 1
        builder = ModuleMaskBuilder(skin_mask=skin, face_oval_mask=np.ones((64, 64), dtype=np.uint8))

        _, source, fallbacks = builder.build("left_cheek", LEFT_CHEEK, [])
        self.assertEqual(source, "box+face_oval+skin")
        self.assertEqual(fallbacks, ["no_evidence"])

        mask, source, fallbacks = builder.build("right_cheek", {"x": 0.58, "y": 0.34, "w": 0.34, "h": 0.3}, [])
        self.assertEqual(source, "box+face_oval")
        self.assertIn("skin_retention_low", fallbacks)
        self.assertGreater(mask_ops.count_ones(mask), 0)

    def test_saturated_skin_mask_is_not_trusted(self):
        with self.assertLogs("skin_diagnosis.core.module_builder", level="WARNING"):
            builder = ModuleMaskBuilder(skin_mask=np.ones((64, 64), dtype=np.uint8))
        _, source, fallbacks = builder.build("chin", {"x": 0.33, "y": 0.67, "w": 0.34, "h": 0.26}, [])
        self.assertEqual(source, "box")
        self.assertIn("skin_ratio_out_of_range", fallbacks)

    def test_shrink_keeps_center(self):
        builder = ModuleMaskBuilder(ModuleMaskConfig(grid_size=100))
        mask, _, _ = builder.build("chin", {"x": 0.3, "y": 0.6, "w": 0.4, "h": 0.3}, [])
        box = mask_ops.mask_bounding_box(mask)
        self.assertAlmostEqual(box["x"] + box["w"] / 2, 0.5, delta=0.01)
        self.assertAlmostEqual(box["w"], 0.32, delta=0.03)


class BuildModulesTests(unittest.TestCase):

    def test_gated_by_grade_and_photo_use(self):
        self.assertIsNone(build_modules([], FACE_CROP, QualityGrade.FAIL))
        self.assertIsNone(build_modules([], FACE_CROP, "unknown"))
        self.assertIsNone(build_modules([], FACE_CROP, "pass", used_photos=False))
        self.assertIsNotNone(build_modules([], FACE_CROP, "DEGRADED"))

    def test_no_findings_yields_box_modules(self):
        result = build_modules([], FACE_CROP, QualityGrade.PASS)
        self.assertEqual([m.module_id for m in result.modules], list(MODULE_BOXES))
        for module in result.modules:
            self.assertEqual(module.issues, [])
            self.assertEqual(module.mask_source, "box")
            self.assertGreater(module.positive_pixels, 0)
            self.assertEqual(module.mask_grid, 64)
        self.assertEqual(len(result.metrics["maskFallbackCounts"]), 7)
        self.assertEqual(result.metrics["regionCounts"], [])

    def test_box_evidence_reaches_its_module(self):
        finding = box_finding("f1", "redness", 3, 0.1, 0.35, 0.4, 0.6)
        result = build_modules([finding], FACE_CROP, QualityGrade.PASS)

        cheek = result.module("left_cheek")
        self.assertEqual(len(cheek.issues), 1)
        issue = cheek.issues[0]
        self.assertEqual(issue.issue_type, "redness")
        self.assertEqual(issue.severity_0_4, 3.0)
        self.assertEqual(issue.confidence_0_1, 0.8)
        self.assertEqual(issue.evidence_region_ids, ("f1_bbox",))
        self.assertEqual(cheek.mask_source, "evidence")
        self.assertGreaterEqual(cheek.box["x"], 0.09)
        self.assertLessEqual(cheek.box["x"] + cheek.box["w"], 0.41)

        self.assertEqual(result.module("nose").issues, [])
        self.assertEqual(result.metrics["regionCounts"], [{"region_type": "bbox", "issue_type": "redness", "count": 1}])

    def test_degraded_grade_lowers_confidence(self):
        finding = box_finding("f1", "redness", 3, 0.1, 0.35, 0.4, 0.6)
        result = build_modules([finding], FACE_CROP, QualityGrade.DEGRADED)
        self.assertEqual(result.module("left_cheek").issues[0].confidence_0_1, 0.656)

    def test_issues_sorted_and_capped(self):
        findings = [
            box_finding(f"f{i}", issue_type, severity, 0.43, 0.35, 0.57, 0.6)
            for i, (issue_type, severity) in enumerate(
                [("shine", 1), ("acne", 4), ("redness", 2), ("texture", 3), ("tone", 0)]
            )
        ]
        nose = build_modules(findings, FACE_CROP, QualityGrade.PASS).module("nose")
        self.assertEqual([i.issue_type for i in nose.issues], ["acne", "texture", "redness", "shine"])

    def test_invalid_module_box_is_skipped(self):
        boxes = {"nose": {"x": 0.4, "y": 0.3, "w": 0.2, "h": 0.3}, "bad": (0, 0, 0, 0)}
        with self.assertLogs("skin_diagnosis.core.module_builder", level="WARNING"):
            result = build_modules([], FACE_CROP, QualityGrade.PASS, module_boxes=boxes)
        self.assertEqual([m.module_id for m in result.modules], ["nose"])

    def test_payload_shape(self):
        finding = box_finding("f1", "pores", 2, 0.1, 0.35, 0.4, 0.6)
        data = build_modules([finding], FACE_CROP, "pass", language="CN").to_dict()
        self.assertTrue(data["used_photos"])
        self.assertEqual(data["face_crop"]["coord_space"], "orig_px_v1")
        self.assertEqual(data["regions"][0]["region_id"], "f1_bbox")
        self.assertEqual(data["modules"][1]["label"], "左脸颊")
        self.assertEqual(data["modules"][1]["issues"][0]["issue_type"], "texture")
        self.assertEqual(
            set(data["metrics"]),
            {"quality_grade", "regionCounts", "moduleIssueCounts", "geometryDropCounts", "maskFallbackCounts"},
        )
        mask = mask_ops.decode_rle_mask(data["modules"][1]["mask_rle_norm"], 64)
        self.assertEqual(mask_ops.count_ones(mask), data["modules"][1]["positive_pixels"])


if __name__ == "__main__":
    unittest.main()
