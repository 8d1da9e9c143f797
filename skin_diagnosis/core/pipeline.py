"""
Skin photo diagnosis pipeline.
Decodes a photo, segments the skin ROI, gates quality, runs the issue
detectors and calibrates them into a diagnosis.
"""

import logging
import time

import numpy as np

from skin_diagnosis.config import DEFAULT_CONFIG, DiagnosisConfig, QualityGateConfig
from skin_diagnosis.core import mask_ops
from skin_diagnosis.core.calibration import (
    IDENTITY_CALIBRATION,
    CalibrationTable,
    SeverityCalibrator,
    normalize_language,
)
from skin_diagnosis.core.errors import DecodeError, SkinRoiError
from skin_diagnosis.core.issue_detectors import ISSUE_TYPES, compute_issue_raw_scores, compute_lab_stats, compute_region_boxes
from skin_diagnosis.core.models import AnalysisResult, FaceCrop, ModulesResult
from skin_diagnosis.core.module_builder import build_face_crop_from_skin_bbox, build_modules, full_image_face_crop
from skin_diagnosis.core.photo_findings import build_photo_findings, build_summary_notes
from skin_diagnosis.core.quality_gate import QualityGate
from skin_diagnosis.core.skin_segmenter import SkinSegmenter
from skin_diagnosis.utils.image_utils import load_image_from_bytes, resize_image

logger = logging.getLogger(__name__)


class SkinDiagnosisPipeline:
    """Analyze one face photo into calibrated issues and photo findings."""

    def __init__(self, config: DiagnosisConfig | None = None, calibration: CalibrationTable | None = None):
        self.config = config or DiagnosisConfig()
        self.calibration = calibration or IDENTITY_CALIBRATION
        self.skin_segmenter = SkinSegmenter(self.config.segmentation)
        self.quality_gate = QualityGate(self.config.quality)
        self.calibrator = SeverityCalibrator(self.calibration)

    @classmethod
    def from_config(cls, config: DiagnosisConfig | None = None) -> "SkinDiagnosisPipeline":
        """Build a pipeline, loading the calibration file named by the config."""
        config = config or DiagnosisConfig.from_env()
        calibration = None
        if config.calibration_path:
            calibration = CalibrationTable.from_file(config.calibration_path)
        return cls(config, calibration)

    def analyze(
        self,
        image_bytes: bytes | None,
        language: str | None = None,
        profile_summary: dict | None = None,
        recent_logs_summary: list | None = None,
        quality_gate_config: QualityGateConfig | dict | None = None,
        severity_thresholds_overrides: dict | None = None,
    ) -> AnalysisResult:
        """
        Analyze a photo.

        Args:
            image_bytes: Encoded image (JPEG, PNG, ...)
            language: "EN" or "CN" for evidence text
            profile_summary: User profile, e.g. {"skinType": "oily"}
            recent_logs_summary: Recent self-reported logs, newest first
            quality_gate_config: QualityGateConfig, or a nested override dict
            severity_thresholds_overrides: {issue_type: {region: [t1, t2, t3]}}

        Returns:
            AnalysisResult; ok=False with a reason code on hard stops
        """
        start_time = time.time()
        lang = normalize_language(language or self.config.default_language)

        def fail(reason: str) -> AnalysisResult:
            logger.warning("Analysis stopped: %s", reason)
            return AnalysisResult(ok=False, reason=reason, processing_time_ms=(time.time() - start_time) * 1000)

        # Step 1: Decode and downscale
        if not image_bytes or len(image_bytes) < self.config.min_image_bytes:
            return fail("no_image")
        try:
            original = load_image_from_bytes(image_bytes)
        except DecodeError as exc:
            logger.debug("Decode error: %s", exc)
            return fail(exc.reason)
        orig_h, orig_w = original.shape[:2]
        image, scale = resize_image(original, self.config.analysis_max_side)
        h, w = image.shape[:2]
        logger.debug("Decoded %dx%d, analysis size %dx%d (scale %.3f)", orig_w, orig_h, w, h, scale)

        # Step 2: Skin ROI
        try:
            skin = self.skin_segmenter.create_skin_mask(image)
        except SkinRoiError as exc:
            return fail(exc.reason)

        # Step 3: Quality gate
        gate = self._quality_gate_for(quality_gate_config)
        try:
            quality = gate.evaluate(image, skin)
        except Exception:
            logger.exception("Quality gate failed")
            return fail("quality_failed")

        # Step 4: Raw detectors
        try:
            boxes = compute_region_boxes(skin.bbox)
            lab_stats = compute_lab_stats(image, skin)
            raw = compute_issue_raw_scores(image, skin, boxes, lab_stats, quality)
        except Exception:
            logger.exception("Issue detectors failed")
            return fail("detector_failed")

        # Step 5: Calibration, findings and internal geometry
        try:
            calibrator = self.calibrator.with_overrides(severity_thresholds_overrides)
            issues = [
                calibrator.score_issue(
                    issue_type, raw[issue_type], quality, profile_summary, recent_logs_summary, lang
                )
                for issue_type in ISSUE_TYPES
            ]

            skin_bbox_norm = skin.bbox.to_norm(w, h)
            orig_size = {"w": orig_w, "h": orig_h}
            modules_config = self.config.modules
            face_crop = build_face_crop_from_skin_bbox(
                skin_bbox_norm, orig_size, modules_config.face_crop_margin, modules_config.render_max_side
            ) or full_image_face_crop(orig_size, modules_config.render_max_side)
            frame = face_crop.box_in(w, h)

            findings, takeaways = build_photo_findings(issues, raw, quality, boxes, frame, lang)
            notes = build_summary_notes(quality, lang)

            grid = modules_config.grid_size
            skin_grid = mask_ops.crop_mask_to_norm(skin.mask, frame, grid, grid)
            internal = {
                "orig_size_px": orig_size,
                "analysis_size_px": {"w": w, "h": h},
                "skin_bbox_norm": skin_bbox_norm,
                "face_crop": face_crop.to_dict(),
                "face_crop_margin_scale": modules_config.face_crop_margin,
                "skin_mask_rle_norm": mask_ops.encode_rle_binary(skin_grid),
                "skin_mask_grid": grid,
            }
        except Exception:
            logger.exception("Post-processing failed")
            return fail("postprocess_failed")

        processing_time = (time.time() - start_time) * 1000
        logger.info(
            "Analyzed %dx%d photo: grade=%s, %d findings in %.1f ms",
            orig_w, orig_h, quality.grade.value, len(findings), processing_time,
        )

        return AnalysisResult(
            ok=True,
            quality=quality,
            issues=issues,
            photo_findings=findings,
            takeaways=takeaways,
            notes=notes,
            internal=internal,
            processing_time_ms=processing_time,
            image=image,
            skin=skin,
        )

    def _quality_gate_for(self, override: QualityGateConfig | dict | None) -> QualityGate:
        if override is None:
            return self.quality_gate
        if isinstance(override, QualityGateConfig):
            return QualityGate(override)
        return QualityGate(self.config.quality.with_overrides(override))

    def build_modules(
        self,
        result: AnalysisResult,
        language: str | None = None,
        face_oval_mask: np.ndarray | None = None,
        module_boxes: dict | None = None,
    ) -> ModulesResult | None:
        return build_modules_for_result(
            result, language or self.config.default_language, face_oval_mask, module_boxes, self.config
        )


def face_crop_from_internal(internal: dict) -> FaceCrop:
    """Rebuild the face crop recorded by analyze(), or derive it from the skin bbox."""
    existing = internal.get("face_crop")
    if isinstance(existing, dict) and isinstance(existing.get("bbox_px"), dict):
        return FaceCrop(
            bbox_px=dict(existing["bbox_px"]),
            orig_size_px=dict(existing["orig_size_px"]),
            render_size_px_hint=dict(existing.get("render_size_px_hint") or existing["orig_size_px"]),
            crop_id=existing.get("crop_id", ""),
        )
    orig_size = internal.get("orig_size_px") or {"w": 1, "h": 1}
    return build_face_crop_from_skin_bbox(
        internal.get("skin_bbox_norm"), orig_size, internal.get("face_crop_margin_scale", 1.2)
    ) or full_image_face_crop(orig_size)


def build_modules_for_result(
    result: AnalysisResult,
    language: str = "EN",
    face_oval_mask: np.ndarray | None = None,
    module_boxes: dict | None = None,
    config: DiagnosisConfig | None = None,
) -> ModulesResult | None:
    """
    Build the module card for an analysis result.

    Uses the face crop and the cropped skin mask recorded in result.internal.
    Returns None for failed analyses and failed-quality photos.
    """
    if not result.ok or result.quality is None:
        return None
    config = config or DEFAULT_CONFIG
    internal = result.internal
    grid = int(internal.get("skin_mask_grid") or config.modules.grid_size)
    skin_mask = None
    if internal.get("skin_mask_rle_norm"):
        skin_mask = mask_ops.decode_rle_mask(internal["skin_mask_rle_norm"], grid)

    return build_modules(
        result.photo_findings,
        face_crop_from_internal(internal),
        result.quality.grade,
        skin_mask=skin_mask,
        face_oval_mask=face_oval_mask,
        module_boxes=module_boxes,
        used_photos=True,
        language=language,
        quality_reasons=result.quality.reasons,
        config=config.modules,
    )


def analyze(
    image_bytes: bytes | None,
    language: str = "EN",
    profile_summary: dict | None = None,
    recent_logs_summary: list | None = None,
    quality_gate_config: QualityGateConfig | dict | None = None,
    severity_thresholds_overrides: dict | None = None,
) -> AnalysisResult:
    """Analyze a photo with DEFAULT_CONFIG and no calibration table."""
    return SkinDiagnosisPipeline(DEFAULT_CONFIG).analyze(
        image_bytes,
        language=language,
        profile_summary=profile_summary,
        recent_logs_summary=recent_logs_summary,
        quality_gate_config=quality_gate_config,
        severity_thresholds_overrides=severity_thresholds_overrides,
    )
