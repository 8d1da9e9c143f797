"""
Module mask builder.
Aggregates sanitized regions into seven fixed facial modules and rasterizes
one refined bitmap per module in face-crop-normalized space.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np

from skin_diagnosis.config import MODULE_BOXES, ModuleMaskConfig
from skin_diagnosis.core import mask_ops
from skin_diagnosis.core.calibration import normalize_language
from skin_diagnosis.core.color import clamp01, round3, round_half_up
from skin_diagnosis.core.models import (
    FaceCrop,
    HeatmapRegion,
    ModuleIssue,
    ModuleResult,
    ModulesResult,
    PhotoFinding,
    PolygonRegion,
    QualityGrade,
    Region,
)
from skin_diagnosis.core.region_sanitizer import build_regions, count_by, quality_flags_from_reasons, sanitize_bbox

logger = logging.getLogger(__name__)

MODULE_LABELS = {
    "forehead": {"EN": "forehead", "CN": "额头"},
    "left_cheek": {"EN": "left cheek", "CN": "左脸颊"},
    "right_cheek": {"EN": "right cheek", "CN": "右脸颊"},
    "nose": {"EN": "nose", "CN": "鼻部"},
    "chin": {"EN": "chin", "CN": "下巴"},
    "under_eye_left": {"EN": "left under-eye", "CN": "左眼下"},
    "under_eye_right": {"EN": "right under-eye", "CN": "右眼下"},
}

HEATMAP_MIN_OVERLAP = 0.02
BOX_MIN_OVERLAP = 0.03
MAX_EVIDENCE_REGIONS = 3

# Mask source tags
SOURCE_EVIDENCE = "evidence"
SOURCE_BOX = "box"
SOURCE_FACE_OVAL = "face_oval"
SOURCE_SKIN = "skin"


def quality_factor_for_module(quality_grade: str) -> float:
    if quality_grade == QualityGrade.PASS.value:
        return 1.0
    if quality_grade == QualityGrade.DEGRADED.value:
        return 0.82
    return 0.7


def module_label(module_id: str, language: str = "EN") -> str:
    labels = MODULE_LABELS.get(module_id)
    return labels[normalize_language(language)] if labels else module_id


def build_issue_explanation(module_id: str, issue_type: str, evidence_region_ids, language: str = "EN") -> str:
    lang = normalize_language(language)
    label = module_label(module_id, lang)
    if evidence_region_ids:
        evidence = ", ".join(evidence_region_ids)
    else:
        evidence = "高亮区域" if lang == "CN" else "highlighted regions"
    if lang == "CN":
        return f"基于照片高亮证据（{evidence}），{label}存在 {issue_type} 相关信号。"
    return f"Based on highlighted photo evidence ({evidence}), {issue_type} signals are visible in the {label}."


def box_overlap_ratio(module_box: dict, region_box: dict) -> float:
    """Share of the region box that lies inside the module box."""
    x0 = max(module_box["x"], region_box["x"])
    y0 = max(module_box["y"], region_box["y"])
    x1 = min(module_box["x"] + module_box["w"], region_box["x"] + region_box["w"])
    y1 = min(module_box["y"] + module_box["h"], region_box["y"] + region_box["h"])
    iw, ih = x1 - x0, y1 - y0
    if iw <= 0 or ih <= 0:
        return 0.0
    area = max(1e-6, region_box["w"] * region_box["h"])
    return clamp01(iw * ih / area)


def heatmap_stats_in_module(region: HeatmapRegion, module_box: dict) -> tuple[float, float]:
    """(mean, p90) of the heatmap cells covered by the module box."""
    width, height = region.grid_w, region.grid_h
    x0 = max(0, min(width - 1, math.floor(module_box["x"] * width)))
    y0 = max(0, min(height - 1, math.floor(module_box["y"] * height)))
    x1 = max(0, min(width, math.ceil((module_box["x"] + module_box["w"]) * width)))
    y1 = max(0, min(height, math.ceil((module_box["y"] + module_box["h"]) * height)))
    if x1 <= x0 or y1 <= y0:
        return 0.0, 0.0

    cells = np.sort(np.clip(region.grid()[y0:y1, x0:x1], 0.0, 1.0).ravel())
    p90_index = min(cells.size - 1, math.floor(0.9 * (cells.size - 1)))
    return clamp01(float(cells.mean())), clamp01(float(cells[p90_index]))


@dataclass(frozen=True)
class Contribution:
    region_id: str
    overlap: float
    signal: float
    confidence: float


def module_contribution(module_box: dict, region: Region) -> Contribution | None:
    """
    How strongly a region speaks for a module.

    Heatmaps contribute their cell statistics inside the module box; boxes
    and polygons contribute the share of their area inside it.
    """
    if isinstance(region, HeatmapRegion):
        mean, p90 = heatmap_stats_in_module(region, module_box)
        overlap = max(mean, p90)
        if overlap <= HEATMAP_MIN_OVERLAP:
            return None
        return Contribution(region.region_id, overlap, clamp01(overlap), clamp01(region.confidence))

    bounds = region.bounds
    if bounds is None:
        return None
    overlap = box_overlap_ratio(module_box, bounds)
    if overlap <= BOX_MIN_OVERLAP:
        return None
    return Contribution(region.region_id, overlap, clamp01(region.severity / 4), clamp01(region.confidence))


def build_module_issues(
    module_id: str,
    module_box: dict,
    regions: list[Region],
    quality_grade: str,
    language: str = "EN",
    max_issues: int = 4,
) -> list[ModuleIssue]:
    """Aggregate region contributions per issue type, most severe first."""
    buckets: dict[str, list[Contribution]] = {}
    for region in regions:
        contribution = module_contribution(module_box, region)
        if contribution is not None:
            buckets.setdefault(region.issue_type, []).append(contribution)

    factor = quality_factor_for_module(quality_grade)
    issues = []
    for issue_type, items in buckets.items():
        weight = sum(item.overlap for item in items)
        if weight <= 0:
            continue
        weighted_mean = sum(item.signal * item.overlap for item in items) / weight
        signals = sorted(item.signal for item in items)
        p90 = signals[min(len(signals) - 1, math.floor(0.9 * (len(signals) - 1)))]
        severity_score = clamp01(max(weighted_mean, p90))

        ranked = sorted(items, key=lambda item: item.overlap, reverse=True)
        evidence_ids = tuple(item.region_id for item in ranked[:MAX_EVIDENCE_REGIONS])
        issues.append(ModuleIssue(
            issue_type=issue_type,
            severity_0_4=round3(severity_score * 4),
            confidence_0_1=round3(clamp01(max(item.confidence for item in items) * factor)),
            evidence_region_ids=evidence_ids,
            explanation_short=build_issue_explanation(module_id, issue_type, evidence_ids, language),
        ))

    issues.sort(key=lambda issue: issue.severity_0_4, reverse=True)
    return issues[:max_issues]


def pick_render_hint(width: int, height: int, max_side: int = 512) -> dict:
    w, h = max(1, int(width)), max(1, int(height))
    longest = max(w, h)
    if longest <= max_side:
        return {"w": w, "h": h}
    ratio = max_side / longest
    return {"w": max(1, round_half_up(w * ratio)), "h": max(1, round_half_up(h * ratio))}


def build_face_crop_from_skin_bbox(
    skin_bbox_norm: dict | None,
    orig_size_px: dict | None,
    margin_scale: float = 1.2,
    render_max_side: int = 512,
) -> FaceCrop | None:
    """
    Face crop around the skin ROI, grown by margin_scale about its center.

    Args:
        skin_bbox_norm: {"x0", "y0", "x1", "y1"} fractions of the original image
        orig_size_px: {"w", "h"} of the original image
        margin_scale: Growth factor applied around the box center
        render_max_side: Longest side of the render size hint

    Returns:
        FaceCrop in original pixels, or None when inputs are missing
    """
    if not isinstance(skin_bbox_norm, dict) or not isinstance(orig_size_px, dict):
        return None
    try:
        width = max(1, int(orig_size_px["w"]))
        height = max(1, int(orig_size_px["h"]))
        coords = [clamp01(float(skin_bbox_norm[key])) for key in ("x0", "y0", "x1", "y1")]
    except (KeyError, TypeError, ValueError):
        return None

    x0, x1 = min(coords[0], coords[2]), max(coords[0], coords[2])
    y0, y1 = min(coords[1], coords[3]), max(coords[1], coords[3])
    base_w = max(0.01, x1 - x0)
    base_h = max(0.01, y1 - y0)
    scale = margin_scale if margin_scale and margin_scale > 0 else 1.2

    center_x, center_y = x0 + base_w / 2, y0 + base_h / 2
    crop_w, crop_h = min(1.0, base_w * scale), min(1.0, base_h * scale)
    crop_x0 = clamp01(center_x - crop_w / 2)
    crop_y0 = clamp01(center_y - crop_h / 2)
    crop_x1 = clamp01(crop_x0 + crop_w)
    crop_y1 = clamp01(crop_y0 + crop_h)

    px_x = max(0, math.floor(crop_x0 * width))
    px_y = max(0, math.floor(crop_y0 * height))
    px_w = max(1, math.floor((crop_x1 - crop_x0) * width + 0.5))
    px_h = max(1, math.floor((crop_y1 - crop_y0) * height + 0.5))
    bounded_w = max(1, min(width - px_x, px_w))
    bounded_h = max(1, min(height - px_y, px_h))

    return FaceCrop(
        bbox_px={"x": px_x, "y": px_y, "w": bounded_w, "h": bounded_h},
        orig_size_px={"w": width, "h": height},
        render_size_px_hint=pick_render_hint(bounded_w, bounded_h, render_max_side),
    )


def full_image_face_crop(orig_size_px: dict, render_max_side: int = 512) -> FaceCrop:
    width = max(1, int(orig_size_px.get("w") or 1))
    height = max(1, int(orig_size_px.get("h") or 1))
    return FaceCrop(
        bbox_px={"x": 0, "y": 0, "w": width, "h": height},
        orig_size_px={"w": width, "h": height},
        render_size_px_hint=pick_render_hint(width, height, render_max_side),
    )


def region_bitmap(region: Region, grid_size: int, heatmap_threshold: float = 0.35) -> np.ndarray:
    """Rasterize a sanitized region onto the module grid."""
    if isinstance(region, HeatmapRegion):
        return mask_ops.heatmap_to_mask(
            region.values, region.grid_w, region.grid_h, grid_size, grid_size,
            threshold=heatmap_threshold, intensity=region.style.intensity,
        )
    if isinstance(region, PolygonRegion):
        return mask_ops.polygon_norm_to_mask(list(region.points), grid_size, grid_size)
    return mask_ops.bbox_norm_to_mask(region.bounds, grid_size, grid_size)


def _to_grid(mask: np.ndarray | None, grid_size: int) -> np.ndarray | None:
    if mask is None:
        return None
    mask = np.asarray(mask)
    if mask.shape != (grid_size, grid_size):
        mask = mask_ops.resize_mask_nearest(mask, grid_size, grid_size)
    return (mask > 0).astype(np.uint8)


class ModuleMaskBuilder:
    """Build and refine per-module masks on a square grid."""

    def __init__(
        self,
        config: ModuleMaskConfig | None = None,
        skin_mask: np.ndarray | None = None,
        face_oval_mask: np.ndarray | None = None,
    ):
        self.config = config or ModuleMaskConfig()
        self.grid_size = self.config.grid_size
        self.face_oval_mask = _to_grid(face_oval_mask, self.grid_size)
        self.skin_mask = _to_grid(skin_mask, self.grid_size)
        self.skin_reliable = self._skin_mask_reliable()

    def _skin_mask_reliable(self) -> bool:
        if self.skin_mask is None:
            return False
        ratio = mask_ops.count_ones(self.skin_mask) / self.skin_mask.size
        reliable = self.config.skin_ratio_min <= ratio <= self.config.skin_ratio_max
        if not reliable:
            logger.warning("Skin mask ignored for module refinement (positive ratio %.3f)", ratio)
        return reliable

    def build(self, module_id: str, module_box: dict, evidence: list[Region]) -> tuple[np.ndarray, str, list[str]]:
        """
        Build one module mask.

        Evidence bitmaps are clipped to the shrunk module box, so evidence
        from a neighbouring region never widens a module.

        Returns:
            Tuple of (mask, mask_source, fallback_reasons)
        """
        g = self.grid_size
        fallbacks = []
        base_box = mask_ops.shrink_box(
            (module_box["x"], module_box["y"], module_box["w"], module_box["h"]),
            self.config.shrink_for(module_id),
        )
        base = mask_ops.bbox_norm_to_mask(base_box, g, g)

        union = mask_ops.create_mask(g, g)
        for region in evidence:
            mask_ops.or_mask_into(union, region_bitmap(region, g, self.config.heatmap_threshold))
        mask = mask_ops.and_masks(union, base)
        sources = [SOURCE_EVIDENCE]
        if mask_ops.count_ones(mask) == 0:
            mask = base
            sources = [SOURCE_BOX]
            fallbacks.append("no_evidence_pixels" if evidence else "no_evidence")

        if self.face_oval_mask is not None:
            refined = mask_ops.and_masks(mask, self.face_oval_mask)
            if mask_ops.count_ones(refined) > 0:
                mask = refined
                sources.append(SOURCE_FACE_OVAL)
            else:
                fallbacks.append("face_oval_empty")

        if self.skin_mask is not None:
            if not self.skin_reliable:
                fallbacks.append("skin_ratio_out_of_range")
            else:
                refined = mask_ops.and_masks(mask, self.skin_mask)
                module_pixels = mask_ops.count_ones(mask)
                needed = max(self.config.min_module_pixels, self.config.min_retained_ratio * module_pixels)
                if mask_ops.count_ones(refined) >= needed:
                    mask = refined
                    sources.append(SOURCE_SKIN)
                else:
                    fallbacks.append("skin_retention_low")

        return mask, "+".join(sources), fallbacks


def build_modules(
    findings: list[PhotoFinding | dict],
    face_crop: FaceCrop,
    quality_grade: QualityGrade | str,
    skin_mask: np.ndarray | None = None,
    face_oval_mask: np.ndarray | None = None,
    module_boxes: dict | None = None,
    used_photos: bool = True,
    language: str = "EN",
    quality_reasons=(),
    config: ModuleMaskConfig | None = None,
) -> ModulesResult | None:
    """
    Build the module card for a set of photo findings.

    Args:
        findings: PhotoFinding objects or their wire dicts
        face_crop: Crop that defines the normalized coordinate frame
        quality_grade: Photo quality grade
        skin_mask: Optional skin bitmap already cropped to the face frame
        face_oval_mask: Optional face-oval bitmap in the same frame
        module_boxes: {module_id: (x, y, w, h)} overrides
        used_photos: False when the analysis did not look at a photo
        language: "EN" or "CN"
        quality_reasons: Quality reason tags, mapped to region quality flags
        config: Mask parameters

    Returns:
        ModulesResult, or None unless photos were used and the grade is
        pass or degraded
    """
    grade = quality_grade.value if isinstance(quality_grade, QualityGrade) else str(quality_grade or "").lower()
    if not used_photos or grade not in (QualityGrade.PASS.value, QualityGrade.DEGRADED.value):
        return None

    config = config or ModuleMaskConfig()
    boxes = module_boxes or MODULE_BOXES
    parsed = [
        finding if isinstance(finding, PhotoFinding) else PhotoFinding.from_dict(finding, i)
        for i, finding in enumerate(findings or [])
        if isinstance(finding, (PhotoFinding, dict))
    ]

    region_build = build_regions(
        parsed,
        quality_flags_from_reasons(quality_reasons),
        max_regions=config.max_regions,
        heatmap_grid=config.heatmap_output_grid,
    )
    regions = region_build.regions

    mask_builder = ModuleMaskBuilder(config, skin_mask=skin_mask, face_oval_mask=face_oval_mask)
    modules = []
    issue_rows = []
    fallback_rows = []
    for module_id, raw_box in boxes.items():
        sanitized = sanitize_bbox(
            raw_box if isinstance(raw_box, dict)
            else {"x": raw_box[0], "y": raw_box[1], "w": raw_box[2], "h": raw_box[3]}
        )
        if not sanitized.ok:
            logger.warning("Skipping module %s with invalid box %r", module_id, raw_box)
            continue
        module_box = sanitized.value

        issues = build_module_issues(
            module_id, module_box, regions, grade, language, config.max_issues_per_module
        )
        evidence_ids = {rid for issue in issues for rid in issue.evidence_region_ids}
        evidence = [region for region in regions if region.region_id in evidence_ids]

        mask, source, fallbacks = mask_builder.build(module_id, module_box, evidence)
        issue_rows.extend({"module_id": module_id, "issue_type": issue.issue_type} for issue in issues)
        fallback_rows.extend({"module_id": module_id, "reason": reason} for reason in fallbacks)

        box = mask_ops.mask_bounding_box(mask)
        modules.append(ModuleResult(
            module_id=module_id,
            label=module_label(module_id, language),
            issues=issues,
            mask_grid=config.grid_size,
            mask_rle_norm=mask_ops.encode_rle_binary(mask),
            box={key: round3(value) for key, value in box.items()} if box else None,
            positive_pixels=mask_ops.count_ones(mask),
            mask_source=source,
            mask=mask,
        ))

    region_rows = [{"region_type": region.region_type, "issue_type": region.style.label_hint} for region in regions]
    metrics = {
        "quality_grade": grade,
        "regionCounts": count_by(region_rows, ("region_type", "issue_type")),
        "moduleIssueCounts": count_by(issue_rows, ("module_id", "issue_type")),
        "geometryDropCounts": region_build.geometry_counts,
        "maskFallbackCounts": count_by(fallback_rows, ("module_id", "reason")),
    }
    logger.debug(
        "Built %d modules from %d regions (%d geometry drops)",
        len(modules), len(regions), len(region_build.drops),
    )
    return ModulesResult(
        quality_grade=grade,
        face_crop=face_crop,
        regions=regions,
        modules=modules,
        metrics=metrics,
    )
