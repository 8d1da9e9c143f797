"""
Renderable photo findings and takeaways.
Maps calibrated issues onto face regions with a coarse grid heatmap.
"""

import logging
import math

from skin_diagnosis.core.calibration import normalize_language
from skin_diagnosis.core.color import clamp01, round3
from skin_diagnosis.core.models import (
    FindingGeometry,
    IssueFinding,
    PhotoFinding,
    PixelBox,
    QualityGrade,
    QualityResult,
    RawIssueScore,
    Takeaway,
)
from skin_diagnosis.core.quality_gate import BLUR, TOO_BRIGHT, TOO_DARK, WHITE_BALANCE_UNSTABLE

logger = logging.getLogger(__name__)

GRID_ROWS = 6
GRID_COLS = 6
MAX_TAKEAWAYS = 8

RETAKE_TAKEAWAY_ID = "tw_photo_quality_retake"

_TAKEAWAY_TEXT = {
    "redness": {
        "EN": "From photo: redness signals are elevated, so prioritize gentle cleansing, barrier repair, and lower active stacking.",
        "CN": "From photo: 泛红信号偏高，先用温和清洁+修护保湿，并降低强活性叠加频率。",
    },
    "shine": {
        "EN": "From photo: T-zone shine/specular highlights are elevated, so keep SPF consistent and avoid heavy occlusive layering.",
        "CN": "From photo: T 区油光/镜面反射偏高，白天重视防晒并避免厚重封闭型叠加。",
    },
    "texture": {
        "EN": "From photo: texture/pore signals are elevated; start with low-frequency gentle exfoliation and watch the 72-hour response.",
        "CN": "From photo: 纹理/毛孔信号偏高，建议从低频温和焕肤开始，并观察 72 小时反应。",
    },
    "tone": {
        "EN": "From photo: uneven-tone signals are present; lock in daily SPF first, then add gentle brightening.",
        "CN": "From photo: 肤色不均信号存在，建议优先稳定防晒，再逐步加入温和提亮。",
    },
    "uncertain": {
        "EN": "From photo: lighting/white balance is unstable, so uneven-tone assessment is uncertain; retake in daylight.",
        "CN": "From photo: 光照或白平衡不稳定，暗沉/肤色不均暂不下结论，建议自然光重拍后再评估。",
    },
    "retake": {
        "EN": "From photo: image quality failed (blur/exposure/WB/coverage), so please retake before analysis.",
        "CN": "From photo: 本次图像质量未通过（模糊/曝光/白平衡/覆盖），建议按提示重拍后再继续分析。",
    },
}


def score_to_severity_0_to_4(score: float) -> int:
    s = clamp01(score)
    for level, bound in enumerate((0.15, 0.35, 0.55, 0.75)):
        if s < bound:
            return level
    return 4


def box_to_norm(box: PixelBox | None, frame: dict) -> dict | None:
    """
    Express a pixel box as normalized {x, y, w, h} inside a frame.

    Args:
        box: Inclusive pixel box in analysis-image coordinates
        frame: {"x", "y", "w", "h"} frame in the same pixel space

    Returns:
        Box clamped to the frame, or None
    """
    if box is None or frame["w"] <= 0 or frame["h"] <= 0:
        return None
    x0 = clamp01((box.x0 - frame["x"]) / frame["w"])
    y0 = clamp01((box.y0 - frame["y"]) / frame["h"])
    x1 = clamp01((box.x1 + 1 - frame["x"]) / frame["w"])
    y1 = clamp01((box.y1 + 1 - frame["y"]) / frame["h"])
    return {"x": round3(x0), "y": round3(y0), "w": round3(x1 - x0), "h": round3(y1 - y0)}


def grid_heatmap_for_box(box_norm: dict | None, score: float, rows: int = GRID_ROWS, cols: int = GRID_COLS) -> list[float]:
    """
    Coarse heatmap: full score inside the box, a faint halo just outside.

    Cell centers outside the box get score * max(0, 1 - 4.5 d) * 0.45 where
    d is the distance to the box.
    """
    values = [0.0] * (rows * cols)
    s = clamp01(score)
    if box_norm is None:
        return values
    bx0, by0 = box_norm["x"], box_norm["y"]
    bx1, by1 = bx0 + box_norm["w"], by0 + box_norm["h"]
    for r in range(rows):
        y = (r + 0.5) / rows
        for c in range(cols):
            x = (c + 0.5) / cols
            idx = r * cols + c
            if bx0 <= x <= bx1 and by0 <= y <= by1:
                values[idx] = round3(s)
                continue
            dx = max(0.0, bx0 - x, x - bx1)
            dy = max(0.0, by0 - y, y - by1)
            d = math.sqrt(dx * dx + dy * dy)
            values[idx] = round3(s * max(0.0, 1 - d * 4.5) * 0.45)
    return values


def _geometry(box_norm: dict | None, score: float) -> FindingGeometry:
    return FindingGeometry(
        bbox=box_norm,
        heatmap={
            "grid": {"w": GRID_COLS, "h": GRID_ROWS},
            "values": grid_heatmap_for_box(box_norm, score),
        },
    )


def build_photo_takeaways(findings: list[PhotoFinding], language: str = "EN") -> list[Takeaway]:
    lang = normalize_language(language)
    out = []
    for finding in findings:
        if finding.uncertain:
            key = "uncertain"
            takeaway_id = f"tw_photo_{finding.issue_type or 'tone'}_uncertain"
        elif finding.severity <= 0 or finding.issue_type not in _TAKEAWAY_TEXT:
            continue
        else:
            key = finding.issue_type
            takeaway_id = f"tw_photo_{finding.issue_type}"
        out.append(Takeaway(
            takeaway_id=takeaway_id,
            issue_type=finding.issue_type,
            text=_TAKEAWAY_TEXT[key][lang],
            confidence=round3(clamp01(finding.confidence)),
            linked_finding_ids=(finding.finding_id,),
            linked_issue_types=(finding.issue_type,),
        ))
    return out[:MAX_TAKEAWAYS]


def retake_takeaway(language: str = "EN") -> Takeaway:
    return Takeaway(
        takeaway_id=RETAKE_TAKEAWAY_ID,
        issue_type="quality",
        text=_TAKEAWAY_TEXT["retake"][normalize_language(language)],
        confidence=1.0,
        linked_issue_types=("quality",),
    )


def build_photo_findings(
    issues: list[IssueFinding],
    raw: dict[str, RawIssueScore],
    quality: QualityResult,
    boxes: dict[str, PixelBox],
    frame: dict,
    language: str = "EN",
) -> tuple[list[PhotoFinding], list[Takeaway]]:
    """
    Build redness, shine, texture and tone findings.

    A failed photo yields no findings and a single retake takeaway.

    Args:
        issues: Calibrated issues
        raw: Raw detector scores, used when an issue is missing
        quality: Quality gate result
        boxes: Sub-region boxes in analysis pixels
        frame: Face crop in analysis pixels, the normalization frame
        language: "EN" or "CN"

    Returns:
        Tuple of (findings, takeaways)
    """
    lang = normalize_language(language)
    if quality.grade is QualityGrade.FAIL:
        return [], [retake_takeaway(lang)]

    by_type = {issue.issue_type: issue for issue in issues}
    glare = quality.has_reason(TOO_BRIGHT) or quality.has_reason(WHITE_BALANCE_UNSTABLE)
    blurred = quality.has_reason(BLUR)
    wb_unstable = quality.has_reason(WHITE_BALANCE_UNSTABLE)
    quality_factor = clamp01(quality.quality_factor)
    penalty = (
        (0.82 if quality.grade is QualityGrade.DEGRADED else 1.0)
        * (0.86 if glare else 1.0)
        * (0.88 if blurred else 1.0)
    )

    def issue_score(issue_type):
        issue = by_type.get(issue_type)
        if issue is not None:
            return issue.severity_score
        return clamp01(raw[issue_type].score) if issue_type in raw else 0.0

    def issue_metrics(issue_type):
        issue = by_type.get(issue_type)
        if issue is not None:
            return issue.evidence.metrics
        return raw[issue_type].metrics if issue_type in raw else {}

    # Redness
    red_metrics = issue_metrics("redness")
    red_score = issue_score("redness")
    red_issue = by_type.get("redness")
    red_conf_base = red_issue.confidence if red_issue else clamp01(0.45 + red_score * 0.4)
    red_box = box_to_norm(boxes.get("cheeks"), frame)
    glare_note_en = " lighting/glare may affect this." if glare else ""
    if lang == "CN":
        red_text = (
            f"From photo: a* 偏移={round3(red_metrics.get('a_shift', 0))}，"
            f"红区占比={round3(red_metrics.get('red_fraction', 0))}。{'光照/反光可能影响判断。' if glare else ''}"
        )
    else:
        red_text = (
            f"From photo: a* shift={round3(red_metrics.get('a_shift', 0))}, "
            f"red-area ratio={round3(red_metrics.get('red_fraction', 0))}.{glare_note_en}"
        )
    redness = PhotoFinding(
        finding_id="pf_redness",
        issue_type="redness",
        subtype="diffuse_redness_proxy",
        severity=score_to_severity_0_to_4(red_score),
        confidence=round3(clamp01(red_conf_base * penalty)),
        evidence=red_text,
        computed_features={
            "a_shift": round3(red_metrics.get("a_shift", 0)),
            "red_fraction": round3(red_metrics.get("red_fraction", 0)),
            "quality_factor": round3(quality_factor),
        },
        geometry=_geometry(red_box, red_score),
    )

    # Shine and texture share the pores metrics
    pore_metrics = issue_metrics("pores")
    pore_index = clamp01(pore_metrics.get("pore_index", issue_score("pores")))
    specular = clamp01(pore_metrics.get("specular_fraction", 0))
    shine_score = clamp01((specular - 0.04) / 0.28)
    shine_box = box_to_norm(boxes.get("nose"), frame)
    if lang == "CN":
        shine_text = f"From photo: 鼻部镜面反光比例={round3(specular)}。{'光照/反光可能抬高该值。' if glare else ''}"
    else:
        shine_text = (
            f"From photo: nose specular-highlight ratio={round3(specular)}."
            f"{' lighting/glare may inflate this.' if glare else ''}"
        )
    shine = PhotoFinding(
        finding_id="pf_shine",
        issue_type="shine",
        subtype="specular_highlight_proxy",
        severity=score_to_severity_0_to_4(shine_score),
        confidence=round3(clamp01((0.48 + shine_score * 0.45) * quality_factor * (0.8 if glare else 1.0))),
        evidence=shine_text,
        computed_features={
            "specular_fraction": round3(specular),
            "shine_score": round3(shine_score),
            "quality_factor": round3(quality_factor),
        },
        geometry=_geometry(shine_box, shine_score),
    )

    pores_issue = by_type.get("pores")
    texture_base = pores_issue.confidence if pores_issue else 0.4 + pore_index * 0.4
    texture_box = box_to_norm(boxes.get("cheeks"), frame)
    texture_energy = round3(pore_metrics.get("texture_energy", 0))
    if lang == "CN":
        texture_text = (
            f"From photo: 纹理能量={texture_energy}，毛孔代理指数={round3(pore_index)}。"
            f"{'光照/反光可能影响判断。' if blurred or glare else ''}"
        )
    else:
        texture_text = (
            f"From photo: texture energy={texture_energy}, pore proxy={round3(pore_index)}."
            f"{' lighting/glare may affect this.' if blurred or glare else ''}"
        )
    texture = PhotoFinding(
        finding_id="pf_texture",
        issue_type="texture",
        subtype="pores_proxy",
        severity=score_to_severity_0_to_4(pore_index),
        confidence=round3(clamp01(texture_base * penalty * (0.8 if blurred else 1.0))),
        evidence=texture_text,
        computed_features={
            "texture_energy": texture_energy,
            "pore_index": round3(pore_index),
            "specular_fraction": round3(specular),
            "quality_factor": round3(quality_factor),
        },
        geometry=_geometry(texture_box, pore_index),
    )

    # Tone is only trusted on a clean, well-exposed photo
    dark_metrics = issue_metrics("dark_spots")
    tone_stable = (
        quality.grade is QualityGrade.PASS
        and not wb_unstable
        and not quality.has_reason(TOO_BRIGHT)
        and not quality.has_reason(TOO_DARK)
    )
    tone_score = issue_score("dark_spots")
    dark_issue = by_type.get("dark_spots")
    tone_base = dark_issue.confidence if dark_issue else clamp01(0.28 + tone_score * 0.42)
    tone_box = box_to_norm(boxes.get("full"), frame)
    drop = round3(dark_metrics.get("luma_drop", 0))
    hue = round3(dark_metrics.get("hue_shift", 0))
    if tone_stable:
        tone_text = (
            f"From photo: 亮度落差={drop}，色偏={hue}。" if lang == "CN"
            else f"From photo: luma-drop={drop}, hue shift={hue}."
        )
    else:
        tone_text = (
            "From photo: 光照/白平衡不稳定，暗沉/肤色不均结果不确定，建议重拍。" if lang == "CN"
            else "From photo: uneven-tone signal is uncertain, retake recommended (lighting/WB instability)."
        )
    tone = PhotoFinding(
        finding_id="pf_tone",
        issue_type="tone",
        subtype="uneven_tone_proxy",
        severity=score_to_severity_0_to_4(tone_score) if tone_stable else 0,
        confidence=round3(clamp01((tone_base if tone_stable else 0.24) * penalty)),
        evidence=tone_text,
        computed_features={
            "luma_drop": drop,
            "hue_shift": hue,
            "white_balance_unstable": wb_unstable,
            "quality_factor": round3(quality_factor),
        },
        geometry=_geometry(tone_box, tone_score if tone_stable else 0.2),
        uncertain=not tone_stable,
    )

    findings = [redness, shine, texture, tone]
    takeaways = build_photo_takeaways(findings, lang)
    logger.debug("Built %d photo findings and %d takeaways (grade=%s)", len(findings), len(takeaways), quality.grade.value)
    return findings, takeaways


def build_summary_notes(quality: QualityResult, language: str = "EN") -> list[str]:
    """Short notes about photo quality shown next to the diagnosis."""
    lang = normalize_language(language)
    notes = []
    if quality.grade is not QualityGrade.PASS:
        grade = quality.grade.value
        notes.append(
            f"照片质量={grade}（置信度会更保守；建议自然光重拍提升准确度）" if lang == "CN"
            else f"photo_quality={grade} (more conservative; retake in daylight for accuracy)"
        )
    if quality.has_reason(WHITE_BALANCE_UNSTABLE):
        notes.append(
            "白平衡不稳定：色沉/暗沉判断将更保守。" if lang == "CN"
            else "White balance unstable: dark spot assessment is conservative."
        )
    return notes[:6]
