"""
Severity banding and confidence calibration.
Turns raw detector scores into calibrated IssueFinding objects.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from skin_diagnosis.core.color import clamp01, round3
from skin_diagnosis.core.models import (
    Calibration,
    Evidence,
    IssueFinding,
    QualityGrade,
    QualityResult,
    RawIssueScore,
    Severity,
)

logger = logging.getLogger(__name__)

FALLBACK_THRESHOLDS = (0.25, 0.5, 0.75)

SEVERITY_THRESHOLDS = MappingProxyType({
    "acne": MappingProxyType({"all": (0.12, 0.3, 0.52)}),
    "redness": MappingProxyType({"all": (0.18, 0.38, 0.6)}),
    "pores": MappingProxyType({
        "nose": (0.35, 0.6, 0.82),
        "cheeks": (0.3, 0.55, 0.78),
        "forehead": (0.28, 0.5, 0.72),
        "all": (0.3, 0.55, 0.78),
    }),
    "dark_spots": MappingProxyType({"all": (0.22, 0.42, 0.65)}),
})

# Region each issue is banded against
SCORING_REGIONS = {"acne": "all", "redness": "all", "pores": "nose", "dark_spots": "all"}

AGREEMENT_BOUNDS = (0.55, 1.25)


def _number(value) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_threshold_triplet(raw, fallback=FALLBACK_THRESHOLDS) -> tuple[float, float, float]:
    """
    Clamp a (t1, t2, t3) override so that 0 <= t1 <= t2 <= t3 <= 1.

    Non-numeric entries take the fallback value at the same position.
    """
    base = tuple(fallback) if fallback is not None and len(fallback) >= 3 else FALLBACK_THRESHOLDS
    if not isinstance(raw, (list, tuple)) or len(raw) < 3:
        return tuple(base[:3])

    values = []
    for position in range(3):
        number = _number(raw[position])
        if number is None:
            number = _number(base[position]) or 0.0
        values.append(clamp01(number))

    t1, t2, t3 = values
    t2 = min(1.0, max(t1, t2))
    t3 = min(1.0, max(t2, t3))
    return (t1, t2, t3)


def merge_severity_thresholds(overrides: dict | None, base=SEVERITY_THRESHOLDS) -> dict:
    """
    Overlay per-issue, per-region overrides on a copy of the base table.

    Unknown issue types are ignored. A new region falls back to the issue's
    "all" triplet before normalization.
    """
    merged = {issue: dict(regions) for issue, regions in base.items()}
    if not isinstance(overrides, dict):
        return merged

    for issue_type, region_overrides in overrides.items():
        if issue_type not in merged or not isinstance(region_overrides, dict):
            continue
        current = merged[issue_type]
        fallback_all = current.get("all", FALLBACK_THRESHOLDS)
        for region, triplet in region_overrides.items():
            if not isinstance(region, str) or not region.strip():
                continue
            region = region.strip()
            current[region] = normalize_threshold_triplet(triplet, current.get(region, fallback_all))
    return merged


def score_to_severity(issue_type: str, score: float, region: str = "all", thresholds=None) -> Severity:
    """Band a raw score. Scores below t1 are NONE, at or above t3 SEVERE."""
    s = clamp01(score)
    table = thresholds if thresholds is not None else SEVERITY_THRESHOLDS
    regions = table.get(issue_type) or SEVERITY_THRESHOLDS.get(issue_type) or SEVERITY_THRESHOLDS["redness"]
    t1, t2, t3 = regions.get(region) or regions.get("all") or FALLBACK_THRESHOLDS
    if s < t1:
        return Severity.NONE
    if s < t2:
        return Severity.MILD
    if s < t3:
        return Severity.MODERATE
    return Severity.SEVERE


def confidence_to_label(confidence: float) -> str:
    c = clamp01(confidence)
    if c >= 0.78:
        return "pretty_sure"
    if c >= 0.52:
        return "somewhat_sure"
    return "not_sure"


def _log_to_level(value: float) -> int:
    log = min(5.0, max(0.0, value))
    if log <= 1:
        return 0
    if log <= 2:
        return 1
    if log <= 3:
        return 2
    return 3


def agreement_factor(
    issue_type: str,
    severity_level: int,
    profile_summary: dict | None = None,
    recent_logs_summary: list | None = None,
) -> float:
    """
    Nudge confidence by agreement with the user's own reports.

    Acne and redness compare against the latest self-reported 0-5 log,
    pores and dark spots reward a matching goal. Bounded to [0.55, 1.25].
    """
    latest = recent_logs_summary[0] if recent_logs_summary else None
    if not isinstance(latest, dict):
        latest = None
    profile = profile_summary if isinstance(profile_summary, dict) else {}
    goals = [str(goal or "").lower() for goal in profile.get("goals") or []]

    factor = 1.0
    if issue_type in ("acne", "redness") and latest is not None and _number(latest.get(issue_type)) is not None:
        diff = abs(severity_level - _log_to_level(_number(latest[issue_type])))
        if issue_type == "acne":
            factor = 1.15 if diff == 0 else 1.05 if diff == 1 else 0.78
        else:
            factor = 1.12 if diff == 0 else 1.03 if diff == 1 else 0.8
    elif issue_type == "pores" and any("pores" in goal for goal in goals):
        factor = 1.05 if severity_level > 0 else 1.0
    elif issue_type == "dark_spots" and any(
        "dark" in goal or "spot" in goal or "pigment" in goal for goal in goals
    ):
        factor = 1.03 if severity_level > 0 else 1.0

    low, high = AGREEMENT_BOUNDS
    return round3(min(high, max(low, factor)))


def logit(p: float) -> float:
    eps = 1e-6
    pp = min(1 - eps, max(eps, clamp01(p)))
    return math.log(pp / (1 - pp))


def sigmoid(x: float) -> float:
    if not math.isfinite(x):
        return 0.5
    return 1 / (1 + math.exp(-x))


def apply_temperature_scaling(p: float, temperature) -> float:
    t = _number(temperature)
    if t is None or t <= 0:
        t = 1.0
    return sigmoid(logit(p) / t)


def apply_isotonic_points(p: float, points) -> float:
    """Piecewise-linear map through sorted control points, flat outside them."""
    x = clamp01(p)
    valid = [pt for pt in points or [] if isinstance(pt, (list, tuple)) and len(pt) >= 2]
    if not valid:
        return x
    ordered = sorted(
        ((clamp01(_number(pt[0]) or 0.0), clamp01(_number(pt[1]) or 0.0)) for pt in valid),
        key=lambda pt: pt[0],
    )
    if x <= ordered[0][0]:
        return ordered[0][1]
    if x >= ordered[-1][0]:
        return ordered[-1][1]
    for (x0, y0), (x1, y1) in zip(ordered, ordered[1:]):
        if x0 <= x <= x1:
            t = 0.0 if x1 == x0 else (x - x0) / (x1 - x0)
            return y0 + t * (y1 - y0)
    return x


@dataclass(frozen=True)
class CalibrationTable:
    """
    Per-issue confidence recalibration.

    Entries look like {"method": "temperature", "temperature": 1.4} or
    {"method": "isotonic", "points": [[0, 0], [1, 1]]}. Issues without an
    entry, or with an unknown method, pass through unchanged.
    """

    issues: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_dict(cls, data: dict | None) -> "CalibrationTable":
        raw = data.get("issues") if isinstance(data, dict) else None
        if not isinstance(raw, dict):
            return cls()
        entries = {
            str(issue): MappingProxyType(dict(entry))
            for issue, entry in raw.items()
            if isinstance(entry, dict)
        }
        return cls(issues=MappingProxyType(entries))

    @classmethod
    def from_file(cls, path: str | Path) -> "CalibrationTable":
        """Load a calibration JSON file. Errors propagate to the caller."""
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        table = cls.from_dict(data)
        logger.info("Loaded calibration for %d issue(s) from %s", len(table.issues), path)
        return table

    def calibrate(self, issue_type: str, model_conf: float) -> float:
        p = clamp01(model_conf)
        entry = self.issues.get(issue_type)
        if entry is None:
            return p
        method = entry.get("method")
        if method == "temperature":
            return apply_temperature_scaling(p, entry.get("temperature"))
        if method == "isotonic":
            return apply_isotonic_points(p, entry.get("points"))
        return p


IDENTITY_CALIBRATION = CalibrationTable()


def _fmt(value) -> str:
    number = _number(value)
    if number is None:
        return "—"
    text = repr(round3(number))
    return text[:-2] if text.endswith(".0") else text


_CONFIDENCE_TEXT = {
    "pretty_sure": {"EN": "fairly confident", "CN": "较确定"},
    "somewhat_sure": {"EN": "somewhat confident", "CN": "中等把握"},
    "not_sure": {"EN": "low confidence", "CN": "把握不高"},
}

_SEVERITY_TEXT = {
    Severity.NONE: {"EN": "no strong signal", "CN": "未见明显"},
    Severity.MILD: {"EN": "mild", "CN": "轻度"},
    Severity.MODERATE: {"EN": "moderate", "CN": "中度"},
    Severity.SEVERE: {"EN": "high", "CN": "偏重"},
}


def normalize_language(language: str | None) -> str:
    return "CN" if str(language or "").strip().upper() == "CN" else "EN"


def build_evidence_text(
    issue_type: str,
    severity: Severity,
    confidence: float,
    metrics: dict,
    language: str = "EN",
    quality_grade: QualityGrade = QualityGrade.PASS,
    wb_unstable: bool = False,
) -> tuple[str, ...]:
    """Two short sentences summarizing the metrics behind an issue."""
    lang = normalize_language(language)
    confident = _CONFIDENCE_TEXT[confidence_to_label(confidence)][lang]
    sev = _SEVERITY_TEXT[severity][lang]

    if issue_type == "dark_spots" and (quality_grade is not QualityGrade.PASS or wb_unstable):
        if lang == "CN":
            return ("光照/白平衡不够稳定，本次不可靠判断色沉/暗沉。", "建议自然光、无滤镜重拍后再评估。")
        return (
            "Lighting/white balance is unstable; I cannot reliably assess dark spots today.",
            "Retake in daylight with no filters to reassess.",
        )

    overall = f"结论为{sev}，{confident}。" if lang == "CN" else f"Overall: {sev}, {confident}."

    if issue_type == "acne":
        count, density = metrics.get("acne_count"), _fmt(metrics.get("acne_density"))
        count = count if count is not None else "—"
        if lang == "CN":
            return (f"疑似炎性小红点：{count} 个（密度 {density}）。", overall)
        return (f"Possible inflamed red spots: {count} (density {density}).", overall)

    if issue_type == "redness":
        shift, frac = _fmt(metrics.get("a_shift")), _fmt(metrics.get("red_fraction"))
        if lang == "CN":
            return (f"泛红信号：a* 偏移 {shift}，红区占比 {frac}。", overall)
        return (f"Redness signals: a* shift {shift}, red fraction {frac}.", overall)

    if issue_type == "pores":
        index = _fmt(metrics.get("pore_index"))
        specular = _number(metrics.get("specular_fraction"))
        shiny = specular is not None and specular > 0.15
        if lang == "CN":
            suffix = "（鼻部油光较强 → 更保守）" if shiny else ""
            return (f"纹理/毛孔指数：{index}（油光校正系数已应用）。", f"结论为{sev}，{confident}{suffix}。")
        suffix = " (strong shine → more conservative)" if shiny else ""
        return (f"Texture/pore index: {index} (with specular correction).", f"Overall: {sev}, {confident}{suffix}.")

    if issue_type == "dark_spots":
        drop, hue = _fmt(metrics.get("luma_drop")), _fmt(metrics.get("hue_shift"))
        if lang == "CN":
            return (f"暗沉/色沉信号：luma_drop {drop}，色相偏移 {hue}。", overall)
        return (f"Dark spot signals: luma_drop {drop}, hue shift {hue}.", overall)

    if lang == "CN":
        return ("已生成诊断结论。", f"把握度：{confident}。")
    return ("Diagnosis computed.", f"Confidence: {confident}.")


class SeverityCalibrator:
    """Band raw scores and calibrate their confidence."""

    def __init__(self, calibration: CalibrationTable | None = None, thresholds=None):
        self.calibration = calibration or IDENTITY_CALIBRATION
        self.thresholds = thresholds if thresholds is not None else SEVERITY_THRESHOLDS

    def with_overrides(self, overrides: dict | None) -> "SeverityCalibrator":
        """A calibrator using thresholds merged with overrides."""
        if not overrides:
            return self
        return SeverityCalibrator(self.calibration, merge_severity_thresholds(overrides, self.thresholds))

    def score_issue(
        self,
        issue_type: str,
        raw: RawIssueScore,
        quality: QualityResult,
        profile_summary: dict | None = None,
        recent_logs_summary: list | None = None,
        language: str = "EN",
    ) -> IssueFinding:
        """
        Turn a raw score into a calibrated finding.

        confidence = clamp01(calibrated model_conf * quality_factor * agreement)
        """
        region = SCORING_REGIONS.get(issue_type, "all")
        severity = score_to_severity(issue_type, raw.score, region, self.thresholds)
        quality_factor = quality.quality_factor if quality is not None else 1.0
        agree = agreement_factor(issue_type, severity.level, profile_summary, recent_logs_summary)
        calibrated = self.calibration.calibrate(issue_type, raw.model_conf)
        confidence = clamp01(calibrated * quality_factor * agree)

        grade = quality.grade if quality is not None else QualityGrade.PASS
        wb_unstable = quality is not None and quality.has_reason("white_balance_unstable")
        text = build_evidence_text(
            issue_type, severity, confidence, raw.metrics, language, grade, wb_unstable
        )

        return IssueFinding(
            issue_type=issue_type,
            region=region,
            severity=severity,
            severity_score=round3(clamp01(raw.score)),
            confidence=round3(confidence),
            confidence_label=confidence_to_label(confidence),
            calibration=Calibration(
                model_conf=round3(clamp01(raw.model_conf)),
                model_conf_calibrated=round3(clamp01(calibrated)),
                quality_factor=round3(clamp01(quality_factor)),
                agreement_factor=agree,
            ),
            evidence=Evidence(
                text=text,
                metrics=dict(raw.metrics),
                quality_notes=tuple(quality.reasons[:6]) if quality is not None else (),
            ),
        )
