"""
Data models for skin diagnosis results.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

FACE_COORD_SPACE = "face_crop_norm_v1"


class QualityGrade(Enum):
    """Photo usability grade."""
    PASS = "pass"
    DEGRADED = "degraded"
    FAIL = "fail"


class Severity(Enum):
    """Severity band of a calibrated issue."""
    NONE = "none"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"

    @property
    def level(self) -> int:
        return list(Severity).index(self)

    @classmethod
    def from_level(cls, level: int) -> "Severity":
        members = list(cls)
        return members[max(0, min(len(members) - 1, int(level)))]


@dataclass(frozen=True)
class PixelBox:
    """Inclusive pixel rectangle."""
    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return max(1, self.x1 - self.x0 + 1)

    @property
    def height(self) -> int:
        return max(1, self.y1 - self.y0 + 1)

    def contains(self, x: int, y: int) -> bool:
        return self.x0 <= x <= self.x1 and self.y0 <= y <= self.y1

    def membership(self, shape: tuple[int, int]) -> np.ndarray:
        """Boolean (H, W) array, True inside the box."""
        h, w = shape
        ys = np.arange(h)[:, None]
        xs = np.arange(w)[None, :]
        return (xs >= self.x0) & (xs <= self.x1) & (ys >= self.y0) & (ys <= self.y1)

    def to_norm(self, width: int, height: int) -> dict:
        """Normalized {x0, y0, x1, y1} using x / width on each edge."""
        x0 = min(1.0, max(0.0, self.x0 / width))
        y0 = min(1.0, max(0.0, self.y0 / height))
        x1 = min(1.0, max(0.0, self.x1 / width))
        y1 = min(1.0, max(0.0, self.y1 / height))
        return {"x0": min(x0, x1), "y0": min(y0, y1), "x1": max(x0, x1), "y1": max(y0, y1)}

    def to_dict(self) -> dict:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}


@dataclass
class SkinMask:
    """Selected skin component of the analysis image."""
    mask: np.ndarray  # (H, W) uint8, 1 = skin
    skin_pixels: int
    coverage: float
    bbox: PixelBox
    touches_center: bool

    @property
    def shape(self) -> tuple[int, int]:
        return self.mask.shape


@dataclass(frozen=True)
class QualityResult:
    """Photo quality grade with the factors behind it."""
    grade: QualityGrade
    quality_factor: float
    reasons: tuple[str, ...]
    metrics: dict

    def has_reason(self, reason: str) -> bool:
        return reason in self.reasons

    def to_dict(self) -> dict:
        return {
            "grade": self.grade.value,
            "quality_factor": self.quality_factor,
            "reasons": list(self.reasons),
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class RawIssueScore:
    """Uncalibrated detector output."""
    score: float
    model_conf: float
    metrics: dict


@dataclass(frozen=True)
class Calibration:
    model_conf: float
    model_conf_calibrated: float
    quality_factor: float
    agreement_factor: float

    def to_dict(self) -> dict:
        return {
            "model_conf": self.model_conf,
            "model_conf_calibrated": self.model_conf_calibrated,
            "quality_factor": self.quality_factor,
            "agreement_factor": self.agreement_factor,
        }


@dataclass(frozen=True)
class Evidence:
    text: tuple[str, ...]
    metrics: dict
    quality_notes: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "evidence_short": list(self.text),
            "metrics": dict(self.metrics),
            "quality_notes": list(self.quality_notes),
        }


@dataclass(frozen=True)
class IssueFinding:
    """A calibrated per-issue result."""
    issue_type: str
    region: str
    severity: Severity
    severity_score: float
    confidence: float
    confidence_label: str
    calibration: Calibration
    evidence: Evidence

    @property
    def severity_level(self) -> int:
        return self.severity.level

    def to_dict(self) -> dict:
        return {
            "issue_type": self.issue_type,
            "region": self.region,
            "severity": self.severity.value,
            "severity_level": self.severity_level,
            "severity_score": self.severity_score,
            "confidence": self.confidence,
            "confidence_label": self.confidence_label,
            "calibration": self.calibration.to_dict(),
            "evidence": self.evidence.to_dict(),
        }


@dataclass(frozen=True)
class FindingGeometry:
    """
    Untrusted geometry attached to a finding.

    Each kind is optional and independent of the others.
    """
    bbox: dict | None = None  # {"x", "y", "w", "h"} normalized
    polygon: dict | None = None  # {"points": [{"x", "y"}, ...]}
    heatmap: dict | None = None  # {"grid": {"w", "h"}, "values": [...]}

    @classmethod
    def from_dict(cls, raw: dict | None) -> "FindingGeometry | None":
        """Accept the grid/bbox_norm wire shape as well as explicit kinds."""
        if not isinstance(raw, dict):
            return None

        bbox = None
        bbox_norm = raw.get("bbox_norm")
        if isinstance(bbox_norm, dict):
            try:
                x0, y0 = float(bbox_norm["x0"]), float(bbox_norm["y0"])
                x1, y1 = float(bbox_norm["x1"]), float(bbox_norm["y1"])
            except (KeyError, TypeError, ValueError):
                x0 = y0 = x1 = y1 = None
            if x0 is not None:
                bbox = {"x": min(x0, x1), "y": min(y0, y1), "w": abs(x1 - x0), "h": abs(y1 - y0)}
        elif isinstance(raw.get("bbox"), dict):
            bbox = raw["bbox"]

        polygon = raw.get("polygon") if isinstance(raw.get("polygon"), dict) else None

        heatmap = None
        if raw.get("type") == "grid" and isinstance(raw.get("values"), (list, tuple)):
            heatmap = {"grid": {"w": raw.get("cols"), "h": raw.get("rows")}, "values": raw["values"]}
        elif isinstance(raw.get("heatmap"), dict):
            heatmap = raw["heatmap"]

        return cls(bbox=bbox, polygon=polygon, heatmap=heatmap)

    @property
    def is_empty(self) -> bool:
        return self.bbox is None and self.polygon is None and self.heatmap is None


@dataclass(frozen=True)
class PhotoFinding:
    """Renderable finding in face-crop-normalized coordinates."""
    finding_id: str
    issue_type: str
    subtype: str
    severity: int  # 0..4
    confidence: float
    evidence: str
    computed_features: dict
    geometry: FindingGeometry | None
    uncertain: bool = False

    @classmethod
    def from_dict(cls, raw: dict, index: int = 0) -> "PhotoFinding":
        """Build a finding from its wire shape; missing fields get neutral values."""
        finding_id = raw.get("finding_id")
        if not isinstance(finding_id, str) or not finding_id.strip():
            finding_id = f"finding_{index + 1}"
        return cls(
            finding_id=finding_id.strip(),
            issue_type=str(raw.get("issue_type") or ""),
            subtype=str(raw.get("subtype") or ""),
            severity=raw.get("severity", 0),
            confidence=raw.get("confidence", 0),
            evidence=str(raw.get("evidence") or ""),
            computed_features=dict(raw.get("computed_features") or {}),
            geometry=FindingGeometry.from_dict(raw.get("geometry")),
            uncertain=bool(raw.get("uncertain", False)),
        )

    def to_dict(self) -> dict:
        data = {
            "finding_id": self.finding_id,
            "issue_type": self.issue_type,
            "subtype": self.subtype,
            "severity": self.severity,
            "confidence": self.confidence,
            "evidence": self.evidence,
            "computed_features": dict(self.computed_features),
        }
        if self.uncertain:
            data["uncertain"] = True
        geometry = {}
        if self.geometry is not None and self.geometry.heatmap is not None:
            heatmap = self.geometry.heatmap
            geometry.update({
                "type": "grid",
                "rows": heatmap["grid"]["h"],
                "cols": heatmap["grid"]["w"],
                "values": list(heatmap["values"]),
            })
        if self.geometry is not None and self.geometry.polygon is not None:
            geometry["polygon"] = self.geometry.polygon
        if self.geometry is not None and self.geometry.bbox is not None:
            bbox = self.geometry.bbox
            geometry["bbox_norm"] = {
                "x0": bbox["x"],
                "y0": bbox["y"],
                "x1": bbox["x"] + bbox["w"],
                "y1": bbox["y"] + bbox["h"],
            }
        data["geometry"] = geometry
        return data


@dataclass(frozen=True)
class Takeaway:
    takeaway_id: str
    issue_type: str
    text: str
    confidence: float
    linked_finding_ids: tuple[str, ...] = ()
    linked_issue_types: tuple[str, ...] = ()
    source: str = "photo"

    def to_dict(self) -> dict:
        return {
            "takeaway_id": self.takeaway_id,
            "source": self.source,
            "issue_type": self.issue_type,
            "text": self.text,
            "confidence": self.confidence,
            "linked_finding_ids": list(self.linked_finding_ids),
            "linked_issue_types": list(self.linked_issue_types),
        }


@dataclass(frozen=True)
class RegionStyle:
    intensity: float
    priority: float
    label_hint: str

    def to_dict(self) -> dict:
        return {"intensity": self.intensity, "priority": self.priority, "label_hint": self.label_hint}


@dataclass(frozen=True, kw_only=True)
class Region:
    """Sanitized renderable region. Subclasses carry the geometry."""
    region_id: str
    issue_type: str
    severity: float  # 0..4
    confidence: float
    style: RegionStyle
    notes: tuple[str, ...] = ()
    quality_flags: tuple[str, ...] = ()
    coord_space: str = FACE_COORD_SPACE

    region_type = "region"

    @property
    def bounds(self) -> dict | None:
        """Normalized {x, y, w, h} used for box overlap, if known."""
        return None

    def _base_dict(self) -> dict:
        data = {
            "region_id": self.region_id,
            "type": self.region_type,
            "coord_space": self.coord_space,
            "style": self.style.to_dict(),
        }
        if self.notes:
            data["notes"] = list(self.notes)
        if self.quality_flags:
            data["quality_flags"] = list(self.quality_flags[:4])
        return data


@dataclass(frozen=True, kw_only=True)
class BBoxRegion(Region):
    bbox: dict

    region_type = "bbox"

    @property
    def bounds(self) -> dict | None:
        return self.bbox

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["bbox"] = dict(self.bbox)
        return data


@dataclass(frozen=True, kw_only=True)
class PolygonRegion(Region):
    points: tuple[tuple[float, float], ...]
    bbox: dict
    closed: bool = True

    region_type = "polygon"

    @property
    def bounds(self) -> dict | None:
        return self.bbox

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["polygon"] = {
            "points": [{"x": x, "y": y} for x, y in self.points],
            "closed": self.closed,
        }
        return data


@dataclass(frozen=True, kw_only=True)
class HeatmapRegion(Region):
    grid_w: int
    grid_h: int
    values: tuple[float, ...]
    bbox: dict | None = None

    region_type = "heatmap"

    @property
    def bounds(self) -> dict | None:
        return self.bbox

    def grid(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float64).reshape(self.grid_h, self.grid_w)

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["heatmap"] = {
            "coord_space": self.coord_space,
            "grid": {"w": self.grid_w, "h": self.grid_h},
            "values": list(self.values),
            "value_range": {"min": 0, "max": 1},
            "smoothing_hint": "bilinear",
        }
        return data


@dataclass(frozen=True)
class FaceCrop:
    """Face crop rectangle in original-image pixels."""
    bbox_px: dict  # {"x", "y", "w", "h"}
    orig_size_px: dict  # {"w", "h"}
    render_size_px_hint: dict
    crop_id: str = ""

    def __post_init__(self):
        if not self.crop_id:
            object.__setattr__(self, "crop_id", self.build_crop_id(self.bbox_px, self.orig_size_px))

    @staticmethod
    def build_crop_id(bbox_px: dict, orig_size_px: dict) -> str:
        signature = "{}:{}:{}:{}:{}:{}".format(
            orig_size_px.get("w", 0), orig_size_px.get("h", 0),
            bbox_px.get("x", 0), bbox_px.get("y", 0), bbox_px.get("w", 0), bbox_px.get("h", 0),
        )
        return "crop_" + hashlib.sha1(signature.encode("utf-8")).hexdigest()[:16]

    def norm_rect(self) -> tuple[float, float, float, float]:
        """Crop as (x, y, w, h) fractions of the original image."""
        ow, oh = self.orig_size_px["w"], self.orig_size_px["h"]
        return (
            self.bbox_px["x"] / ow,
            self.bbox_px["y"] / oh,
            self.bbox_px["w"] / ow,
            self.bbox_px["h"] / oh,
        )

    def box_in(self, width: int, height: int) -> dict:
        """Crop rectangle scaled to an image of the given size."""
        x, y, w, h = self.norm_rect()
        return {"x": x * width, "y": y * height, "w": w * width, "h": h * height}

    def to_dict(self) -> dict:
        return {
            "crop_id": self.crop_id,
            "coord_space": "orig_px_v1",
            "bbox_px": dict(self.bbox_px),
            "orig_size_px": dict(self.orig_size_px),
            "render_size_px_hint": dict(self.render_size_px_hint),
        }


@dataclass(frozen=True)
class ModuleIssue:
    issue_type: str
    severity_0_4: float
    confidence_0_1: float
    evidence_region_ids: tuple[str, ...]
    explanation_short: str

    def to_dict(self) -> dict:
        return {
            "issue_type": self.issue_type,
            "severity_0_4": self.severity_0_4,
            "confidence_0_1": self.confidence_0_1,
            "evidence_region_ids": list(self.evidence_region_ids),
            "explanation_short": self.explanation_short,
        }


@dataclass
class ModuleResult:
    """One anatomical module with its issues and final mask."""
    module_id: str
    label: str
    issues: list[ModuleIssue]
    mask_grid: int
    mask_rle_norm: str
    box: dict | None
    positive_pixels: int
    mask_source: str
    # Not serialized
    mask: np.ndarray | None = None

    def to_dict(self) -> dict:
        return {
            "module_id": self.module_id,
            "label": self.label,
            "issues": [issue.to_dict() for issue in self.issues],
            "mask_grid": self.mask_grid,
            "mask_rle_norm": self.mask_rle_norm,
            "box": dict(self.box) if self.box else None,
            "positive_pixels": self.positive_pixels,
            "mask_source": self.mask_source,
        }


@dataclass
class ModulesResult:
    """Module card: regions, modules and observability counters."""
    quality_grade: str
    face_crop: FaceCrop
    regions: list[Region]
    modules: list[ModuleResult]
    metrics: dict = field(default_factory=dict)

    def module(self, module_id: str) -> ModuleResult | None:
        for item in self.modules:
            if item.module_id == module_id:
                return item
        return None

    def to_dict(self) -> dict:
        return {
            "used_photos": True,
            "quality_grade": self.quality_grade,
            "face_crop": self.face_crop.to_dict(),
            "regions": [region.to_dict() for region in self.regions],
            "modules": [module.to_dict() for module in self.modules],
            "metrics": self.metrics,
        }


@dataclass
class AnalysisResult:
    """Complete result of one analyze() call."""
    ok: bool
    reason: str | None = None
    quality: QualityResult | None = None
    issues: list[IssueFinding] = field(default_factory=list)
    photo_findings: list[PhotoFinding] = field(default_factory=list)
    takeaways: list[Takeaway] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    internal: dict = field(default_factory=dict)
    processing_time_ms: float = 0.0
    # Not serialized
    image: np.ndarray | None = None
    skin: SkinMask | None = None

    SCHEMA_VERSION = "skin_diagnosis.v1"

    def issue(self, issue_type: str) -> IssueFinding | None:
        for item in self.issues:
            if item.issue_type == issue_type:
                return item
        return None

    def to_dict(self) -> dict:
        if not self.ok:
            return {"ok": False, "reason": self.reason}
        return {
            "ok": True,
            "diagnosis": {
                "schema_version": self.SCHEMA_VERSION,
                "quality": self.quality.to_dict() if self.quality else None,
                "issues": [issue.to_dict() for issue in self.issues],
                "photo_findings": [finding.to_dict() for finding in self.photo_findings[:10]],
                "takeaways": [takeaway.to_dict() for takeaway in self.takeaways[:10]],
                "notes": list(self.notes[:6]),
            },
            "internal": self.internal,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }
