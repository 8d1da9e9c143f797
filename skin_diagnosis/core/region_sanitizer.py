"""
Region sanitizer.
Validates finding geometries before they become renderable regions.

Every sanitize_* function returns a SanitizeResult. A rejected geometry has
ok=False and a drop reason; an accepted one may carry a clip reason when
its input had to be altered.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field

import numpy as np

from skin_diagnosis.core.color import clamp01, round3
from skin_diagnosis.core.mask_ops import resample_bilinear
from skin_diagnosis.core.models import (
    BBoxRegion,
    HeatmapRegion,
    PhotoFinding,
    PolygonRegion,
    Region,
    RegionStyle,
)

logger = logging.getLogger(__name__)

HEATMAP_OUTPUT_GRID = 64
HEATMAP_MAX_GRID = 256
MIN_EXTENT = 0.001
POINT_EPS = 1e-6
ORIENTATION_EPS = 1e-9
CLAMP_TOLERANCE = 1e-9

SUPPORTED_ISSUES = ("redness", "shine", "texture", "tone", "acne")
ISSUE_ALIASES = {"pores": "texture", "dark_spots": "tone"}


@dataclass
class SanitizeResult:
    ok: bool
    reason: str | None = None
    clip_reason: str | None = None
    value: dict | None = None

    @property
    def clipped(self) -> bool:
        return self.clip_reason is not None


def _finite(value) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _moved(before: float, after: float) -> bool:
    return abs(before - after) > CLAMP_TOLERANCE


def sanitize_bbox(raw: dict | None, clip_reason: str = "bbox_clamped") -> SanitizeResult:
    """Clamp a normalized {x, y, w, h} box into the unit square."""
    if not isinstance(raw, dict):
        return SanitizeResult(False, "bbox_missing")
    x, y, w, h = (_finite(raw.get(key)) for key in ("x", "y", "w", "h"))
    if x is None or y is None or w is None or h is None:
        return SanitizeResult(False, "bbox_non_numeric")

    x0, y0 = clamp01(x), clamp01(y)
    x1, y1 = clamp01(x + w), clamp01(y + h)
    clipped = _moved(x, x0) or _moved(y, y0) or _moved(x + w, x1) or _moved(y + h, y1)

    left, top = min(x0, x1), min(y0, y1)
    width, height = max(x0, x1) - left, max(y0, y1) - top
    if width <= MIN_EXTENT or height <= MIN_EXTENT:
        return SanitizeResult(False, "bbox_too_small")

    # Round the edges, not the extents, so x + w never leaves [0, 1]
    rx, ry = round3(left), round3(top)
    value = {
        "x": rx,
        "y": ry,
        "w": round3(round3(max(x0, x1)) - rx),
        "h": round3(round3(max(y0, y1)) - ry),
    }
    return SanitizeResult(True, clip_reason=clip_reason if clipped else None, value=value)


def _orientation(a, b, c) -> int:
    value = (b[1] - a[1]) * (c[0] - b[0]) - (b[0] - a[0]) * (c[1] - b[1])
    if abs(value) < ORIENTATION_EPS:
        return 0
    return 1 if value > 0 else 2


def _on_segment(a, b, c) -> bool:
    """b lies within the bounding box of segment a-c."""
    return (
        b[0] <= max(a[0], c[0]) + ORIENTATION_EPS
        and b[0] + ORIENTATION_EPS >= min(a[0], c[0])
        and b[1] <= max(a[1], c[1]) + ORIENTATION_EPS
        and b[1] + ORIENTATION_EPS >= min(a[1], c[1])
    )


def segments_intersect(p1, q1, p2, q2) -> bool:
    o1 = _orientation(p1, q1, p2)
    o2 = _orientation(p1, q1, q2)
    o3 = _orientation(p2, q2, p1)
    o4 = _orientation(p2, q2, q1)
    if o1 != o2 and o3 != o4:
        return True
    return (
        (o1 == 0 and _on_segment(p1, p2, q1))
        or (o2 == 0 and _on_segment(p1, q2, q1))
        or (o3 == 0 and _on_segment(p2, p1, q2))
        or (o4 == 0 and _on_segment(p2, q1, q2))
    )


def polygon_self_intersects(points: list[tuple[float, float]]) -> bool:
    """Test every pair of non-adjacent edges of the closed polygon."""
    n = len(points)
    if n < 4:
        return False
    for i in range(n):
        i_next = (i + 1) % n
        for j in range(i + 1, n):
            j_next = (j + 1) % n
            if i_next == j or j_next == i:
                continue
            if segments_intersect(points[i], points[i_next], points[j], points[j_next]):
                return True
    return False


def _near(a, b) -> bool:
    return abs(a[0] - b[0]) <= POINT_EPS and abs(a[1] - b[1]) <= POINT_EPS


def sanitize_polygon(raw: dict | None) -> SanitizeResult:
    """Clamp, dedupe and validate a normalized polygon."""
    if not isinstance(raw, dict) or not isinstance(raw.get("points"), (list, tuple)):
        return SanitizeResult(False, "polygon_missing")

    clip_reasons = set()
    points = []
    for point in raw["points"]:
        if isinstance(point, dict):
            px, py = point.get("x"), point.get("y")
        elif isinstance(point, (list, tuple)) and len(point) >= 2:
            px, py = point[0], point[1]
        else:
            continue
        x_raw, y_raw = _finite(px), _finite(py)
        if x_raw is None or y_raw is None:
            clip_reasons.add("polygon_non_numeric")
            continue
        x, y = clamp01(x_raw), clamp01(y_raw)
        if _moved(x_raw, x) or _moved(y_raw, y):
            clip_reasons.add("polygon_clamped")
        current = (round3(x), round3(y))
        if points and _near(points[-1], current):
            clip_reasons.add("polygon_deduped")
            continue
        points.append(current)

    if len(points) >= 2 and _near(points[0], points[-1]):
        points.pop()
        clip_reasons.add("polygon_deduped")

    if len(points) < 3:
        return SanitizeResult(False, "polygon_too_few_points")
    if polygon_self_intersects(points):
        return SanitizeResult(False, "polygon_self_intersection")

    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    bbox = {
        "x": round3(min(xs)),
        "y": round3(min(ys)),
        "w": round3(max(xs) - min(xs)),
        "h": round3(max(ys) - min(ys)),
    }
    if bbox["w"] <= MIN_EXTENT or bbox["h"] <= MIN_EXTENT:
        return SanitizeResult(False, "polygon_too_small")

    return SanitizeResult(
        True,
        clip_reason="+".join(sorted(clip_reasons)) if clip_reasons else None,
        value={"points": points, "closed": True, "bbox": bbox},
    )


def _grid_dimension(value) -> int | None:
    number = _finite(value)
    if number is None or number != int(number):
        return None
    number = int(number)
    return number if 1 <= number <= HEATMAP_MAX_GRID else None


def sanitize_heatmap(raw: dict | None, output_grid: int = HEATMAP_OUTPUT_GRID) -> SanitizeResult:
    """
    Validate a heatmap and resample it to output_grid x output_grid.

    The grid must be integral, between 1 and 256 per side, and match the
    number of values exactly.
    """
    if not isinstance(raw, dict):
        return SanitizeResult(False, "heatmap_missing")
    grid = raw.get("grid") if isinstance(raw.get("grid"), dict) else raw
    src_w, src_h = _grid_dimension(grid.get("w")), _grid_dimension(grid.get("h"))
    values_raw = raw.get("values")
    if src_w is None or src_h is None or not isinstance(values_raw, (list, tuple, np.ndarray)):
        return SanitizeResult(False, "heatmap_invalid_grid")
    if len(values_raw) != src_w * src_h:
        return SanitizeResult(False, "heatmap_values_length_mismatch")

    clipped = False
    values = np.zeros(src_w * src_h, dtype=np.float64)
    for i, item in enumerate(values_raw):
        number = _finite(item)
        if number is None:
            clipped = True
            continue
        values[i] = clamp01(number)
        if _moved(number, values[i]):
            clipped = True

    if src_w == output_grid and src_h == output_grid:
        resized = values
    else:
        sampled = resample_bilinear(values.reshape(src_h, src_w), output_grid, output_grid)
        resized = np.floor(np.clip(sampled, 0.0, 1.0) * 1000 + 0.5).ravel() / 1000

    return SanitizeResult(
        True,
        clip_reason="heatmap_clamped_or_resampled" if clipped else None,
        value={"grid": {"w": output_grid, "h": output_grid}, "values": [float(v) for v in resized]},
    )


def normalize_issue_type(issue_type) -> str | None:
    token = str(issue_type or "").strip().lower()
    if token in SUPPORTED_ISSUES:
        return token
    return ISSUE_ALIASES.get(token)


def quality_flags_from_reasons(reasons) -> tuple[str, ...]:
    lowered = [str(reason or "").lower() for reason in reasons or ()]
    flags = []
    if any("bright" in r or "glare" in r or "specular" in r for r in lowered):
        flags.append("glare_confounded")
    if any("shadow" in r or "dark" in r for r in lowered):
        flags.append("shadow_confounded")
    if any("filter" in r or "beauty" in r for r in lowered):
        flags.append("filter_suspected")
    if any("blur" in r for r in lowered):
        flags.append("blurred")
    return tuple(flags)


def region_style(severity: float, confidence: float, issue_type: str) -> RegionStyle:
    severity_score = clamp01(severity / 4)
    confidence = clamp01(confidence)
    return RegionStyle(
        intensity=round3(clamp01(severity_score * 0.7 + confidence * 0.3)),
        priority=round3(clamp01(severity_score * 0.8 + confidence * 0.2)),
        label_hint=issue_type or "signal",
    )


def count_by(rows: list[dict], keys: tuple[str, ...]) -> list[dict]:
    """Group rows by keys and count them, in first-seen order."""
    counter = Counter(tuple(str(row.get(key) or "unknown") for key in keys) for row in rows)
    return [dict(zip(keys, labels), count=count) for labels, count in counter.items()]


@dataclass
class RegionBuild:
    regions: list[Region] = field(default_factory=list)
    drops: list[dict] = field(default_factory=list)
    clips: list[dict] = field(default_factory=list)

    @property
    def geometry_counts(self) -> list[dict]:
        return count_by(self.drops + self.clips, ("reason", "region_type"))


def build_regions(
    findings: list[PhotoFinding],
    quality_flags: tuple[str, ...] = (),
    max_regions: int = 120,
    heatmap_grid: int = HEATMAP_OUTPUT_GRID,
) -> RegionBuild:
    """
    Sanitize every geometry of every finding into regions.

    Geometry kinds are handled independently, so a rejected polygon does
    not affect the bbox or heatmap of the same finding.
    """
    build = RegionBuild()

    for finding in findings:
        issue_type = normalize_issue_type(finding.issue_type)
        if issue_type is None:
            continue
        geometry = finding.geometry
        if geometry is None or geometry.is_empty:
            build.drops.append({"reason": "geometry_missing", "region_type": "unknown"})
            continue

        severity = _finite(finding.severity) or 0.0
        severity = max(0.0, min(4.0, severity))
        confidence = clamp01(_finite(finding.confidence) or 0.0)
        common = {
            "issue_type": issue_type,
            "severity": severity,
            "confidence": confidence,
            "style": region_style(severity, confidence, issue_type),
            "quality_flags": tuple(quality_flags[:4]),
        }

        bbox_result = None
        if geometry.bbox is not None:
            bbox_result = sanitize_bbox(geometry.bbox)
            if _record(build, bbox_result, "bbox"):
                build.regions.append(BBoxRegion(
                    region_id=f"{finding.finding_id}_bbox",
                    bbox=bbox_result.value,
                    notes=_notes(bbox_result),
                    **common,
                ))

        if geometry.polygon is not None:
            result = sanitize_polygon(geometry.polygon)
            if _record(build, result, "polygon"):
                build.regions.append(PolygonRegion(
                    region_id=f"{finding.finding_id}_polygon",
                    points=tuple(result.value["points"]),
                    bbox=result.value["bbox"],
                    closed=True,
                    notes=_notes(result),
                    **common,
                ))

        if geometry.heatmap is not None:
            result = sanitize_heatmap(geometry.heatmap, heatmap_grid)
            if _record(build, result, "heatmap"):
                build.regions.append(HeatmapRegion(
                    region_id=f"{finding.finding_id}_heatmap",
                    grid_w=result.value["grid"]["w"],
                    grid_h=result.value["grid"]["h"],
                    values=tuple(result.value["values"]),
                    bbox=bbox_result.value if bbox_result is not None and bbox_result.ok else None,
                    notes=_notes(result),
                    **common,
                ))

    if len(build.regions) > max_regions:
        logger.warning("Truncating %d regions to %d", len(build.regions), max_regions)
        build.regions = build.regions[:max_regions]
    if build.drops:
        logger.debug("Dropped geometries: %s", build.drops)
    return build


def _record(build: RegionBuild, result: SanitizeResult, region_type: str) -> bool:
    if not result.ok:
        build.drops.append({"reason": result.reason, "region_type": region_type})
        return False
    if result.clipped:
        build.clips.append({"reason": result.clip_reason, "region_type": region_type})
    return True


def _notes(result: SanitizeResult) -> tuple[str, ...]:
    return (result.clip_reason,) if result.clipped else ()


def resanitize_region(region: Region) -> SanitizeResult:
    """Run a region's own geometry back through its sanitizer."""
    if isinstance(region, BBoxRegion):
        return sanitize_bbox(region.bbox)
    if isinstance(region, PolygonRegion):
        return sanitize_polygon({"points": [{"x": x, "y": y} for x, y in region.points]})
    if isinstance(region, HeatmapRegion):
        return sanitize_heatmap(
            {"grid": {"w": region.grid_w, "h": region.grid_h}, "values": list(region.values)},
            region.grid_w,
        )
    raise TypeError(f"Unsupported region type: {type(region).__name__}")
