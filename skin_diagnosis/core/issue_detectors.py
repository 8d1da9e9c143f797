"""
Raw-signal detectors for acne, redness, pores and dark spots.
Each detector returns an uncalibrated RawIssueScore.
"""

import logging
from dataclasses import dataclass

import numpy as np
from skimage.measure import label

from skin_diagnosis.core.color import clamp01, luma, luma_float, rgb_to_lab, round_half_up, saturation
from skin_diagnosis.core.models import PixelBox, QualityGrade, QualityResult, RawIssueScore, SkinMask
from skin_diagnosis.core.quality_gate import WHITE_BALANCE_UNSTABLE, laplacian_abs

logger = logging.getLogger(__name__)

ISSUE_TYPES = ("acne", "redness", "pores", "dark_spots")

# Fractional (x0, y0, x1, y1) sub-regions of the ROI bbox
REGION_FRACTIONS = {
    "forehead": (0.2, 0.0, 0.8, 0.28),
    "nose": (0.4, 0.34, 0.6, 0.66),
    "cheeks": (0.12, 0.34, 0.88, 0.74),
    "left_cheek": (0.12, 0.38, 0.42, 0.74),
    "right_cheek": (0.58, 0.38, 0.88, 0.74),
    "chin": (0.25, 0.74, 0.75, 1.0),
    "exclude_eyes": (0.15, 0.22, 0.85, 0.46),
    "exclude_mouth": (0.22, 0.74, 0.78, 0.93),
}

# Lab sample caps
SAMPLE_HEAD = 24000
SAMPLE_MAX = 42000

ACNE_MIN_AREA = 2
ACNE_MAX_AREA = 110


def compute_region_boxes(bbox: PixelBox) -> dict[str, PixelBox]:
    """Face sub-region boxes derived from the ROI bbox, plus "full"."""
    w, h = bbox.width, bbox.height

    def box(rx0, ry0, rx1, ry1):
        xx0 = round_half_up(bbox.x0 + rx0 * w)
        yy0 = round_half_up(bbox.y0 + ry0 * h)
        xx1 = round_half_up(bbox.x0 + rx1 * w)
        yy1 = round_half_up(bbox.y0 + ry1 * h)
        return PixelBox(min(xx0, xx1), min(yy0, yy1), max(xx0, xx1), max(yy0, yy1))

    boxes = {"full": bbox}
    for name, fractions in REGION_FRACTIONS.items():
        boxes[name] = box(*fractions)
    return boxes


@dataclass(frozen=True)
class ChannelStats:
    mean: float | None = None
    std: float | None = None
    p10: float | None = None
    p50: float | None = None
    p90: float | None = None

    @classmethod
    def summarize(cls, values: np.ndarray) -> "ChannelStats":
        if values.size == 0:
            return cls()
        ordered = np.sort(values)
        n = ordered.size

        def percentile(p):
            idx = min(n - 1, max(0, round_half_up(p * (n - 1))))
            return float(ordered[idx])

        return cls(
            mean=float(values.mean()),
            std=float(values.std()),
            p10=percentile(0.1),
            p50=float(np.median(ordered)),
            p90=percentile(0.9),
        )


@dataclass(frozen=True)
class LabStats:
    L: ChannelStats
    a: ChannelStats
    b: ChannelStats


def sample_skin_indices(mask: np.ndarray) -> np.ndarray:
    """
    Flat indices of sampled skin pixels in raster order.

    The first SAMPLE_HEAD pixels are always kept; after that only pixels
    whose flat index is divisible by 3, up to SAMPLE_MAX samples in total.
    """
    idx = np.flatnonzero(mask.ravel())
    head = idx[:SAMPLE_HEAD]
    tail = idx[SAMPLE_HEAD:]
    tail = tail[tail % 3 == 0][:SAMPLE_MAX - SAMPLE_HEAD]
    return np.concatenate([head, tail])


def compute_lab_stats(image: np.ndarray, skin: SkinMask) -> LabStats:
    """Summary statistics of L*, a*, b* over sampled skin pixels."""
    idx = sample_skin_indices(skin.mask)
    pixels = image.reshape(-1, 3)[idx]
    lightness, a, b = rgb_to_lab(pixels)
    return LabStats(
        L=ChannelStats.summarize(lightness),
        a=ChannelStats.summarize(a),
        b=ChannelStats.summarize(b),
    )


def _or_zero(value: float | None) -> float:
    return value if value is not None else 0.0


def _gradient(gray: np.ndarray) -> np.ndarray:
    """min(255, |dx| + |dy|) with central differences, 0 on the border."""
    g = gray.astype(np.int32)
    grad = np.zeros_like(g)
    gx = np.abs(g[1:-1, 2:] - g[1:-1, :-2])
    gy = np.abs(g[2:, 1:-1] - g[:-2, 1:-1])
    grad[1:-1, 1:-1] = np.minimum(255, gx + gy)
    return grad


def _box_slice(box: PixelBox, shape: tuple[int, int]) -> tuple[slice, slice]:
    h, w = shape
    return (
        slice(max(0, box.y0), min(h, box.y1 + 1)),
        slice(max(0, box.x0), min(w, box.x1 + 1)),
    )


def count_components_in_box(
    binary: np.ndarray, box: PixelBox, min_area: int = 2, max_area: int = 400
) -> int:
    """Count 4-connected components inside box whose size is in [min_area, max_area]."""
    rows, cols = _box_slice(box, binary.shape)
    window = binary[rows, cols]
    labels, count = label(window, connectivity=1, background=0, return_num=True)
    if count == 0:
        return 0
    sizes = np.bincount(labels.ravel())[1:]
    return int(np.count_nonzero((sizes >= min_area) & (sizes <= max_area)))


def detect_acne(
    image: np.ndarray, skin: SkinMask, boxes: dict[str, PixelBox], lab_stats: LabStats
) -> RawIssueScore:
    """Localized red, high-gradient blobs inside the cheeks."""
    shape = skin.shape
    gray = luma(image)
    grad = _gradient(gray)

    cheeks = boxes["cheeks"]
    rows, cols = _box_slice(cheeks, shape)
    window = np.zeros(shape, dtype=bool)
    window[rows, cols] = True
    window &= ~boxes["exclude_eyes"].membership(shape)
    window &= ~boxes["exclude_mouth"].membership(shape)
    window &= skin.mask > 0
    window &= grad >= 35

    candidates = np.zeros(shape, dtype=np.uint8)
    if window.any():
        _, a, _ = rgb_to_lab(image[window])
        hits = a > _or_zero(lab_stats.a.p50) + 10
        ys, xs = np.nonzero(window)
        candidates[ys[hits], xs[hits]] = 1

    count = count_components_in_box(candidates, cheeks, ACNE_MIN_AREA, ACNE_MAX_AREA)
    density = count / max(1, skin.skin_pixels)
    return RawIssueScore(
        score=clamp01(density * 520),
        model_conf=clamp01(0.18 + min(1.0, count / 18) * 0.65),
        metrics={"acne_count": count, "acne_density": density},
    )


def detect_redness(lab_stats: LabStats) -> RawIssueScore:
    """Diffuse redness from the spread and skew of a*."""
    mean_a = _or_zero(lab_stats.a.mean)
    median_a = _or_zero(lab_stats.a.p50)
    std_a = _or_zero(lab_stats.a.std)

    spread = std_a / 22 if std_a > 0 else 0.0
    red_fraction = clamp01(spread * 0.35 + clamp01((mean_a - median_a) / 10) * 0.55)
    return RawIssueScore(
        score=red_fraction,
        model_conf=clamp01(0.22 + clamp01(std_a / 22) * 0.55),
        metrics={"a_shift": mean_a - median_a, "red_fraction": red_fraction},
    )


def specular_fraction(image: np.ndarray, skin: SkinMask, box: PixelBox) -> float:
    """Share of skin pixels in box that are bright and nearly colorless."""
    rows, cols = _box_slice(box, skin.shape)
    selected = skin.mask[rows, cols] > 0
    if not selected.any():
        return 0.0
    patch = image[rows, cols]
    bright = luma_float(patch) > 215
    pale = saturation(patch) < 0.12
    return float(np.count_nonzero(bright & pale & selected) / np.count_nonzero(selected))


def detect_pores(image: np.ndarray, skin: SkinMask, boxes: dict[str, PixelBox]) -> RawIssueScore:
    """Texture energy on nose and cheeks, discounted by nose shine."""
    shape = skin.shape
    lap = laplacian_abs(luma(image))

    full = boxes["full"]
    inner = np.zeros(shape, dtype=bool)
    inner[full.y0 + 1:full.y1, full.x0 + 1:full.x1] = True
    inner &= skin.mask > 0

    in_nose = boxes["nose"].membership(shape)
    in_cheeks = boxes["cheeks"].membership(shape) & ~in_nose

    nose_values = lap[inner & in_nose]
    cheek_values = lap[inner & in_cheeks]
    nose_tex = float(nose_values.mean()) if nose_values.size else 0.0
    cheek_tex = float(cheek_values.mean()) if cheek_values.size else 0.0
    texture = (nose_tex + cheek_tex) / 2

    specular = specular_fraction(image, skin, boxes["nose"])
    shine_penalty = clamp01((specular - 0.06) / 0.22)
    pore_index = clamp01((texture - 6) / 18) * (1 - 0.65 * shine_penalty)
    return RawIssueScore(
        score=pore_index,
        model_conf=clamp01(0.22 + pore_index * 0.65) * (1 - 0.55 * shine_penalty),
        metrics={"texture_energy": texture, "pore_index": pore_index, "specular_fraction": specular},
    )


def detect_dark_spots(lab_stats: LabStats, quality: QualityResult) -> RawIssueScore:
    """
    Luminance drop and yellow/blue cast of the darkest skin decile.

    Forced to score 0 and confidence 0.1 unless the photo passed with
    stable white balance.
    """
    median_l = _or_zero(lab_stats.L.p50)
    p10_l = _or_zero(lab_stats.L.p10)
    mean_b = _or_zero(lab_stats.b.mean)

    luma_drop = median_l - p10_l
    hue_shift = clamp01(abs(mean_b) / 35)
    raw = clamp01(clamp01((luma_drop - 2) / 16) * 0.85 + hue_shift * 0.15)

    reliable = quality.grade is QualityGrade.PASS and not quality.has_reason(WHITE_BALANCE_UNSTABLE)
    return RawIssueScore(
        score=raw if reliable else 0.0,
        model_conf=clamp01(0.15 + raw * 0.55) if reliable else 0.1,
        metrics={"luma_drop": luma_drop, "hue_shift": hue_shift},
    )


def compute_issue_raw_scores(
    image: np.ndarray,
    skin: SkinMask,
    boxes: dict[str, PixelBox],
    lab_stats: LabStats,
    quality: QualityResult,
) -> dict[str, RawIssueScore]:
    """Run every detector. Keys follow ISSUE_TYPES order."""
    raw = {
        "acne": detect_acne(image, skin, boxes, lab_stats),
        "redness": detect_redness(lab_stats),
        "pores": detect_pores(image, skin, boxes),
        "dark_spots": detect_dark_spots(lab_stats, quality),
    }
    logger.debug(
        "Raw scores: %s",
        {name: round(item.score, 3) for name, item in raw.items()},
    )
    return raw
