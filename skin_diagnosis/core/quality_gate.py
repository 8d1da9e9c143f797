"""
Photo quality gate.
Scores blur, exposure, white balance and skin coverage and grades the photo.
"""

import logging
from dataclasses import dataclass

import numpy as np

from skin_diagnosis.config import QualityGateConfig
from skin_diagnosis.core.color import clamp01, luma, round3
from skin_diagnosis.core.models import QualityGrade, QualityResult, SkinMask

logger = logging.getLogger(__name__)

# Reason tags
LOW_SKIN_COVERAGE = "low_skin_coverage"
BLUR = "blur"
TOO_DARK = "too_dark"
TOO_BRIGHT = "too_bright"
WHITE_BALANCE_UNSTABLE = "white_balance_unstable"
FRAME_OFF_CENTER = "frame_off_center"
FRAME_EDGE_CLIPPED = "frame_edge_clipped"


@dataclass(frozen=True)
class QualityFactors:
    """Normalized quality factors, each in [0, 1]."""
    coverage: float
    blur: float
    exposure: float
    white_balance: float

    @property
    def coverage_factor(self) -> float:
        return clamp01((self.coverage - 0.06) / 0.18)

    @property
    def quality_factor(self) -> float:
        return clamp01(self.blur * self.exposure * self.white_balance * self.coverage_factor)


def laplacian_abs(gray: np.ndarray) -> np.ndarray:
    """|4-neighbour Laplacian| for interior pixels; border rows/cols are 0."""
    g = gray.astype(np.int32)
    out = np.zeros_like(g)
    out[1:-1, 1:-1] = np.abs(
        -4 * g[1:-1, 1:-1] + g[1:-1, :-2] + g[1:-1, 2:] + g[:-2, 1:-1] + g[2:, 1:-1]
    )
    return out


def grade_quality(factors: QualityFactors, config: QualityGateConfig | None = None) -> QualityGrade:
    """
    Grade from factors alone.

    Only coverage, blur and exposure can fail a photo; white balance and the
    composite factor can at most degrade it.
    """
    config = config or QualityGateConfig()
    fail, degraded = config.fail, config.degraded

    if (
        factors.coverage < fail.min_coverage
        or factors.blur < fail.min_blur_factor
        or factors.exposure < fail.min_exposure_factor
    ):
        return QualityGrade.FAIL
    if (
        factors.blur < degraded.min_blur_factor
        or factors.exposure < degraded.min_exposure_factor
        or factors.white_balance < degraded.min_wb_factor
        or factors.quality_factor < degraded.min_quality_factor
    ):
        return QualityGrade.DEGRADED
    return QualityGrade.PASS


class QualityGate:
    """Compute quality metrics over the skin ROI."""

    def __init__(self, config: QualityGateConfig | None = None):
        self.config = config or QualityGateConfig()

    def evaluate(self, image: np.ndarray, skin: SkinMask) -> QualityResult:
        """
        Grade an analysis image.

        Args:
            image: RGB image
            skin: Segmented skin ROI

        Returns:
            QualityResult with grade, factor, reasons and rounded metrics
        """
        h, w = image.shape[:2]
        selected = skin.mask > 0
        n_skin = skin.skin_pixels

        gray = luma(image)
        skin_gray = gray[selected].astype(np.float64)
        mean_y = float(skin_gray.mean()) if n_skin else 0.0
        # Population variance, guarded against negative rounding
        var_y = max(0.0, float((skin_gray ** 2).mean()) - mean_y * mean_y) if n_skin else 0.0
        std_y = var_y ** 0.5

        if n_skin:
            mean_r, mean_g, mean_b = (float(v) for v in image[selected].astype(np.float64).mean(axis=0))
        else:
            mean_r = mean_g = mean_b = 0.0
        rg = mean_r / mean_g if mean_g > 0 else 1.0
        bg = mean_b / mean_g if mean_g > 0 else 1.0
        wb_cast = max(abs(rg - 1), abs(bg - 1))

        lap_energy = self._laplacian_energy(gray, selected, skin)
        coverage = n_skin / (w * h)

        factors = QualityFactors(
            coverage=coverage,
            blur=clamp01((lap_energy - 6) / 18),
            exposure=clamp01(1 - abs(mean_y - 135) / 110),
            white_balance=clamp01(1 - wb_cast / 0.45),
        )

        reasons = self._reasons(factors, mean_y)
        reasons.extend(self._frame_tags(skin, (h, w)))
        grade = grade_quality(factors, self.config)

        logger.debug(
            "Quality: grade=%s qf=%.3f blur=%.3f exposure=%.3f wb=%.3f coverage=%.3f",
            grade.value, factors.quality_factor, factors.blur, factors.exposure,
            factors.white_balance, coverage,
        )

        return QualityResult(
            grade=grade,
            quality_factor=round3(factors.quality_factor),
            reasons=tuple(reasons),
            metrics={
                "skin_coverage": round3(coverage),
                "mean_luma": round3(mean_y),
                "luma_std": round3(std_y),
                "laplacian_energy": round3(lap_energy),
                "white_balance_cast": round3(wb_cast),
                "blur_factor": round3(factors.blur),
                "exposure_factor": round3(factors.exposure),
                "wb_factor": round3(factors.white_balance),
                "coverage_factor": round3(factors.coverage_factor),
            },
        )

    def _laplacian_energy(self, gray: np.ndarray, selected: np.ndarray, skin: SkinMask) -> float:
        """Mean |Laplacian| over skin pixels strictly inside the ROI bbox."""
        box = skin.bbox
        if box.x1 - box.x0 < 2 or box.y1 - box.y0 < 2:
            return 0.0
        lap = laplacian_abs(gray)
        inner = np.zeros_like(selected)
        inner[box.y0 + 1:box.y1, box.x0 + 1:box.x1] = True
        values = lap[inner & selected]
        return float(values.mean()) if values.size else 0.0

    @staticmethod
    def _reasons(factors: QualityFactors, mean_y: float) -> list[str]:
        reasons = []
        if factors.coverage < 0.06:
            reasons.append(LOW_SKIN_COVERAGE)
        if factors.blur < 0.35:
            reasons.append(BLUR)
        if factors.exposure < 0.4:
            reasons.append(TOO_DARK if mean_y < 80 else TOO_BRIGHT)
        if factors.white_balance < 0.55:
            reasons.append(WHITE_BALANCE_UNSTABLE)
        return reasons

    @staticmethod
    def _frame_tags(skin: SkinMask, shape: tuple[int, int]) -> list[str]:
        """Framing hints. They never change the grade."""
        h, w = shape
        tags = []
        if not skin.touches_center:
            tags.append(FRAME_OFF_CENTER)
        box = skin.bbox
        if box.x0 == 0 or box.y0 == 0 or box.x1 == w - 1 or box.y1 == h - 1:
            tags.append(FRAME_EDGE_CLIPPED)
        return tags
