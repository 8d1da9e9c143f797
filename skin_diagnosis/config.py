"""
Configuration parameters for skin photo diagnosis.
Defaults are the production values; every group can be overridden
at pipeline construction or read once from DIAG_* environment variables.
"""

import logging
import math
import os
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_number(value) -> float | None:
    """Return value as a finite float, or None for anything non-numeric."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass(frozen=True)
class SkinSegmentationConfig:
    """YCrCb seed thresholds and component selection for the skin ROI."""

    y_min: float = 40.0
    cr_min: float = 133.0
    cr_max: float = 178.0
    cb_min: float = 80.0
    cb_max: float = 135.0

    # A component must hold at least max(min_component_pixels, fraction * N)
    min_component_pixels: int = 200
    min_component_fraction: float = 0.06

    # Components touching the central band get a score bonus
    center_bonus: float = 1.35
    center_x_band: tuple[float, float] = (0.35, 0.65)
    center_y_band: tuple[float, float] = (0.35, 0.70)


@dataclass(frozen=True)
class FailThresholds:
    """Hard floors. Below any of these the photo grades `fail`."""

    min_coverage: float = 0.06
    min_blur_factor: float = 0.2
    min_exposure_factor: float = 0.2
    # Accepted for compatibility with stored overrides, never used to fail
    min_quality_factor: float = 0.25


@dataclass(frozen=True)
class DegradedThresholds:
    """Soft floors. Below any of these the photo grades `degraded`."""

    min_blur_factor: float = 0.45
    min_exposure_factor: float = 0.45
    min_wb_factor: float = 0.65
    min_quality_factor: float = 0.55


@dataclass(frozen=True)
class QualityGateConfig:
    """Quality gate thresholds grouped by grade."""

    fail: FailThresholds = field(default_factory=FailThresholds)
    degraded: DegradedThresholds = field(default_factory=DegradedThresholds)

    def with_overrides(self, overrides: dict | None) -> "QualityGateConfig":
        """
        Apply a nested override mapping like {"fail": {"min_coverage": 0.1}}.

        Each value is clamped to [0, 1]. Unknown keys and non-numeric
        values keep the current threshold.
        """
        if not isinstance(overrides, dict):
            return self

        groups = {}
        for group_name in ("fail", "degraded"):
            current = getattr(self, group_name)
            raw = overrides.get(group_name)
            if not isinstance(raw, dict):
                groups[group_name] = current
                continue
            changes = {}
            for key in current.__dataclass_fields__:
                number = _as_number(raw.get(key))
                if number is not None:
                    changes[key] = _clamp(number, 0.0, 1.0)
            groups[group_name] = replace(current, **changes)

        return QualityGateConfig(fail=groups["fail"], degraded=groups["degraded"])

    def to_dict(self) -> dict:
        return {
            "fail": {k: getattr(self.fail, k) for k in self.fail.__dataclass_fields__},
            "degraded": {
                k: getattr(self.degraded, k) for k in self.degraded.__dataclass_fields__
            },
        }


# Fractional module boxes (x, y, w, h) in face-crop-normalized space
MODULE_BOXES = {
    "forehead": (0.2, 0.03, 0.6, 0.22),
    "left_cheek": (0.08, 0.34, 0.34, 0.3),
    "right_cheek": (0.58, 0.34, 0.34, 0.3),
    "nose": (0.42, 0.32, 0.16, 0.32),
    "chin": (0.33, 0.67, 0.34, 0.26),
    "under_eye_left": (0.18, 0.24, 0.24, 0.13),
    "under_eye_right": (0.58, 0.24, 0.24, 0.13),
}

# Shrink factor group per module
MODULE_SHRINK_GROUPS = {
    "forehead": "forehead",
    "left_cheek": "cheek",
    "right_cheek": "cheek",
    "nose": "nose",
    "chin": "chin",
    "under_eye_left": "under_eye",
    "under_eye_right": "under_eye",
}


def _default_shrink_factors() -> dict[str, float]:
    return {
        "chin": 0.8,
        "forehead": 0.88,
        "cheek": 0.9,
        "under_eye": 0.95,
        "nose": 0.95,
    }


@dataclass(frozen=True)
class ModuleMaskConfig:
    """Module mask rasterization and refinement parameters."""

    grid_size: int = 64
    shrink_factors: dict[str, float] = field(default_factory=_default_shrink_factors)

    # Skin mask is trusted only inside this positive-pixel ratio band
    skin_ratio_min: float = 0.04
    skin_ratio_max: float = 0.95

    # Skin intersection must keep max(min_module_pixels, ratio * module pixels)
    min_module_pixels: int = 16
    min_retained_ratio: float = 0.2

    heatmap_threshold: float = 0.35
    heatmap_output_grid: int = 64
    max_regions: int = 120
    max_issues_per_module: int = 4

    # Face crop derived from the skin ROI when none is supplied
    face_crop_margin: float = 1.2
    render_max_side: int = 512

    def shrink_for(self, module_id: str) -> float:
        group = MODULE_SHRINK_GROUPS.get(module_id)
        return float(self.shrink_factors.get(group, 1.0)) if group else 1.0


@dataclass(frozen=True)
class DiagnosisConfig:
    """Top-level configuration for the diagnosis pipeline."""

    analysis_max_side: int = 256
    min_image_bytes: int = 50
    default_language: str = "EN"
    calibration_path: str | None = None

    segmentation: SkinSegmentationConfig = field(default_factory=SkinSegmentationConfig)
    quality: QualityGateConfig = field(default_factory=QualityGateConfig)
    modules: ModuleMaskConfig = field(default_factory=ModuleMaskConfig)

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "DiagnosisConfig":
        """
        Build a config from DIAG_* environment variables.

        Read once at start-up. Invalid values are logged and ignored.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            DiagnosisConfig with overrides applied
        """
        env = os.environ if environ is None else environ
        base = cls()

        def read(name: str, default: float, low: float, high: float) -> float:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            number = _as_number(raw)
            if number is None:
                logger.warning("Ignoring non-numeric %s=%r", name, raw)
                return default
            return _clamp(number, low, high)

        shrink = dict(base.modules.shrink_factors)
        for group in shrink:
            shrink[group] = read(
                f"DIAG_MODULE_SHRINK_{group.upper()}", shrink[group], 0.5, 1.0
            )

        ratio_min = read("DIAG_SKINMASK_MIN_POSITIVE_RATIO", base.modules.skin_ratio_min, 0.0, 0.95)
        ratio_max = read("DIAG_SKINMASK_MAX_POSITIVE_RATIO", base.modules.skin_ratio_max, ratio_min, 1.0)

        modules = replace(
            base.modules,
            shrink_factors=shrink,
            skin_ratio_min=ratio_min,
            skin_ratio_max=ratio_max,
            grid_size=int(read("DIAG_MODULE_GRID", base.modules.grid_size, 16, 512)),
            face_crop_margin=read("DIAG_FACE_CROP_MARGIN", base.modules.face_crop_margin, 1.0, 2.0),
        )

        quality_overrides = {"fail": {}, "degraded": {}}
        for group_name, group in (("fail", base.quality.fail), ("degraded", base.quality.degraded)):
            for key in group.__dataclass_fields__:
                env_name = f"DIAG_QUALITY_{group_name.upper()}_{key.upper()}"
                if env.get(env_name):
                    quality_overrides[group_name][key] = read(env_name, getattr(group, key), 0.0, 1.0)

        calibration_path = env.get("DIAG_CALIBRATION_PATH") or None

        return replace(
            base,
            analysis_max_side=int(read("DIAG_ANALYSIS_MAX_SIDE", base.analysis_max_side, 64, 1024)),
            calibration_path=calibration_path,
            quality=base.quality.with_overrides(quality_overrides),
            modules=modules,
        )


# Default configuration instance
DEFAULT_CONFIG = DiagnosisConfig()


# Visualization colors (BGR format for OpenCV)
COLORS = {
    "redness": (60, 60, 230),
    "shine": (240, 240, 120),
    "texture": (80, 200, 255),
    "tone": (40, 120, 170),
    "acne": (120, 60, 220),
    "module_outline": (255, 255, 255),
    "debug_skin": (0, 255, 0),
    "debug_roi": (255, 0, 0),
}
