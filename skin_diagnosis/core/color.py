"""
Color-space conversions used by segmentation and the detectors.
All functions take H x W x 3 uint8 RGB arrays and work per pixel.
"""

import numpy as np


def _build_srgb_to_linear() -> np.ndarray:
    c = np.arange(256, dtype=np.float64) / 255.0
    linear = np.where(c <= 0.04045, c / 12.92, ((c + 0.055) / 1.055) ** 2.4)
    # Stored as float32 and widened on lookup
    return linear.astype(np.float32)


SRGB_TO_LINEAR = _build_srgb_to_linear()

# sRGB -> XYZ (D65) and reference white
_XYZ_ROWS = (
    (0.4124, 0.3576, 0.1805),
    (0.2126, 0.7152, 0.0722),
    (0.0193, 0.1192, 0.9505),
)
_WHITE = (0.95047, 1.0, 1.08883)


def clamp01(value: float) -> float:
    """Clamp to [0, 1]; NaN and infinities map to 0."""
    if value is None or not np.isfinite(value):
        return 0.0
    return float(max(0.0, min(1.0, value)))


def round_half_up(value):
    """Round halves toward +inf, element-wise for arrays."""
    if isinstance(value, np.ndarray):
        return np.floor(value + 0.5).astype(np.int64)
    return int(np.floor(value + 0.5))


def round3(value: float) -> float:
    if value is None or not np.isfinite(value):
        return 0.0
    return float(np.floor(value * 1000 + 0.5) / 1000)


def rgb_to_ycrcb(image: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Convert RGB to unrounded (Y, Cr, Cb) float planes.

    Y = .299R + .587G + .114B, Cr = (R - Y) * .713 + 128, Cb = (B - Y) * .564 + 128
    """
    rgb = image.astype(np.float64)
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
    y = 0.299 * r + 0.587 * g + 0.114 * b
    cr = (r - y) * 0.713 + 128
    cb = (b - y) * 0.564 + 128
    return y, cr, cb


def luma_float(image: np.ndarray) -> np.ndarray:
    rgb = image.astype(np.float64)
    return 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]


def luma(image: np.ndarray) -> np.ndarray:
    """Integer luma, rounded half up, as an int32 plane."""
    return round_half_up(luma_float(image)).astype(np.int32)


def _lab_f(t: np.ndarray) -> np.ndarray:
    return np.where(t > 0.008856, np.cbrt(t), 7.787 * t + 16 / 116)


def rgb_to_lab(image: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Convert sRGB to CIE L*a*b* (D65) float planes.

    Args:
        image: RGB uint8 array of shape (H, W, 3) or (N, 3)

    Returns:
        Tuple of (L, a, b) arrays with the input's leading shape
    """
    lin = SRGB_TO_LINEAR[image].astype(np.float64)
    r, g, b = lin[..., 0], lin[..., 1], lin[..., 2]

    (xr, xg, xb), (yr, yg, yb), (zr, zg, zb) = _XYZ_ROWS
    x = (r * xr + g * xg + b * xb) / _WHITE[0]
    y = (r * yr + g * yg + b * yb) / _WHITE[1]
    z = (r * zr + g * zg + b * zb) / _WHITE[2]

    fx, fy, fz = _lab_f(x), _lab_f(y), _lab_f(z)
    lightness = 116 * fy - 16
    a = 500 * (fx - fy)
    b_star = 200 * (fy - fz)
    return lightness, a, b_star


def saturation(image: np.ndarray) -> np.ndarray:
    """HSV-style saturation (max - min) / max in [0, 1]."""
    rgb = image.astype(np.float64)
    high = rgb.max(axis=-1)
    low = rgb.min(axis=-1)
    with np.errstate(divide="ignore", invalid="ignore"):
        sat = np.where(high > 0, (high - low) / high, 0.0)
    return sat
