"""
Binary mask kernel.
Rasterizes normalized geometries into grid bitmaps and scores/encodes them.

Masks are 2D uint8 numpy arrays holding 0/1, indexed [y, x].
"""

import math

import numpy as np


def _clamp01(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return min(1.0, max(0.0, number))


def create_mask(width: int, height: int, fill: int = 0) -> np.ndarray:
    """Create a height x width mask, at least 1x1."""
    w = max(1, int(width or 0))
    h = max(1, int(height or 0))
    return np.full((h, w), 1 if fill else 0, dtype=np.uint8)


def fill_rect(mask: np.ndarray, x0: float, y0: float, x1: float, y1: float, value: int = 1) -> None:
    """Fill a pixel rectangle, expanding fractional edges outward (floor/ceil)."""
    height, width = mask.shape
    nx0 = max(0, min(width, math.floor(min(x0, x1))))
    nx1 = max(0, min(width, math.ceil(max(x0, x1))))
    ny0 = max(0, min(height, math.floor(min(y0, y1))))
    ny1 = max(0, min(height, math.ceil(max(y0, y1))))
    if nx1 <= nx0 or ny1 <= ny0:
        return
    mask[ny0:ny1, nx0:nx1] = 1 if value else 0


def bbox_norm_to_mask(box: dict | tuple | None, width: int, height: int) -> np.ndarray:
    """
    Rasterize a normalized box into a width x height mask.

    Args:
        box: {"x", "y", "w", "h"} mapping or (x, y, w, h) tuple in [0, 1]
        width: Mask width in pixels
        height: Mask height in pixels

    Returns:
        Mask with the covered pixels set to 1
    """
    out = create_mask(width, height)
    if box is None:
        return out
    if isinstance(box, dict):
        try:
            x, y, w, h = (float(box[k]) for k in ("x", "y", "w", "h"))
        except (KeyError, TypeError, ValueError):
            return out
    else:
        x, y, w, h = (float(v) for v in box)

    height_px, width_px = out.shape
    x0, y0 = _clamp01(x), _clamp01(y)
    x1, y1 = _clamp01(x + w), _clamp01(y + h)
    fill_rect(out, x0 * width_px, y0 * height_px, x1 * width_px, y1 * height_px)
    return out


def points_in_polygon(xs: np.ndarray, ys: np.ndarray, points: list[tuple[float, float]]) -> np.ndarray:
    """Even-odd ray casting test for arrays of query points."""
    inside = np.zeros(np.broadcast(xs, ys).shape, dtype=bool)
    n = len(points)
    j = n - 1
    for i in range(n):
        xi, yi = points[i]
        xj, yj = points[j]
        dy = (yj - yi) or 1e-12
        crosses = (yi > ys) != (yj > ys)
        x_cross = (xj - xi) * (ys - yi) / dy + xi
        inside ^= crosses & (xs < x_cross)
        j = i
    return inside


def polygon_norm_to_mask(points: list, width: int, height: int) -> np.ndarray:
    """Rasterize a normalized polygon, testing pixel centers."""
    out = create_mask(width, height)
    if not points or len(points) < 3:
        return out
    norm = [(_clamp01(_coord(p, 0)), _clamp01(_coord(p, 1))) for p in points]
    height_px, width_px = out.shape
    xs = (np.arange(width_px) + 0.5) / width_px
    ys = (np.arange(height_px) + 0.5) / height_px
    grid_x, grid_y = np.meshgrid(xs, ys)
    out[points_in_polygon(grid_x, grid_y, norm)] = 1
    return out


def _coord(point, axis: int):
    if isinstance(point, dict):
        return point.get("x" if axis == 0 else "y")
    return point[axis]


def resample_bilinear(values: np.ndarray, dst_w: int, dst_h: int) -> np.ndarray:
    """
    Bilinear resample of a (src_h, src_w) float grid with half-pixel centers.

    Edges are clamped to the source bounds.
    """
    src_h, src_w = values.shape
    sy = (np.arange(dst_h) + 0.5) * src_h / dst_h - 0.5
    sx = (np.arange(dst_w) + 0.5) * src_w / dst_w - 0.5
    y0 = np.clip(np.floor(sy).astype(int), 0, src_h - 1)
    x0 = np.clip(np.floor(sx).astype(int), 0, src_w - 1)
    y1 = np.clip(y0 + 1, 0, src_h - 1)
    x1 = np.clip(x0 + 1, 0, src_w - 1)
    ty = (sy - y0)[:, None]
    tx = (sx - x0)[None, :]

    q11 = values[np.ix_(y0, x0)]
    q21 = values[np.ix_(y0, x1)]
    q12 = values[np.ix_(y1, x0)]
    q22 = values[np.ix_(y1, x1)]
    top = q11 * (1 - tx) + q21 * tx
    bottom = q12 * (1 - tx) + q22 * tx
    return top * (1 - ty) + bottom * ty


def heatmap_to_mask(
    values,
    src_w: int,
    src_h: int,
    dst_w: int,
    dst_h: int,
    threshold: float = 0.35,
    intensity: float = 1.0,
) -> np.ndarray:
    """Resample a heatmap to dst size and keep cells at or above threshold."""
    out = create_mask(dst_w, dst_h)
    flat = np.asarray(values, dtype=np.float64).ravel()
    if flat.size != src_w * src_h or flat.size == 0:
        return out
    grid = np.nan_to_num(flat, nan=0.0).reshape(src_h, src_w)
    scaled_threshold = _clamp01(threshold)
    scaled_intensity = _clamp01(intensity or 1)
    sampled = np.clip(resample_bilinear(grid, out.shape[1], out.shape[0]) * scaled_intensity, 0, 1)
    out[sampled >= scaled_threshold] = 1
    return out


def or_mask_into(target: np.ndarray, source: np.ndarray) -> None:
    target[source > 0] = 1


def and_masks(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return ((a > 0) & (b > 0)).astype(np.uint8)


def not_mask(mask: np.ndarray) -> np.ndarray:
    return (mask == 0).astype(np.uint8)


def count_ones(mask: np.ndarray) -> int:
    return int(np.count_nonzero(mask))


def intersection_count(a: np.ndarray, b: np.ndarray) -> int:
    return int(np.count_nonzero((a > 0) & (b > 0)))


def union_count(a: np.ndarray, b: np.ndarray) -> int:
    return int(np.count_nonzero((a > 0) | (b > 0)))


def safe_ratio(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0


def iou_score(pred_mask: np.ndarray, gt_mask: np.ndarray) -> float:
    """Intersection over union; 0 when both masks are empty."""
    return safe_ratio(intersection_count(pred_mask, gt_mask), union_count(pred_mask, gt_mask))


def coverage_score(pred_mask: np.ndarray, gt_mask: np.ndarray) -> float:
    """Share of ground-truth pixels covered by the prediction."""
    return safe_ratio(intersection_count(pred_mask, gt_mask), count_ones(gt_mask))


def leakage_score(pred_mask: np.ndarray, gt_skin_mask: np.ndarray) -> float:
    """Share of predicted pixels that fall outside the skin mask."""
    return safe_ratio(intersection_count(pred_mask, not_mask(gt_skin_mask)), count_ones(pred_mask))


def encode_rle_binary(mask: np.ndarray) -> str:
    """
    Encode a mask as comma-separated run lengths in row-major order.

    The first run always counts zeros and may be 0.
    """
    flat = (np.asarray(mask).ravel() > 0).astype(np.int8)
    if flat.size == 0:
        return "0"
    change = np.flatnonzero(np.diff(flat)) + 1
    bounds = np.concatenate(([0], change, [flat.size]))
    runs = np.diff(bounds).tolist()
    if flat[0] == 1:
        runs.insert(0, 0)
    return ",".join(str(run) for run in runs)


def decode_rle_binary(rle: str, expected_length: int) -> np.ndarray:
    """
    Decode run lengths into a flat 0/1 array of expected_length.

    Non-numeric or negative chunks are skipped and empty chunks count as
    zero-length runs. Runs past the end are cut.
    """
    out = np.zeros(max(0, int(expected_length or 0)), dtype=np.uint8)
    value = 0
    offset = 0
    for part in str(rle or "").split(","):
        if not part.strip():
            value ^= 1
            continue
        try:
            count = float(part)
        except ValueError:
            continue
        if not math.isfinite(count) or count < 0:
            continue
        n = int(count)
        if n <= 0:
            value ^= 1
            continue
        end = min(out.size, offset + n)
        if value:
            out[offset:end] = 1
        offset = end
        value ^= 1
        if offset >= out.size:
            break
    return out


def decode_rle_mask(rle: str, grid_size: int) -> np.ndarray:
    """Decode a square grid_size x grid_size mask."""
    return decode_rle_binary(rle, grid_size * grid_size).reshape(grid_size, grid_size)


def mask_bounding_box(mask: np.ndarray) -> dict | None:
    """Normalized {x, y, w, h} of the set pixels, or None for an empty mask."""
    ys, xs = np.nonzero(mask)
    if ys.size == 0:
        return None
    height, width = mask.shape
    return {
        "x": xs.min() / width,
        "y": ys.min() / height,
        "w": (xs.max() + 1 - xs.min()) / width,
        "h": (ys.max() + 1 - ys.min()) / height,
    }


def shrink_box(box: tuple[float, float, float, float], factor: float) -> tuple[float, float, float, float]:
    """Scale a normalized (x, y, w, h) box around its center."""
    x, y, w, h = box
    factor = max(0.0, min(1.0, float(factor)))
    cx, cy = x + w / 2, y + h / 2
    nw, nh = w * factor, h * factor
    return (cx - nw / 2, cy - nh / 2, nw, nh)


def resize_mask_nearest(mask: np.ndarray, dst_w: int, dst_h: int) -> np.ndarray:
    """Nearest-neighbour resize sampling source pixel centers."""
    src_h, src_w = mask.shape
    sy = np.clip(np.floor((np.arange(dst_h) + 0.5) * src_h / dst_h).astype(int), 0, src_h - 1)
    sx = np.clip(np.floor((np.arange(dst_w) + 0.5) * src_w / dst_w).astype(int), 0, src_w - 1)
    return (mask[np.ix_(sy, sx)] > 0).astype(np.uint8)


def crop_mask_to_norm(mask: np.ndarray, crop_box_px: dict, dst_w: int, dst_h: int) -> np.ndarray:
    """
    Crop a pixel box out of mask and resample it to a dst_w x dst_h grid.

    Args:
        mask: Source mask (H, W)
        crop_box_px: {"x", "y", "w", "h"} in source pixels
        dst_w: Output width
        dst_h: Output height

    Returns:
        Nearest-neighbour resampled crop
    """
    src_h, src_w = mask.shape
    x = int(max(0, min(max(0, src_w - 1), math.floor(float(crop_box_px.get("x", 0))))))
    y = int(max(0, min(max(0, src_h - 1), math.floor(float(crop_box_px.get("y", 0))))))
    w = int(max(1, min(src_w, math.floor(float(crop_box_px.get("w", src_w))))))
    h = int(max(1, min(src_h, math.floor(float(crop_box_px.get("h", src_h))))))
    crop = mask[y:min(src_h, y + h), x:min(src_w, x + w)]
    return resize_mask_nearest(crop, dst_w, dst_h)


def module_mask_from_box(module_id: str, width: int, height: int, module_boxes: dict) -> np.ndarray:
    box = module_boxes.get(module_id)
    if box is None:
        return create_mask(width, height)
    return bbox_norm_to_mask(box, width, height)
