"""
Offline accuracy helpers.
Derives ground-truth module masks from a labelled skin mask and scores a
module card against them.
"""

import logging

import numpy as np

from skin_diagnosis.config import MODULE_BOXES
from skin_diagnosis.core import mask_ops
from skin_diagnosis.core.color import round3
from skin_diagnosis.core.models import ModulesResult

logger = logging.getLogger(__name__)

MIN_GRID = 16
MAX_GRID = 512


def _grid(grid_size) -> int:
    return max(MIN_GRID, min(MAX_GRID, int(grid_size or 128)))


def derive_gt_module_masks(
    skin_mask: np.ndarray | None,
    face_crop_box: dict,
    grid_size: int = 128,
    module_boxes: dict | None = None,
) -> dict:
    """
    Ground-truth module masks: each module box intersected with the skin mask.

    Args:
        skin_mask: Labelled skin mask (H, W) in image pixels
        face_crop_box: {"x", "y", "w", "h"} face crop in the same pixels
        grid_size: Output grid side, clamped to [16, 512]
        module_boxes: {module_id: (x, y, w, h)} overrides

    Returns:
        Dict with the cropped skin mask and one RLE mask per module
    """
    g = _grid(grid_size)
    if skin_mask is None:
        return {
            "grid": {"w": g, "h": g},
            "skin_mask_rle_norm": "",
            "module_masks": [],
            "warnings": ["skin_mask_missing"],
        }

    skin_norm = mask_ops.crop_mask_to_norm(np.asarray(skin_mask), face_crop_box, g, g)
    boxes = module_boxes or MODULE_BOXES
    modules = []
    for module_id in boxes:
        gt = mask_ops.and_masks(skin_norm, mask_ops.module_mask_from_box(module_id, g, g, boxes))
        modules.append({
            "module_id": module_id,
            "mask_rle_norm": mask_ops.encode_rle_binary(gt),
            "positive_pixels": mask_ops.count_ones(gt),
        })

    return {
        "grid": {"w": g, "h": g},
        "face_crop_bbox_px": dict(face_crop_box),
        "skin_mask_rle_norm": mask_ops.encode_rle_binary(skin_norm),
        "skin_positive_pixels": mask_ops.count_ones(skin_norm),
        "module_masks": modules,
        "warnings": [],
    }


def decode_gt_module_masks(derived: dict, module_boxes: dict | None = None) -> dict[str, np.ndarray]:
    """Decode derived GT masks; modules without a row fall back to their box."""
    g = derived["grid"]["w"]
    boxes = module_boxes or MODULE_BOXES
    rows = {row["module_id"]: row for row in derived.get("module_masks", [])}
    out = {}
    for module_id in boxes:
        row = rows.get(module_id)
        if row is None or not isinstance(row.get("mask_rle_norm"), str):
            out[module_id] = mask_ops.module_mask_from_box(module_id, g, g, boxes)
        else:
            out[module_id] = mask_ops.decode_rle_mask(row["mask_rle_norm"], g)
    return out


def module_masks_from_result(
    modules_result: ModulesResult,
    grid_size: int,
    module_boxes: dict | None = None,
) -> dict[str, np.ndarray]:
    """
    Predicted module masks on a grid_size grid.

    Each module's RLE is decoded at its own grid and resampled when the
    grids differ. A module that decodes empty falls back to its box.
    """
    g = _grid(grid_size)
    boxes = module_boxes or MODULE_BOXES
    masks = {module_id: mask_ops.create_mask(g, g) for module_id in boxes}

    for module in modules_result.modules:
        if module.module_id not in masks:
            continue
        decoded = mask_ops.decode_rle_mask(module.mask_rle_norm, module.mask_grid)
        if module.mask_grid != g:
            decoded = mask_ops.resize_mask_nearest(decoded, g, g)
        mask_ops.or_mask_into(masks[module.module_id], decoded)
        if mask_ops.count_ones(masks[module.module_id]) == 0 and module.box:
            mask_ops.or_mask_into(masks[module.module_id], mask_ops.bbox_norm_to_mask(module.box, g, g))

    for module_id, mask in masks.items():
        if mask_ops.count_ones(mask) == 0:
            mask_ops.or_mask_into(mask, mask_ops.module_mask_from_box(module_id, g, g, boxes))
    return masks


def score_module_masks(
    pred: dict[str, np.ndarray],
    gt: dict[str, np.ndarray],
    gt_skin: np.ndarray,
) -> dict:
    """
    Per-module IoU, coverage and leakage plus their means.

    Modules with an empty ground truth are skipped.
    """
    scores = []
    for module_id, gt_mask in gt.items():
        gt_pixels = mask_ops.count_ones(gt_mask)
        pred_mask = pred.get(module_id)
        if not gt_pixels or pred_mask is None:
            continue
        scores.append({
            "module_id": module_id,
            "iou": round3(mask_ops.iou_score(pred_mask, gt_mask)),
            "coverage": round3(mask_ops.coverage_score(pred_mask, gt_mask)),
            "leakage": round3(mask_ops.leakage_score(pred_mask, gt_skin)),
            "pred_pixels": mask_ops.count_ones(pred_mask),
            "gt_pixels": gt_pixels,
        })

    def mean(key):
        return round3(sum(row[key] for row in scores) / len(scores)) if scores else 0.0

    summary = {
        "module_scores": scores,
        "miou_mean": mean("iou"),
        "coverage_mean": mean("coverage"),
        "leakage_mean": mean("leakage"),
    }
    logger.debug("Module scores: miou=%.3f over %d modules", summary["miou_mean"], len(scores))
    return summary
