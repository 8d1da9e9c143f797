"""
Visualization utilities for drawing annotations on images.
"""

import math

import cv2
import numpy as np

from skin_diagnosis.config import COLORS
from skin_diagnosis.core import mask_ops
from skin_diagnosis.core.models import FaceCrop, HeatmapRegion, ModulesResult, PixelBox, PolygonRegion, Region, SkinMask


def _frame_px(face_crop: FaceCrop, shape: tuple[int, int]) -> tuple[int, int, int, int]:
    """Face crop as integer (x, y, w, h) in an image of the given shape."""
    h, w = shape[:2]
    box = face_crop.box_in(w, h)
    x = max(0, min(w - 1, math.floor(box["x"])))
    y = max(0, min(h - 1, math.floor(box["y"])))
    fw = max(1, min(w - x, round(box["w"])))
    fh = max(1, min(h - y, round(box["h"])))
    return x, y, fw, fh


def _paste_grid(grid: np.ndarray, frame: tuple[int, int, int, int], shape: tuple[int, int]) -> np.ndarray:
    """Stretch a normalized grid over the frame of a full-size canvas."""
    x, y, fw, fh = frame
    canvas = np.zeros(shape[:2], dtype=np.uint8)
    canvas[y:y + fh, x:x + fw] = cv2.resize(grid.astype(np.uint8), (fw, fh), interpolation=cv2.INTER_NEAREST)
    return canvas


def _issue_color(issue_type: str) -> tuple[int, int, int]:
    return COLORS.get(issue_type, COLORS["module_outline"])


def draw_module_masks(
    image: np.ndarray,
    modules: ModulesResult,
    alpha: float = 0.35,
    draw_labels: bool = True,
) -> np.ndarray:
    """
    Overlay module masks, colored by each module's top issue.

    Args:
        image: BGR image the face crop refers to (any scale)
        modules: Module card
        alpha: Overlay opacity
        draw_labels: Whether to draw module labels

    Returns:
        Annotated image copy
    """
    annotated = image.copy()
    frame = _frame_px(modules.face_crop, image.shape)
    overlay = np.zeros_like(annotated)

    for module in modules.modules:
        grid = mask_ops.decode_rle_mask(module.mask_rle_norm, module.mask_grid)
        canvas = _paste_grid(grid, frame, image.shape)
        color = _issue_color(module.issues[0].issue_type) if module.issues else COLORS["module_outline"]
        overlay[canvas > 0] = color

        contours, _ = cv2.findContours(canvas, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        cv2.drawContours(annotated, contours, -1, COLORS["module_outline"], 1)

        if draw_labels and module.box:
            x, y, fw, fh = frame
            label_x = int(x + module.box["x"] * fw)
            label_y = int(y + module.box["y"] * fh) + 10
            cv2.putText(
                annotated,
                module.module_id,
                (label_x, label_y),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.3,
                COLORS["module_outline"],
                1,
            )

    covered = overlay.any(axis=2)
    blended = cv2.addWeighted(annotated, 1 - alpha, overlay, alpha, 0)
    annotated[covered] = blended[covered]
    return annotated


def draw_region(image: np.ndarray, region: Region, face_crop: FaceCrop, alpha: float = 0.4) -> np.ndarray:
    """
    Draw a single sanitized region inside the face crop.

    Heatmaps are blended with their value as opacity; boxes and polygons
    are outlined.
    """
    annotated = image.copy()
    x, y, fw, fh = frame = _frame_px(face_crop, image.shape)
    color = _issue_color(region.issue_type)

    if isinstance(region, HeatmapRegion):
        values = cv2.resize(region.grid().astype(np.float32), (fw, fh), interpolation=cv2.INTER_LINEAR)
        weight = np.clip(values * alpha * region.style.intensity, 0, 1)[:, :, None]
        patch = annotated[y:y + fh, x:x + fw].astype(np.float32)
        tint = np.array(color, dtype=np.float32)[None, None, :]
        annotated[y:y + fh, x:x + fw] = (patch * (1 - weight) + tint * weight).astype(np.uint8)
    elif isinstance(region, PolygonRegion):
        points = np.array(
            [[int(x + px * fw), int(y + py * fh)] for px, py in region.points], dtype=np.int32
        )
        cv2.polylines(annotated, [points], True, color, 2)
    elif region.bounds is not None:
        grid = mask_ops.bbox_norm_to_mask(region.bounds, fw, fh)
        canvas = _paste_grid(grid, frame, image.shape)
        contours, _ = cv2.findContours(canvas, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        cv2.drawContours(annotated, contours, -1, color, 2)

    return annotated


def create_debug_visualization(
    image: np.ndarray,
    skin: SkinMask,
    boxes: dict[str, PixelBox] | None = None,
    show_skin_mask: bool = True,
    show_roi_bbox: bool = True,
) -> np.ndarray:
    """
    Create debug visualization with overlays.

    Args:
        image: BGR analysis image
        skin: Skin ROI of the same image
        boxes: Optional face sub-region boxes
        show_skin_mask: Overlay skin mask in green
        show_roi_bbox: Draw ROI and sub-region boxes

    Returns:
        Debug visualization image
    """
    debug_img = image.copy()

    if show_skin_mask:
        skin_overlay = np.zeros_like(debug_img)
        skin_overlay[skin.mask > 0] = COLORS["debug_skin"]
        debug_img = cv2.addWeighted(debug_img, 0.7, skin_overlay, 0.3, 0)

    if show_roi_bbox:
        for name, box in (boxes or {"full": skin.bbox}).items():
            thickness = 2 if name == "full" else 1
            cv2.rectangle(debug_img, (box.x0, box.y0), (box.x1, box.y1), COLORS["debug_roi"], thickness)

    return debug_img


def create_comparison_image(original: np.ndarray, annotated: np.ndarray) -> np.ndarray:
    """Place original and annotated images side by side."""
    h = max(original.shape[0], annotated.shape[0])

    def pad(img):
        if img.shape[0] == h:
            return img
        return cv2.copyMakeBorder(img, 0, h - img.shape[0], 0, 0, cv2.BORDER_CONSTANT, value=(0, 0, 0))

    separator = np.full((h, 4, 3), 255, dtype=np.uint8)
    return np.hstack([pad(original), separator, pad(annotated)])
