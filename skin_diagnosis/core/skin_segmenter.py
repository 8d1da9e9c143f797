"""
Skin segmentation module.
Finds the dominant skin-colored connected region of the analysis image.
"""

import logging
import math

import numpy as np
from skimage.measure import label

from skin_diagnosis.config import SkinSegmentationConfig
from skin_diagnosis.core.color import rgb_to_ycrcb
from skin_diagnosis.core.errors import SkinRoiError
from skin_diagnosis.core.models import PixelBox, SkinMask

logger = logging.getLogger(__name__)


class SkinSegmenter:
    """Select the best skin component by size and centrality."""

    def __init__(self, config: SkinSegmentationConfig | None = None):
        self.config = config or SkinSegmentationConfig()

    def create_skin_mask(self, image: np.ndarray) -> SkinMask:
        """
        Segment the skin ROI.

        Args:
            image: RGB image

        Returns:
            SkinMask of the winning component

        Raises:
            SkinRoiError: "skin_roi_not_found" when no pixel qualifies,
                "skin_roi_too_small" when every component is too small
        """
        h, w = image.shape[:2]
        n = h * w

        seeds = self._create_seed_mask(image)
        labels, count = label(seeds, connectivity=1, background=0, return_num=True)
        if count == 0:
            raise SkinRoiError("skin_roi_not_found")

        sizes = np.bincount(labels.ravel(), minlength=count + 1)
        touches = self._components_touching_center(labels, count, (h, w))

        min_accept = max(
            self.config.min_component_pixels,
            math.floor(n * self.config.min_component_fraction),
        )
        scores = sizes.astype(np.float64) * np.where(touches, self.config.center_bonus, 1.0)
        scores[0] = -1.0
        scores[sizes < min_accept] = -1.0

        # argmax keeps the first component in raster order on ties
        best = int(np.argmax(scores))
        if scores[best] < 0:
            logger.debug(
                "No component reached %d pixels (largest %d)", min_accept, int(sizes[1:].max())
            )
            raise SkinRoiError("skin_roi_too_small")

        mask = (labels == best).astype(np.uint8)
        ys, xs = np.nonzero(mask)
        bbox = PixelBox(int(xs.min()), int(ys.min()), int(xs.max()), int(ys.max()))
        skin_pixels = int(sizes[best])

        logger.debug(
            "Skin ROI: %d components, best=%d pixels, bbox=%s, center=%s",
            count, skin_pixels, bbox.to_dict(), bool(touches[best]),
        )

        return SkinMask(
            mask=mask,
            skin_pixels=skin_pixels,
            coverage=skin_pixels / n,
            bbox=bbox,
            touches_center=bool(touches[best]),
        )

    def _create_seed_mask(self, image: np.ndarray) -> np.ndarray:
        """Pixels inside the YCrCb skin box."""
        cfg = self.config
        y, cr, cb = rgb_to_ycrcb(image)
        seeds = (
            (y >= cfg.y_min)
            & (cr >= cfg.cr_min) & (cr <= cfg.cr_max)
            & (cb >= cfg.cb_min) & (cb <= cfg.cb_max)
        )
        return seeds.astype(np.uint8)

    def _components_touching_center(
        self, labels: np.ndarray, count: int, shape: tuple[int, int]
    ) -> np.ndarray:
        """Boolean per label id, True when the component reaches the central band."""
        h, w = shape
        cx0 = math.floor(w * self.config.center_x_band[0])
        cx1 = math.ceil(w * self.config.center_x_band[1])
        cy0 = math.floor(h * self.config.center_y_band[0])
        cy1 = math.ceil(h * self.config.center_y_band[1])

        band = labels[cy0:cy1 + 1, cx0:cx1 + 1]
        touches = np.zeros(count + 1, dtype=bool)
        touches[np.unique(band)] = True
        touches[0] = False
        return touches
