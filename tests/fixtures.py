"""
Synthetic images shared by the tests.
"""

import numpy as np

from skin_diagnosis.utils.image_utils import encode_image_to_bytes

SKIN_RGB = (200, 150, 120)
RED_PATCH_RGB = (215, 120, 110)
NOT_SKIN_RGB = (0, 0, 255)


def flat_image(size: int = 256, color=SKIN_RGB) -> np.ndarray:
    image = np.zeros((size, size, 3), dtype=np.uint8)
    image[:, :] = color
    return image


def textured_image(size: int = 256, color=SKIN_RGB, sigma: float = 8.0, seed: int = 0) -> np.ndarray:
    """Skin-colored image with gray noise; the noise leaves Cr/Cb unchanged."""
    rng = np.random.default_rng(seed)
    noise = np.rint(rng.normal(0.0, sigma, (size, size))).astype(np.int32)
    image = np.array(color, dtype=np.int32)[None, None, :] + noise[:, :, None]
    return np.clip(image, 0, 255).astype(np.uint8)


def with_red_patch(image: np.ndarray) -> np.ndarray:
    patched = image.copy()
    patched[88:186, 35:221] = RED_PATCH_RGB
    return patched


def png_bytes(image: np.ndarray) -> bytes:
    return encode_image_to_bytes(image, "PNG")
