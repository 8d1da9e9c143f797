"""
Image loading and conversion utilities.
"""

import io

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from skin_diagnosis.core.errors import DecodeError


def load_image_from_bytes(data: bytes) -> np.ndarray:
    """
    Decode image bytes (e.g., from the Streamlit file uploader).

    EXIF orientation is applied and any alpha channel is dropped.

    Args:
        data: Raw image bytes

    Returns:
        RGB image as a uint8 numpy array

    Raises:
        DecodeError: If the bytes are not a readable image
    """
    try:
        pil_image = Image.open(io.BytesIO(data))
        pil_image = ImageOps.exif_transpose(pil_image)
        if pil_image.mode != "RGB":
            pil_image = pil_image.convert("RGB")
        rgb_array = np.array(pil_image)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeError(message=f"Could not decode image: {exc}") from exc

    if rgb_array.ndim != 3 or rgb_array.shape[0] == 0 or rgb_array.shape[1] == 0:
        raise DecodeError(message="Decoded image is empty")
    return rgb_array


def resize_image(
    image: np.ndarray,
    max_dimension: int = 256,
) -> tuple[np.ndarray, float]:
    """
    Resize image if larger than max dimension while preserving aspect ratio.

    Args:
        image: Input image
        max_dimension: Maximum width or height

    Returns:
        Tuple of (resized image, scale factor)
    """
    h, w = image.shape[:2]
    scale = 1.0

    if max(h, w) > max_dimension:
        scale = max_dimension / max(h, w)
        new_w = max(1, int(round(w * scale)))
        new_h = max(1, int(round(h * scale)))
        image = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)

    return image, scale


def bgr_to_rgb(image: np.ndarray) -> np.ndarray:
    """Convert BGR (OpenCV) to RGB (PIL/Streamlit)."""
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def rgb_to_bgr(image: np.ndarray) -> np.ndarray:
    """Convert RGB to BGR (OpenCV)."""
    return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)


def encode_image_to_bytes(image: np.ndarray, format: str = "PNG") -> bytes:
    """
    Encode an RGB image to bytes.

    Args:
        image: RGB image
        format: Output format (PNG, JPEG)

    Returns:
        Encoded image bytes
    """
    buffer = io.BytesIO()
    Image.fromarray(image).save(buffer, format=format)
    return buffer.getvalue()
