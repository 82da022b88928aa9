"""Image array helpers for facelapse."""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np


def ensure_bgr(image: np.ndarray) -> np.ndarray:
    """Return ``image`` as an HxWx3 uint8 BGR array.

    Grayscale and BGRA inputs are converted; float inputs are assumed to be
    in [0, 1].
    """
    if image is None or image.ndim not in (2, 3) or image.size == 0:
        raise ValueError("Expected a non-empty HxW or HxWxC image array.")
    if image.dtype != np.uint8:
        if np.issubdtype(image.dtype, np.floating):
            image = np.clip(image * 255.0, 0, 255)
        image = image.astype(np.uint8)
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    channels = image.shape[2]
    if channels == 3:
        return image
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if channels == 1:
        return cv2.cvtColor(image[..., 0], cv2.COLOR_GRAY2BGR)
    raise ValueError(f"Unsupported channel count: {channels}")


def image_size(image: np.ndarray) -> Tuple[int, int]:
    """Return (width, height) of an image array."""
    return int(image.shape[1]), int(image.shape[0])


def blank_frame(frame_size: Tuple[int, int]) -> np.ndarray:
    """Allocate a black BGR frame of ``frame_size`` (width, height)."""
    width, height = frame_size
    return np.zeros((height, width, 3), dtype=np.uint8)
