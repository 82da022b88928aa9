"""Render source photos into fixed-size canvas frames."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from facelapse.pipeline.alignment import SimilarityTransform, fit_rect
from facelapse.utils.img import blank_frame, ensure_bgr, image_size


class FrameBufferError(RuntimeError):
    """A canvas frame could not be allocated or drawn."""


def _area_prescale(image: np.ndarray, matrix: np.ndarray, scale: float) -> Tuple[np.ndarray, np.ndarray]:
    """Shrink ``image`` by ``scale`` with area averaging and fold the resize into ``matrix``.

    The warp that follows is then close to unit scale, so detail finer than
    an output pixel is averaged instead of aliased.
    """
    height, width = image.shape[:2]
    new_width = max(1, int(round(width * scale)))
    new_height = max(1, int(round(height * scale)))
    if (new_width, new_height) == (width, height):
        return image, matrix
    shrunk = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_AREA)
    sx = new_width / width
    sy = new_height / height
    return shrunk, matrix @ np.diag([1.0 / sx, 1.0 / sy, 1.0])


@dataclass
class FrameCompositor:
    """Draw an image onto a black canvas through a similarity transform.

    Without a transform the image is aspect-fitted and centred (or cropped
    to cover the canvas when ``fill`` is set); with one the full-resolution
    image is mapped by it and clipped to the canvas.
    """

    canvas_size: Tuple[int, int]
    fill: bool = False
    interpolation: int = cv2.INTER_LINEAR

    def render(self, image: np.ndarray, transform: Optional[SimilarityTransform] = None) -> np.ndarray:
        image = ensure_bgr(image)
        if transform is None:
            size = image_size(image)
            transform = fit_rect(size, self.canvas_size, self.fill).transform(size)
        matrix = transform.matrix()
        try:
            if transform.scale < 1.0:
                image, matrix = _area_prescale(image, matrix, transform.scale)
            frame = blank_frame(self.canvas_size)
            frame = cv2.warpAffine(
                image,
                matrix,
                self.canvas_size,
                dst=frame,
                flags=self.interpolation,
                borderMode=cv2.BORDER_CONSTANT,
                borderValue=(0, 0, 0),
            )
        except (MemoryError, cv2.error) as exc:
            raise FrameBufferError(f"Failed to render {self.canvas_size} frame: {exc}") from exc
        return frame

    def composite_fit(self, image: np.ndarray) -> np.ndarray:
        return self.render(image)

    def composite_aligned(self, image: np.ndarray, transform: SimilarityTransform) -> np.ndarray:
        return self.render(image, transform)
