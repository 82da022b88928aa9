"""Eye-pair similarity alignment and canvas/image coordinate reconciliation.

Three coordinate spaces meet here:

* detection space: eye centres in source pixels, bottom-left origin;
* image space: source pixels, top-left origin (numpy row/column order);
* canvas space: output frame pixels, top-left origin.

The reference eye pair lives in canvas space and is captured through the
same aspect-fit geometry the compositor uses for unaligned frames.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from facelapse.models.eye_locator import EyeLocations, Point2D

MIN_EYE_DISTANCE = 0.1


@dataclass(frozen=True)
class CanvasEyeReference:
    left: Point2D
    right: Point2D


@dataclass(frozen=True)
class AlignmentSkip:
    """Returned instead of a transform when the source eyes are degenerate."""

    source_distance: float
    reason: str = "degenerate_eyes"


@dataclass(frozen=True)
class SimilarityTransform:
    rotation: float  # radians
    scale: float
    translation: Tuple[float, float]

    def matrix(self) -> np.ndarray:
        """Return the 2x3 affine matrix mapping image space to canvas space."""
        cos_r = math.cos(self.rotation) * self.scale
        sin_r = math.sin(self.rotation) * self.scale
        tx, ty = self.translation
        return np.array([[cos_r, -sin_r, tx], [sin_r, cos_r, ty]], dtype=np.float64)

    def apply(self, point: Point2D) -> Point2D:
        x, y = self.matrix() @ np.array([point[0], point[1], 1.0])
        return float(x), float(y)


@dataclass(frozen=True)
class FitRect:
    """Placement of an aspect-fitted image on the canvas."""

    x: float
    y: float
    width: float
    height: float

    def transform(self, image_size: Tuple[int, int]) -> SimilarityTransform:
        return SimilarityTransform(rotation=0.0, scale=self.width / image_size[0], translation=(self.x, self.y))


def fit_rect(image_size: Tuple[int, int], canvas_size: Tuple[int, int], fill: bool = False) -> FitRect:
    """Centre ``image_size`` on ``canvas_size`` preserving its aspect ratio.

    By default the whole image is letterboxed inside the canvas. With
    ``fill`` the image covers the canvas and the overflow is cropped.
    """
    image_w, image_h = image_size
    canvas_w, canvas_h = canvas_size
    image_aspect = image_w / image_h
    canvas_aspect = canvas_w / canvas_h
    if (image_aspect > canvas_aspect) != fill:
        scaled_height = canvas_w / image_aspect
        return FitRect(x=0.0, y=(canvas_h - scaled_height) / 2.0, width=float(canvas_w), height=scaled_height)
    scaled_width = canvas_h * image_aspect
    return FitRect(x=(canvas_w - scaled_width) / 2.0, y=0.0, width=scaled_width, height=float(canvas_h))


def to_top_left(point: Point2D, image_height: float) -> Point2D:
    """Flip a bottom-left-origin point into top-left-origin pixel space."""
    return point[0], image_height - point[1]


def reference_from_detection(
    eyes: EyeLocations,
    image_size: Tuple[int, int],
    canvas_size: Tuple[int, int],
    fill: bool = False,
) -> CanvasEyeReference:
    """Map detected eyes into canvas space through the aspect-fit placement."""
    rect = fit_rect(image_size, canvas_size, fill)
    eyes_w, eyes_h = eyes.image_size

    def to_canvas(point: Point2D) -> Point2D:
        return (
            rect.x + (point[0] / eyes_w) * rect.width,
            rect.y + (1.0 - point[1] / eyes_h) * rect.height,
        )

    return CanvasEyeReference(left=to_canvas(eyes.left_eye), right=to_canvas(eyes.right_eye))


def _translate(tx: float, ty: float) -> np.ndarray:
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]])


def _rotate(theta: float) -> np.ndarray:
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _scale(factor: float) -> np.ndarray:
    return np.array([[factor, 0.0, 0.0], [0.0, factor, 0.0], [0.0, 0.0, 1.0]])


def solve(reference: CanvasEyeReference, source: EyeLocations) -> Union[SimilarityTransform, AlignmentSkip]:
    """Similarity transform taking the source eye pair onto the reference pair.

    Returns :class:`AlignmentSkip` when the source eyes are closer than
    ``MIN_EYE_DISTANCE`` pixels; callers fall back to a plain fit.
    """
    image_h = source.image_size[1]
    src_left = to_top_left(source.left_eye, image_h)
    src_right = to_top_left(source.right_eye, image_h)

    src_dx, src_dy = src_right[0] - src_left[0], src_right[1] - src_left[1]
    ref_dx, ref_dy = reference.right[0] - reference.left[0], reference.right[1] - reference.left[1]

    src_dist = math.hypot(src_dx, src_dy)
    if src_dist <= MIN_EYE_DISTANCE:
        return AlignmentSkip(source_distance=src_dist)

    scale = math.hypot(ref_dx, ref_dy) / src_dist
    rotation = math.atan2(ref_dy, ref_dx) - math.atan2(src_dy, src_dx)

    # translate -> rotate -> scale -> translate, applied in that order
    composed = (
        _translate(*reference.left)
        @ _scale(scale)
        @ _rotate(rotation)
        @ _translate(-src_left[0], -src_left[1])
    )
    return SimilarityTransform(
        rotation=rotation,
        scale=scale,
        translation=(float(composed[0, 2]), float(composed[1, 2])),
    )
