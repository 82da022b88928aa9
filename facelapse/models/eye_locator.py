"""Eye location: the detection contract and an OpenCV Haar-cascade implementation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

Point2D = Tuple[float, float]


class EyeDetectionFailure(Enum):
    NO_FACE = "no_face"
    NO_LANDMARKS = "no_landmarks"
    DECODE_FAILED = "decode_failed"


class EyeDetectionError(Exception):
    """Eye detection did not produce two eye centres."""

    def __init__(self, reason: EyeDetectionFailure, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


@dataclass(frozen=True)
class EyeLocations:
    """Eye centres in pixels with a bottom-left origin (y grows upward)."""

    left_eye: Point2D
    right_eye: Point2D
    image_size: Tuple[int, int]  # (width, height)


class EyeLocator(Protocol):
    def detect(self, image: np.ndarray) -> EyeLocations:
        """Return the eye centres of the single face in ``image`` or raise EyeDetectionError."""
        ...


def _largest(boxes: np.ndarray) -> np.ndarray:
    return max(boxes, key=lambda box: int(box[2]) * int(box[3]))


@dataclass
class HaarEyeLocator:
    """Locate eyes with the frontal-face and eye cascades bundled with OpenCV."""

    scale_factor: float = 1.1
    min_neighbors: int = 5
    min_face_ratio: float = 0.1
    max_detect_dim: int = 1024
    cascade_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        root = Path(self.cascade_dir) if self.cascade_dir is not None else Path(cv2.data.haarcascades)
        self._face = cv2.CascadeClassifier(str(root / "haarcascade_frontalface_default.xml"))
        self._eye = cv2.CascadeClassifier(str(root / "haarcascade_eye.xml"))
        if self._face.empty() or self._eye.empty():
            raise FileNotFoundError(f"Haar cascades not found in {root}")

    def detect(self, image: np.ndarray) -> EyeLocations:
        if image is None or not isinstance(image, np.ndarray) or image.ndim not in (2, 3) or image.size == 0:
            raise EyeDetectionError(EyeDetectionFailure.DECODE_FAILED, "Failed to process image")
        height, width = image.shape[:2]

        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        if gray.dtype != np.uint8:
            raise EyeDetectionError(EyeDetectionFailure.DECODE_FAILED, f"Unsupported dtype {gray.dtype}")
        scale = min(1.0, self.max_detect_dim / float(max(height, width)))
        if scale < 1.0:
            gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)
        gray = cv2.equalizeHist(gray)

        min_face = max(1, int(min(gray.shape[:2]) * self.min_face_ratio))
        faces = self._face.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(min_face, min_face),
        )
        if len(faces) == 0:
            raise EyeDetectionError(EyeDetectionFailure.NO_FACE, "No face detected in image")
        fx, fy, fw, fh = (int(v) for v in _largest(faces))

        # eyes sit in the upper half of the face box
        roi = gray[fy : fy + fh // 2, fx : fx + fw]
        min_eye = max(1, fw // 10)
        eyes = self._eye.detectMultiScale(
            roi,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(min_eye, min_eye),
        )
        if len(eyes) < 2:
            raise EyeDetectionError(EyeDetectionFailure.NO_LANDMARKS, "Could not detect eye landmarks")
        pair = sorted(eyes, key=lambda box: int(box[2]) * int(box[3]), reverse=True)[:2]
        centres = sorted(
            ((fx + ex + ew / 2.0) / scale, (fy + ey + eh / 2.0) / scale) for ex, ey, ew, eh in pair
        )
        (lx, ly), (rx, ry) = centres
        return EyeLocations(
            left_eye=(lx, height - ly),
            right_eye=(rx, height - ry),
            image_size=(width, height),
        )
