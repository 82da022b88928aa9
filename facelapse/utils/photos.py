"""Directory-backed photo library used as the default photo source."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"})
_EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass(frozen=True)
class SourcePhoto:
    """One photo of the montage. ``path`` is the handle passed to the loader."""

    id: str
    timestamp: datetime
    path: Path


def read_capture_time(path: Path) -> Optional[datetime]:
    """Return EXIF DateTimeOriginal (or DateTime) for ``path`` when present."""
    try:
        with Image.open(path) as img:
            exif = img.getexif()
    except (OSError, UnidentifiedImageError):
        return None
    if not exif:
        return None
    raw = exif.get_ifd(ExifTags.IFD.Exif).get(ExifTags.Base.DateTimeOriginal)
    if raw is None:
        raw = exif.get(ExifTags.Base.DateTime)
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw).strip("\x00 "), _EXIF_DATE_FORMAT)
    except ValueError:
        logger.debug("Unparseable EXIF date %r in %s", raw, path)
        return None


def load_image(photo: SourcePhoto) -> Optional[np.ndarray]:
    """Decode ``photo`` into an upright BGR uint8 array, or None if it cannot be read."""
    try:
        with Image.open(photo.path) as img:
            upright = ImageOps.exif_transpose(img).convert("RGB")
            rgb = np.asarray(upright)
    except (OSError, UnidentifiedImageError, ValueError) as exc:
        logger.warning("Failed to decode photo %s (%s): %s", photo.id, photo.path, exc)
        return None
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


class DirectoryPhotoLibrary:
    """Lists the image files of a directory as :class:`SourcePhoto` records."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        if not self.root.is_dir():
            raise FileNotFoundError(f"Photo directory not found: {self.root}")

    def photos(self) -> List[SourcePhoto]:
        photos: List[SourcePhoto] = []
        for path in sorted(self.root.iterdir()):
            if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
                continue
            timestamp = read_capture_time(path)
            if timestamp is None:
                timestamp = datetime.fromtimestamp(path.stat().st_mtime)
            photos.append(SourcePhoto(id=path.stem, timestamp=timestamp, path=path))
        logger.info("Found %d photos in %s", len(photos), self.root)
        return photos

    def load_image(self, photo: SourcePhoto) -> Optional[np.ndarray]:
        return load_image(photo)
