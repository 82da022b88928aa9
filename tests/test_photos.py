import os
from datetime import datetime
from pathlib import Path

import numpy as np
import pytest
from PIL import ExifTags, Image

from facelapse.utils.photos import DirectoryPhotoLibrary, SourcePhoto, load_image, read_capture_time


def _save_jpeg(path: Path, colour=(255, 0, 0), size=(40, 30), taken=None, orientation=None) -> None:
    image = Image.new("RGB", size, colour)
    exif = Image.Exif()
    if taken is not None:
        exif[ExifTags.Base.DateTime] = taken
    if orientation is not None:
        exif[ExifTags.Base.Orientation] = orientation
    image.save(path, format="JPEG", exif=exif.tobytes(), quality=95)


def test_load_image_returns_bgr(tmp_path):
    path = tmp_path / "red.png"
    Image.new("RGB", (8, 6), (255, 0, 0)).save(path)

    image = load_image(SourcePhoto(id="red", timestamp=datetime(2024, 1, 1), path=path))

    assert image.shape == (6, 8, 3)
    assert image.dtype == np.uint8
    assert image[0, 0].tolist() == [0, 0, 255]


def test_load_image_applies_exif_orientation(tmp_path):
    path = tmp_path / "rotated.jpg"
    _save_jpeg(path, size=(40, 30), orientation=6)

    image = load_image(SourcePhoto(id="rotated", timestamp=datetime(2024, 1, 1), path=path))

    assert image.shape[:2] == (40, 30)


def test_load_image_returns_none_for_undecodable_file(tmp_path):
    path = tmp_path / "broken.jpg"
    path.write_bytes(b"not an image")

    assert load_image(SourcePhoto(id="broken", timestamp=datetime(2024, 1, 1), path=path)) is None


def test_read_capture_time_from_exif(tmp_path):
    path = tmp_path / "dated.jpg"
    _save_jpeg(path, taken="2023:05:06 07:08:09")

    assert read_capture_time(path) == datetime(2023, 5, 6, 7, 8, 9)


def test_library_lists_images_with_timestamps(tmp_path):
    _save_jpeg(tmp_path / "b.jpg", taken="2023:01:02 00:00:00")
    Image.new("RGB", (4, 4)).save(tmp_path / "a.png")
    (tmp_path / "notes.txt").write_text("skip me", encoding="utf-8")
    os.utime(tmp_path / "a.png", (1_600_000_000, 1_600_000_000))

    photos = DirectoryPhotoLibrary(tmp_path).photos()

    assert [photo.id for photo in photos] == ["a", "b"]
    assert photos[0].timestamp == datetime.fromtimestamp(1_600_000_000)
    assert photos[1].timestamp == datetime(2023, 1, 2)


def test_library_requires_existing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        DirectoryPhotoLibrary(tmp_path / "missing")


def test_library_loads_its_photos(tmp_path):
    Image.new("RGB", (8, 6), (0, 255, 0)).save(tmp_path / "green.png")
    library = DirectoryPhotoLibrary(tmp_path)

    (photo,) = library.photos()
    image = library.load_image(photo)

    assert image.shape == (6, 8, 3)
    assert image[0, 0].tolist() == [0, 255, 0]
