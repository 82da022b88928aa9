"""Filesystem helpers."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional


def ensure_dir(path: Path) -> None:
    """Create the directory if it does not yet exist."""
    path.mkdir(parents=True, exist_ok=True)


def default_output_path(output_root: Path, now: Optional[float] = None) -> Path:
    """Timestamped montage file name inside ``output_root``."""
    stamp = int(time.time() if now is None else now)
    return output_root / f"facelapse_{stamp}.mp4"


def remove_if_exists(path: Path) -> None:
    if path.exists():
        path.unlink()
