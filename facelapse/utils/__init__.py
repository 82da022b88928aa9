"""Utility helpers for facelapse."""

from .fs import ensure_dir
from .video import EncoderError, EncodeStatus, SequentialVideoEncoder, make_sink

__all__ = [
    "ensure_dir",
    "EncoderError",
    "EncodeStatus",
    "SequentialVideoEncoder",
    "make_sink",
]
