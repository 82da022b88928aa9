#!/usr/bin/env python3
"""Entry point for exporting an eye-aligned photo montage video."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from facelapse.config import AVAILABLE_FPS, ConfigError, FacelapseConfig, load_yaml_config
from facelapse.pipeline.export import ExportError, MontageExporter, NothingToExportError
from facelapse.utils.photos import DirectoryPhotoLibrary


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Assemble dated selfies into an eye-aligned montage video.")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML config file (defaults to built-in settings).",
    )
    parser.add_argument("--photos", type=Path, help="Override the directory of source photos.")
    parser.add_argument("--output", type=Path, help="Destination video file.")
    parser.add_argument(
        "--fps",
        type=int,
        choices=AVAILABLE_FPS,
        help="Playback frame rate of the montage.",
    )
    parser.add_argument(
        "--no-align",
        action="store_true",
        help="Fit every photo to the canvas without eye alignment.",
    )
    parser.add_argument("--width", type=int, help="Override canvas width (pixels).")
    parser.add_argument("--height", type=int, help="Override canvas height (pixels).")
    parser.add_argument(
        "--letterbox",
        action="store_true",
        help="Show whole photos on black bars instead of cropping them to the canvas.",
    )
    parser.add_argument(
        "--backend",
        choices=("ffmpeg", "opencv"),
        help="Video encoder backend.",
    )
    parser.add_argument(
        "--ffmpeg",
        type=str,
        help="ffmpeg executable name (override if using a custom path)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log per-frame decisions.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> FacelapseConfig:
    config = load_yaml_config(args.config) if args.config is not None else FacelapseConfig()
    if args.photos is not None:
        config.io.photos_dir = args.photos
    if args.output is not None:
        config.export.output_video = args.output
    if args.fps is not None:
        config.export.fps = args.fps
    if args.no_align:
        config.export.align_eyes = False
    if args.width is not None:
        config.canvas.width = args.width
    if args.height is not None:
        config.canvas.height = args.height
    if args.letterbox:
        config.canvas.fill = False
    if args.backend is not None:
        config.encode.backend = args.backend
    if args.ffmpeg is not None:
        config.encode.ffmpeg = args.ffmpeg
    return config.validate()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}")
        return 2
    if config.io.photos_dir is None:
        print("No photo directory given (use --photos or io.photos_dir).")
        return 2

    try:
        library = DirectoryPhotoLibrary(config.io.photos_dir)
        exporter = MontageExporter(config, image_loader=library.load_image)
    except FileNotFoundError as exc:
        print(exc)
        return 2
    photos = library.photos()

    with tqdm(total=100, desc="Facelapse export", unit="%") as bar:

        def on_progress(value: float) -> None:
            bar.n = round(value * 100)
            bar.refresh()

        try:
            result = exporter.export(photos, progress=on_progress)
        except NothingToExportError as exc:
            print(exc)
            return 1
        except ExportError as exc:
            print(f"Export failed ({exc.category}): {exc}")
            return 1

    print(
        f"Video written to {result.output_path}: {result.frames_appended}/{result.total_photos} frames, "
        f"{result.aligned_frames} aligned, {result.duration:.2f}s at {result.fps} fps"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
