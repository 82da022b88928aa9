"""Configuration dataclasses and utilities for facelapse exports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

AVAILABLE_FPS: Tuple[int, ...] = (5, 10, 15, 24, 30, 60)


class ConfigError(ValueError):
    """Raised when a configuration value is outside its allowed range."""


@dataclass
class IOConfig:
    photos_dir: Optional[Path] = None
    output_root: Path = Path("output")


@dataclass
class CanvasConfig:
    width: int = 1920
    height: int = 1080
    fill: bool = True  # cover the canvas and crop; False letterboxes

    @property
    def size(self) -> Tuple[int, int]:
        """Return (width, height)."""
        return self.width, self.height


@dataclass
class ExportConfig:
    fps: int = 10
    align_eyes: bool = True
    output_video: Optional[Path] = None


@dataclass
class EncodeConfig:
    backend: str = "ffmpeg"
    codec: str = "libx264"
    bitrate: str = "6M"
    profile: str = "high"
    pix_fmt: str = "yuv420p"
    fourcc: str = "mp4v"
    ffmpeg: str = "ffmpeg"
    queue_size: int = 4
    poll_interval: float = 0.01  # seconds


@dataclass
class DetectionConfig:
    scale_factor: float = 1.1
    min_neighbors: int = 5
    min_face_ratio: float = 0.1
    max_detect_dim: int = 1024


@dataclass
class FacelapseConfig:
    io: IOConfig = field(default_factory=IOConfig)
    canvas: CanvasConfig = field(default_factory=CanvasConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    encode: EncodeConfig = field(default_factory=EncodeConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)

    def validate(self) -> "FacelapseConfig":
        """Check value ranges, raising ConfigError on the first problem."""
        if self.export.fps not in AVAILABLE_FPS:
            raise ConfigError(
                f"Unsupported frame rate {self.export.fps}; choose one of {list(AVAILABLE_FPS)}"
            )
        width, height = self.canvas.size
        if width <= 0 or height <= 0:
            raise ConfigError(f"Canvas size must be positive, got {width}x{height}")
        if width % 2 or height % 2:
            raise ConfigError(f"Canvas size must be even for yuv420p output, got {width}x{height}")
        if self.encode.backend not in ("ffmpeg", "opencv"):
            raise ConfigError(f"Unknown encoder backend: {self.encode.backend}")
        if self.encode.queue_size < 1:
            raise ConfigError("encode.queue_size must be at least 1")
        if self.encode.poll_interval <= 0:
            raise ConfigError("encode.poll_interval must be positive")
        return self

    @staticmethod
    def from_dict(config: Dict[str, Any], base_dir: Optional[Path] = None) -> "FacelapseConfig":
        """Build a FacelapseConfig from nested dictionaries."""
        io_cfg = dict(config.get("io", {}))
        export_cfg = dict(config.get("export", {}))

        def resolve_relative_to_base(value: Optional[str]) -> Optional[Path]:
            if value is None:
                return None
            path = Path(value)
            if path.is_absolute() or base_dir is None:
                return path
            return base_dir / path

        if "photos_dir" in io_cfg:
            io_cfg["photos_dir"] = resolve_relative_to_base(io_cfg.get("photos_dir"))
        if "output_root" in io_cfg:
            io_cfg["output_root"] = resolve_relative_to_base(io_cfg.get("output_root"))
        if "output_video" in export_cfg:
            export_cfg["output_video"] = resolve_relative_to_base(export_cfg.get("output_video"))

        try:
            return FacelapseConfig(
                io=IOConfig(**io_cfg),
                canvas=CanvasConfig(**config.get("canvas", {})),
                export=ExportConfig(**export_cfg),
                encode=EncodeConfig(**config.get("encode", {})),
                detection=DetectionConfig(**config.get("detection", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_yaml_config(path: Path) -> FacelapseConfig:
    """Load a YAML configuration file into a FacelapseConfig."""
    import yaml

    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    return FacelapseConfig.from_dict(raw, base_dir=path.parent)
