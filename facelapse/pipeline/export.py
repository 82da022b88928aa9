"""Montage export: sorted photos -> aligned canvas frames -> one video file."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from facelapse.config import FacelapseConfig
from facelapse.models.eye_locator import EyeDetectionError, EyeLocator, HaarEyeLocator
from facelapse.pipeline.alignment import (
    AlignmentSkip,
    CanvasEyeReference,
    reference_from_detection,
    solve,
)
from facelapse.pipeline.compositor import FrameBufferError, FrameCompositor
from facelapse.pipeline.progress import ProgressCallback, ProgressDispatcher
from facelapse.utils.fs import default_output_path
from facelapse.utils.img import ensure_bgr, image_size
from facelapse.utils.photos import SourcePhoto, load_image
from facelapse.utils.video import EncoderError, SequentialVideoEncoder, make_sink

logger = logging.getLogger(__name__)

ImageLoader = Callable[[SourcePhoto], Optional[np.ndarray]]
EncoderFactory = Callable[[Path, Tuple[int, int], int], SequentialVideoEncoder]


class ExportError(RuntimeError):
    category = "export"


class NothingToExportError(ExportError):
    category = "nothing_to_export"


class ExportCancelledError(ExportError):
    category = "cancelled"


class ExportFailedError(ExportError):
    category = "encoder"


@dataclass
class ExportResult:
    output_path: Path
    total_photos: int
    fps: int
    frames_appended: int = 0
    aligned_frames: int = 0
    reference: Optional[CanvasEyeReference] = None
    presentation_times: List[float] = field(default_factory=list)
    skipped: Counter = field(default_factory=Counter)
    fallbacks: Counter = field(default_factory=Counter)

    @property
    def duration(self) -> float:
        return self.frames_appended / self.fps


class MontageExporter:
    """Encode a chronologically sorted photo sequence into a single video.

    When eye alignment is enabled the first photo with a successful eye
    detection fixes the canvas eye reference for the whole run; every later
    photo is rotated, scaled and translated so its eyes land on it. Photos
    that cannot be decoded or rendered are skipped; photos whose eyes cannot
    be located are fitted without alignment.
    """

    def __init__(
        self,
        config: FacelapseConfig,
        eye_locator: Optional[EyeLocator] = None,
        image_loader: ImageLoader = load_image,
        encoder_factory: Optional[EncoderFactory] = None,
    ) -> None:
        self.config = config.validate()
        self.canvas_size = config.canvas.size
        self.compositor = FrameCompositor(self.canvas_size, fill=config.canvas.fill)
        self.image_loader = image_loader
        self.encoder_factory = encoder_factory or self._default_encoder
        if eye_locator is None and config.export.align_eyes:
            eye_locator = HaarEyeLocator(**asdict(config.detection))
        self.eye_locator = eye_locator

    def _default_encoder(self, path: Path, frame_size: Tuple[int, int], fps: int) -> SequentialVideoEncoder:
        encode = self.config.encode
        sink = make_sink(
            encode.backend,
            ffmpeg=encode.ffmpeg,
            codec=encode.codec,
            bitrate=encode.bitrate,
            profile=encode.profile,
            pix_fmt=encode.pix_fmt,
            fourcc=encode.fourcc,
        )
        return SequentialVideoEncoder(
            path,
            frame_size,
            fps,
            sink=sink,
            queue_size=encode.queue_size,
            poll_interval=encode.poll_interval,
        )

    def export(
        self,
        photos: Sequence[SourcePhoto],
        output_path: Optional[Path] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExportResult:
        ordered = sorted(photos, key=lambda photo: photo.timestamp)
        if not ordered:
            raise NothingToExportError("No photos to export")

        fps = self.config.export.fps
        path = Path(
            output_path
            or self.config.export.output_video
            or default_output_path(self.config.io.output_root)
        )
        result = ExportResult(output_path=path, total_photos=len(ordered), fps=fps)
        logger.info(
            "Exporting %d photos to %s (%d fps, align_eyes=%s)",
            len(ordered),
            path,
            fps,
            self.config.export.align_eyes,
        )

        dispatcher = ProgressDispatcher(progress) if progress is not None else None
        try:
            encoder = self.encoder_factory(path, self.canvas_size, fps)
            with encoder:
                self._encode(ordered, encoder, result, dispatcher, cancel_event)
                if result.frames_appended == 0:
                    raise EncoderError("No frames could be written")
                encoder.finish()
            if dispatcher is not None and dispatcher.last_value != 1.0:
                dispatcher.report(1.0)
        except EncoderError as exc:
            raise ExportFailedError(f"Failed to create video: {exc}") from exc
        finally:
            if dispatcher is not None:
                dispatcher.close()

        logger.info(
            "Wrote %s: %d/%d frames (%d aligned), skipped=%s, fallbacks=%s",
            path,
            result.frames_appended,
            result.total_photos,
            result.aligned_frames,
            dict(result.skipped),
            dict(result.fallbacks),
        )
        return result

    def _encode(
        self,
        ordered: Sequence[SourcePhoto],
        encoder: SequentialVideoEncoder,
        result: ExportResult,
        dispatcher: Optional[ProgressDispatcher],
        cancel_event: Optional[threading.Event],
    ) -> None:
        total = len(ordered)
        reference: Optional[CanvasEyeReference] = None
        for index, photo in enumerate(ordered):
            if cancel_event is not None and cancel_event.is_set():
                raise ExportCancelledError(f"Export cancelled after {result.frames_appended} frames")

            frame, reference = self._render_photo(photo, reference, result)
            if frame is None:
                continue
            result.presentation_times.append(encoder.append_frame(frame))
            result.frames_appended += 1
            del frame
            if dispatcher is not None:
                dispatcher.report((index + 1) / total)
        result.reference = reference

    def _render_photo(
        self,
        photo: SourcePhoto,
        reference: Optional[CanvasEyeReference],
        result: ExportResult,
    ) -> Tuple[Optional[np.ndarray], Optional[CanvasEyeReference]]:
        """Render one photo; returns the frame (None when skipped) and the reference to carry on."""
        image = self.image_loader(photo)
        if image is None:
            logger.warning("Skipping %s: image could not be loaded", photo.id)
            result.skipped["decode_failed"] += 1
            return None, reference
        try:
            image = ensure_bgr(image)
        except ValueError as exc:
            logger.warning("Skipping %s: %s", photo.id, exc)
            result.skipped["decode_failed"] += 1
            return None, reference

        try:
            if not self.config.export.align_eyes or self.eye_locator is None:
                return self.compositor.composite_fit(image), reference

            try:
                eyes = self.eye_locator.detect(image)
            except EyeDetectionError as exc:
                logger.debug("No eye alignment for %s: %s", photo.id, exc)
                result.fallbacks[exc.reason.value] += 1
                return self.compositor.composite_fit(image), reference
            except Exception:
                logger.warning("Eye locator failed on %s, fitting without alignment", photo.id, exc_info=True)
                result.fallbacks["detector_error"] += 1
                return self.compositor.composite_fit(image), reference

            if reference is None:
                # the first successful detection anchors the run and is never replaced
                reference = reference_from_detection(
                    eyes, image_size(image), self.canvas_size, self.compositor.fill
                )
                logger.info("Eye reference set from %s: %s", photo.id, reference)
                return self.compositor.composite_fit(image), reference

            transform = solve(reference, eyes)
            if isinstance(transform, AlignmentSkip):
                logger.debug(
                    "No eye alignment for %s: eye distance %.3f px", photo.id, transform.source_distance
                )
                result.fallbacks[transform.reason] += 1
                return self.compositor.composite_fit(image), reference

            frame = self.compositor.composite_aligned(image, transform)
            result.aligned_frames += 1
            return frame, reference
        except FrameBufferError as exc:
            logger.warning("Skipping %s: %s", photo.id, exc)
            result.skipped["frame_buffer"] += 1
            return None, reference
