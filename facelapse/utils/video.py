"""Sequential video encoding built on ffmpeg pipes and OpenCV."""

from __future__ import annotations

import logging
import queue
import shutil
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .fs import ensure_dir, remove_if_exists

logger = logging.getLogger(__name__)

ColourFrame = np.ndarray

_FINISHED = object()


class EncoderError(RuntimeError):
    """Fatal failure of the video encoder."""


class EncodeStatus(Enum):
    IDLE = "idle"
    WRITING = "writing"
    FINISHED = "finished"
    FAILED = "failed"


_TRANSITIONS = {
    EncodeStatus.IDLE: {EncodeStatus.WRITING},
    EncodeStatus.WRITING: {EncodeStatus.FINISHED, EncodeStatus.FAILED},
    EncodeStatus.FINISHED: set(),
    EncodeStatus.FAILED: set(),
}


@dataclass
class EncodeSession:
    output_path: Path
    frame_index: int = 0
    status: EncodeStatus = EncodeStatus.IDLE


class FrameSink(Protocol):
    """Backend that turns a stream of BGR frames into a file."""

    def open(self, path: Path, frame_size: Tuple[int, int], fps: float) -> None: ...

    def write(self, frame: ColourFrame) -> None: ...

    def close(self) -> None: ...

    def abort(self) -> None: ...


@dataclass
class FFmpegVideoSink:
    """Pipe raw ``bgr24`` frames into an ffmpeg H.264 encode."""

    ffmpeg: str = "ffmpeg"
    codec: str = "libx264"
    bitrate: str = "6M"
    profile: str = "high"
    pix_fmt: str = "yuv420p"

    def __post_init__(self) -> None:
        self._proc: Optional[subprocess.Popen] = None
        self._stderr_chunks: List[bytes] = []
        self._stderr_thread: Optional[threading.Thread] = None

    def command(self, path: Path, frame_size: Tuple[int, int], fps: float) -> List[str]:
        width, height = frame_size
        return [
            self.ffmpeg,
            "-y",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "bgr24",
            "-s",
            f"{width}x{height}",
            "-r",
            str(fps),
            "-i",
            "pipe:0",
            "-an",
            "-c:v",
            self.codec,
            "-b:v",
            self.bitrate,
            "-profile:v",
            self.profile,
            "-pix_fmt",
            self.pix_fmt,
            "-movflags",
            "+faststart",
            str(path),
        ]

    def open(self, path: Path, frame_size: Tuple[int, int], fps: float) -> None:
        if shutil.which(self.ffmpeg) is None:
            raise EncoderError(f"ffmpeg executable not found: {self.ffmpeg}")
        command = self.command(path, frame_size, fps)
        logger.debug("Running: %s", " ".join(command))
        try:
            self._proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EncoderError(f"Failed to start ffmpeg: {exc}") from exc

        # ffmpeg blocks on a full stderr pipe
        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            chunk = self._proc.stderr.read(4096)
            if not chunk:
                break
            self._stderr_chunks.append(chunk)

    def write(self, frame: ColourFrame) -> None:
        if self._proc is None or self._proc.stdin is None:
            raise EncoderError("ffmpeg sink is not open")
        try:
            self._proc.stdin.write(np.ascontiguousarray(frame).tobytes())
        except (BrokenPipeError, ValueError) as exc:
            raise EncoderError(f"ffmpeg closed its input: {self._stderr_tail()}") from exc

    def close(self) -> None:
        if self._proc is None:
            raise EncoderError("ffmpeg sink is not open")
        if self._proc.stdin is not None:
            try:
                self._proc.stdin.close()
            except BrokenPipeError:
                pass
        self._proc.wait()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=30)
        if self._proc.returncode != 0:
            raise EncoderError(f"ffmpeg exited with status {self._proc.returncode}: {self._stderr_tail()}")

    def abort(self) -> None:
        if self._proc is None:
            return
        if self._proc.poll() is None:
            self._proc.kill()
        self._proc.wait()

    def _stderr_tail(self, limit: int = 2000) -> str:
        return b"".join(self._stderr_chunks).decode(errors="replace")[-limit:]


@dataclass
class OpenCVVideoSink:
    """Write frames through OpenCV's VideoWriter."""

    codec: str = "mp4v"

    def __post_init__(self) -> None:
        self._writer: Optional[cv2.VideoWriter] = None
        self._path: Optional[Path] = None

    def open(self, path: Path, frame_size: Tuple[int, int], fps: float) -> None:
        fourcc = cv2.VideoWriter_fourcc(*self.codec)
        self._writer = cv2.VideoWriter(str(path), fourcc, float(fps), frame_size)
        if not self._writer.isOpened():
            raise EncoderError(f"Failed to open writer for {path}")
        self._path = path

    def write(self, frame: ColourFrame) -> None:
        if self._writer is None:
            raise EncoderError("OpenCV sink is not open")
        self._writer.write(frame)

    def close(self) -> None:
        if self._writer is None:
            raise EncoderError("OpenCV sink is not open")
        self._writer.release()
        self._writer = None
        if self._path is None or not self._path.exists() or self._path.stat().st_size == 0:
            raise EncoderError(f"OpenCV produced no output at {self._path}")

    def abort(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None


def make_sink(
    backend: str = "ffmpeg",
    *,
    ffmpeg: str = "ffmpeg",
    codec: str = "libx264",
    bitrate: str = "6M",
    profile: str = "high",
    pix_fmt: str = "yuv420p",
    fourcc: str = "mp4v",
) -> FrameSink:
    if backend == "ffmpeg":
        return FFmpegVideoSink(ffmpeg=ffmpeg, codec=codec, bitrate=bitrate, profile=profile, pix_fmt=pix_fmt)
    if backend == "opencv":
        return OpenCVVideoSink(codec=fourcc)
    raise EncoderError(f"Unknown encoder backend: {backend}")


class SequentialVideoEncoder:
    """Append canvas-sized frames in order to a single video file.

    Frames are handed to a writer thread through a bounded queue. The queue
    having room is the "ready for more data" signal; ``append_frame`` blocks
    until it is set. Presentation time is ``frame_index / fps`` where
    ``frame_index`` counts appended frames only.
    """

    def __init__(
        self,
        path: Path,
        frame_size: Tuple[int, int],
        fps: float,
        sink: Optional[FrameSink] = None,
        queue_size: int = 4,
        poll_interval: float = 0.01,
    ) -> None:
        self.path = Path(path)
        self.frame_size = (int(frame_size[0]), int(frame_size[1]))
        self.fps = fps
        self.poll_interval = poll_interval
        self.session = EncodeSession(output_path=self.path)
        self._sink = sink
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max(1, queue_size))
        self._ready = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._failure: Optional[BaseException] = None

    @property
    def status(self) -> EncodeStatus:
        return self.session.status

    @property
    def is_ready_for_more_data(self) -> bool:
        return (
            self.session.status is EncodeStatus.WRITING
            and self._failure is None
            and not self._queue.full()
        )

    def _transition(self, status: EncodeStatus) -> None:
        current = self.session.status
        if status not in _TRANSITIONS[current]:
            raise EncoderError(f"Invalid encoder transition {current.value} -> {status.value}")
        self.session.status = status

    def _discard_output(self) -> None:
        if self._sink is not None:
            self._sink.abort()
        try:
            remove_if_exists(self.path)
        except OSError as exc:
            logger.warning("Could not remove partial output %s: %s", self.path, exc)

    def _fail(self, message: str, cause: Optional[BaseException] = None) -> EncoderError:
        if self.session.status is EncodeStatus.WRITING:
            self._transition(EncodeStatus.FAILED)
            self._discard_output()
        logger.error("Encoder failed for %s: %s", self.path, message)
        error = EncoderError(message)
        error.__cause__ = cause
        return error

    def open(self) -> "SequentialVideoEncoder":
        """Create the stream, attach the frame input and start the writer thread."""
        self._transition(EncodeStatus.WRITING)
        width, height = self.frame_size

        try:
            ensure_dir(self.path.parent)
            remove_if_exists(self.path)
            if self._sink is None:
                self._sink = make_sink()
        except (OSError, EncoderError) as exc:
            raise self._fail(f"Cannot create video stream at {self.path}: {exc}", exc) from exc

        if width <= 0 or height <= 0 or self.fps <= 0:
            raise self._fail(f"Cannot add video input {width}x{height} @ {self.fps} fps")
        try:
            self._sink.open(self.path, self.frame_size, self.fps)
        except (OSError, EncoderError) as exc:
            raise self._fail(f"Cannot add video input: {exc}", exc) from exc

        try:
            self._thread = threading.Thread(target=self._drain, name="facelapse-encoder", daemon=True)
            self._thread.start()
        except RuntimeError as exc:
            raise self._fail(f"Cannot start writing: {exc}", exc) from exc

        logger.info("Encoding %dx%d @ %s fps to %s", width, height, self.fps, self.path)
        return self

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            with self._ready:
                self._ready.notify_all()
            try:
                if item is _FINISHED:
                    return
                self._sink.write(item)
            except Exception as exc:  # re-raised on the producer side
                self._failure = exc
                return
            finally:
                with self._ready:
                    self._ready.notify_all()

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise self._fail(f"Video writing failed: {self._failure}", self._failure)

    def wait_until_ready(self) -> None:
        """Block until the writer can accept another frame."""
        with self._ready:
            while not self.is_ready_for_more_data:
                self._raise_if_failed()
                if self.session.status is not EncodeStatus.WRITING:
                    raise EncoderError(f"Encoder is {self.session.status.value}, not writing")
                self._ready.wait(self.poll_interval)

    def append_frame(self, frame: ColourFrame) -> float:
        """Queue ``frame`` and return its presentation time in seconds."""
        if self.session.status is not EncodeStatus.WRITING:
            raise EncoderError(f"Cannot append to a {self.session.status.value} encoder")
        width, height = self.frame_size
        if frame.shape != (height, width, 3) or frame.dtype != np.uint8:
            raise ValueError(
                f"Frame {frame.shape[1::-1]} {frame.dtype} does not match expected {self.frame_size} uint8"
            )
        self._raise_if_failed()
        self.wait_until_ready()
        self._queue.put_nowait(frame)
        presentation_time = self.session.frame_index / self.fps
        self.session.frame_index += 1
        return presentation_time

    def finish(self) -> Path:
        """Mark input finished, flush the writer and return the output path."""
        if self.session.status is not EncodeStatus.WRITING:
            raise EncoderError(f"Cannot finish a {self.session.status.value} encoder")
        self.wait_until_ready()
        self._queue.put_nowait(_FINISHED)
        if self._thread is not None:
            self._thread.join()
        self._raise_if_failed()
        try:
            self._sink.close()
        except (OSError, EncoderError) as exc:
            raise self._fail(f"Video writing failed: {exc}", exc) from exc
        self._transition(EncodeStatus.FINISHED)
        logger.info("Finished %s (%d frames)", self.path, self.session.frame_index)
        return self.path

    def abort(self) -> None:
        """Stop writing, discard the partial file and mark the session failed."""
        if self.session.status is not EncodeStatus.WRITING:
            return
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        self._queue.put_nowait(_FINISHED)
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self._transition(EncodeStatus.FAILED)
        self._discard_output()
        logger.info("Aborted %s after %d frames", self.path, self.session.frame_index)

    def __enter__(self) -> "SequentialVideoEncoder":
        if self.session.status is EncodeStatus.IDLE:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        elif self.session.status is EncodeStatus.WRITING:
            self.finish()
