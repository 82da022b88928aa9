import threading
import time
from pathlib import Path

import cv2
import numpy as np
import pytest

from facelapse.utils.video import (
    EncodeStatus,
    EncoderError,
    FFmpegVideoSink,
    OpenCVVideoSink,
    SequentialVideoEncoder,
    make_sink,
)

FRAME_SIZE = (32, 18)


class MemorySink:
    """Frame sink that keeps frames in memory."""

    def __init__(self, fail_on_open=False, fail_on_close=False, fail_at_frame=None, gate=None, delay=0.0):
        self.fail_on_open = fail_on_open
        self.fail_on_close = fail_on_close
        self.fail_at_frame = fail_at_frame
        self.gate = gate
        self.delay = delay
        self.frames = []
        self.opened = None
        self.closed = False
        self.aborted = False

    def open(self, path, frame_size, fps):
        if self.fail_on_open:
            raise EncoderError("cannot attach input")
        self.opened = (path, frame_size, fps)

    def write(self, frame):
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_at_frame == len(self.frames):
            raise EncoderError("disk full")
        self.frames.append(frame.copy())

    def close(self):
        if self.fail_on_close:
            raise EncoderError("writer status failed")
        self.closed = True

    def abort(self):
        self.aborted = True


def _frame(value: int = 0) -> np.ndarray:
    return np.full((FRAME_SIZE[1], FRAME_SIZE[0], 3), value, dtype=np.uint8)


def _encoder(tmp_path: Path, sink: MemorySink, fps: float = 10, queue_size: int = 4) -> SequentialVideoEncoder:
    return SequentialVideoEncoder(
        tmp_path / "out.mp4",
        FRAME_SIZE,
        fps,
        sink=sink,
        queue_size=queue_size,
        poll_interval=0.005,
    )


def test_session_lifecycle_and_presentation_times(tmp_path):
    sink = MemorySink()
    encoder = _encoder(tmp_path, sink, fps=10)
    assert encoder.status is EncodeStatus.IDLE

    encoder.open()
    assert encoder.status is EncodeStatus.WRITING
    times = [encoder.append_frame(_frame(i)) for i in range(3)]
    path = encoder.finish()

    assert times == pytest.approx([0.0, 0.1, 0.2])
    assert path == tmp_path / "out.mp4"
    assert encoder.status is EncodeStatus.FINISHED
    assert encoder.session.frame_index == 3
    assert [int(f[0, 0, 0]) for f in sink.frames] == [0, 1, 2]
    assert sink.opened == (tmp_path / "out.mp4", FRAME_SIZE, 10)
    assert sink.closed


def test_append_blocks_until_writer_is_ready(tmp_path):
    gate = threading.Event()
    sink = MemorySink(gate=gate)
    encoder = _encoder(tmp_path, sink, queue_size=1).open()

    encoder.append_frame(_frame(0))  # taken by the writer, which then waits on the gate
    encoder.append_frame(_frame(1))  # fills the queue

    appended = threading.Event()

    def _append():
        encoder.append_frame(_frame(2))
        appended.set()

    worker = threading.Thread(target=_append)
    worker.start()
    time.sleep(0.1)
    assert not appended.is_set()
    assert not encoder.is_ready_for_more_data

    gate.set()
    worker.join(timeout=5.0)
    assert appended.is_set()
    encoder.finish()
    assert [int(f[0, 0, 0]) for f in sink.frames] == [0, 1, 2]


def test_slow_writer_keeps_frame_order(tmp_path):
    sink = MemorySink(delay=0.01)
    encoder = _encoder(tmp_path, sink, queue_size=1).open()

    for value in range(6):
        encoder.append_frame(_frame(value))
    encoder.finish()

    assert [int(f[0, 0, 0]) for f in sink.frames] == list(range(6))


def test_writer_failure_is_fatal(tmp_path):
    sink = MemorySink(fail_at_frame=1)
    encoder = _encoder(tmp_path, sink).open()

    with pytest.raises(EncoderError):
        for value in range(10):
            encoder.append_frame(_frame(value))
            time.sleep(0.01)
        encoder.finish()

    assert encoder.status is EncodeStatus.FAILED


def test_finish_fails_when_output_is_not_completed(tmp_path):
    sink = MemorySink(fail_on_close=True)
    encoder = _encoder(tmp_path, sink).open()
    encoder.append_frame(_frame())

    with pytest.raises(EncoderError, match="writer status failed"):
        encoder.finish()
    assert encoder.status is EncodeStatus.FAILED


def test_open_failure_marks_session_failed(tmp_path):
    encoder = _encoder(tmp_path, MemorySink(fail_on_open=True))

    with pytest.raises(EncoderError, match="Cannot add video input"):
        encoder.open()
    assert encoder.status is EncodeStatus.FAILED


def test_open_rejects_invalid_frame_rate(tmp_path):
    encoder = _encoder(tmp_path, MemorySink(), fps=0)

    with pytest.raises(EncoderError):
        encoder.open()
    assert encoder.status is EncodeStatus.FAILED


def test_session_cannot_be_reused(tmp_path):
    encoder = _encoder(tmp_path, MemorySink()).open()
    encoder.append_frame(_frame())
    encoder.finish()

    with pytest.raises(EncoderError):
        encoder.open()
    with pytest.raises(EncoderError):
        encoder.append_frame(_frame())


def test_append_rejects_wrong_frame_size(tmp_path):
    encoder = _encoder(tmp_path, MemorySink()).open()

    with pytest.raises(ValueError):
        encoder.append_frame(np.zeros((10, 10, 3), dtype=np.uint8))
    assert encoder.session.frame_index == 0
    encoder.abort()


def test_abort_discards_partial_output(tmp_path):
    sink = MemorySink()
    encoder = _encoder(tmp_path, sink).open()
    encoder.append_frame(_frame())
    (tmp_path / "out.mp4").write_bytes(b"partial")

    encoder.abort()

    assert encoder.status is EncodeStatus.FAILED
    assert sink.aborted
    assert not (tmp_path / "out.mp4").exists()


def test_context_manager_aborts_on_error(tmp_path):
    sink = MemorySink()
    encoder = _encoder(tmp_path, sink)

    with pytest.raises(RuntimeError):
        with encoder:
            encoder.append_frame(_frame())
            raise RuntimeError("boom")

    assert encoder.status is EncodeStatus.FAILED
    assert sink.aborted


def test_context_manager_finishes_on_success(tmp_path):
    sink = MemorySink()
    with _encoder(tmp_path, sink) as encoder:
        encoder.append_frame(_frame())

    assert encoder.status is EncodeStatus.FINISHED
    assert sink.closed


def test_ffmpeg_command_uses_fixed_h264_profile(tmp_path):
    sink = FFmpegVideoSink()

    command = sink.command(tmp_path / "out.mp4", (1920, 1080), 24)

    assert command[0] == "ffmpeg"
    assert command[command.index("-s") + 1] == "1920x1080"
    assert command[command.index("-r") + 1] == "24"
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[command.index("-b:v") + 1] == "6M"
    assert command[command.index("-pix_fmt", command.index("-c:v")) + 1] == "yuv420p"
    assert command[-1] == str(tmp_path / "out.mp4")


def test_missing_ffmpeg_is_an_open_failure(tmp_path):
    sink = FFmpegVideoSink(ffmpeg="definitely-not-ffmpeg-binary")
    encoder = SequentialVideoEncoder(tmp_path / "out.mp4", FRAME_SIZE, 10, sink=sink)

    with pytest.raises(EncoderError):
        encoder.open()
    assert encoder.status is EncodeStatus.FAILED


def test_make_sink_backends():
    assert isinstance(make_sink("ffmpeg"), FFmpegVideoSink)
    assert isinstance(make_sink("opencv", fourcc="MJPG"), OpenCVVideoSink)
    with pytest.raises(EncoderError):
        make_sink("gstreamer")


def test_open_creates_missing_output_directory(tmp_path):
    sink = MemorySink()
    encoder = SequentialVideoEncoder(tmp_path / "renders" / "2024" / "out.mp4", FRAME_SIZE, 10, sink=sink)

    with encoder:
        encoder.append_frame(_frame())

    assert (tmp_path / "renders" / "2024").is_dir()
    assert encoder.status is EncodeStatus.FINISHED


def test_opencv_backend_writes_readable_video(tmp_path):
    size = (64, 36)
    path = tmp_path / "out.mp4"
    encoder = SequentialVideoEncoder(path, size, 10, sink=make_sink("opencv"))

    with encoder:
        for value in range(5):
            encoder.append_frame(np.full((size[1], size[0], 3), value * 40, dtype=np.uint8))

    capture = cv2.VideoCapture(str(path))
    try:
        assert capture.isOpened()
        assert int(capture.get(cv2.CAP_PROP_FRAME_COUNT)) == 5
        assert capture.get(cv2.CAP_PROP_FPS) == pytest.approx(10.0)
        assert int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)) == size[0]
        assert int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)) == size[1]
    finally:
        capture.release()
