from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from pagescan.errors import FrameReadError
from pagescan.ingest.video_source import InMemoryVideoSource, OpenCvVideoSource, probe_video


class _FakeCapture:
    def __init__(self, frames: dict[int, np.ndarray], props: dict[int, float], opened: bool = True) -> None:
        self.frames = frames
        self.props = props
        self.opened = opened
        self.position_ms = 0.0
        self.released = False

    def isOpened(self) -> bool:
        return self.opened

    def get(self, prop: int) -> float:
        return self.props.get(prop, 0.0)

    def set(self, prop: int, value: float) -> bool:
        if prop == _FakeCv2.CAP_PROP_POS_MSEC:
            self.position_ms = value
        return True

    def read(self) -> tuple[bool, np.ndarray | None]:
        frame = self.frames.get(int(self.position_ms))
        return (frame is not None, frame)

    def release(self) -> None:
        self.released = True


class _FakeCv2:
    CAP_PROP_POS_MSEC = 0
    CAP_PROP_FPS = 5
    CAP_PROP_FRAME_COUNT = 7
    CAP_PROP_FRAME_WIDTH = 3
    CAP_PROP_FRAME_HEIGHT = 4

    def __init__(self, capture: _FakeCapture) -> None:
        self.capture = capture

    def VideoCapture(self, path: str) -> _FakeCapture:
        return self.capture


def _capture(opened: bool = True, fps: float = 25.0, frame_count: int = 250) -> _FakeCapture:
    props = {
        _FakeCv2.CAP_PROP_FPS: fps,
        _FakeCv2.CAP_PROP_FRAME_COUNT: float(frame_count),
        _FakeCv2.CAP_PROP_FRAME_WIDTH: 320.0,
        _FakeCv2.CAP_PROP_FRAME_HEIGHT: 240.0,
    }
    return _FakeCapture({1000: np.full((240, 320, 3), 7, dtype=np.uint8)}, props, opened=opened)


def test_opencv_source_seeks_by_timestamp(tmp_path: Path) -> None:
    video_path = tmp_path / "pages.mp4"
    video_path.write_bytes(b"data")
    capture = _capture()

    with OpenCvVideoSource(video_path, cv2_module=_FakeCv2(capture)) as source:
        assert source.duration_ms() == 10_000
        sample = source.frame_at(1000)
        with pytest.raises(FrameReadError):
            source.frame_at(2000)

    assert sample.timestamp_ms == 1000
    assert int(sample.pixels[0, 0, 0]) == 7
    assert capture.released


def test_opencv_source_reports_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        OpenCvVideoSource(tmp_path / "missing.mp4", cv2_module=_FakeCv2(_capture()))


def test_opencv_source_releases_capture_that_fails_to_open(tmp_path: Path) -> None:
    video_path = tmp_path / "broken.mp4"
    video_path.write_bytes(b"data")
    capture = _capture(opened=False)

    with pytest.raises(RuntimeError, match="Unable to open video"):
        OpenCvVideoSource(video_path, cv2_module=_FakeCv2(capture))

    assert capture.released


def test_probe_video_summarizes_stream(tmp_path: Path) -> None:
    video_path = tmp_path / "pages.mp4"
    video_path.write_bytes(b"data")

    result = probe_video(video_path, cv2_module=_FakeCv2(_capture(fps=0.0)))

    assert result["status"] == "ok"
    assert result["duration_ms"] == 0
    assert (result["width"], result["height"]) == (320, 240)


def test_in_memory_source_returns_closest_frame_copy() -> None:
    early = np.full((4, 4, 3), 1, dtype=np.uint8)
    late = np.full((4, 4, 3), 2, dtype=np.uint8)
    source = InMemoryVideoSource([(1000, late), (0, early)])

    sample = source.frame_at(700)
    sample.pixels[...] = 99

    assert source.duration_ms() == 1000
    assert sample.timestamp_ms == 700
    assert int(source.frame_at(700).pixels[0, 0, 0]) == 2
    assert int(source.frame_at(200).pixels[0, 0, 0]) == 1


def test_in_memory_source_raises_for_unreadable_frames() -> None:
    with pytest.raises(FrameReadError):
        InMemoryVideoSource([(0, None)]).frame_at(0)
    with pytest.raises(FrameReadError):
        InMemoryVideoSource([]).frame_at(0)
