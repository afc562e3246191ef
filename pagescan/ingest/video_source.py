from __future__ import annotations

import bisect
import logging
from pathlib import Path
from typing import Any, Protocol, Sequence

import numpy as np

from pagescan.errors import FrameReadError
from pagescan.models import FrameSample

logger = logging.getLogger(__name__)


class VideoSource(Protocol):
    """Random-access view of decoded frames, immutable during a sampling pass."""

    def duration_ms(self) -> int: ...

    def frame_at(self, timestamp_ms: int) -> FrameSample: ...


class OpenCvVideoSource:
    """VideoSource backed by ``cv2.VideoCapture`` seeking on CAP_PROP_POS_MSEC."""

    def __init__(self, video_path: str | Path, cv2_module: Any | None = None) -> None:
        self.video_path = Path(video_path).expanduser().resolve()
        if not self.video_path.exists():
            raise FileNotFoundError(f"Video file not found: {self.video_path}")

        if cv2_module is None:
            import cv2 as cv2_module

        self._cv2 = cv2_module
        self._capture = cv2_module.VideoCapture(str(self.video_path))
        if not self._capture.isOpened():
            self._capture.release()
            raise RuntimeError(f"Unable to open video: {self.video_path}")

        self.fps = float(self._capture.get(cv2_module.CAP_PROP_FPS) or 0.0)
        self.frame_count = int(self._capture.get(cv2_module.CAP_PROP_FRAME_COUNT) or 0)
        self.width = int(self._capture.get(cv2_module.CAP_PROP_FRAME_WIDTH) or 0)
        self.height = int(self._capture.get(cv2_module.CAP_PROP_FRAME_HEIGHT) or 0)

    def __enter__(self) -> OpenCvVideoSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._capture.release()

    def duration_ms(self) -> int:
        if self.fps <= 0 or self.frame_count <= 0:
            return 0
        return int(round(self.frame_count / self.fps * 1000.0))

    def frame_at(self, timestamp_ms: int) -> FrameSample:
        self._capture.set(self._cv2.CAP_PROP_POS_MSEC, float(timestamp_ms))
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise FrameReadError(f"No frame decoded at {timestamp_ms} ms in {self.video_path.name}")
        return FrameSample(timestamp_ms=int(timestamp_ms), pixels=frame)


class InMemoryVideoSource:
    """VideoSource over pre-decoded frames; returns the frame closest to a timestamp."""

    def __init__(self, frames: Sequence[tuple[int, np.ndarray | None]], duration_ms: int | None = None) -> None:
        ordered = sorted(frames, key=lambda item: item[0])
        self._timestamps = [int(timestamp) for timestamp, _ in ordered]
        self._frames = [pixels for _, pixels in ordered]
        if duration_ms is None:
            duration_ms = self._timestamps[-1] if self._timestamps else 0
        self._duration_ms = int(duration_ms)

    def __enter__(self) -> InMemoryVideoSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        return None

    def duration_ms(self) -> int:
        return self._duration_ms

    def frame_at(self, timestamp_ms: int) -> FrameSample:
        if not self._timestamps:
            raise FrameReadError("Video source holds no frames.")

        index = bisect.bisect_left(self._timestamps, timestamp_ms)
        candidates = [idx for idx in (index - 1, index) if 0 <= idx < len(self._timestamps)]
        closest = min(candidates, key=lambda idx: (abs(self._timestamps[idx] - timestamp_ms), idx))
        pixels = self._frames[closest]
        if pixels is None:
            raise FrameReadError(f"Frame near {timestamp_ms} ms is unreadable.")
        return FrameSample(timestamp_ms=int(timestamp_ms), pixels=pixels.copy())


def probe_video(video_path: str | Path, cv2_module: Any | None = None) -> dict[str, Any]:
    """Read container-level facts needed to plan a sampling pass."""

    with OpenCvVideoSource(video_path, cv2_module=cv2_module) as source:
        duration_ms = source.duration_ms()
        if duration_ms <= 0:
            logger.warning("Video %s reports no usable duration (fps=%s, frames=%s)", source.video_path, source.fps, source.frame_count)

        return {
            "status": "ok",
            "video_path": str(source.video_path),
            "duration_ms": duration_ms,
            "fps": round(source.fps, 3),
            "frame_count": source.frame_count,
            "width": source.width,
            "height": source.height,
        }
