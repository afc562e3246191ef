from __future__ import annotations

import logging
import math
import threading
from typing import Callable, Iterator

from pagescan.errors import FrameReadError, InvalidRangeError
from pagescan.ingest.video_source import VideoSource
from pagescan.models import FrameSample

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class CancellationToken:
    """Cooperative, thread-safe cancellation flag polled between extractions."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class SamplingCancelled(Exception):
    """Raised inside the sampler when its token is cancelled."""

    def __init__(self, processed_count: int) -> None:
        super().__init__(f"Sampling cancelled after {processed_count} samples")
        self.processed_count = processed_count


def compute_sample_interval(density: float, base_interval_ms: float, min_interval_ms: float) -> float:
    """Map a 0-1 density to a sampling interval; denser means shorter."""

    if not 0.0 <= density <= 1.0:
        raise ValueError(f"Density must be within [0, 1], got {density}.")
    interval = base_interval_ms * (1.5 - density)
    return max(float(min_interval_ms), min(float(base_interval_ms), interval))


def schedule_sample_times(start_ms: int, end_ms: int, interval_ms: float) -> Iterator[int]:
    """Yield sample timestamps at the middle of each interval in ``[start_ms, end_ms)``.

    Times are accumulated in float and floored on output, so every timestamp
    stays inside the half-open range and the sequence is strictly increasing
    for any interval of at least 1 ms.
    """

    _validate_range(start_ms, end_ms)
    if interval_ms <= 0:
        raise ValueError(f"Sample interval must be positive, got {interval_ms}.")

    index = 0
    while True:
        position = start_ms + (interval_ms / 2.0) + (index * interval_ms)
        if position >= end_ms:
            return
        yield math.floor(position)
        index += 1


def count_scheduled_samples(start_ms: int, end_ms: int, interval_ms: float) -> int:
    return sum(1 for _ in schedule_sample_times(start_ms, end_ms, interval_ms))


def iter_frame_samples(
    source: VideoSource,
    start_ms: int,
    end_ms: int,
    density: float,
    *,
    base_interval_ms: int = 1000,
    min_interval_ms: int = 100,
    cancel_token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
    on_skip: Callable[[int], None] | None = None,
) -> Iterator[FrameSample]:
    """Lazily extract frames on the density-derived schedule.

    Decoder misses are skipped without shifting later sample times. The
    cancellation token is checked before every extraction; a cancelled pass
    raises ``SamplingCancelled`` so callers never mistake it for completion.
    Each call walks the schedule from the start, so the sequence is restartable.
    """

    _validate_range(start_ms, end_ms)
    interval_ms = compute_sample_interval(density, base_interval_ms, min_interval_ms)
    span = float(end_ms - start_ms)
    processed = 0

    for timestamp_ms in schedule_sample_times(start_ms, end_ms, interval_ms):
        if cancel_token is not None and cancel_token.is_cancelled:
            raise SamplingCancelled(processed)

        sample = _extract(source, timestamp_ms)
        processed += 1
        if sample is None:
            if on_skip is not None:
                on_skip(timestamp_ms)
        else:
            yield sample

        if on_progress is not None:
            covered = (timestamp_ms - start_ms) + (interval_ms / 2.0)
            on_progress(min(covered / span, 1.0))

    if on_progress is not None:
        on_progress(1.0)


def _extract(source: VideoSource, timestamp_ms: int) -> FrameSample | None:
    try:
        sample = source.frame_at(timestamp_ms)
    except FrameReadError as exc:
        logger.debug("Skipping sample at %s ms: %s", timestamp_ms, exc)
        return None
    if sample is None:
        logger.debug("Skipping sample at %s ms: decoder returned nothing", timestamp_ms)
    return sample


def _validate_range(start_ms: int, end_ms: int) -> None:
    if start_ms < 0 or end_ms <= start_ms:
        raise InvalidRangeError(f"Invalid sampling range [{start_ms}, {end_ms}): end must be after start.")
