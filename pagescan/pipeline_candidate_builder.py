from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

import cv2
import numpy as np

from pagescan.config import Settings
from pagescan.errors import FrameReadError
from pagescan.features.frame_metrics import compute_quality_metrics, motion_grid
from pagescan.ingest.video_source import VideoSource
from pagescan.models import CandidatePage, FrameSample, PassCancelled, SamplingOutcome, SamplingResult
from pagescan.sampling.frame_sampler import (
    CancellationToken,
    ProgressCallback,
    SamplingCancelled,
    compute_sample_interval,
    count_scheduled_samples,
    iter_frame_samples,
)
from pagescan.scoring.frame_scorer import FrameScorer, ThresholdFrameScorer, summarize_rejections

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[CandidatePage], None]


def run_sampling_pass(
    source: VideoSource,
    start_ms: int,
    end_ms: int,
    *,
    density: float | None = None,
    settings: Settings | None = None,
    scorer: FrameScorer | None = None,
    cancel_token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
    on_candidate: CandidateCallback | None = None,
) -> SamplingOutcome:
    """Sample, score and collect candidate pages over ``[start_ms, end_ms)``.

    Every call is a full regeneration: the scorer is reset and no state from a
    previous pass is reused. ``on_candidate`` observes candidates in timestamp
    order as they are produced; the final list is only returned when the pass
    completes, and a cancelled pass returns ``PassCancelled`` instead.
    """

    resolved = settings or Settings()
    sampling = resolved.sampling
    resolved_density = sampling.density if density is None else density
    interval_ms = compute_sample_interval(resolved_density, sampling.base_interval_ms, sampling.min_interval_ms)
    scheduled_count = count_scheduled_samples(start_ms, end_ms, interval_ms)

    active_scorer = scorer or ThresholdFrameScorer(resolved.scoring, grid_size=resolved.metrics.motion_grid_size)
    active_scorer.reset()

    logger.info(
        "Sampling [%s, %s) ms at density %.2f: interval %.1f ms, %s scheduled samples",
        start_ms,
        end_ms,
        resolved_density,
        interval_ms,
        scheduled_count,
    )

    candidates: list[CandidatePage] = []
    skipped: list[int] = []
    previous_grid: np.ndarray | None = None
    last_timestamp: int | None = None

    samples = iter_frame_samples(
        source,
        start_ms,
        end_ms,
        resolved_density,
        base_interval_ms=sampling.base_interval_ms,
        min_interval_ms=sampling.min_interval_ms,
        cancel_token=cancel_token,
        on_progress=on_progress,
        on_skip=skipped.append,
    )

    try:
        for sample in samples:
            if last_timestamp is not None and sample.timestamp_ms <= last_timestamp:
                logger.warning("Dropping out-of-order sample at %s ms (last was %s ms)", sample.timestamp_ms, last_timestamp)
                continue
            last_timestamp = sample.timestamp_ms

            metrics = compute_quality_metrics(
                sample,
                previous_grid,
                analysis_width=resolved.metrics.analysis_width,
                grid_size=resolved.metrics.motion_grid_size,
            )
            decision = active_scorer.score(sample, metrics)
            candidate = CandidatePage(
                id=f"cand_{sample.timestamp_ms:08d}",
                timestamp_ms=sample.timestamp_ms,
                quality_score=decision.quality_score,
                rejection_reason=decision.rejection_reason,
                thumbnail=make_thumbnail(sample.pixels, sampling.thumbnail_width, sampling.thumbnail_height),
                metrics=metrics,
                duplicate_delta=decision.duplicate_delta,
            )
            candidates.append(candidate)
            if on_candidate is not None:
                on_candidate(candidate)

            if not metrics.is_degenerate:
                previous_grid = motion_grid(sample.pixels, grid_size=resolved.metrics.motion_grid_size)
    except SamplingCancelled as cancelled:
        logger.info("Sampling pass cancelled after %s of %s samples", cancelled.processed_count, scheduled_count)
        return PassCancelled(processed_count=cancelled.processed_count, scheduled_count=scheduled_count)

    if cancel_token is not None and cancel_token.is_cancelled:
        logger.info("Sampling pass cancelled after its last sample; discarding results")
        return PassCancelled(processed_count=scheduled_count, scheduled_count=scheduled_count)

    histogram = summarize_rejections(candidates)
    result = SamplingResult(
        candidates=candidates,
        rejection_histogram=histogram,
        interval_ms=interval_ms,
        scheduled_count=scheduled_count,
        skipped_timestamps=skipped,
    )
    logger.info(
        "Sampling finished: %s candidates, %s selected, %s skipped, rejections=%s",
        len(candidates),
        len(result.selected),
        len(skipped),
        {reason.value: count for reason, count in histogram.items()},
    )
    return result


@dataclass(slots=True)
class BackgroundPass:
    """Handle for a sampling pass running on its own worker thread."""

    future: Future[SamplingOutcome]
    cancel_token: CancellationToken
    _executor: ThreadPoolExecutor | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> SamplingOutcome:
        return self.future.result(timeout=timeout)


def start_background_pass(
    source: VideoSource,
    start_ms: int,
    end_ms: int,
    *,
    executor: ThreadPoolExecutor | None = None,
    cancel_token: CancellationToken | None = None,
    **pass_kwargs: object,
) -> BackgroundPass:
    """Run ``run_sampling_pass`` off the calling thread.

    Without an ``executor`` a dedicated single-thread pool is created and shut
    down as soon as the pass finishes, whether or not its result is collected.
    """

    token = cancel_token or CancellationToken()
    owned_executor = None
    if executor is None:
        owned_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pagescan-sampler")
        executor = owned_executor

    future = executor.submit(
        run_sampling_pass,
        source,
        start_ms,
        end_ms,
        cancel_token=token,
        **pass_kwargs,
    )
    if owned_executor is not None:
        future.add_done_callback(lambda _: owned_executor.shutdown(wait=False))
    return BackgroundPass(future=future, cancel_token=token, _executor=owned_executor)


def capture_candidate(
    source: VideoSource,
    timestamp_ms: int,
    *,
    settings: Settings | None = None,
    scorer: FrameScorer | None = None,
) -> CandidatePage:
    """Score the frame at a scrub position for a manual "capture now" action.

    Unlike a sampling pass, a decode failure here is reported to the caller
    as ``FrameReadError`` because the user asked for this exact frame.
    """

    resolved = settings or Settings()
    active_scorer = scorer or ThresholdFrameScorer(resolved.scoring, grid_size=resolved.metrics.motion_grid_size)
    active_scorer.reset()

    sample = source.frame_at(timestamp_ms)
    metrics = compute_quality_metrics(
        sample,
        analysis_width=resolved.metrics.analysis_width,
        grid_size=resolved.metrics.motion_grid_size,
    )
    decision = active_scorer.score(sample, metrics)
    return CandidatePage(
        id=f"manual_{sample.timestamp_ms:08d}",
        timestamp_ms=sample.timestamp_ms,
        quality_score=decision.quality_score,
        rejection_reason=decision.rejection_reason,
        thumbnail=make_thumbnail(sample.pixels, resolved.sampling.thumbnail_width, resolved.sampling.thumbnail_height),
        metrics=metrics,
    )


def timeline_thumbnails(
    source: VideoSource,
    start_ms: int,
    end_ms: int,
    *,
    count: int = 10,
    width: int = 80,
    height: int = 60,
) -> list[tuple[int, np.ndarray]]:
    """Evenly spaced scrubber thumbnails; unreadable positions are left out."""

    if end_ms <= start_ms or count <= 0:
        return []

    step = (end_ms - start_ms) / count
    thumbnails: list[tuple[int, np.ndarray]] = []
    for index in range(count):
        timestamp_ms = int(start_ms + index * step)
        try:
            sample = source.frame_at(timestamp_ms)
        except FrameReadError as exc:
            logger.debug("Timeline thumbnail at %s ms unavailable (%s)", timestamp_ms, exc)
            continue
        thumbnail = make_thumbnail(sample.pixels, width, height)
        if thumbnail is not None:
            thumbnails.append((timestamp_ms, thumbnail))
    return thumbnails


def make_thumbnail(pixels: np.ndarray, max_width: int, max_height: int) -> np.ndarray | None:
    """Downscale a frame to fit inside ``max_width`` x ``max_height``."""

    if pixels.ndim < 2 or pixels.size == 0:
        return None

    height, width = pixels.shape[:2]
    scale = min(max_width / width, max_height / height, 1.0)
    target = (max(int(round(width * scale)), 1), max(int(round(height * scale)), 1))
    if target == (width, height):
        return pixels.copy()
    return cv2.resize(pixels, target, interpolation=cv2.INTER_AREA)


def frame_sample_from_candidate(source: VideoSource, candidate: CandidatePage) -> FrameSample:
    """Re-decode the full-resolution frame behind a candidate for enhancement."""

    return source.frame_at(candidate.timestamp_ms)
