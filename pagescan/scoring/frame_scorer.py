from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Protocol

import numpy as np

from pagescan.config import ScoringSettings
from pagescan.features.frame_metrics import motion_delta, motion_grid
from pagescan.models import CandidatePage, FrameSample, QualityMetrics, RejectionReason

logger = logging.getLogger(__name__)

_REASON_MESSAGES = {
    RejectionReason.BLUR: "frames were too blurry",
    RejectionReason.MOTION_BLUR: "the camera was moving too much",
    RejectionReason.GLARE: "glare washed out the pages",
    RejectionReason.TOO_DARK: "the video was too dark",
    RejectionReason.TOO_BRIGHT: "the video was overexposed",
    RejectionReason.DUPLICATE: "every frame repeated the same page",
}


@dataclass(slots=True)
class ScoreDecision:
    """Verdict for one frame plus the evidence behind it."""

    quality_score: float
    rejection_reason: RejectionReason | None
    duplicate_delta: float | None = None

    @property
    def accepted(self) -> bool:
        return self.rejection_reason is None


class FrameScorer(Protocol):
    """Strategy that turns per-frame metrics into accept/reject verdicts.

    Implementations may keep state across one pass (e.g. the last accepted
    frame) and must drop it on ``reset``.
    """

    def reset(self) -> None: ...

    def score(self, sample: FrameSample, metrics: QualityMetrics) -> ScoreDecision: ...


class ThresholdFrameScorer:
    """Threshold state machine keyed on the last accepted frame.

    Rules are evaluated in order and the first match wins: degenerate input,
    glare, too dark, too bright, blur (or motion blur), duplicate of the last
    accepted frame, otherwise accept.
    """

    def __init__(self, settings: ScoringSettings | None = None, *, grid_size: int = 32) -> None:
        self.settings = settings or ScoringSettings()
        self.grid_size = grid_size
        self._last_accepted_grid: np.ndarray | None = None

    def reset(self) -> None:
        self._last_accepted_grid = None

    def score(self, sample: FrameSample, metrics: QualityMetrics) -> ScoreDecision:
        thresholds = self.settings

        if metrics.is_degenerate:
            return ScoreDecision(quality_score=0.0, rejection_reason=RejectionReason.BLUR)

        quality_score = normalize_sharpness(
            metrics.sharpness,
            floor=thresholds.sharpness_threshold,
            ceiling=thresholds.sharpness_ceiling,
        )

        exposure_reason = classify_exposure(metrics, thresholds)
        if exposure_reason is not None:
            return ScoreDecision(quality_score=quality_score, rejection_reason=exposure_reason)

        if metrics.sharpness < thresholds.sharpness_threshold:
            moving = metrics.motion_delta is not None and metrics.motion_delta > thresholds.motion_blur_threshold
            reason = RejectionReason.MOTION_BLUR if moving else RejectionReason.BLUR
            return ScoreDecision(quality_score=quality_score, rejection_reason=reason)

        grid = motion_grid(sample.pixels, grid_size=self.grid_size)
        duplicate_delta = None
        if self._last_accepted_grid is not None:
            duplicate_delta = motion_delta(grid, self._last_accepted_grid)
            if duplicate_delta < thresholds.duplicate_threshold:
                return ScoreDecision(
                    quality_score=quality_score,
                    rejection_reason=RejectionReason.DUPLICATE,
                    duplicate_delta=duplicate_delta,
                )

        self._last_accepted_grid = grid
        return ScoreDecision(quality_score=quality_score, rejection_reason=None, duplicate_delta=duplicate_delta)


def classify_exposure(metrics: QualityMetrics, thresholds: ScoringSettings) -> RejectionReason | None:
    """Glare is low variance plus high luminance; high luminance alone is overexposure."""

    if (
        metrics.luminance_variance < thresholds.glare_threshold
        and metrics.mean_luminance > thresholds.bright_threshold
    ):
        return RejectionReason.GLARE
    if metrics.mean_luminance < thresholds.dark_threshold:
        return RejectionReason.TOO_DARK
    if metrics.mean_luminance > thresholds.bright_threshold:
        return RejectionReason.TOO_BRIGHT
    return None


def normalize_sharpness(sharpness: float, *, floor: float, ceiling: float) -> float:
    if ceiling <= floor:
        return 1.0 if sharpness >= floor else 0.0
    return _clamp((sharpness - floor) / (ceiling - floor))


def summarize_rejections(candidates: Iterable[CandidatePage]) -> dict[RejectionReason, int]:
    counts = Counter(candidate.rejection_reason for candidate in candidates if candidate.rejection_reason is not None)
    return {reason: counts[reason] for reason in RejectionReason if counts[reason]}


def describe_exhaustion(histogram: dict[RejectionReason, int]) -> str:
    """Explain an empty pass using its most frequent rejection reason."""

    if not histogram:
        return "Nothing usable found: no frames could be read. Try again."

    dominant = max(histogram, key=lambda reason: (histogram[reason], -list(RejectionReason).index(reason)))
    total = sum(histogram.values())
    return (
        f"Nothing usable found: {_REASON_MESSAGES[dominant]} "
        f"({histogram[dominant]} of {total} frames). Try again."
    )


def _clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
