from __future__ import annotations

import logging

import cv2
import numpy as np

from pagescan.models import FrameSample, QualityMetrics

logger = logging.getLogger(__name__)

# 0.299 R + 0.587 G + 0.114 B, laid out for BGR buffers
LUMA_WEIGHTS_BGR = np.array([0.114, 0.587, 0.299], dtype=np.float32)

DEGENERATE_METRICS = QualityMetrics(
    sharpness=0.0,
    mean_luminance=0.0,
    luminance_variance=0.0,
    motion_delta=None,
    is_degenerate=True,
)


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Return a float32 luminance plane for a BGR (or already gray) buffer."""

    if pixels.ndim == 2:
        return pixels.astype(np.float32)
    return pixels[..., :3].astype(np.float32) @ LUMA_WEIGHTS_BGR


def analysis_image(gray: np.ndarray, analysis_width: int = 256) -> np.ndarray:
    """Resample a luminance plane to a fixed width so metrics are resolution-invariant."""

    height, width = gray.shape[:2]
    target_height = max(int(round(height * analysis_width / width)), 1)
    if (width, height) == (analysis_width, target_height):
        return gray
    interpolation = cv2.INTER_AREA if width > analysis_width else cv2.INTER_LINEAR
    return cv2.resize(gray, (analysis_width, target_height), interpolation=interpolation)


def compute_sharpness(gray: np.ndarray) -> float:
    """Variance of the Laplacian response; already normalized by sample count."""

    response = cv2.Laplacian(gray, cv2.CV_32F, ksize=3)
    return float(np.var(response, dtype=np.float64))


def compute_exposure(gray: np.ndarray) -> tuple[float, float]:
    return float(np.mean(gray, dtype=np.float64)), float(np.var(gray, dtype=np.float64))


def motion_grid(pixels: np.ndarray, grid_size: int = 32) -> np.ndarray:
    """Downsample a frame's luminance to a fixed grid for frame-to-frame comparison."""

    gray = luminance(pixels)
    return cv2.resize(gray, (grid_size, grid_size), interpolation=cv2.INTER_AREA)


def motion_delta(current_grid: np.ndarray, previous_grid: np.ndarray) -> float:
    """Mean absolute luminance difference between two grids (0 means identical)."""

    return float(np.mean(np.abs(current_grid - previous_grid), dtype=np.float64))


def compute_quality_metrics(
    sample: FrameSample,
    previous: FrameSample | np.ndarray | None = None,
    *,
    analysis_width: int = 256,
    grid_size: int = 32,
) -> QualityMetrics:
    """Compute sharpness, exposure and motion facts for one frame.

    ``previous`` may be the preceding sample or its precomputed motion grid.
    Zero-size or unprocessable frames come back flagged as degenerate instead
    of raising, so one bad frame never aborts a sampling pass.
    """

    if sample.is_empty:
        return DEGENERATE_METRICS

    try:
        gray = luminance(sample.pixels)
        analysed = analysis_image(gray, analysis_width=analysis_width)
        sharpness = compute_sharpness(analysed)
        mean_luminance, luminance_variance = compute_exposure(analysed)

        delta = None
        previous_grid = _resolve_previous_grid(previous, grid_size)
        if previous_grid is not None:
            current_grid = cv2.resize(gray, (grid_size, grid_size), interpolation=cv2.INTER_AREA)
            delta = motion_delta(current_grid, previous_grid)
    except (cv2.error, ValueError, TypeError) as exc:
        logger.warning("Metrics failed for frame at %s ms (%s); treating as degenerate.", sample.timestamp_ms, exc)
        return DEGENERATE_METRICS

    return QualityMetrics(
        sharpness=sharpness,
        mean_luminance=mean_luminance,
        luminance_variance=luminance_variance,
        motion_delta=delta,
    )


def _resolve_previous_grid(previous: FrameSample | np.ndarray | None, grid_size: int) -> np.ndarray | None:
    if previous is None:
        return None
    if isinstance(previous, np.ndarray):
        return previous.astype(np.float32)
    if previous.is_empty:
        return None
    return motion_grid(previous.pixels, grid_size=grid_size)
