from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import cv2
import numpy as np

from pagescan.enhance.filters import apply_filter
from pagescan.enhance.geometry import apply_geometry
from pagescan.errors import InvalidGeometryError
from pagescan.models import EnhancedPage, FrameSample, PageEdit, QualityTier, parse_quality_tier

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_LONG_EDGE_PX = 1754


def scale_for_tier(
    pixels: np.ndarray,
    quality_tier: QualityTier | str,
    *,
    baseline_long_edge_px: int = DEFAULT_BASELINE_LONG_EDGE_PX,
) -> np.ndarray:
    """Resize so the long edge matches the tier's share of the print baseline."""

    tier = parse_quality_tier(quality_tier)
    height, width = pixels.shape[:2]
    target_long_edge = max(int(round(baseline_long_edge_px * tier.scale_factor)), 1)
    scale = target_long_edge / max(width, height)
    target = (max(int(round(width * scale)), 1), max(int(round(height * scale)), 1))
    if target == (width, height):
        return pixels
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC
    return cv2.resize(pixels, target, interpolation=interpolation)


def enhance_page(
    sample: FrameSample,
    edit: PageEdit,
    quality_tier: QualityTier | str = QualityTier.BALANCED,
    *,
    baseline_long_edge_px: int = DEFAULT_BASELINE_LONG_EDGE_PX,
) -> EnhancedPage:
    """Render one page: geometry, then filter, then output scaling.

    Pure in its inputs: the sample's pixels are never modified and identical
    arguments give byte-identical output.
    """

    tier = parse_quality_tier(quality_tier)
    if sample.is_empty:
        raise InvalidGeometryError(f"Frame at {sample.timestamp_ms} ms is empty; nothing to enhance.")

    corrected = apply_geometry(sample.pixels, edit)
    filtered = apply_filter(corrected, edit.filter)
    scaled = scale_for_tier(filtered, tier, baseline_long_edge_px=baseline_long_edge_px)

    logger.debug(
        "Enhanced page %s at %s ms: filter=%s rotation=%s tier=%s -> %sx%s",
        edit.page_id or "<unbound>",
        sample.timestamp_ms,
        edit.filter.value,
        edit.rotation_degrees,
        tier.value,
        scaled.shape[1],
        scaled.shape[0],
    )
    return EnhancedPage(pixels=scaled, edit=edit, quality_tier=tier, byte_size=int(scaled.nbytes))


def enhance_pages(
    jobs: Sequence[tuple[FrameSample, PageEdit]],
    quality_tier: QualityTier | str = QualityTier.BALANCED,
    *,
    baseline_long_edge_px: int = DEFAULT_BASELINE_LONG_EDGE_PX,
    max_workers: int = 4,
) -> list[EnhancedPage]:
    """Enhance independent pages concurrently; output order matches ``jobs``."""

    if not jobs:
        return []

    tier = parse_quality_tier(quality_tier)
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(jobs))), thread_name_prefix="pagescan-enhance") as pool:
        return list(
            pool.map(
                lambda job: enhance_page(job[0], job[1], tier, baseline_long_edge_px=baseline_long_edge_px),
                jobs,
            )
        )
