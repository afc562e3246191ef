from __future__ import annotations

import cv2
import numpy as np

from pagescan.features.frame_metrics import luminance
from pagescan.models import PageFilter, parse_page_filter

DOCUMENT_CONTRAST = 1.2
DOCUMENT_BRIGHTNESS = 10.0
SHARPEN_AMOUNT = 0.3
SHARPEN_SIGMA = 1.0

BLACK_WHITE_CONTRAST = 1.5
BLACK_WHITE_BRIGHTNESS = -40.0

MID_GRAY = 128.0


def apply_filter(pixels: np.ndarray, page_filter: PageFilter | str) -> np.ndarray:
    """Run the selected filter; always returns a new uint8 buffer."""

    resolved = parse_page_filter(page_filter)
    if resolved is PageFilter.ORIGINAL:
        return pixels.copy()
    if resolved is PageFilter.BLACK_WHITE:
        return black_white(pixels)
    return document(pixels)


def document(pixels: np.ndarray) -> np.ndarray:
    """Readable-notes look: auto-levels, mild contrast boost, mild sharpen. Keeps color."""

    stretched = stretch_contrast(pixels)
    boosted = adjust_contrast(stretched, contrast=DOCUMENT_CONTRAST, brightness=DOCUMENT_BRIGHTNESS)
    return _to_uint8(unsharp_mask(boosted, amount=SHARPEN_AMOUNT, sigma=SHARPEN_SIGMA))


def black_white(pixels: np.ndarray) -> np.ndarray:
    """Desaturate, then push contrast hard without literal thresholding."""

    gray = luminance(pixels)
    pushed = adjust_contrast(gray, contrast=BLACK_WHITE_CONTRAST, brightness=BLACK_WHITE_BRIGHTNESS)
    gray_u8 = _to_uint8(pushed)
    if pixels.ndim == 2:
        return gray_u8
    return np.repeat(gray_u8[..., np.newaxis], 3, axis=2)


def stretch_contrast(pixels: np.ndarray) -> np.ndarray:
    """Stretch every channel by the frame's luminance range; a flat frame is left as is."""

    values = pixels.astype(np.float32)
    lum = np.floor(luminance(pixels))
    low = float(lum.min())
    high = float(lum.max())
    if high <= low:
        return values
    return np.clip((values - low) * (255.0 / (high - low)), 0.0, 255.0)


def adjust_contrast(values: np.ndarray, *, contrast: float, brightness: float) -> np.ndarray:
    """``(in - 128) * contrast + 128 + brightness`` clamped to [0, 255]."""

    return np.clip((values.astype(np.float32) - MID_GRAY) * contrast + MID_GRAY + brightness, 0.0, 255.0)


def unsharp_mask(values: np.ndarray, *, amount: float, sigma: float) -> np.ndarray:
    values = values.astype(np.float32)
    blurred = cv2.GaussianBlur(values, (0, 0), sigmaX=sigma, sigmaY=sigma, borderType=cv2.BORDER_REPLICATE)
    return np.clip(values + amount * (values - blurred), 0.0, 255.0)


def _to_uint8(values: np.ndarray) -> np.ndarray:
    return np.rint(np.clip(values, 0.0, 255.0)).astype(np.uint8)
