from __future__ import annotations

import math

import cv2
import numpy as np

from pagescan.errors import InvalidGeometryError
from pagescan.models import CropRect, PageEdit, PerspectiveQuad


def rotate_clockwise(pixels: np.ndarray, rotation_degrees: int) -> np.ndarray:
    """Lossless rotation by a multiple of 90 degrees."""

    if rotation_degrees % 90 != 0:
        raise InvalidGeometryError(f"Rotation must be a multiple of 90 degrees, got {rotation_degrees}.")
    quarter_turns = (rotation_degrees // 90) % 4
    if quarter_turns == 0:
        return pixels
    return np.ascontiguousarray(np.rot90(pixels, k=-quarter_turns))


def crop_normalized(pixels: np.ndarray, crop: CropRect) -> np.ndarray:
    height, width = pixels.shape[:2]
    x0 = int(round(crop.left * width))
    x1 = int(round(crop.right * width))
    y0 = int(round(crop.top * height))
    y1 = int(round(crop.bottom * height))
    if x1 <= x0 or y1 <= y0:
        raise InvalidGeometryError(
            f"Crop {crop} collapses to an empty region on a {width}x{height} frame."
        )
    return pixels[y0:y1, x0:x1]


def unwarp_perspective(pixels: np.ndarray, quad: PerspectiveQuad) -> np.ndarray:
    """Map the quad's corners onto an upright rectangle with bilinear resampling."""

    height, width = pixels.shape[:2]
    corners = np.array(
        [[point.x * width, point.y * height] for point in quad.ordered()],
        dtype=np.float32,
    )
    top_left, top_right, bottom_right, bottom_left = corners

    target_width = int(round(max(_distance(top_left, top_right), _distance(bottom_left, bottom_right))))
    target_height = int(round(max(_distance(top_left, bottom_left), _distance(top_right, bottom_right))))
    if target_width < 1 or target_height < 1:
        raise InvalidGeometryError(
            f"Perspective quad collapses to {target_width}x{target_height} on a {width}x{height} frame."
        )

    destination = np.array(
        [
            [0, 0],
            [target_width - 1, 0],
            [target_width - 1, target_height - 1],
            [0, target_height - 1],
        ],
        dtype=np.float32,
    )
    matrix = cv2.getPerspectiveTransform(corners, destination)
    return cv2.warpPerspective(
        pixels,
        matrix,
        (target_width, target_height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE,
    )


def apply_geometry(pixels: np.ndarray, edit: PageEdit) -> np.ndarray:
    """Rotate, then unwarp the quad if one is set, else apply the rectangular crop."""

    if pixels.ndim < 2 or pixels.size == 0:
        raise InvalidGeometryError("Cannot apply page geometry to an empty frame.")

    rotated = rotate_clockwise(pixels, edit.rotation_degrees)
    if edit.perspective_quad is not None:
        return unwarp_perspective(rotated, edit.perspective_quad)
    if edit.crop_rect.is_full_frame:
        return rotated
    return crop_normalized(rotated, edit.crop_rect)


def _distance(a: np.ndarray, b: np.ndarray) -> float:
    return math.hypot(float(a[0] - b[0]), float(a[1] - b[1]))
