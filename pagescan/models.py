from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from pagescan.errors import InvalidGeometryError, UnknownFilterError

ALLOWED_ROTATIONS = (0, 90, 180, 270)
MIN_QUAD_AREA = 1e-6


class RejectionReason(str, Enum):
    BLUR = "BLUR"
    GLARE = "GLARE"
    DUPLICATE = "DUPLICATE"
    TOO_DARK = "TOO_DARK"
    TOO_BRIGHT = "TOO_BRIGHT"
    MOTION_BLUR = "MOTION_BLUR"


class PageFilter(str, Enum):
    DOCUMENT = "document"
    ORIGINAL = "original"
    BLACK_WHITE = "black_white"


class QualityTier(str, Enum):
    EMAIL_FRIENDLY = "email_friendly"
    BALANCED = "balanced"
    PRINT_QUALITY = "print_quality"

    @property
    def scale_factor(self) -> float:
        return _TIER_SCALE_FACTORS[self]


_TIER_SCALE_FACTORS = {
    QualityTier.EMAIL_FRIENDLY: 0.6,
    QualityTier.BALANCED: 0.8,
    QualityTier.PRINT_QUALITY: 1.0,
}


@dataclass(slots=True)
class FrameSample:
    """A decoded BGR frame taken from a video source at a timestamp."""

    timestamp_ms: int
    pixels: np.ndarray

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @property
    def is_empty(self) -> bool:
        return self.pixels.size == 0 or self.width == 0 or self.height == 0


@dataclass(slots=True, frozen=True)
class QualityMetrics:
    """Numeric facts about one frame, used by frame scorers."""

    sharpness: float
    mean_luminance: float
    luminance_variance: float
    motion_delta: float | None = None
    is_degenerate: bool = False


@dataclass(slots=True)
class CandidatePage:
    """A sampled frame proposed as a document page, with its verdict."""

    id: str
    timestamp_ms: int
    quality_score: float
    rejection_reason: RejectionReason | None = None
    is_selected: bool | None = None
    thumbnail: np.ndarray | None = None
    metrics: QualityMetrics | None = None
    duplicate_delta: float | None = None

    def __post_init__(self) -> None:
        if self.is_selected is None:
            self.is_selected = self.rejection_reason is None

    def toggle_selected(self) -> bool:
        self.is_selected = not self.is_selected
        return self.is_selected


@dataclass(slots=True, frozen=True)
class Point:
    x: float
    y: float


@dataclass(slots=True, frozen=True)
class CropRect:
    """Normalized crop bounds; the default covers the whole frame."""

    left: float = 0.0
    top: float = 0.0
    right: float = 1.0
    bottom: float = 1.0

    def __post_init__(self) -> None:
        for name in ("left", "top", "right", "bottom"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidGeometryError(f"Crop {name}={value} is outside the normalized range [0, 1].")
        if self.right <= self.left or self.bottom <= self.top:
            raise InvalidGeometryError(
                f"Crop rectangle ({self.left}, {self.top}, {self.right}, {self.bottom}) has zero area."
            )

    @property
    def is_full_frame(self) -> bool:
        return (self.left, self.top, self.right, self.bottom) == (0.0, 0.0, 1.0, 1.0)


@dataclass(slots=True, frozen=True)
class PerspectiveQuad:
    """Four normalized corner points outlining a page inside a frame."""

    points: tuple[Point, Point, Point, Point]

    def __post_init__(self) -> None:
        if len(self.points) != 4:
            raise InvalidGeometryError(f"Perspective quad needs 4 points, got {len(self.points)}.")
        for point in self.points:
            if not (0.0 <= point.x <= 1.0 and 0.0 <= point.y <= 1.0):
                raise InvalidGeometryError(f"Quad point ({point.x}, {point.y}) is outside the frame.")
        if self.area() < MIN_QUAD_AREA:
            raise InvalidGeometryError("Perspective quad is degenerate (zero area).")

    def ordered(self) -> tuple[Point, Point, Point, Point]:
        """Return corners as top-left, top-right, bottom-right, bottom-left."""

        cx = sum(point.x for point in self.points) / 4.0
        cy = sum(point.y for point in self.points) / 4.0
        # y grows downward, so ascending angle walks the corners clockwise on screen
        clockwise = sorted(self.points, key=lambda point: math.atan2(point.y - cy, point.x - cx))
        start = min(range(4), key=lambda idx: (clockwise[idx].x + clockwise[idx].y, clockwise[idx].x))
        rotated = clockwise[start:] + clockwise[:start]
        return rotated[0], rotated[1], rotated[2], rotated[3]

    def area(self) -> float:
        corners = self.ordered()
        twice_area = 0.0
        for idx, point in enumerate(corners):
            following = corners[(idx + 1) % 4]
            twice_area += (point.x * following.y) - (following.x * point.y)
        return abs(twice_area) / 2.0


@dataclass(slots=True)
class PageEdit:
    """User-supplied transform parameters bound to a candidate page id."""

    page_id: str = ""
    rotation_degrees: int = 0
    crop_rect: CropRect = field(default_factory=CropRect)
    perspective_quad: PerspectiveQuad | None = None
    filter: PageFilter = PageFilter.DOCUMENT

    def __post_init__(self) -> None:
        if self.rotation_degrees not in ALLOWED_ROTATIONS:
            raise InvalidGeometryError(
                f"Rotation must be one of {ALLOWED_ROTATIONS}, got {self.rotation_degrees}."
            )
        self.filter = parse_page_filter(self.filter)


@dataclass(slots=True)
class EnhancedPage:
    """Final rendered page bitmap handed to the PDF assembly step."""

    pixels: np.ndarray
    edit: PageEdit
    quality_tier: QualityTier
    byte_size: int

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(slots=True)
class SamplingResult:
    """Completed sampling pass; candidates are in timestamp order."""

    candidates: list[CandidatePage]
    rejection_histogram: dict[RejectionReason, int]
    interval_ms: float
    scheduled_count: int
    skipped_timestamps: list[int] = field(default_factory=list)

    @property
    def selected(self) -> list[CandidatePage]:
        return [candidate for candidate in self.candidates if candidate.is_selected]

    @property
    def is_exhausted(self) -> bool:
        return not any(candidate.rejection_reason is None for candidate in self.candidates)


@dataclass(slots=True, frozen=True)
class PassCancelled:
    """Terminal outcome of a sampling pass stopped by its caller."""

    processed_count: int
    scheduled_count: int


SamplingOutcome = SamplingResult | PassCancelled


def parse_page_filter(value: PageFilter | str) -> PageFilter:
    if isinstance(value, PageFilter):
        return value
    normalized = str(value).strip().lower()
    try:
        return PageFilter(normalized)
    except ValueError as exc:
        expected = ", ".join(item.value for item in PageFilter)
        raise UnknownFilterError(f"Unsupported page filter '{value}'. Expected one of: {expected}.") from exc


def parse_quality_tier(value: QualityTier | str) -> QualityTier:
    if isinstance(value, QualityTier):
        return value
    normalized = str(value).strip().lower()
    try:
        return QualityTier(normalized)
    except ValueError as exc:
        expected = ", ".join(item.value for item in QualityTier)
        raise ValueError(f"Unsupported quality tier '{value}'. Expected one of: {expected}.") from exc
