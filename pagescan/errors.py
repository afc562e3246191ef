from __future__ import annotations


class PageScanError(Exception):
    """Base class for errors raised by the page extraction core."""


class InvalidRangeError(PageScanError, ValueError):
    """Raised when a sampling range is empty or reversed."""


class InvalidGeometryError(PageScanError, ValueError):
    """Raised for rotations, crops or quads that cannot produce a page."""


class UnknownFilterError(PageScanError, ValueError):
    """Raised when a page edit names a filter that does not exist."""


class FrameReadError(PageScanError, RuntimeError):
    """Raised when a video source cannot decode a frame at a timestamp."""
