"""Detector error hierarchy.

Every failure of a detection call surfaces as exactly one of these.
"""

from __future__ import annotations


class DetectorError(Exception):
    """Base class for all detection failures."""


class InvalidImageError(DetectorError):
    """The image is unreadable, of an unsupported format, or has zero dimensions."""


class InvalidCascadeError(DetectorError):
    """The classifier definition is malformed or structurally invalid."""


class DecodeFailureError(DetectorError):
    """Resampling the decoded image failed."""


class DetectionCancelledError(DetectorError):
    """The detection call was cancelled before it completed."""
