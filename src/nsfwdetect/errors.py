"""Exceptions raised by the detector.

Unreadable files are reported with the built-in ``OSError``.
"""

from __future__ import annotations


class DetectorError(Exception):
    """Base class for classification failures."""


class UnsupportedFormatError(DetectorError):
    """The input is not a JPEG image."""


class ModelLoadError(DetectorError):
    """The model artifact or its label file could not be loaded."""


class InvalidImageError(DetectorError):
    """The image could not be decoded or preprocessed."""


class InferenceError(DetectorError):
    """The backend failed to run or produced no usable output."""
