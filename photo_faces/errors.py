"""
Exception types raised by the face pipeline.

Only :class:`ModelLoadError` is fatal to a background operation; the other
errors describe a single photo or face and are absorbed by the orchestration
layer (counted and reported, never re-raised out of a batch).
"""

from __future__ import annotations


class FaceError(Exception):
    """Base class for all face pipeline errors."""


class ModelLoadError(FaceError):
    """A model file could not be downloaded or an inference session could not be created."""


class ImageLoadError(FaceError):
    """An image file is missing or cannot be decoded."""


class InferenceError(FaceError):
    """Running a model on a specific input failed or produced unusable output."""
