"""
Exception types raised by the frameface pipeline.

A missing face is not an error: the embedding generator returns ``None`` for
images without detections and callers record a ``noFaces`` index entry.
"""

from __future__ import annotations


class FramefaceError(Exception):
    """Base class for all pipeline errors."""


class InvalidImage(FramefaceError):
    """The input could not be decoded or has a zero width or height."""


class ModelInferenceFailure(FramefaceError):
    """A model provider call failed or the provider is not initialised."""


class CacheCorruption(FramefaceError):
    """An embedding file or the index could not be parsed.

    Raised by low‑level readers only; :meth:`FaceCache.load` and
    :meth:`FaceCache.save` repair corruption instead of surfacing it.
    """


class FilesystemError(FramefaceError):
    """A cache or source file could not be read or written."""
