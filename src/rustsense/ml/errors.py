"""Error types raised by the classification pipeline.

An unusable model output is not an error: see ``InvalidPrediction`` in
``rustsense.ml.classifier``.
"""

from __future__ import annotations


class DecodeError(ValueError):
    """Raised when image bytes are not a decodable JPEG stream."""


class ResizeError(ValueError):
    """Raised for invalid resize targets or a resampling failure."""


class AdapterError(RuntimeError):
    """Raised when the inference collaborator fails or returns a malformed output."""
