"""
Inference error types.
"""

from __future__ import annotations


class SessionCreationError(RuntimeError):
    """Every execution provider attempt failed while creating a session."""


class EngineError(RuntimeError):
    """The native engine returned a null handle, failed a call, or was used after close."""


class UnsupportedModelError(ValueError):
    """The model outputs cannot be interpreted as a segmentation head."""
