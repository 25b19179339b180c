"""Error kinds surfaced by the cutout pipeline. Every one is terminal for the current attempt."""

from __future__ import annotations


class CutoutError(Exception):
    """Base class; `message` is safe to show to a user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ModelUnavailableError(CutoutError, RuntimeError):
    """Model initialization or inference failed."""


class InvalidInputError(CutoutError, ValueError):
    """Rejected before any processing (wrong type, too large, undecodable, bad options)."""


class RenderingError(CutoutError, RuntimeError):
    """Could not build or encode an output surface."""
