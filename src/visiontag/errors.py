"""Error taxonomy for the recognition pipeline.

Every error raised by the preprocessing and inference layers derives from
``VisionTagError`` so the API layer can render it as a single ``detail``
string.
"""

from __future__ import annotations

from enum import StrEnum


class VisionTagError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(VisionTagError, ValueError):
    """Image input is malformed, unreadable, or does not match the expected shape."""


class LoadStage(StrEnum):
    READ = "read"
    COMPILE = "compile"
    INPUT = "input"
    OUTPUT = "output"


class LoadError(VisionTagError):
    """Model source is missing, malformed, or fails validation."""

    def __init__(self, stage: LoadStage, message: str) -> None:
        super().__init__(f"Failed to load model ({stage}): {message}")
        self.stage = stage


class NotInitializedError(VisionTagError):
    """Classification was requested before a model was loaded."""

    def __init__(self) -> None:
        super().__init__("Model not initialized")


class InferenceError(VisionTagError):
    """Graph execution failed or produced an unexpected output."""
