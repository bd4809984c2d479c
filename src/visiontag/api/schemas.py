"""Pydantic request/response schemas for the VisionTag API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RecognitionResult(BaseModel):
    """A single ranked label with its model score."""

    label: str
    confidence: float


class RecognizePathRequest(BaseModel):
    """Classify an image file readable by the server."""

    path: str = Field(min_length=1)


class RecognizeEncodedRequest(BaseModel):
    """Classify a base64 image, optionally prefixed with a data-URL header."""

    data: str = Field(min_length=1, description="Base64 image bytes, e.g. 'data:image/png;base64,...'")


class RecognizeFrameRequest(BaseModel):
    """Classify a raw RGBA camera frame."""

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    rgba: str = Field(description="Base64-encoded, tightly packed RGBA pixels (width*height*4 bytes)")


class InitModelResponse(BaseModel):
    """Result of a model initialization request."""

    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_ready: bool
    input_shape: list[int]
    label_count: int
    concurrent_requests: int
    queue_depth: int
    completed_requests: int
    rejected_requests: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
