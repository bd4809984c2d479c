"""Middleware: API key authentication and pipeline error rendering."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from visiontag.errors import DecodeError, InferenceError, LoadError, NotInitializedError, VisionTagError

if TYPE_CHECKING:
    from fastapi import FastAPI

    from visiontag.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

_ERROR_STATUS: dict[type[VisionTagError], int] = {
    DecodeError: status.HTTP_400_BAD_REQUEST,
    NotInitializedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    LoadError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    InferenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against VISIONTAG_API_KEY, when one is configured."""
    settings: Settings = request.app.state.settings
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def error_status(exc: VisionTagError) -> int:
    """HTTP status code for a pipeline error."""
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_pipeline_error(request: Request, exc: VisionTagError) -> JSONResponse:
    code = error_status(exc)
    logger.warning("%s %s failed with %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _handle_queue_timeout(request: Request, exc: TimeoutError) -> JSONResponse:
    logger.warning("%s %s rejected: inference queue full", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, try again later"},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Render pipeline errors and pool timeouts as ``{"detail": ...}`` responses."""
    app.add_exception_handler(VisionTagError, _handle_pipeline_error)
    app.add_exception_handler(TimeoutError, _handle_queue_timeout)
