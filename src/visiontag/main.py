"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visiontag.api.middleware import register_error_handlers
from visiontag.api.routes import router
from visiontag.config import get_settings
from visiontag.errors import LoadError
from visiontag.ml.inference import InferencePool
from visiontag.service import RecognitionService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting VisionTag (device=%s, max_concurrent=%s, input=%sx%s, source=%s)",
        settings.device,
        settings.max_concurrent,
        settings.input_width,
        settings.input_height,
        settings.model_source,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    service = RecognitionService(settings, inference_pool)
    app.state.recognition_service = service

    if settings.init_on_startup:
        try:
            logger.info(await service.init_model())
        except LoadError:
            logger.exception("Model initialization failed; POST /api/v1/init-model to retry")

    logger.info("VisionTag ready")
    yield

    logger.info("Shutting down VisionTag")
    inference_pool.shutdown()
    service.engine.shutdown()
    logger.info("VisionTag shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VisionTag",
        description="ONNX image classification API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn."""
    settings = get_settings()
    uvicorn.run("visiontag.main:app", host=settings.host, port=settings.port)
